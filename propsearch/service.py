"""Search service facade used by the HTTP API and the CLI."""
from __future__ import annotations

import logging
from time import perf_counter
from typing import Any, Mapping, Optional

from .analytics import AnalyticsFeedbackLoop, get_event_log
from .cache import CacheTier, TieredCache, get_cache_backend
from .config import Settings, settings as default_settings
from .errors import InternalError, UpstreamUnavailable
from .models import (
    DestinationList,
    FacetCounts,
    GeoPoint,
    PropertyChangeEvent,
    ResponseMetadata,
    SearchEvent,
    SearchMetrics,
    SearchRequest,
    SearchResult,
    SuggestionList,
)
from .normalizer import Normalizer
from .phonetics import city_key
from .pipeline import SearchPipeline, paginate, request_currency
from .popularity import PopularityStore
from .rate_limit import RateLimiter
from .search_index import DocumentIndex
from .suggest import AutocompleteSuggester

logger = logging.getLogger(__name__)

CACHE_BYPASSED = "cache_bypassed"
STALE_CACHE = "stale_cache"
UPSTREAM_UNAVAILABLE = "upstream_unavailable"

# Fields whose change can alter autocomplete output.
SUGGEST_FIELDS = frozenset({"name", "city"})


def _elapsed_ms(start: float) -> float:
    return round((perf_counter() - start) * 1000, 3)


class SearchService:
    def __init__(
        self,
        index: DocumentIndex,
        cache: TieredCache,
        popularity: PopularityStore | None = None,
        analytics: AnalyticsFeedbackLoop | None = None,
        limiter: RateLimiter | None = None,
        config: Settings | None = None,
    ) -> None:
        self.config = config or default_settings
        self.index = index
        self.cache = cache
        self.popularity = popularity or PopularityStore()
        self.analytics = analytics or AnalyticsFeedbackLoop(self.popularity, config=self.config)
        self.limiter = limiter
        self.normalizer = Normalizer(self.config)
        self.pipeline = SearchPipeline(index, self.popularity, self.config)
        self.suggester = AutocompleteSuggester(index, self.popularity, self.config)

    def _check_rate(self, client_id: str | None) -> None:
        if self.limiter is not None and client_id:
            self.limiter.check(client_id)

    # -- search -------------------------------------------------------------

    async def search(
        self,
        text: str | None = None,
        language: str | None = None,
        filters: Mapping[str, Any] | None = None,
        page: Any = None,
        size: Any = None,
        sort: Any = None,
        *,
        user_id: str | None = None,
        session_id: str | None = None,
        client_id: str | None = None,
    ) -> SearchResult:
        self._check_rate(client_id)
        request = self.normalizer.normalize(
            text, language, filters, page, size, sort, user_id=user_id, session_id=session_id
        )
        tier = CacheTier.LOCATION if request.is_location_only else CacheTier.SEARCH
        return await self.execute(request, tier)

    async def nearby(
        self,
        lat: Any,
        lon: Any,
        radius_km: Any = None,
        filters: Mapping[str, Any] | None = None,
        page: Any = None,
        size: Any = None,
        *,
        text: str | None = None,
        language: str | None = None,
        sort: Any = None,
        user_id: str | None = None,
        session_id: str | None = None,
        client_id: str | None = None,
    ) -> SearchResult:
        merged = dict(filters or {})
        merged.update({"lat": lat, "lon": lon, "radius_km": radius_km})
        return await self.search(
            text,
            language,
            merged,
            page,
            size,
            sort,
            user_id=user_id,
            session_id=session_id,
            client_id=client_id,
        )

    async def execute(self, request: SearchRequest, tier: CacheTier = CacheTier.SEARCH) -> SearchResult:
        """Serve ``request`` through the cache, degrading instead of failing."""

        start = perf_counter()
        signature = request.signature()
        hit = coalesced = False
        try:
            outcome = await self.cache.get_or_compute(
                tier,
                signature,
                lambda: self.pipeline.execute(request),
                SearchResult,
                tags=lambda result: [item.id for item in result.hits],
                cacheable=lambda result: not result.metadata.degraded,
            )
            result = outcome.value
            hit, coalesced = outcome.hit, outcome.coalesced
            fallbacks = list(result.metadata.fallbacks)
            if outcome.degraded:
                fallbacks.append(CACHE_BYPASSED)
        except UpstreamUnavailable as exc:
            logger.warning("Search degraded for %s: %s", signature, exc)
            stale = await self.cache.get_stale(tier, signature, SearchResult)
            if stale is not None:
                result, fallbacks = stale, [STALE_CACHE]
            else:
                result = SearchResult(page=paginate(0, request.page, request.size))
                fallbacks = [UPSTREAM_UNAVAILABLE]
        except Exception as exc:
            logger.exception("Search failed for %s", signature)
            raise InternalError("search failed") from exc

        latency = _elapsed_ms(start)
        result = result.model_copy(
            update={
                "metadata": ResponseMetadata(
                    latency_ms=latency,
                    cache_hit=hit,
                    coalesced=coalesced,
                    degraded=bool(fallbacks),
                    fallbacks=fallbacks,
                    language=request.language,
                    currency=request_currency(request, self.config.default_currency),
                    signature=signature,
                )
            }
        )
        logger.info(
            "timing: total=%.2fms cache_hit=%d coalesced=%d q=%r tier=%s hits=%s total_hits=%s fallbacks=%s",
            latency,
            hit,
            coalesced,
            request.text,
            tier.value,
            len(result.hits),
            result.page.total,
            fallbacks,
        )
        self.analytics.record_event(self._query_event(request, result))
        return result

    def _query_event(self, request: SearchRequest, result: SearchResult) -> SearchEvent:
        top = result.hits[0] if result.hits else None
        destination = top.city if top is not None else None
        city_filter = request.get_filter("city")
        if city_filter is not None:
            destination = city_filter.cities[0]
            if top is not None and city_key(top.city) == destination:
                destination = top.city
        location = request.location
        return SearchEvent(
            session_id=request.session_id,
            user_id=request.user_id,
            text=request.text,
            filters={item.kind: item.model_dump(mode="json", exclude={"kind"}) for item in request.filters},
            location=GeoPoint(lat=location.lat, lon=location.lon) if location is not None else None,
            destination=destination,
            country_code=top.country_code if top is not None else None,
            result_ids=tuple(item.id for item in result.hits),
            result_count=result.page.total,
            response_time_ms=result.metadata.latency_ms,
        )

    # -- facets -------------------------------------------------------------

    async def facets(
        self,
        filters: Mapping[str, Any] | None = None,
        text: str | None = None,
        language: str | None = None,
        *,
        client_id: str | None = None,
    ) -> FacetCounts:
        self._check_rate(client_id)
        request = self.normalizer.normalize(text, language, filters)
        try:
            outcome = await self.cache.get_or_compute(
                CacheTier.FACETS,
                "facets|" + request.signature(),
                lambda: self.pipeline.compute_facets(request),
                FacetCounts,
            )
        except UpstreamUnavailable as exc:
            logger.warning("Facets unavailable for %s: %s", request.signature(), exc)
            return FacetCounts()
        return outcome.value

    # -- autocomplete -------------------------------------------------------

    async def suggest(
        self,
        prefix: str | None,
        language: str | None = None,
        geo_hint: Optional[tuple[Any, Any] | GeoPoint] = None,
        limit: Any = None,
        *,
        client_id: str | None = None,
    ) -> SuggestionList:
        self._check_rate(client_id)
        start = perf_counter()
        request = self.normalizer.normalize_suggest(prefix, language, geo_hint, limit)
        if not request.text and not (request.literal and request.raw):
            return SuggestionList(metadata=ResponseMetadata(language=request.language, signature=request.signature()))

        hit = coalesced = False
        fallbacks: list[str] = []

        async def compute() -> SuggestionList:
            return SuggestionList(suggestions=await self.suggester.suggest(request))

        try:
            outcome = await self.cache.get_or_compute(
                CacheTier.SUGGESTIONS, request.signature(), compute, SuggestionList
            )
            suggestions = outcome.value.suggestions
            hit, coalesced = outcome.hit, outcome.coalesced
            if outcome.degraded:
                fallbacks.append(CACHE_BYPASSED)
        except UpstreamUnavailable as exc:
            logger.warning("Suggestions degraded for %r: %s", request.raw, exc)
            stale = await self.cache.get_stale(CacheTier.SUGGESTIONS, request.signature(), SuggestionList)
            suggestions = stale.suggestions if stale is not None else []
            fallbacks.append(STALE_CACHE if stale is not None else UPSTREAM_UNAVAILABLE)

        return SuggestionList(
            suggestions=suggestions,
            metadata=ResponseMetadata(
                latency_ms=_elapsed_ms(start),
                cache_hit=hit,
                coalesced=coalesced,
                degraded=bool(fallbacks),
                fallbacks=fallbacks,
                language=request.language,
                signature=request.signature(),
            ),
        )

    # -- popularity ---------------------------------------------------------

    async def popular_destinations(self, country_code: str | None = None, limit: Any = None) -> DestinationList:
        start = perf_counter()
        snapshot = self.popularity.current
        capped = self.normalizer.limit(limit, 10)
        country = country_code.strip().upper() if country_code and country_code.strip() else None
        signature = f"popular|country={country or ''}|limit={capped}|snapshot=v{snapshot.version}"

        async def compute() -> DestinationList:
            return DestinationList(destinations=snapshot.top_destinations(country, capped))

        hit = False
        fallbacks: list[str] = []
        try:
            outcome = await self.cache.get_or_compute(
                CacheTier.POPULAR_DESTINATIONS, signature, compute, DestinationList
            )
            destinations, hit = outcome.value.destinations, outcome.hit
            if outcome.degraded:
                fallbacks.append(CACHE_BYPASSED)
        except UpstreamUnavailable as exc:
            logger.warning("Popular destinations served without cache: %s", exc)
            destinations = snapshot.top_destinations(country, capped)
            fallbacks.append(CACHE_BYPASSED)
        return DestinationList(
            destinations=destinations,
            metadata=ResponseMetadata(
                latency_ms=_elapsed_ms(start),
                cache_hit=hit,
                degraded=bool(fallbacks),
                fallbacks=fallbacks,
                signature=signature,
            ),
        )

    # -- events -------------------------------------------------------------

    def record_search_event(self, event: SearchEvent) -> bool:
        return self.analytics.record_event(event)

    async def search_metrics(self) -> SearchMetrics:
        return await self.analytics.search_metrics()

    async def handle_property_event(self, event: PropertyChangeEvent) -> int:
        """Re-index the changed property and invalidate cached results."""

        tiers = [CacheTier.SEARCH, CacheTier.FACETS, CacheTier.LOCATION]
        if event.change_type == "deleted":
            await self.index.delete(event.property_id)
            tiers.append(CacheTier.SUGGESTIONS)
        else:
            if event.document is not None:
                await self.index.upsert(event.document)
            else:
                logger.warning("Change event for %s carries no document, invalidating only", event.property_id)
            if not event.changed_fields or SUGGEST_FIELDS.intersection(event.changed_fields):
                tiers.append(CacheTier.SUGGESTIONS)
        removed = await self.cache.invalidate_property(event.property_id, tiers)
        logger.info(
            "Property %s %s fields=%s, invalidated %s cache entries",
            event.property_id,
            event.change_type,
            event.changed_fields,
            removed,
        )
        return removed


def build_service(config: Settings | None = None) -> SearchService:
    """Wire the service from settings: index backend, cache, event log."""

    from .es_client import get_client
    from .importer import load_documents
    from .search_index import ElasticsearchIndex, InMemoryIndex

    config = config or default_settings
    if config.index_backend == "memory":
        index: DocumentIndex = InMemoryIndex(load_documents(config.properties_path))
    else:
        index = ElasticsearchIndex(get_client(), config.es_index, config.es_request_timeout)
    popularity = PopularityStore()
    return SearchService(
        index,
        TieredCache(get_cache_backend(), config),
        popularity=popularity,
        analytics=AnalyticsFeedbackLoop(popularity, get_event_log(config), config),
        limiter=RateLimiter.from_settings(config),
        config=config,
    )
