"""Query pipeline: text -> geo -> hard filters -> facets -> scoring -> page."""
from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from typing import Dict, List, Optional

from .config import Settings, settings as default_settings
from .errors import UpstreamUnavailable
from .facets import FacetAggregator
from .filters import apply_filters
from .geo import GeoFilter
from .models import (
    FacetCounts,
    PageInfo,
    ResponseMetadata,
    SearchDocument,
    SearchHit,
    SearchRequest,
    SearchResult,
)
from .popularity import PopularitySnapshot, PopularityStore
from .scoring import ScoreComposer, Scored
from .search_index import DocumentIndex
from .text_ranker import TextRanker

logger = logging.getLogger(__name__)

FACETS_UNAVAILABLE = "facets_unavailable"


@dataclass
class CandidateSet:
    """Documents left after the text and geo stages, one consistent snapshot."""

    docs: List[SearchDocument]
    relevance: Dict[str, float]
    distances: Optional[Dict[str, float]]


def request_currency(request: SearchRequest, default: str) -> str:
    price = request.get_filter("price")
    return price.currency if price is not None else default


def paginate(total: int, page: int, size: int) -> PageInfo:
    total_pages = math.ceil(total / size) if size else 0
    return PageInfo(
        total=total,
        page=page,
        size=size,
        total_pages=total_pages,
        has_next=page + 1 < total_pages,
        has_previous=page > 0,
    )


class SearchPipeline:
    def __init__(
        self,
        index: DocumentIndex,
        popularity: PopularityStore,
        config: Settings | None = None,
    ) -> None:
        self.config = config or default_settings
        self.index = index
        self.popularity = popularity
        self.ranker = TextRanker(index, self.config)
        self.geo = GeoFilter()
        self.composer = ScoreComposer(self.config)

    async def candidates(self, request: SearchRequest) -> CandidateSet:
        ranked = await self.ranker.rank(request)
        docs = [candidate.doc for candidate in ranked]
        relevance = {candidate.doc.id: candidate.relevance for candidate in ranked}
        location = request.location
        if location is None:
            return CandidateSet(docs, relevance, None)

        try:
            distances = await asyncio.wait_for(
                asyncio.to_thread(self.geo.apply, docs, location),
                timeout=self.config.geo_stage_timeout,
            )
        except asyncio.TimeoutError as exc:
            raise UpstreamUnavailable("geo filter", f"exceeded {self.config.geo_stage_timeout}s budget") from exc
        return CandidateSet([doc for doc in docs if doc.id in distances], relevance, distances)

    def _facets(self, docs: List[SearchDocument], request: SearchRequest, currency: str) -> tuple[FacetCounts, bool]:
        try:
            return FacetAggregator(currency).aggregate(docs, request.filters), True
        except Exception:
            logger.exception("Facet aggregation failed for %s", request.signature())
            return FacetCounts(), False

    async def execute(self, request: SearchRequest) -> SearchResult:
        """Run the whole pipeline within ``request_deadline``."""

        try:
            return await asyncio.wait_for(self._execute(request), timeout=self.config.request_deadline)
        except asyncio.TimeoutError as exc:
            raise UpstreamUnavailable("search pipeline", f"exceeded {self.config.request_deadline}s deadline") from exc

    async def _execute(self, request: SearchRequest) -> SearchResult:
        snapshot: PopularitySnapshot = self.popularity.current
        currency = request_currency(request, self.config.default_currency)
        if not request.text and not request.filters:
            # Nothing to match on: answer with an empty page, not the whole index.
            return SearchResult(
                page=paginate(0, request.page, request.size),
                metadata=ResponseMetadata(language=request.language, currency=currency, signature=request.signature()),
            )
        candidates = await self.candidates(request)

        facets, facets_ok = self._facets(candidates.docs, request, currency)
        filtered = apply_filters(candidates.docs, request.filters)
        scored = self.composer.compose(filtered, candidates.relevance, candidates.distances, snapshot)
        ordered = self.composer.order(scored, request.sort, currency)

        start = request.page * request.size
        window = ordered[start : start + request.size]
        fallbacks = [] if facets_ok else [FACETS_UNAVAILABLE]
        result = SearchResult(
            hits=[self.to_hit(item, request.language, currency) for item in window],
            facets=facets,
            page=paginate(len(ordered), request.page, request.size),
            metadata=ResponseMetadata(
                degraded=bool(fallbacks),
                fallbacks=fallbacks,
                language=request.language,
                currency=currency,
                signature=request.signature(),
            ),
        )
        logger.debug(
            "pipeline q=%r candidates=%s filtered=%s page=%s snapshot=v%s",
            request.text,
            len(candidates.docs),
            len(ordered),
            request.page,
            snapshot.version,
        )
        return result

    async def compute_facets(self, request: SearchRequest) -> FacetCounts:
        currency = request_currency(request, self.config.default_currency)
        candidates = await self.candidates(request)
        return FacetAggregator(currency).aggregate(candidates.docs, request.filters)

    @staticmethod
    def to_hit(item: Scored, language: str, currency: str) -> SearchHit:
        doc = item.doc
        price = doc.lowest_price(currency)
        price_currency = currency
        if price is None:
            price = doc.lowest_price()
            price_currency = doc.price_currency()
        return SearchHit(
            id=doc.id,
            name=doc.display_name(language),
            city=doc.city,
            country_code=doc.country_code,
            kind=doc.kind,
            star_rating=doc.star_rating,
            rating_avg=doc.rating_avg,
            lowest_price=price,
            currency=price_currency,
            promoted=doc.search_boost.promoted,
            distance_km=item.score.distance_km,
            score=item.score,
        )
