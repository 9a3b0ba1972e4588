"""FastAPI application wiring the property search service."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse

from .cache import CacheTier
from .config import settings
from .errors import InternalError, RateLimited, UpstreamUnavailable, ValidationError
from .models import (
    DestinationList,
    FacetCounts,
    PropertyChangeEvent,
    SearchEvent,
    SearchMetrics,
    SearchResult,
    SuggestionList,
)
from .service import SearchService, build_service

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_LEVEL = logging.getLevelName(settings.log_level.upper())

# ``force=True`` replaces uvicorn's default handlers so the pipeline timing
# lines share one format with the access log.
logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT, force=True)
for name in ("uvicorn", "uvicorn.error", "uvicorn.access", "elastic_transport"):
    logging.getLogger(name).setLevel(LOG_LEVEL)

logger = logging.getLogger(__name__)
logger.info("Logging configured at %s", settings.log_level.upper())

app = FastAPI(title="Property Search Service")

_service: SearchService | None = None


def get_service() -> SearchService:
    global _service
    if _service is None:
        _service = build_service()
    return _service


def client_identity(
    request: Request,
    user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
    session_id: Optional[str] = Header(default=None, alias="X-Session-Id"),
) -> Dict[str, Optional[str]]:
    host = request.client.host if request.client else None
    return {"user_id": user_id, "session_id": session_id, "client_id": user_id or session_id or host}


def filter_params(
    min_price: Optional[str] = None,
    max_price: Optional[str] = None,
    currency: Optional[str] = None,
    star_ratings: Optional[str] = Query(default=None, description="Comma separated, e.g. 4,5"),
    amenities: Optional[str] = Query(default=None, description="Comma separated amenity ids"),
    property_types: Optional[str] = None,
    min_rating: Optional[str] = None,
    min_reviews: Optional[str] = None,
    cities: Optional[str] = None,
) -> Dict[str, Any]:
    raw = {
        "min_price": min_price,
        "max_price": max_price,
        "currency": currency,
        "star_ratings": star_ratings,
        "amenities": amenities,
        "property_types": property_types,
        "min_rating": min_rating,
        "min_reviews": min_reviews,
        "cities": cities,
    }
    return {key: value for key, value in raw.items() if value not in (None, "")}


# --- error mapping -------------------------------------------------------------


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"error": "validation_error", "field": exc.field, "message": exc.message})


@app.exception_handler(RateLimited)
async def rate_limited_handler(request: Request, exc: RateLimited) -> JSONResponse:
    retry_after = max(1, int(round(exc.retry_after)))
    return JSONResponse(
        status_code=429,
        content={"error": "rate_limited", "retry_after": retry_after},
        headers={"Retry-After": str(retry_after)},
    )


@app.exception_handler(UpstreamUnavailable)
async def upstream_unavailable_handler(request: Request, exc: UpstreamUnavailable) -> JSONResponse:
    logger.warning("Upstream unavailable on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=503, content={"error": "upstream_unavailable", "component": exc.component})


@app.exception_handler(InternalError)
async def internal_error_handler(request: Request, exc: InternalError) -> JSONResponse:
    return JSONResponse(status_code=500, content={"error": "internal_error"})


# --- lifecycle -----------------------------------------------------------------


@app.on_event("startup")
async def startup_event() -> None:
    if settings.index_backend == "elasticsearch":
        from .es_client import get_client
        from .importer import import_if_empty
        from .indexing import ensure_index

        es = get_client()
        await ensure_index(es)
        if settings.load_on_startup:
            imported = await import_if_empty(es)
            if imported:
                logger.info("Imported %s properties on startup", imported)
    get_service().analytics.start()


@app.on_event("shutdown")
async def shutdown_event() -> None:
    if _service is not None:
        await _service.analytics.stop()


# --- routes --------------------------------------------------------------------


@app.get("/health")
async def health(service: SearchService = Depends(get_service)) -> dict:
    status: Dict[str, Any] = {
        "index_backend": service.config.index_backend,
        "documents": await service.index.count(),
        "cache": type(service.cache.backend).__name__,
        "popularity_version": service.popularity.current.version,
    }
    if service.config.index_backend == "elasticsearch":
        from .es_client import get_client

        cluster = await asyncio.to_thread(get_client().cluster.health)
        status["elasticsearch"] = cluster.get("status")
        status["index"] = service.config.es_index
    return status


@app.get("/search", response_model=SearchResult)
async def search(
    q: str = Query(default="", description="Free text query"),
    lang: Optional[str] = None,
    page: Optional[str] = None,
    size: Optional[str] = None,
    sort: Optional[str] = None,
    lat: Optional[str] = None,
    lon: Optional[str] = None,
    radius_km: Optional[str] = None,
    filters: Dict[str, Any] = Depends(filter_params),
    identity: Dict[str, Optional[str]] = Depends(client_identity),
    service: SearchService = Depends(get_service),
) -> SearchResult:
    raw = dict(filters)
    raw.update({"lat": lat, "lon": lon, "radius_km": radius_km})
    return await service.search(q, lang, raw, page, size, sort, **identity)


@app.get("/nearby", response_model=SearchResult)
async def nearby(
    lat: float,
    lon: float,
    radius_km: Optional[str] = None,
    q: str = "",
    lang: Optional[str] = None,
    page: Optional[str] = None,
    size: Optional[str] = None,
    sort: Optional[str] = None,
    filters: Dict[str, Any] = Depends(filter_params),
    identity: Dict[str, Optional[str]] = Depends(client_identity),
    service: SearchService = Depends(get_service),
) -> SearchResult:
    return await service.nearby(
        lat, lon, radius_km, filters, page, size, text=q, language=lang, sort=sort, **identity
    )


@app.get("/suggest", response_model=SuggestionList)
async def suggest(
    q: str = "",
    lang: Optional[str] = None,
    lat: Optional[str] = None,
    lon: Optional[str] = None,
    limit: Optional[str] = None,
    identity: Dict[str, Optional[str]] = Depends(client_identity),
    service: SearchService = Depends(get_service),
) -> SuggestionList:
    geo_hint = (lat, lon) if lat is not None and lon is not None else None
    return await service.suggest(q, lang, geo_hint, limit, client_id=identity["client_id"])


@app.get("/facets", response_model=FacetCounts)
async def facets(
    q: str = "",
    lang: Optional[str] = None,
    lat: Optional[str] = None,
    lon: Optional[str] = None,
    radius_km: Optional[str] = None,
    filters: Dict[str, Any] = Depends(filter_params),
    identity: Dict[str, Optional[str]] = Depends(client_identity),
    service: SearchService = Depends(get_service),
) -> FacetCounts:
    raw = dict(filters)
    raw.update({"lat": lat, "lon": lon, "radius_km": radius_km})
    return await service.facets(raw, q, lang, client_id=identity["client_id"])


@app.get("/destinations/popular", response_model=DestinationList)
async def popular_destinations(
    country_code: Optional[str] = None,
    limit: Optional[str] = None,
    service: SearchService = Depends(get_service),
) -> DestinationList:
    return await service.popular_destinations(country_code, limit)


@app.post("/events/search", status_code=202)
async def record_search_event(
    event: SearchEvent,
    identity: Dict[str, Optional[str]] = Depends(client_identity),
    service: SearchService = Depends(get_service),
) -> dict:
    if event.session_id is None and event.user_id is None:
        event = event.model_copy(update={"session_id": identity["session_id"], "user_id": identity["user_id"]})
    return {"accepted": service.record_search_event(event), "event_id": event.event_id}


@app.post("/events/property")
async def property_changed(event: PropertyChangeEvent, service: SearchService = Depends(get_service)) -> dict:
    removed = await service.handle_property_event(event)
    return {"property_id": event.property_id, "invalidated": removed}


@app.get("/analytics/metrics", response_model=SearchMetrics)
async def search_metrics(service: SearchService = Depends(get_service)) -> SearchMetrics:
    return await service.search_metrics()


@app.post("/reindex")
async def reindex(service: SearchService = Depends(get_service)) -> dict:
    if service.config.index_backend == "elasticsearch":
        from .es_client import get_client
        from .importer import reindex_data

        count = await reindex_data(get_client())
    else:
        from .importer import load_documents

        documents = load_documents(service.config.properties_path)
        for doc in documents:
            await service.index.upsert(doc)
        count = len(documents)
    await service.cache.bump(CacheTier.SEARCH, CacheTier.FACETS, CacheTier.LOCATION, CacheTier.SUGGESTIONS)
    return {"indexed": count}
