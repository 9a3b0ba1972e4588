"""Application configuration and constants."""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

_PACKAGE_DIR = Path(__file__).resolve().parent


def _get_env(name: str, default: str) -> str:
    value = os.getenv(name)
    return value if value is not None else default


def _get_bool(name: str, default: str) -> bool:
    return _get_env(name, default).lower() in {"1", "true", "yes"}


def _get_list(name: str, default: str) -> tuple[str, ...]:
    return tuple(item.strip() for item in _get_env(name, default).split(",") if item.strip())


@dataclass(frozen=True)
class Settings:
    """Simple settings container with environment variable overrides."""

    es_host: str = _get_env("ES_HOST", "http://localhost:9200")
    es_index: str = _get_env("ES_INDEX", "properties")
    es_request_timeout: float = float(_get_env("ES_REQUEST_TIMEOUT", "2.0"))
    mapping_path: str = _get_env("MAPPING_PATH", str(_PACKAGE_DIR / "property-mapping.json"))
    index_backend: str = _get_env("INDEX_BACKEND", "elasticsearch")
    properties_path: str = _get_env("PROPERTIES_PATH", "data/properties.json")
    load_on_startup: bool = _get_bool("LOAD_ON_STARTUP", "true")

    redis_host: str = _get_env("REDIS_HOST", "localhost")
    redis_port: int = int(_get_env("REDIS_PORT", "6379"))
    cache_backend: str = _get_env("CACHE_BACKEND", "auto")
    cache_prefix: str = _get_env("CACHE_PREFIX", "propsearch")

    # Seconds per cache tier.
    ttl_search_results: int = int(_get_env("TTL_SEARCH_RESULTS", "300"))
    ttl_suggestions: int = int(_get_env("TTL_SUGGESTIONS", "1800"))
    ttl_popular_destinations: int = int(_get_env("TTL_POPULAR_DESTINATIONS", "3600"))
    ttl_facets: int = int(_get_env("TTL_FACETS", "900"))
    ttl_location: int = int(_get_env("TTL_LOCATION", "120"))
    ttl_stale: int = int(_get_env("TTL_STALE", "3600"))

    max_page: int = int(_get_env("MAX_PAGE", "1000"))
    max_page_size: int = int(_get_env("MAX_PAGE_SIZE", "100"))
    default_page_size: int = int(_get_env("DEFAULT_PAGE_SIZE", "20"))
    max_query_length: int = int(_get_env("MAX_QUERY_LENGTH", "500"))

    min_radius_km: float = float(_get_env("MIN_RADIUS_KM", "0.1"))
    max_radius_km: float = float(_get_env("MAX_RADIUS_KM", "1000"))
    default_radius_km: float = float(_get_env("DEFAULT_RADIUS_KM", "10"))
    bbox_pushdown: bool = _get_bool("BBOX_PUSHDOWN", "true")

    candidate_limit: int = int(_get_env("CANDIDATE_LIMIT", "1000"))
    supported_languages: tuple[str, ...] = _get_list("SUPPORTED_LANGUAGES", "vi,en")
    default_language: str = _get_env("DEFAULT_LANGUAGE", "vi")
    supported_currencies: tuple[str, ...] = _get_list("SUPPORTED_CURRENCIES", "VND,USD,EUR")
    default_currency: str = _get_env("DEFAULT_CURRENCY", "VND")

    weight_text: float = float(_get_env("WEIGHT_TEXT", "0.6"))
    weight_distance: float = float(_get_env("WEIGHT_DISTANCE", "0.2"))
    weight_popularity: float = float(_get_env("WEIGHT_POPULARITY", "0.08"))
    weight_conversion: float = float(_get_env("WEIGHT_CONVERSION", "0.05"))
    weight_review: float = float(_get_env("WEIGHT_REVIEW", "0.05"))
    promoted_bonus: float = float(_get_env("PROMOTED_BONUS", "0.02"))

    text_stage_timeout: float = float(_get_env("TEXT_STAGE_TIMEOUT", "1.5"))
    geo_stage_timeout: float = float(_get_env("GEO_STAGE_TIMEOUT", "0.5"))
    request_deadline: float = float(_get_env("REQUEST_DEADLINE", "3.0"))

    suggest_default_limit: int = int(_get_env("SUGGEST_DEFAULT_LIMIT", "10"))
    suggest_max_limit: int = int(_get_env("SUGGEST_MAX_LIMIT", "50"))
    suggest_geo_radius_km: float = float(_get_env("SUGGEST_GEO_RADIUS_KM", "100"))

    analytics_queue_size: int = int(_get_env("ANALYTICS_QUEUE_SIZE", "10000"))
    analytics_batch_size: int = int(_get_env("ANALYTICS_BATCH_SIZE", "200"))
    analytics_window_seconds: int = int(_get_env("ANALYTICS_WINDOW_SECONDS", "300"))
    analytics_retention_days: int = int(_get_env("ANALYTICS_RETENTION_DAYS", "30"))

    rate_limit_requests: int = int(_get_env("RATE_LIMIT_REQUESTS", "120"))
    rate_limit_window_seconds: int = int(_get_env("RATE_LIMIT_WINDOW_SECONDS", "60"))

    log_level: str = _get_env("LOG_LEVEL", "INFO")


settings = Settings()
