"""Turn raw query parameters into a canonical, immutable ``SearchRequest``.

Everything that can be clamped is clamped so the endpoint stays available;
only a value with no safe nearest neighbour, an unknown currency code, raises
:class:`~propsearch.errors.ValidationError`.
"""
from __future__ import annotations

import logging
import math
import re
from typing import Any, Iterable, Mapping

from .config import Settings, settings as default_settings
from .errors import ValidationError
from .models import (
    AmenityFilter,
    CityFilter,
    GeoPoint,
    GuestRatingFilter,
    LocationFilter,
    PriceFilter,
    PropertyTypeFilter,
    SearchRequest,
    SortMode,
    StarRatingFilter,
    SuggestRequest,
)
from .phonetics import city_key, fold_text, has_special_characters, tokenize

logger = logging.getLogger(__name__)

_CURRENCY_RE = re.compile(r"^[A-Z]{3}$")
PROPERTY_TYPES = frozenset({"hotel", "homestay", "villa", "resort", "apartment", "hostel", "restaurant", "meeting_room"})


def _as_float(value: Any) -> float | None:
    if value is None or value == "":
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def _as_int(value: Any, default: int) -> int:
    number = _as_float(value)
    return default if number is None else int(number)


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, str):
        return [part for part in value.split(",") if part.strip()]
    if isinstance(value, Iterable):
        return list(value)
    return [value]


class Normalizer:
    """Canonicalizes raw text and filter parameters."""

    def __init__(self, config: Settings | None = None) -> None:
        self.config = config or default_settings

    # -- primitives ---------------------------------------------------------

    def language(self, raw: str | None) -> str:
        code = (raw or "").strip().lower()
        if not code:
            return self.config.default_language
        return code

    def text(self, raw: str | None) -> str:
        return fold_text((raw or "")[: self.config.max_query_length])

    def pagination(self, page: Any, size: Any) -> tuple[int, int]:
        page_value = _as_int(page, 0)
        size_value = _as_int(size, self.config.default_page_size)
        page_value = int(_clamp(page_value, 0, self.config.max_page))
        size_value = int(_clamp(size_value, 1, self.config.max_page_size))
        return page_value, size_value

    def limit(self, raw: Any, default: int) -> int:
        return int(_clamp(_as_int(raw, default), 1, self.config.suggest_max_limit))

    def radius(self, raw: Any) -> float:
        radius = _as_float(raw)
        if radius is None or radius <= 0:
            return self.config.default_radius_km
        return _clamp(radius, self.config.min_radius_km, self.config.max_radius_km)

    def currency(self, raw: Any) -> str:
        if raw is None or raw == "":
            return self.config.default_currency
        code = str(raw).strip().upper()
        if not _CURRENCY_RE.match(code) or code not in self.config.supported_currencies:
            raise ValidationError("currency", f"unsupported currency code {raw!r}")
        return code

    def sort(self, raw: Any, *, has_text: bool, has_location: bool) -> SortMode:
        if raw is None or raw == "":
            if has_location and not has_text:
                return SortMode.DISTANCE
            return SortMode.RELEVANCE
        try:
            mode = SortMode(str(raw).strip().upper())
        except ValueError:
            logger.debug("unknown sort mode %r, using default", raw)
            return self.sort(None, has_text=has_text, has_location=has_location)
        if mode is SortMode.DISTANCE and not has_location:
            return SortMode.RELEVANCE
        return mode

    def geo_point(self, lat: Any, lon: Any) -> GeoPoint | None:
        lat_value = _as_float(lat)
        lon_value = _as_float(lon)
        if lat_value is None or lon_value is None:
            return None
        return GeoPoint(lat=_clamp(lat_value, -90.0, 90.0), lon=_clamp(lon_value, -180.0, 180.0))

    # -- filters ------------------------------------------------------------

    def price_filter(self, raw: Mapping[str, Any]) -> PriceFilter | None:
        min_price = _as_float(raw.get("min_price"))
        max_price = _as_float(raw.get("max_price"))
        currency = self.currency(raw.get("currency"))
        if min_price is None and max_price is None:
            return None
        if min_price is not None:
            min_price = max(0.0, min_price)
        if max_price is not None:
            max_price = max(0.0, max_price)
        if min_price is not None and max_price is not None and min_price > max_price:
            min_price, max_price = max_price, min_price
        return PriceFilter(min_price=min_price, max_price=max_price, currency=currency)

    def location_filter(self, raw: Mapping[str, Any]) -> LocationFilter | None:
        point = self.geo_point(raw.get("lat"), raw.get("lon"))
        if point is None:
            return None
        return LocationFilter(lat=point.lat, lon=point.lon, radius_km=self.radius(raw.get("radius_km")))

    def build_filters(self, raw: Mapping[str, Any] | None) -> tuple:
        raw = raw or {}
        filters: list = []

        price = self.price_filter(raw)
        if price is not None:
            filters.append(price)

        ratings = sorted({int(r) for r in (_as_float(v) for v in _as_list(raw.get("star_ratings"))) if r is not None and 1 <= r <= 5})
        if ratings:
            filters.append(StarRatingFilter(ratings=tuple(ratings)))

        amenities = sorted({str(a).strip().lower() for a in _as_list(raw.get("amenities")) if str(a).strip()})
        if amenities:
            filters.append(AmenityFilter(amenity_ids=tuple(amenities)))

        types = sorted({str(t).strip().lower() for t in _as_list(raw.get("property_types"))} & PROPERTY_TYPES)
        if types:
            filters.append(PropertyTypeFilter(types=tuple(types)))

        min_rating = _as_float(raw.get("min_rating"))
        min_reviews = _as_int(raw.get("min_reviews"), 0)
        if min_rating is not None or min_reviews > 0:
            filters.append(
                GuestRatingFilter(
                    min_rating=_clamp(min_rating or 0.0, 0.0, 5.0),
                    min_reviews=max(0, min_reviews),
                )
            )

        location = self.location_filter(raw)
        if location is not None:
            filters.append(location)

        cities = sorted({city_key(str(c)) for c in _as_list(raw.get("cities"))} - {""})
        if cities:
            filters.append(CityFilter(cities=tuple(cities)))

        filters.sort(key=lambda item: item.kind)
        return tuple(filters)

    # -- requests -----------------------------------------------------------

    def normalize(
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
    ) -> SearchRequest:
        lang = self.language(language)
        folded = self.text(text)
        index_language = lang if lang in self.config.supported_languages else self.config.default_language
        tokens = tuple(tokenize(folded, lang))
        built = self.build_filters(filters)
        page_value, size_value = self.pagination(page, size)
        has_location = any(item.kind == "location" for item in built)
        request = SearchRequest(
            text=folded,
            tokens=tokens,
            language=index_language,
            page=page_value,
            size=size_value,
            sort=self.sort(sort, has_text=bool(folded), has_location=has_location),
            filters=built,
            user_id=user_id,
            session_id=session_id,
        )
        logger.debug("normalize raw=%r lang=%r -> signature=%s", text, language, request.signature())
        return request

    def normalize_suggest(
        self,
        prefix: str | None,
        language: str | None = None,
        geo_hint: tuple[Any, Any] | GeoPoint | None = None,
        limit: Any = None,
    ) -> SuggestRequest:
        lang = self.language(language)
        raw = (prefix or "").strip()[: self.config.max_query_length]
        capped = self.limit(limit, self.config.suggest_default_limit)
        if isinstance(geo_hint, GeoPoint):
            hint = geo_hint if geo_hint.is_valid() else None
        elif geo_hint is not None:
            hint = self.geo_point(*geo_hint)
        else:
            hint = None
        literal = lang not in self.config.supported_languages or has_special_characters(raw)
        return SuggestRequest(
            text=fold_text(raw),
            raw=raw.lower(),
            language=lang if lang in self.config.supported_languages else self.config.default_language,
            geo_hint=hint,
            limit=capped,
            literal=literal,
        )

