"""Pydantic models for documents, requests, results and analytics events."""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class GeoPoint(BaseModel):
    model_config = ConfigDict(frozen=True)

    lat: float
    lon: float

    def is_valid(self) -> bool:
        return -90.0 <= self.lat <= 90.0 and -180.0 <= self.lon <= 180.0


class Amenity(BaseModel):
    id: str
    name: str
    category: str | None = None
    featured: bool = False


class RoomTypeSummary(BaseModel):
    name: str
    max_occupancy: int = 2
    available_count: int = 0
    base_price: float | None = None
    currency: str = "VND"


class SearchBoost(BaseModel):
    popularity_score: float = 0.0
    conversion_rate: float = 0.0
    review_score: float = 0.0
    promoted: bool = False
    last_updated: datetime | None = None


class SearchDocument(BaseModel):
    """One bookable property as stored in the search index."""

    id: str
    name: dict[str, str]
    description: dict[str, str] = Field(default_factory=dict)
    kind: str = "hotel"
    star_rating: int | None = None
    city: str | None = None
    country_code: str | None = None
    location: GeoPoint | None = None
    rating_avg: float = 0.0
    rating_count: int = 0
    amenities: list[Amenity] = Field(default_factory=list)
    room_types: list[RoomTypeSummary] = Field(default_factory=list)
    images: list[str] = Field(default_factory=list)
    search_boost: SearchBoost = Field(default_factory=SearchBoost)

    def display_name(self, language: str) -> str:
        if language in self.name:
            return self.name[language]
        return next(iter(self.name.values()), self.id)

    def has_valid_location(self) -> bool:
        return self.location is not None and self.location.is_valid()

    def lowest_price(self, currency: str | None = None) -> float | None:
        prices = [
            room.base_price
            for room in self.room_types
            if room.base_price is not None and (currency is None or room.currency == currency)
        ]
        return min(prices) if prices else None

    def price_currency(self) -> str | None:
        for room in self.room_types:
            if room.base_price is not None:
                return room.currency
        return None


# --- filters -----------------------------------------------------------------


def _fmt_price(value: float | None) -> str:
    return "" if value is None else f"{value:.2f}"


class PriceFilter(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["price"] = "price"
    min_price: float | None = None
    max_price: float | None = None
    currency: str = "VND"

    def signature(self) -> str:
        return f"price={_fmt_price(self.min_price)}..{_fmt_price(self.max_price)}:{self.currency}"


class StarRatingFilter(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["star_rating"] = "star_rating"
    ratings: tuple[int, ...]

    def signature(self) -> str:
        return "stars=" + ",".join(str(r) for r in self.ratings)


class AmenityFilter(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["amenity"] = "amenity"
    amenity_ids: tuple[str, ...]

    def signature(self) -> str:
        return "amenities=" + ",".join(self.amenity_ids)


class PropertyTypeFilter(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["property_type"] = "property_type"
    types: tuple[str, ...]

    def signature(self) -> str:
        return "types=" + ",".join(self.types)


class GuestRatingFilter(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["guest_rating"] = "guest_rating"
    min_rating: float = 0.0
    min_reviews: int = 0

    def signature(self) -> str:
        return f"guest_rating={self.min_rating:.2f}:{self.min_reviews}"


class LocationFilter(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["location"] = "location"
    lat: float
    lon: float
    radius_km: float

    def signature(self) -> str:
        return f"geo={self.lat:.6f},{self.lon:.6f}:{self.radius_km:g}"


class CityFilter(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["city"] = "city"
    cities: tuple[str, ...]

    def signature(self) -> str:
        return "cities=" + ",".join(self.cities)


Filter = Annotated[
    Union[
        PriceFilter,
        StarRatingFilter,
        AmenityFilter,
        PropertyTypeFilter,
        GuestRatingFilter,
        LocationFilter,
        CityFilter,
    ],
    Field(discriminator="kind"),
]


class SortMode(str, Enum):
    RELEVANCE = "RELEVANCE"
    DISTANCE = "DISTANCE"
    PRICE_LOW_TO_HIGH = "PRICE_LOW_TO_HIGH"
    PRICE_HIGH_TO_LOW = "PRICE_HIGH_TO_LOW"
    RATING = "RATING"
    POPULARITY = "POPULARITY"


class SearchRequest(BaseModel):
    """Canonical request produced by the normalizer. Never mutated."""

    model_config = ConfigDict(frozen=True)

    text: str = ""
    tokens: tuple[str, ...] = ()
    language: str = "vi"
    page: int = 0
    size: int = 20
    sort: SortMode = SortMode.RELEVANCE
    filters: tuple[Filter, ...] = ()
    user_id: str | None = Field(default=None, exclude=True)
    session_id: str | None = Field(default=None, exclude=True)

    def get_filter(self, kind: str):
        for item in self.filters:
            if item.kind == kind:
                return item
        return None

    @property
    def location(self) -> LocationFilter | None:
        return self.get_filter("location")

    @property
    def is_location_only(self) -> bool:
        return not self.text and self.location is not None

    def signature(self) -> str:
        parts = [
            f"q={self.text}",
            f"lang={self.language}",
            f"page={self.page}",
            f"size={self.size}",
            f"sort={self.sort.value}",
        ]
        parts.extend(item.signature() for item in self.filters)
        return "|".join(parts)


class SuggestRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    text: str = ""
    raw: str = ""
    language: str = "vi"
    geo_hint: GeoPoint | None = None
    limit: int = 10
    literal: bool = False

    def signature(self) -> str:
        hint = "" if self.geo_hint is None else f"{self.geo_hint.lat:.2f},{self.geo_hint.lon:.2f}"
        mode = "literal" if self.literal else "analyzed"
        return f"suggest|q={self.text}|raw={self.raw}|lang={self.language}|geo={hint}|limit={self.limit}|{mode}"


# --- results -----------------------------------------------------------------


class ScoreBreakdown(BaseModel):
    relevance: float = 0.0
    distance_km: float | None = None
    distance_score: float = 0.0
    business_boost: float = 0.0
    popularity: float = 0.0
    final: float = 0.0


class SearchHit(BaseModel):
    id: str
    name: str
    city: str | None = None
    country_code: str | None = None
    kind: str | None = None
    star_rating: int | None = None
    rating_avg: float = 0.0
    lowest_price: float | None = None
    currency: str | None = None
    promoted: bool = False
    distance_km: float | None = None
    score: ScoreBreakdown = Field(default_factory=ScoreBreakdown)


class FacetBucket(BaseModel):
    key: str
    label: str
    count: int


class FacetGroup(BaseModel):
    buckets: list[FacetBucket] = Field(default_factory=list)
    total: int = 0


class FacetCounts(BaseModel):
    price: FacetGroup = Field(default_factory=FacetGroup)
    star_rating: FacetGroup = Field(default_factory=FacetGroup)
    city: FacetGroup = Field(default_factory=FacetGroup)
    property_type: FacetGroup = Field(default_factory=FacetGroup)
    amenity: FacetGroup = Field(default_factory=FacetGroup)


class PageInfo(BaseModel):
    total: int = 0
    page: int = 0
    size: int = 20
    total_pages: int = 0
    has_next: bool = False
    has_previous: bool = False


class ResponseMetadata(BaseModel):
    latency_ms: float = 0.0
    cache_hit: bool = False
    coalesced: bool = False
    degraded: bool = False
    fallbacks: list[str] = Field(default_factory=list)
    language: str = "vi"
    currency: str = "VND"
    signature: str = ""


class SearchResult(BaseModel):
    hits: list[SearchHit] = Field(default_factory=list)
    facets: FacetCounts = Field(default_factory=FacetCounts)
    page: PageInfo = Field(default_factory=PageInfo)
    metadata: ResponseMetadata = Field(default_factory=ResponseMetadata)

    def content(self) -> str:
        """Serialized result without per-response metadata."""
        return self.model_dump_json(exclude={"metadata"})


class SuggestionType(str, Enum):
    PROPERTY = "PROPERTY"
    LOCATION = "LOCATION"
    DESTINATION = "DESTINATION"


class Suggestion(BaseModel):
    text: str
    display_text: str
    type: SuggestionType
    match: str
    score: float = 0.0
    popularity: float = 0.0
    property_id: str | None = None


class SuggestionList(BaseModel):
    suggestions: list[Suggestion] = Field(default_factory=list)
    metadata: ResponseMetadata = Field(default_factory=ResponseMetadata)


# --- analytics ---------------------------------------------------------------


class SearchEvent(BaseModel):
    """Append-only record of one executed query and what followed it."""

    model_config = ConfigDict(frozen=True)

    event_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    session_id: str | None = None
    user_id: str | None = None
    text: str = ""
    filters: dict[str, object] = Field(default_factory=dict)
    location: GeoPoint | None = None
    destination: str | None = None
    country_code: str | None = None
    event_type: Literal["query", "interaction"] = "query"
    result_ids: tuple[str, ...] = ()
    clicked_ids: tuple[str, ...] = ()
    result_count: int = 0
    response_time_ms: float = 0.0
    booking_completed: bool = False
    booked_id: str | None = None
    conversion_value: float = 0.0
    timestamp: datetime = Field(default_factory=_utcnow)


class SearchMetrics(BaseModel):
    total_searches: int = 0
    zero_result_rate: float = 0.0
    click_through_rate: float = 0.0
    conversion_rate: float = 0.0
    avg_response_time_ms: float = 0.0
    window_start: datetime | None = None
    window_end: datetime | None = None


class PopularityRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    key: str
    scope: Literal["property", "destination"]
    label: str | None = None
    search_volume: int = 0
    unique_sessions: int = 0
    impressions: int = 0
    clicks: int = 0
    bookings: int = 0
    click_through_rate: float = 0.0
    conversion_rate: float = 0.0
    popularity_score: float = 0.0
    trending_score: float = 0.0
    country_code: str | None = None
    window_start: datetime
    window_end: datetime


class PopularDestination(BaseModel):
    name: str
    country_code: str | None = None
    search_volume: int = 0
    trending_score: float = 0.0
    rank: int


class DestinationList(BaseModel):
    destinations: list[PopularDestination] = Field(default_factory=list)
    metadata: ResponseMetadata = Field(default_factory=ResponseMetadata)


class PropertyChangeEvent(BaseModel):
    property_id: str
    change_type: Literal["updated", "deleted"] = "updated"
    changed_fields: list[str] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=_utcnow)
    document: Optional[SearchDocument] = None
