"""Predicates for the hard filters, one per filter variant."""
from __future__ import annotations

from typing import Callable, Iterable, Sequence

from .models import (
    AmenityFilter,
    CityFilter,
    GuestRatingFilter,
    PriceFilter,
    PropertyTypeFilter,
    SearchDocument,
    StarRatingFilter,
)
from .phonetics import city_key


def match_price(doc: SearchDocument, flt: PriceFilter) -> bool:
    for room in doc.room_types:
        if room.base_price is None or room.currency != flt.currency:
            continue
        if flt.min_price is not None and room.base_price < flt.min_price:
            continue
        if flt.max_price is not None and room.base_price > flt.max_price:
            continue
        return True
    return False


def match_star_rating(doc: SearchDocument, flt: StarRatingFilter) -> bool:
    return doc.star_rating in flt.ratings


def match_amenities(doc: SearchDocument, flt: AmenityFilter) -> bool:
    available = {amenity.id.lower() for amenity in doc.amenities}
    return all(amenity_id in available for amenity_id in flt.amenity_ids)


def match_property_type(doc: SearchDocument, flt: PropertyTypeFilter) -> bool:
    return (doc.kind or "").lower() in flt.types


def match_guest_rating(doc: SearchDocument, flt: GuestRatingFilter) -> bool:
    return doc.rating_avg >= flt.min_rating and doc.rating_count >= flt.min_reviews


def match_city(doc: SearchDocument, flt: CityFilter) -> bool:
    return city_key(doc.city) in flt.cities


# Location is handled by the geo stage, which also annotates distances.
PREDICATES: dict[str, Callable] = {
    "price": match_price,
    "star_rating": match_star_rating,
    "amenity": match_amenities,
    "property_type": match_property_type,
    "guest_rating": match_guest_rating,
    "city": match_city,
}


def failed_filters(doc: SearchDocument, filters: Sequence) -> int:
    """Number of hard filters ``doc`` does not pass."""

    failed = 0
    for flt in filters:
        predicate = PREDICATES.get(flt.kind)
        if predicate is not None and not predicate(doc, flt):
            failed += 1
    return failed


def matches(doc: SearchDocument, filters: Sequence, exclude_kind: str | None = None) -> bool:
    for flt in filters:
        if flt.kind == exclude_kind:
            continue
        predicate = PREDICATES.get(flt.kind)
        if predicate is not None and not predicate(doc, flt):
            return False
    return True


def apply_filters(docs: Iterable[SearchDocument], filters: Sequence, exclude_kind: str | None = None) -> list[SearchDocument]:
    return [doc for doc in docs if matches(doc, filters, exclude_kind)]
