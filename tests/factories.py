"""Document factory shared by the test modules."""
from __future__ import annotations

from typing import Iterable

from propsearch.models import Amenity, GeoPoint, RoomTypeSummary, SearchBoost, SearchDocument

HANOI = (21.0285, 105.8542)


def make_doc(
    doc_id: str,
    name: str,
    city: str | None,
    lat: float | None,
    lon: float | None,
    price: float | None,
    *,
    vi_name: str | None = None,
    kind: str = "hotel",
    stars: int | None = 4,
    rating: float = 4.0,
    reviews: int = 100,
    amenities: Iterable[str] = (),
    popularity: float = 0.0,
    promoted: bool = False,
    currency: str = "VND",
    description: str | None = None,
    country: str = "VN",
) -> SearchDocument:
    names = {"en": name}
    if vi_name:
        names["vi"] = vi_name
    return SearchDocument(
        id=doc_id,
        name=names,
        description={"en": description} if description else {},
        kind=kind,
        star_rating=stars,
        city=city,
        country_code=country,
        location=GeoPoint(lat=lat, lon=lon) if lat is not None and lon is not None else None,
        rating_avg=rating,
        rating_count=reviews,
        amenities=[Amenity(id=item, name=item.title()) for item in amenities],
        room_types=[RoomTypeSummary(name="Standard", base_price=price, currency=currency)] if price is not None else [],
        search_boost=SearchBoost(popularity_score=popularity, promoted=promoted),
    )


