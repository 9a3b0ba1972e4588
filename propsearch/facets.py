"""Facet counts over the filtered candidate set.

Every facet is computed over the candidates that pass all hard filters except
its own, so a bucket answers "how many results if I picked this value".
Price, star rating, city and property type put each document in exactly one
bucket (documents without a value land in an ``unpriced``/``unrated``/
``unknown`` bucket), which keeps ``sum(buckets) == total`` for those groups.
"""
from __future__ import annotations

import logging
from collections import Counter
from typing import Callable, Dict, Iterable, List, Sequence

from .filters import matches
from .models import FacetBucket, FacetCounts, FacetGroup, SearchDocument
from .phonetics import city_key

logger = logging.getLogger(__name__)

# (key, label, min inclusive, max exclusive) in the default currency.
PRICE_BUCKETS: tuple[tuple[str, str, float, float | None], ...] = (
    ("0-500000", "Under 500K", 0.0, 500_000.0),
    ("500000-1000000", "500K - 1M", 500_000.0, 1_000_000.0),
    ("1000000-2000000", "1M - 2M", 1_000_000.0, 2_000_000.0),
    ("2000000-5000000", "2M - 5M", 2_000_000.0, 5_000_000.0),
    ("5000000+", "Over 5M", 5_000_000.0, None),
)


def price_bucket(doc: SearchDocument, currency: str) -> str:
    price = doc.lowest_price(currency)
    if price is None:
        return "unpriced"
    for key, _label, low, high in PRICE_BUCKETS:
        if price >= low and (high is None or price < high):
            return key
    return "unpriced"


def _group(counter: Counter, labels: Dict[str, str] | None = None, order: Sequence[str] | None = None) -> FacetGroup:
    labels = labels or {}
    if order is not None:
        keys = [key for key in order if counter.get(key)] + sorted(k for k in counter if k not in order)
    else:
        keys = sorted(counter, key=lambda k: (-counter[k], k))
    buckets = [FacetBucket(key=key, label=labels.get(key, key), count=counter[key]) for key in keys]
    return FacetGroup(buckets=buckets, total=sum(counter.values()))


class FacetAggregator:
    def __init__(self, currency: str = "VND") -> None:
        self.currency = currency

    def _base(self, docs: Sequence[SearchDocument], filters: Sequence, kind: str) -> List[SearchDocument]:
        return [doc for doc in docs if matches(doc, filters, exclude_kind=kind)]

    def _single_valued(
        self, docs: Sequence[SearchDocument], filters: Sequence, kind: str, key_of: Callable[[SearchDocument], str]
    ) -> Counter:
        return Counter(key_of(doc) for doc in self._base(docs, filters, kind))

    def aggregate(self, docs: Sequence[SearchDocument], filters: Sequence, currency: str | None = None) -> FacetCounts:
        """Facets for ``docs``, which must already be restricted by text and geo.

        ``docs`` is the same snapshot used for the ranked list, so for any facet
        whose own filter is inactive ``total`` equals the result count.
        """

        currency = currency or self.currency
        price_labels = {key: f"{label} {currency}" for key, label, _low, _high in PRICE_BUCKETS}
        price_labels["unpriced"] = "No price"
        price = _group(
            self._single_valued(docs, filters, "price", lambda d: price_bucket(d, currency)),
            price_labels,
            order=[bucket[0] for bucket in PRICE_BUCKETS] + ["unpriced"],
        )
        stars = _group(
            self._single_valued(docs, filters, "star_rating", lambda d: str(d.star_rating) if d.star_rating else "unrated"),
            {str(n): f"{n} star{'s' if n > 1 else ''}" for n in range(1, 6)},
            order=["5", "4", "3", "2", "1", "unrated"],
        )
        city_labels: Dict[str, str] = {}

        def city_of(doc: SearchDocument) -> str:
            key = city_key(doc.city) or "unknown"
            city_labels.setdefault(key, doc.city or "Unknown")
            return key

        city = _group(self._single_valued(docs, filters, "city", city_of), city_labels)
        property_type = _group(
            self._single_valued(docs, filters, "property_type", lambda d: (d.kind or "unknown").lower())
        )
        amenity = self._amenities(self._base(docs, filters, "amenity"))
        return FacetCounts(price=price, star_rating=stars, city=city, property_type=property_type, amenity=amenity)

    def _amenities(self, docs: Iterable[SearchDocument]) -> FacetGroup:
        counter: Counter = Counter()
        labels: Dict[str, str] = {}
        total = 0
        for doc in docs:
            total += 1
            seen = set()
            for amenity in doc.amenities:
                key = amenity.id.lower()
                if key in seen:
                    continue
                seen.add(key)
                counter[key] += 1
                labels.setdefault(key, amenity.name)
        group = _group(counter, labels)
        # Multi-valued: a document counts once per amenity it carries.
        return FacetGroup(buckets=group.buckets, total=total)
