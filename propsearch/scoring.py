"""Score composition: text relevance + distance + business boost.

    final = w_text * relevance
          + w_distance * 1 / (1 + distance_km)        (geo queries only)
          + w_popularity * popularity
          + w_conversion * conversion_rate
          + w_review * review_score / 5
          + promoted_bonus * promoted

Promotion is an additive weight bounded by ``promoted_bonus``; it never pins a
property above a better match by more than that weight.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from .config import Settings, settings as default_settings
from .geo import distance_score
from .models import ScoreBreakdown, SearchDocument, SortMode
from .popularity import PopularitySnapshot

logger = logging.getLogger(__name__)


def _unit(value: float) -> float:
    if value is None or math.isnan(value):
        return 0.0
    return max(0.0, min(1.0, value))


@dataclass
class Scored:
    doc: SearchDocument
    score: ScoreBreakdown


class ScoreComposer:
    def __init__(self, config: Settings | None = None) -> None:
        self.config = config or default_settings

    def business_boost(self, doc: SearchDocument, snapshot: Optional[PopularitySnapshot]) -> tuple[float, float]:
        boost = doc.search_boost
        popularity = boost.popularity_score
        conversion = boost.conversion_rate
        record = snapshot.property_record(doc.id) if snapshot is not None else None
        if record is not None:
            popularity = record.trending_score
            conversion = record.conversion_rate
        review = boost.review_score or doc.rating_avg
        value = (
            self.config.weight_popularity * _unit(popularity)
            + self.config.weight_conversion * _unit(conversion)
            + self.config.weight_review * _unit(review / 5.0)
            + (self.config.promoted_bonus if boost.promoted else 0.0)
        )
        return value, _unit(popularity)

    def compose(
        self,
        docs: Sequence[SearchDocument],
        relevance: Dict[str, float],
        distances: Optional[Dict[str, float]],
        snapshot: Optional[PopularitySnapshot],
    ) -> List[Scored]:
        scored: List[Scored] = []
        for doc in docs:
            rel = relevance.get(doc.id, 0.0)
            distance = distances.get(doc.id) if distances is not None else None
            dist_score = distance_score(distance) if distances is not None else 0.0
            boost, popularity = self.business_boost(doc, snapshot)
            final = self.config.weight_text * rel + self.config.weight_distance * dist_score + boost
            scored.append(
                Scored(
                    doc,
                    ScoreBreakdown(
                        relevance=round(rel, 6),
                        distance_km=round(distance, 4) if distance is not None else None,
                        distance_score=round(dist_score, 6),
                        business_boost=round(boost, 6),
                        popularity=round(popularity, 6),
                        final=round(final, 6),
                    ),
                )
            )
        return scored

    def order(self, scored: List[Scored], sort: SortMode, currency: str | None = None) -> List[Scored]:
        """Sort by ``sort`` with the deterministic tie-break chain:
        final score desc -> rating desc -> id asc.

        Price sorts compare the lowest price in ``currency`` only; documents
        without a room in that currency sort last.
        """

        currency = currency or self.config.default_currency

        def tie_break(item: Scored):
            return (-item.score.final, -item.doc.rating_avg, item.doc.id)

        def price(item: Scored) -> float:
            value = item.doc.lowest_price(currency)
            return value if value is not None else math.inf

        if sort is SortMode.DISTANCE:
            key = lambda item: (
                item.score.distance_km if item.score.distance_km is not None else math.inf,
                *tie_break(item),
            )
        elif sort is SortMode.PRICE_LOW_TO_HIGH:
            key = lambda item: (price(item), *tie_break(item))
        elif sort is SortMode.PRICE_HIGH_TO_LOW:
            key = lambda item: (-price(item) if price(item) != math.inf else math.inf, *tie_break(item))
        elif sort is SortMode.RATING:
            key = lambda item: (-item.doc.rating_avg, -item.doc.rating_count, *tie_break(item))
        elif sort is SortMode.POPULARITY:
            key = lambda item: (-item.score.popularity, *tie_break(item))
        else:
            key = tie_break
        return sorted(scored, key=key)
