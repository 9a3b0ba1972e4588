"""Autocomplete over property names, cities and popular destinations."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from .config import Settings, settings as default_settings
from .geo import haversine_km
from .models import GeoPoint, SearchDocument, SuggestRequest, Suggestion, SuggestionType
from .phonetics import auto_fuzziness, city_key, edit_distance, fold_text
from .popularity import PopularitySnapshot, PopularityStore
from .search_index import DocumentIndex

logger = logging.getLogger(__name__)

EXACT = "exact"
PREFIX = "prefix"
NGRAM = "ngram"
SUBSTRING = "substring"

MATCH_RANK = {EXACT: 3, PREFIX: 2, NGRAM: 1, SUBSTRING: 0}

# Proximity bonus at distance 0, fading linearly to 0 at the hint radius.
PROXIMITY_BONUS = 0.5

# Index candidates fetched per requested suggestion; names and cities of the
# same property compete for the same slots.
CANDIDATE_FACTOR = 4


def classify(candidate: str, query: str) -> Optional[str]:
    """Match class of ``candidate`` for an analyzed (folded) ``query``."""

    if not candidate or not query:
        return None
    if candidate == query:
        return EXACT
    if candidate.startswith(query):
        return PREFIX
    words = candidate.split()
    terms = query.split()
    if _edge_ngram_match(terms, words):
        return NGRAM
    if query in candidate:
        return SUBSTRING
    return None


def _edge_ngram_match(terms: List[str], words: List[str]) -> bool:
    """Every term is the prefix of a distinct word; the last term may be misspelled."""

    if not terms or len(terms) > len(words):
        return False
    remaining = list(words)
    for position, term in enumerate(terms):
        last = position == len(terms) - 1
        match = next((word for word in remaining if word.startswith(term)), None)
        if match is None and last:
            edits = auto_fuzziness(term)
            match = next(
                (word for word in remaining if edits and edit_distance(term, word[: len(term)], edits) <= edits),
                None,
            )
        if match is None:
            return False
        remaining.remove(match)
    return True


def classify_literal(candidate: str, raw: str) -> Optional[str]:
    if not candidate or not raw:
        return None
    if candidate == raw:
        return EXACT
    if candidate.startswith(raw):
        return PREFIX
    if raw in candidate:
        return SUBSTRING
    return None


@dataclass
class _Entry:
    suggestion: Suggestion
    rank: int


class AutocompleteSuggester:
    def __init__(self, index: DocumentIndex, popularity: PopularityStore, config: Settings | None = None) -> None:
        self.index = index
        self.popularity = popularity
        self.config = config or default_settings

    async def suggest(self, request: SuggestRequest) -> List[Suggestion]:
        if not request.text and not (request.literal and request.raw):
            return []

        snapshot = self.popularity.current
        limit = min(request.limit, self.config.suggest_max_limit)
        docs = await self.index.suggest_candidates(
            request.text, request.raw, request.language, request.literal, limit * CANDIDATE_FACTOR
        )

        entries: Dict[str, _Entry] = {}
        for doc in docs:
            popularity = self._popularity(doc, snapshot)
            bonus = self._proximity(doc, request.geo_hint)
            self._offer(
                entries,
                request,
                doc.display_name(request.language),
                SuggestionType.PROPERTY,
                popularity,
                bonus,
                property_id=doc.id,
            )
            if doc.city:
                city = snapshot.destination_record(city_key(doc.city))
                self._offer(
                    entries,
                    request,
                    doc.city,
                    SuggestionType.LOCATION,
                    city.trending_score if city is not None else popularity,
                    bonus,
                )
        for record in snapshot.destinations.values():
            self._offer(entries, request, record.label or record.key, SuggestionType.DESTINATION, record.trending_score, 0.0)

        ordered = sorted(
            entries.values(),
            key=lambda e: (-e.rank, -e.suggestion.score, e.suggestion.text),
        )
        suggestions = [entry.suggestion for entry in ordered[:limit]]
        logger.debug("suggest q=%r literal=%s candidates=%s returned=%s", request.raw, request.literal, len(docs), len(suggestions))
        return suggestions

    def _offer(
        self,
        entries: Dict[str, _Entry],
        request: SuggestRequest,
        display: str,
        kind: SuggestionType,
        popularity: float,
        bonus: float,
        property_id: str | None = None,
    ) -> None:
        folded = fold_text(display)
        if request.literal:
            match = classify_literal(display.lower(), request.raw)
        else:
            match = classify(folded, request.text)
        if match is None or not folded:
            return
        rank = MATCH_RANK[match]
        score = round(popularity + bonus, 6)
        current = entries.get(folded)
        if current is not None and (current.rank, current.suggestion.score) >= (rank, score):
            return
        entries[folded] = _Entry(
            Suggestion(
                text=folded,
                display_text=display,
                type=kind,
                match=match,
                score=score,
                popularity=round(popularity, 6),
                property_id=property_id,
            ),
            rank,
        )

    @staticmethod
    def _popularity(doc: SearchDocument, snapshot: PopularitySnapshot) -> float:
        record = snapshot.property_record(doc.id)
        if record is not None:
            return record.trending_score
        return doc.search_boost.popularity_score

    def _proximity(self, doc: SearchDocument, hint: GeoPoint | None) -> float:
        if hint is None or not doc.has_valid_location():
            return 0.0
        radius = self.config.suggest_geo_radius_km
        distance = haversine_km(hint.lat, hint.lon, doc.location.lat, doc.location.lon)
        if distance >= radius:
            return 0.0
        return PROXIMITY_BONUS * (1.0 - distance / radius)

