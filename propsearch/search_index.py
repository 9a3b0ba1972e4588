"""Full-text + geo index of ``SearchDocument``.

Two implementations share one contract:

* :class:`ElasticsearchIndex` sends the multi-field query to Elasticsearch.
* :class:`InMemoryIndex` evaluates the same scoring rules in Python. It backs
  local runs (``INDEX_BACKEND=memory``) and the test-suite.

Relevance contract: best-fields matching over ``name`` (x3), ``city`` (x2)
and the localized ``description`` (x1) with ``AUTO`` fuzziness, plus a
fixed +4 when the folded name equals the folded query.

Candidate contract: the location and the hard filters are applied before the
candidate cap. Documents passing every hard filter come first; documents
failing exactly one follow, because the facet stage counts them. An empty
query with a location returns the nearest documents first.
"""
from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence

from elasticsearch import ApiError, Elasticsearch, NotFoundError, TransportError

from .errors import UpstreamUnavailable
from .filters import PREDICATES, failed_filters
from .geo import GeoFilter, bounding_box
from .models import LocationFilter, SearchDocument
from .phonetics import auto_fuzziness, city_key, edit_distance, fold_text, phonetic_codes

logger = logging.getLogger(__name__)

NAME_BOOST = 3.0
CITY_BOOST = 2.0
DESCRIPTION_BOOST = 1.0
EXACT_NAME_BOOST = 4.0

# Per-token credit inside one field.
EXACT_CREDIT = 1.0
FUZZY_CREDIT = 0.8
PREFIX_CREDIT = 0.6
PHONETIC_CREDIT = 0.5


@dataclass
class Candidate:
    doc: SearchDocument
    relevance: float = 0.0


class DocumentIndex(Protocol):
    async def text_candidates(
        self,
        tokens: tuple[str, ...],
        text: str,
        language: str,
        location: LocationFilter | None,
        limit: int,
        filters: Sequence = (),
    ) -> List[Candidate]: ...

    async def suggest_candidates(self, text: str, raw: str, language: str, literal: bool, limit: int) -> List[SearchDocument]: ...

    async def upsert(self, doc: SearchDocument) -> None: ...

    async def delete(self, doc_id: str) -> None: ...

    async def get(self, doc_id: str) -> Optional[SearchDocument]: ...

    async def count(self) -> int: ...


def document_source(doc: SearchDocument, language: str = "vi") -> Dict[str, Any]:
    """Serialized document as stored in Elasticsearch."""

    source = doc.model_dump(mode="json")
    source["name_exact"] = fold_text(doc.display_name(language))
    source["city_key"] = city_key(doc.city)
    if not doc.has_valid_location():
        source.pop("location", None)
    return source


# --- in-memory ---------------------------------------------------------------


@dataclass
class _Indexed:
    doc: SearchDocument
    name_tokens: list[str]
    city_tokens: list[str]
    descriptions: dict[str, list[str]]
    phonetics: dict[str, set[str]] = field(default_factory=dict)

    @classmethod
    def build(cls, doc: SearchDocument) -> "_Indexed":
        names = fold_text(" ".join(doc.name.values()))
        city = fold_text(doc.city)
        descriptions = {lang: fold_text(text).split() for lang, text in doc.description.items()}
        tokens = set(names.split()) | set(city.split())
        return cls(
            doc=doc,
            name_tokens=names.split(),
            city_tokens=city.split(),
            descriptions=descriptions,
            phonetics={token: phonetic_codes(token) for token in tokens},
        )

    def folded_names(self) -> set[str]:
        return {fold_text(value) for value in self.doc.name.values()}


def _token_credit(query_token: str, field_tokens: list[str], phonetics: dict[str, set[str]]) -> float:
    best = 0.0
    max_edits = auto_fuzziness(query_token)
    query_codes: set[str] | None = None
    for token in field_tokens:
        if token == query_token:
            return EXACT_CREDIT
        if max_edits and edit_distance(query_token, token, max_edits) <= max_edits:
            best = max(best, FUZZY_CREDIT)
        elif len(query_token) >= 2 and token.startswith(query_token):
            best = max(best, PREFIX_CREDIT)
        elif best < PHONETIC_CREDIT and token in phonetics:
            if query_codes is None:
                query_codes = phonetic_codes(query_token)
            if query_codes & phonetics[token]:
                best = PHONETIC_CREDIT
    return best


def hard_filters(filters: Sequence) -> list:
    return [flt for flt in filters if flt.kind in PREDICATES]


def _field_score(tokens: tuple[str, ...], field_tokens: list[str], phonetics: dict[str, set[str]]) -> float:
    if not tokens or not field_tokens:
        return 0.0
    return sum(_token_credit(token, field_tokens, phonetics) for token in tokens) / len(tokens)


_GEO = GeoFilter()


class InMemoryIndex:
    def __init__(self, documents: Optional[List[SearchDocument]] = None) -> None:
        self._docs: Dict[str, _Indexed] = {}
        self._lock = threading.Lock()
        self.queries = 0
        for doc in documents or []:
            self._docs[doc.id] = _Indexed.build(doc)

    def score(self, entry: _Indexed, tokens: tuple[str, ...], text: str, language: str) -> float:
        description = entry.descriptions.get(language)
        if description is None:
            description = next(iter(entry.descriptions.values()), [])
        fields = (
            NAME_BOOST * _field_score(tokens, entry.name_tokens, entry.phonetics),
            CITY_BOOST * _field_score(tokens, entry.city_tokens, entry.phonetics),
            DESCRIPTION_BOOST * _field_score(tokens, description, {}),
        )
        best = max(fields)
        if text and text in entry.folded_names():
            best += EXACT_NAME_BOOST
        return best

    async def text_candidates(
        self,
        tokens: tuple[str, ...],
        text: str,
        language: str,
        location: LocationFilter | None,
        limit: int,
        filters: Sequence = (),
    ) -> List[Candidate]:
        with self._lock:
            entries = list(self._docs.values())
            self.queries += 1
        hard = hard_filters(filters)
        box = bounding_box(location.lat, location.lon, location.radius_km) if location is not None else None
        ranked = []
        for entry in entries:
            doc = entry.doc
            distance = 0.0
            if location is not None:
                distance = _GEO.within(doc, location, box)
                if distance is None:
                    continue
            failed = failed_filters(doc, hard)
            if failed > 1:
                continue
            if tokens:
                relevance = self.score(entry, tokens, text, language)
                if relevance <= 0:
                    continue
                ranked.append(((failed > 0, 0.0, -relevance, doc.id), Candidate(doc, relevance)))
            else:
                ranked.append(((failed > 0, distance, 0.0, doc.id), Candidate(doc, 0.0)))
        ranked.sort(key=lambda item: item[0])
        return [candidate for _key, candidate in ranked[:limit]]

    async def suggest_candidates(self, text: str, raw: str, language: str, literal: bool, limit: int) -> List[SearchDocument]:
        with self._lock:
            entries = list(self._docs.values())
            self.queries += 1
        found: List[SearchDocument] = []
        for entry in entries:
            doc = entry.doc
            if literal:
                haystacks = [value.lower() for value in doc.name.values()] + [(doc.city or "").lower()]
                if raw and any(raw in haystack for haystack in haystacks):
                    found.append(doc)
                continue
            if not text:
                continue
            haystacks = list(entry.folded_names()) + [fold_text(doc.city)]
            if any(text in haystack for haystack in haystacks) or self._fuzzy_prefix(text, entry):
                found.append(doc)
        found.sort(key=lambda d: (-d.search_boost.popularity_score, d.id))
        return found[:limit]

    @staticmethod
    def _fuzzy_prefix(text: str, entry: _Indexed) -> bool:
        tokens = text.split()
        if not tokens:
            return False
        last = tokens[-1]
        edits = auto_fuzziness(last)
        pool = entry.name_tokens + entry.city_tokens
        return bool(edits) and any(edit_distance(last, token[: len(last)], edits) <= edits for token in pool)

    async def upsert(self, doc: SearchDocument) -> None:
        entry = _Indexed.build(doc)
        with self._lock:
            self._docs[doc.id] = entry

    async def delete(self, doc_id: str) -> None:
        with self._lock:
            self._docs.pop(doc_id, None)

    async def get(self, doc_id: str) -> Optional[SearchDocument]:
        with self._lock:
            entry = self._docs.get(doc_id)
        return entry.doc if entry else None

    async def count(self) -> int:
        with self._lock:
            return len(self._docs)


# --- elasticsearch -----------------------------------------------------------


def text_fields(language: str) -> List[str]:
    return [
        f"name.{language}^{NAME_BOOST:g}",
        f"city^{CITY_BOOST:g}",
        f"description.{language}^{DESCRIPTION_BOOST:g}",
    ]


def filter_clause(flt) -> Dict[str, Any]:
    """Elasticsearch filter equivalent to the predicate in ``filters``."""

    if flt.kind == "price":
        room: List[Dict[str, Any]] = [{"term": {"room_types.currency": flt.currency}}]
        bounds = {}
        if flt.min_price is not None:
            bounds["gte"] = flt.min_price
        if flt.max_price is not None:
            bounds["lte"] = flt.max_price
        if bounds:
            room.append({"range": {"room_types.base_price": bounds}})
        return {"nested": {"path": "room_types", "query": {"bool": {"filter": room}}}}
    if flt.kind == "star_rating":
        return {"terms": {"star_rating": list(flt.ratings)}}
    if flt.kind == "amenity":
        return {
            "bool": {
                "filter": [
                    {"nested": {"path": "amenities", "query": {"term": {"amenities.id": amenity_id}}}}
                    for amenity_id in flt.amenity_ids
                ]
            }
        }
    if flt.kind == "property_type":
        return {"terms": {"kind": list(flt.types)}}
    if flt.kind == "guest_rating":
        return {
            "bool": {
                "filter": [
                    {"range": {"rating_avg": {"gte": flt.min_rating}}},
                    {"range": {"rating_count": {"gte": flt.min_reviews}}},
                ]
            }
        }
    if flt.kind == "city":
        return {"terms": {"city_key": list(flt.cities)}}
    raise ValueError(f"no index filter for {flt.kind!r}")


def location_clauses(location: LocationFilter) -> List[Dict[str, Any]]:
    box = bounding_box(location.lat, location.lon, location.radius_km)
    point = {"lat": location.lat, "lon": location.lon}
    return [
        {"geo_bounding_box": {"location": box.to_es()}},
        {"geo_distance": {"distance": f"{location.radius_km}km", "location": point}},
    ]


def build_text_query(
    text: str,
    language: str,
    location: LocationFilter | None = None,
    clauses: Sequence[Dict[str, Any]] = (),
    exact: str | None = None,
) -> Dict[str, Any]:
    if text:
        query: Dict[str, Any] = {
            "bool": {
                "should": [
                    {
                        "multi_match": {
                            "query": text,
                            "fields": text_fields(language),
                            "type": "best_fields",
                            "fuzziness": "AUTO",
                            "operator": "or",
                        }
                    },
                    {"term": {"name_exact": {"value": exact or text, "boost": EXACT_NAME_BOOST}}},
                ],
                "minimum_should_match": 1,
            }
        }
    else:
        query = {"bool": {"must": [{"match_all": {}}]}}
    filters = location_clauses(location) if location is not None else []
    filters.extend(clauses)
    if filters:
        query["bool"]["filter"] = filters
    logger.debug("ES text query payload=%s", query)
    return query


def candidate_sort(tokens: tuple[str, ...], location: LocationFilter | None) -> List[Any]:
    if not tokens and location is not None:
        return [
            {
                "_geo_distance": {
                    "location": {"lat": location.lat, "lon": location.lon},
                    "order": "asc",
                    "unit": "km",
                }
            },
            {"id": "asc"},
        ]
    return ["_score", {"search_boost.popularity_score": "desc"}, {"id": "asc"}]


def build_suggest_query(text: str, raw: str, language: str, literal: bool) -> Dict[str, Any]:
    if literal:
        pattern = f"*{raw}*"
        return {
            "bool": {
                "should": [
                    {"wildcard": {"name_exact": {"value": pattern, "case_insensitive": True}}},
                    {"wildcard": {"city.raw": {"value": pattern, "case_insensitive": True}}},
                ],
                "minimum_should_match": 1,
            }
        }
    return {
        "bool": {
            "should": [
                {"match_phrase_prefix": {f"name.{language}": {"query": text, "boost": 2}}},
                {"match_phrase_prefix": {"city": {"query": text, "boost": 2}}},
                {"match": {f"name.{language}.autocomplete": {"query": text, "operator": "and"}}},
                {"match": {"city.autocomplete": {"query": text, "operator": "and", "fuzziness": "AUTO"}}},
            ],
            "minimum_should_match": 1,
        }
    }


class ElasticsearchIndex:
    def __init__(self, es: Elasticsearch, index: str, timeout: float) -> None:
        self.es = es
        self.index = index
        self.timeout = timeout

    async def _search(self, query: Dict[str, Any], size: int, sort: Any = None) -> List[dict]:
        client = self.es.options(request_timeout=self.timeout)
        try:
            response = await asyncio.to_thread(
                client.search, index=self.index, query=query, size=size, sort=sort, track_total_hits=False
            )
        except (ApiError, TransportError) as exc:
            raise UpstreamUnavailable("elasticsearch", str(exc)) from exc
        return response.get("hits", {}).get("hits", [])

    async def text_candidates(
        self,
        tokens: tuple[str, ...],
        text: str,
        language: str,
        location: LocationFilter | None,
        limit: int,
        filters: Sequence = (),
    ) -> List[Candidate]:
        joined = " ".join(tokens)
        sort = candidate_sort(tokens, location)
        clauses = [filter_clause(flt) for flt in hard_filters(filters)]
        strict = build_text_query(joined, language, location, clauses, exact=text)
        if not clauses:
            batches = [await self._search(strict, limit, sort=sort)]
        else:
            # Near misses (one failed filter) feed the facet counts.
            near = []
            if len(clauses) > 1:
                near = [{"bool": {"should": clauses, "minimum_should_match": len(clauses) - 1}}]
            relaxed = build_text_query(joined, language, location, near, exact=text)
            batches = await asyncio.gather(
                self._search(strict, limit, sort=sort),
                self._search(relaxed, limit, sort=sort),
            )

        candidates: List[Candidate] = []
        seen: set[str] = set()
        for hits in batches:
            for hit in hits:
                doc = SearchDocument.model_validate(hit.get("_source", {}))
                if doc.id in seen:
                    continue
                seen.add(doc.id)
                candidates.append(Candidate(doc, float(hit.get("_score") or 0.0) if tokens else 0.0))
        return candidates[:limit]

    async def suggest_candidates(self, text: str, raw: str, language: str, literal: bool, limit: int) -> List[SearchDocument]:
        if not (raw if literal else text):
            return []
        query = build_suggest_query(text, raw, language, literal)
        hits = await self._search(query, limit, sort=["_score", {"search_boost.popularity_score": "desc"}])
        return [SearchDocument.model_validate(hit.get("_source", {})) for hit in hits]

    async def upsert(self, doc: SearchDocument) -> None:
        try:
            await asyncio.to_thread(self.es.index, index=self.index, id=doc.id, document=document_source(doc))
        except (ApiError, TransportError) as exc:
            raise UpstreamUnavailable("elasticsearch", str(exc)) from exc

    async def delete(self, doc_id: str) -> None:
        try:
            await asyncio.to_thread(self.es.delete, index=self.index, id=doc_id)
        except NotFoundError:
            return
        except (ApiError, TransportError) as exc:
            raise UpstreamUnavailable("elasticsearch", str(exc)) from exc

    async def get(self, doc_id: str) -> Optional[SearchDocument]:
        try:
            response = await asyncio.to_thread(self.es.get, index=self.index, id=doc_id)
        except NotFoundError:
            return None
        except (ApiError, TransportError) as exc:
            raise UpstreamUnavailable("elasticsearch", str(exc)) from exc
        return SearchDocument.model_validate(response["_source"])

    async def count(self) -> int:
        try:
            stats = await asyncio.to_thread(self.es.count, index=self.index)
        except NotFoundError:
            return 0
        except (ApiError, TransportError) as exc:
            raise UpstreamUnavailable("elasticsearch", str(exc)) from exc
        return int(stats.get("count", 0))
