"""Seed data importer: property records from a JSON file into the index."""
from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Iterable, List, Optional

from elasticsearch import Elasticsearch, helpers
from pydantic import ValidationError as ModelValidationError

from .config import settings
from .indexing import drop_index, ensure_index, index_is_empty
from .models import SearchDocument
from .search_index import document_source

logger = logging.getLogger(__name__)


def _load_records(path: Path) -> list[dict]:
    if not path.exists():
        logger.warning("Properties file %s is missing", path)
        return []
    # Detect Git LFS placeholder to avoid attempting to parse it as JSON.
    with path.open("r", encoding="utf-8") as fh:
        first_line = fh.readline()
        if first_line.startswith("version https://git-lfs.github.com/spec/v1"):
            logger.warning("Properties file %s is a Git LFS pointer; real data not downloaded", path)
            return []
        fh.seek(0)
        data = json.load(fh)
    return data.get("properties", []) if isinstance(data, dict) else data


def _localized(value: Any, language: str) -> dict[str, str]:
    if isinstance(value, dict):
        return {str(k): str(v) for k, v in value.items() if v}
    if value:
        return {language: str(value)}
    return {}


def _location(raw: dict) -> tuple[Optional[dict], Optional[str], Optional[str]]:
    """``location`` as ``{lat, lon}`` or nested under ``coordinates``."""

    location = raw.get("location") or {}
    city = raw.get("city") or location.get("city")
    country = raw.get("country_code") or location.get("country_code")
    point = location.get("coordinates") or location
    if "lat" in point and "lon" in point:
        return {"lat": point["lat"], "lon": point["lon"]}, city, country
    return None, city, country


def _prepare_document(raw: dict, language: str = "vi") -> Optional[SearchDocument]:
    doc_id = raw.get("id") or raw.get("external_id")
    name = _localized(raw.get("name"), language)
    if not doc_id or not name:
        logger.warning("Skipping property without id or name: %r", raw.get("id"))
        return None

    point, city, country = _location(raw)
    amenities = [
        {
            "id": str(item.get("id") or item.get("name", "")).lower(),
            "name": item.get("name") or str(item.get("id")),
            "category": item.get("category"),
            "featured": bool(item.get("is_featured") or item.get("featured")),
        }
        for item in raw.get("amenities") or []
        if item.get("id") or item.get("name")
    ]
    room_types = [
        {
            "name": room.get("name") or "room",
            "max_occupancy": room.get("max_occupancy") or 2,
            "available_count": room.get("available_rooms") or room.get("available_count") or 0,
            "base_price": room.get("base_price"),
            "currency": room.get("currency") or settings.default_currency,
        }
        for room in raw.get("room_types") or []
    ]
    images = [item.get("url") if isinstance(item, dict) else item for item in raw.get("images") or []]
    try:
        return SearchDocument(
            id=str(doc_id),
            name=name,
            description=_localized(raw.get("description"), language),
            kind=(raw.get("kind") or "hotel").lower(),
            star_rating=raw.get("star_rating"),
            city=city,
            country_code=country,
            location=point,
            rating_avg=raw.get("rating_avg") or 0.0,
            rating_count=raw.get("rating_count") or 0,
            amenities=amenities,
            room_types=room_types,
            images=[url for url in images if url],
            search_boost=raw.get("search_boost") or {},
        )
    except ModelValidationError as exc:
        logger.warning("Skipping malformed property %s: %s", doc_id, exc.errors()[:1])
        return None


def load_documents(path: str | Path) -> List[SearchDocument]:
    documents = [_prepare_document(item) for item in _load_records(Path(path))]
    loaded = [doc for doc in documents if doc is not None]
    logger.info("Loaded %s properties from %s", len(loaded), path)
    return loaded


def _iter_actions(index: str, documents: Iterable[SearchDocument]) -> Iterable[dict]:
    for doc in documents:
        yield {
            "_index": index,
            "_id": doc.id,
            "_source": document_source(doc, settings.default_language),
        }


async def import_properties(es: Elasticsearch) -> int:
    documents = load_documents(settings.properties_path)
    if not documents:
        return 0
    actions = list(_iter_actions(settings.es_index, documents))
    await asyncio.to_thread(helpers.bulk, es, actions)
    return len(actions)


async def import_if_empty(es: Elasticsearch) -> int:
    if not await index_is_empty(es):
        return 0
    return await import_properties(es)


async def reindex_data(es: Elasticsearch) -> int:
    await drop_index(es)
    await ensure_index(es)
    return await import_properties(es)
