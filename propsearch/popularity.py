"""Versioned, immutable popularity snapshots.

Readers grab ``store.current`` once per request and keep using that object;
the aggregator builds a complete new snapshot and publishes it with a single
reference assignment, so no reader ever observes a half-built generation.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Iterable, Mapping, Optional

from .models import PopularDestination, PopularityRecord

logger = logging.getLogger(__name__)

_EPOCH = datetime.fromtimestamp(0, tz=timezone.utc)


@dataclass(frozen=True)
class PopularitySnapshot:
    version: int
    window_start: datetime
    window_end: datetime
    properties: Mapping[str, PopularityRecord] = field(default_factory=lambda: MappingProxyType({}))
    destinations: Mapping[str, PopularityRecord] = field(default_factory=lambda: MappingProxyType({}))

    @classmethod
    def build(
        cls,
        version: int,
        window_start: datetime,
        window_end: datetime,
        records: Iterable[PopularityRecord],
    ) -> "PopularitySnapshot":
        properties = {}
        destinations = {}
        for record in records:
            target = properties if record.scope == "property" else destinations
            target[record.key] = record
        return cls(
            version=version,
            window_start=window_start,
            window_end=window_end,
            properties=MappingProxyType(properties),
            destinations=MappingProxyType(destinations),
        )

    def property_record(self, property_id: str) -> Optional[PopularityRecord]:
        return self.properties.get(property_id)

    def destination_record(self, key: str) -> Optional[PopularityRecord]:
        return self.destinations.get(key)

    def top_destinations(self, country_code: str | None = None, limit: int = 10) -> list[PopularDestination]:
        records = [
            record
            for record in self.destinations.values()
            if country_code is None or (record.country_code or "").upper() == country_code.upper()
        ]
        records.sort(key=lambda r: (-r.trending_score, -r.search_volume, r.key))
        return [
            PopularDestination(
                name=record.label or record.key,
                country_code=record.country_code,
                search_volume=record.search_volume,
                trending_score=record.trending_score,
                rank=rank,
            )
            for rank, record in enumerate(records[:limit], start=1)
        ]


class PopularityStore:
    def __init__(self) -> None:
        self._current = PopularitySnapshot(version=0, window_start=_EPOCH, window_end=_EPOCH)
        self._publish_lock = threading.Lock()

    @property
    def current(self) -> PopularitySnapshot:
        return self._current

    def publish(self, snapshot: PopularitySnapshot) -> bool:
        """Swap in ``snapshot`` unless a newer generation is already live."""

        with self._publish_lock:
            if snapshot.version <= self._current.version:
                logger.warning(
                    "Discarding popularity snapshot v%s, v%s already published",
                    snapshot.version,
                    self._current.version,
                )
                return False
            self._current = snapshot
        logger.info(
            "Published popularity snapshot v%s properties=%s destinations=%s",
            snapshot.version,
            len(snapshot.properties),
            len(snapshot.destinations),
        )
        return True
