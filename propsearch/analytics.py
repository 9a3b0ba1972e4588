"""Search analytics: bounded event ingestion and windowed popularity aggregation.

Producers call :meth:`AnalyticsFeedbackLoop.record_event`, which never blocks:
it enqueues on a bounded queue or reports a drop. A consumer task moves
batches into the append-only :class:`EventLog`. Every window the aggregator
rebuilds all popularity records from the log and publishes them as one new
:class:`~propsearch.popularity.PopularitySnapshot`.
"""
from __future__ import annotations

import asyncio
import logging
import math
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional, Protocol

import redis

from .config import Settings, settings as default_settings
from .errors import UpstreamUnavailable
from .models import PopularityRecord, SearchEvent, SearchMetrics
from .phonetics import city_key
from .popularity import PopularitySnapshot, PopularityStore

logger = logging.getLogger(__name__)

POPULARITY_WEIGHT = 0.5
CTR_WEIGHT = 0.25
CONVERSION_WEIGHT = 0.25
GROWTH_WEIGHT = 0.1


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _ratio(numerator: float, denominator: float) -> float:
    if denominator <= 0:
        return 0.0
    return max(0.0, min(1.0, numerator / denominator))


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


# --- event log ---------------------------------------------------------------


class EventLog(Protocol):
    def append(self, events: List[SearchEvent]) -> None: ...

    def read(self, since: datetime, until: datetime) -> List[SearchEvent]: ...

    def prune(self, before: datetime) -> int: ...


class InMemoryEventLog:
    def __init__(self) -> None:
        self._events: List[SearchEvent] = []
        self._lock = threading.Lock()

    def append(self, events: List[SearchEvent]) -> None:
        with self._lock:
            self._events.extend(events)

    def read(self, since: datetime, until: datetime) -> List[SearchEvent]:
        with self._lock:
            events = list(self._events)
        return [event for event in events if since <= _as_utc(event.timestamp) < until]

    def prune(self, before: datetime) -> int:
        with self._lock:
            kept = [event for event in self._events if _as_utc(event.timestamp) >= before]
            removed = len(self._events) - len(kept)
            self._events = kept
        return removed

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)


@dataclass
class RedisEventLog:
    """Events as JSON in a Redis sorted set scored by their UTC timestamp.

    Windowed reads and retention trims are range operations on the score, so
    their cost follows the window, not the retained history.
    """

    client: redis.Redis
    key: str = "propsearch:events"

    @staticmethod
    def _score(value: datetime) -> float:
        return _as_utc(value).timestamp()

    def append(self, events: List[SearchEvent]) -> None:
        if not events:
            return
        members = {event.model_dump_json(): self._score(event.timestamp) for event in events}
        try:
            self.client.zadd(self.key, members)
        except redis.RedisError as exc:
            raise UpstreamUnavailable("event log", f"append failed: {exc}") from exc

    def read(self, since: datetime, until: datetime) -> List[SearchEvent]:
        try:
            raw = self.client.zrangebyscore(self.key, self._score(since), f"({self._score(until)}")
        except redis.RedisError as exc:
            raise UpstreamUnavailable("event log", f"read failed: {exc}") from exc
        events = []
        for item in raw:
            try:
                events.append(SearchEvent.model_validate_json(item))
            except ValueError:
                logger.warning("Skipping undecodable event in %s", self.key)
        return events

    def prune(self, before: datetime) -> int:
        try:
            return int(self.client.zremrangebyscore(self.key, "-inf", f"({self._score(before)}"))
        except redis.RedisError as exc:
            raise UpstreamUnavailable("event log", f"trim failed: {exc}") from exc


# --- aggregation -------------------------------------------------------------


@dataclass
class _PropertyStats:
    impressions: int = 0
    clicks: int = 0
    bookings: int = 0
    sessions: set = field(default_factory=set)


@dataclass
class _DestinationStats:
    label: str
    country_code: Optional[str] = None
    searches: int = 0
    clicked_searches: int = 0
    clicks: int = 0
    impressions: int = 0
    bookings: int = 0
    sessions: set = field(default_factory=set)


def destination_key(event: SearchEvent) -> Optional[str]:
    return city_key(event.destination) or None


def _volume_scores(volumes: Dict[str, int]) -> Dict[str, float]:
    """Log-scaled volume normalized to the busiest key of the window."""

    peak = max(volumes.values(), default=0)
    if peak <= 0:
        return {key: 0.0 for key in volumes}
    return {key: math.log1p(volume) / math.log1p(peak) for key, volume in volumes.items()}


def trending(popularity: float, ctr: float, conversion: float, growth: float = 0.0) -> float:
    return _clamp(
        POPULARITY_WEIGHT * popularity + CTR_WEIGHT * ctr + CONVERSION_WEIGHT * conversion + GROWTH_WEIGHT * growth
    )


def build_records(
    events: Iterable[SearchEvent],
    window_start: datetime,
    window_end: datetime,
    previous_volumes: Optional[Dict[str, int]] = None,
) -> List[PopularityRecord]:
    properties: Dict[str, _PropertyStats] = defaultdict(_PropertyStats)
    destinations: Dict[str, _DestinationStats] = {}

    for event in events:
        session = event.session_id or event.user_id or event.event_id
        for property_id in dict.fromkeys(event.result_ids):
            stats = properties[property_id]
            stats.impressions += 1
            stats.sessions.add(session)
        for property_id in dict.fromkeys(event.clicked_ids):
            properties[property_id].clicks += 1
        if event.booking_completed and event.booked_id:
            properties[event.booked_id].bookings += 1

        key = destination_key(event)
        if key is None:
            continue
        stats = destinations.get(key)
        if stats is None:
            stats = destinations[key] = _DestinationStats(label=event.destination.strip())
        stats.country_code = stats.country_code or event.country_code
        if event.event_type == "query":
            stats.searches += 1
            stats.impressions += len(event.result_ids)
            stats.sessions.add(session)
        if event.clicked_ids:
            stats.clicked_searches += 1
            stats.clicks += len(event.clicked_ids)
        if event.booking_completed:
            stats.bookings += 1

    records: List[PopularityRecord] = []
    property_scores = _volume_scores({key: stats.impressions for key, stats in properties.items()})
    for key, stats in properties.items():
        ctr = _ratio(stats.clicks, stats.impressions)
        conversion = _ratio(stats.bookings, max(stats.clicks, stats.bookings))
        popularity = property_scores[key]
        records.append(
            PopularityRecord(
                key=key,
                scope="property",
                search_volume=stats.impressions,
                unique_sessions=len(stats.sessions),
                impressions=stats.impressions,
                clicks=stats.clicks,
                bookings=stats.bookings,
                click_through_rate=round(ctr, 6),
                conversion_rate=round(conversion, 6),
                popularity_score=round(popularity, 6),
                trending_score=round(trending(popularity, ctr, conversion), 6),
                window_start=window_start,
                window_end=window_end,
            )
        )

    previous_volumes = previous_volumes or {}
    destination_scores = _volume_scores({key: stats.searches for key, stats in destinations.items()})
    for key, stats in destinations.items():
        ctr = _ratio(stats.clicked_searches, stats.searches)
        conversion = _ratio(stats.bookings, stats.searches)
        popularity = destination_scores[key]
        before = previous_volumes.get(key, 0)
        growth = _clamp((stats.searches - before) / max(before, 1), -1.0, 1.0)
        records.append(
            PopularityRecord(
                key=key,
                scope="destination",
                label=stats.label,
                search_volume=stats.searches,
                unique_sessions=len(stats.sessions),
                impressions=stats.impressions,
                clicks=stats.clicks,
                bookings=stats.bookings,
                click_through_rate=round(ctr, 6),
                conversion_rate=round(conversion, 6),
                popularity_score=round(popularity, 6),
                trending_score=round(trending(popularity, ctr, conversion, growth), 6),
                country_code=stats.country_code,
                window_start=window_start,
                window_end=window_end,
            )
        )
    return records


def destination_volumes(events: Iterable[SearchEvent]) -> Dict[str, int]:
    volumes: Dict[str, int] = defaultdict(int)
    for event in events:
        key = destination_key(event)
        if key is not None and event.event_type == "query":
            volumes[key] += 1
    return dict(volumes)


def summarize(events: Iterable[SearchEvent], window_start: datetime, window_end: datetime) -> SearchMetrics:
    queries = [event for event in events if event.event_type == "query"]
    interactions = [event for event in events if event.event_type == "interaction"]
    total = len(queries)
    zero = sum(1 for event in queries if event.result_count == 0)
    clicked = sum(1 for event in queries + interactions if event.clicked_ids)
    booked = sum(1 for event in queries + interactions if event.booking_completed)
    latency = sum(event.response_time_ms for event in queries) / total if total else 0.0
    return SearchMetrics(
        total_searches=total,
        zero_result_rate=round(_ratio(zero, total), 6),
        click_through_rate=round(_ratio(clicked, total), 6),
        conversion_rate=round(_ratio(booked, total), 6),
        avg_response_time_ms=round(latency, 3),
        window_start=window_start,
        window_end=window_end,
    )


# --- feedback loop -----------------------------------------------------------


class AnalyticsFeedbackLoop:
    def __init__(
        self,
        store: PopularityStore,
        log: EventLog | None = None,
        config: Settings | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.config = config or default_settings
        self.store = store
        self.log = log if log is not None else InMemoryEventLog()
        self.clock = clock
        self.queue: asyncio.Queue[SearchEvent] = asyncio.Queue(maxsize=self.config.analytics_queue_size)
        self.dropped = 0
        self._tasks: List[asyncio.Task] = []
        self._aggregate_lock = asyncio.Lock()

    @property
    def window(self) -> timedelta:
        return timedelta(seconds=self.config.analytics_window_seconds)

    def record_event(self, event: SearchEvent) -> bool:
        """Enqueue ``event`` without waiting. Returns False if it was dropped."""

        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("Analytics queue full (%s), dropped event %s", self.queue.maxsize, event.event_id)
            return False
        return True

    def _take_batch(self, first: SearchEvent | None = None) -> List[SearchEvent]:
        batch = [first] if first is not None else []
        while len(batch) < self.config.analytics_batch_size:
            try:
                batch.append(self.queue.get_nowait())
            except asyncio.QueueEmpty:
                break
        return batch

    async def _write(self, batch: List[SearchEvent]) -> None:
        try:
            await asyncio.to_thread(self.log.append, batch)
        except UpstreamUnavailable as exc:
            logger.warning("Dropping %s analytics events, event log unavailable: %s", len(batch), exc)
            self.dropped += len(batch)
            return
        logger.debug("Appended %s analytics events", len(batch))

    async def drain(self) -> int:
        """Move everything currently queued into the event log."""

        written = 0
        while True:
            batch = self._take_batch()
            if not batch:
                return written
            await self._write(batch)
            written += len(batch)

    async def _consume(self) -> None:
        while True:
            event = await self.queue.get()
            batch = self._take_batch(event)
            try:
                await self._write(batch)
            except Exception:
                logger.exception("Failed to write %s analytics events", len(batch))
                self.dropped += len(batch)

    async def aggregate(self, now: datetime | None = None) -> PopularitySnapshot:
        """Rebuild popularity for the window ending at ``now`` and publish it."""

        async with self._aggregate_lock:
            window_end = _as_utc(now or self.clock())
            window_start = window_end - self.window
            previous = await asyncio.to_thread(self.log.read, window_start - self.window, window_start)
            events = await asyncio.to_thread(self.log.read, window_start, window_end)
            records = build_records(events, window_start, window_end, destination_volumes(previous))
            snapshot = PopularitySnapshot.build(self.store.current.version + 1, window_start, window_end, records)
            self.store.publish(snapshot)
            logger.info(
                "Aggregated %s events into %s popularity records for %s..%s",
                len(events),
                len(records),
                window_start.isoformat(),
                window_end.isoformat(),
            )
            return snapshot

    async def cleanup(self, now: datetime | None = None) -> int:
        cutoff = _as_utc(now or self.clock()) - timedelta(days=self.config.analytics_retention_days)
        removed = await asyncio.to_thread(self.log.prune, cutoff)
        if removed:
            logger.info("Removed %s analytics events older than %s", removed, cutoff.isoformat())
        return removed

    async def run_once(self, now: datetime | None = None) -> PopularitySnapshot:
        await self.drain()
        snapshot = await self.aggregate(now)
        await self.cleanup(now)
        return snapshot

    async def _periodic(self) -> None:
        while True:
            await asyncio.sleep(self.config.analytics_window_seconds)
            try:
                await self.run_once()
            except UpstreamUnavailable as exc:
                logger.warning("Popularity aggregation skipped: %s", exc)
            except Exception:
                logger.exception("Popularity aggregation failed, keeping snapshot v%s", self.store.current.version)

    def start(self) -> None:
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._consume(), name="analytics-consumer"),
            asyncio.create_task(self._periodic(), name="analytics-aggregator"),
        ]
        logger.info("Analytics loop started, window=%ss", self.config.analytics_window_seconds)

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        await self.drain()
        logger.info("Analytics loop stopped")

    async def search_metrics(self, since: datetime | None = None, until: datetime | None = None) -> SearchMetrics:
        until = _as_utc(until or self.clock())
        since = _as_utc(since) if since is not None else until - self.window
        events = await asyncio.to_thread(self.log.read, since, until)
        return summarize(events, since, until)


def get_event_log(config: Settings | None = None) -> EventLog:
    config = config or default_settings
    if config.cache_backend == "memory":
        return InMemoryEventLog()
    try:
        client = redis.Redis(host=config.redis_host, port=config.redis_port)
        client.ping()
    except redis.RedisError:
        if config.cache_backend == "redis":
            raise
        logger.warning("Redis not available, keeping analytics events in memory")
        return InMemoryEventLog()
    return RedisEventLog(client, key=f"{config.cache_prefix}:events")
