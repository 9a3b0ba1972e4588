"""Caching layer with Redis primary and in-memory fallback.

``TieredCache`` wraps an upstream computation with:

* a TTL per request class (:class:`CacheTier`);
* single-flight de-duplication per cache key, so concurrent identical requests
  share one upstream computation;
* tag-based and version-based invalidation (a bumped tier version turns every
  older entry of that tier into a miss);
* degradation: when the backend is unreachable the computation runs directly
  and the outcome is flagged ``degraded``.
"""
from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Generic, Iterable, Optional, Protocol, Type, TypeVar

import redis
from pydantic import BaseModel
from pydantic import ValidationError as ModelValidationError

from .config import Settings, settings
from .errors import UpstreamUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")
M = TypeVar("M", bound=BaseModel)


class CacheTier(str, Enum):
    SEARCH = "search"
    SUGGESTIONS = "suggestions"
    POPULAR_DESTINATIONS = "popular_destinations"
    FACETS = "facets"
    LOCATION = "location"


def tier_ttls(config: Settings) -> Dict[CacheTier, int]:
    return {
        CacheTier.SEARCH: config.ttl_search_results,
        CacheTier.SUGGESTIONS: config.ttl_suggestions,
        CacheTier.POPULAR_DESTINATIONS: config.ttl_popular_destinations,
        CacheTier.FACETS: config.ttl_facets,
        CacheTier.LOCATION: config.ttl_location,
    }


class CacheBackend(Protocol):
    """Key-value store. Implementations raise ``UpstreamUnavailable`` when down."""

    def get(self, key: str) -> Optional[Dict[str, Any]]: ...

    def set(self, key: str, value: Dict[str, Any], ttl: int) -> None: ...

    def delete(self, *keys: str) -> int: ...

    def get_counter(self, key: str) -> int: ...

    def incr(self, key: str) -> int: ...

    def add_tags(self, tags: Iterable[str], member: str, ttl: int) -> None: ...

    def keys_for_tag(self, tag: str) -> set[str]: ...


@dataclass
class RedisCache:
    client: redis.Redis

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        try:
            data = self.client.get(key)
        except redis.RedisError as exc:
            raise UpstreamUnavailable("redis", f"get failed: {exc}") from exc
        if not data:
            return None
        try:
            return json.loads(data)
        except json.JSONDecodeError:
            return None

    def set(self, key: str, value: Dict[str, Any], ttl: int) -> None:
        try:
            self.client.setex(key, ttl, json.dumps(value, ensure_ascii=False))
        except redis.RedisError as exc:
            raise UpstreamUnavailable("redis", f"set failed: {exc}") from exc

    def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        try:
            return int(self.client.delete(*keys))
        except redis.RedisError as exc:
            raise UpstreamUnavailable("redis", f"delete failed: {exc}") from exc

    def get_counter(self, key: str) -> int:
        try:
            value = self.client.get(key)
        except redis.RedisError as exc:
            raise UpstreamUnavailable("redis", f"get failed: {exc}") from exc
        return int(value) if value else 0

    def incr(self, key: str) -> int:
        try:
            return int(self.client.incr(key))
        except redis.RedisError as exc:
            raise UpstreamUnavailable("redis", f"incr failed: {exc}") from exc

    def add_tags(self, tags: Iterable[str], member: str, ttl: int) -> None:
        try:
            pipe = self.client.pipeline(transaction=True)
            for tag in tags:
                pipe.sadd(tag, member)
                pipe.expire(tag, ttl)
            pipe.execute()
        except redis.RedisError as exc:
            raise UpstreamUnavailable("redis", f"tag failed: {exc}") from exc

    def keys_for_tag(self, tag: str) -> set[str]:
        try:
            members = self.client.smembers(tag)
        except redis.RedisError as exc:
            raise UpstreamUnavailable("redis", f"smembers failed: {exc}") from exc
        return {m.decode("utf-8") if isinstance(m, bytes) else str(m) for m in members}


class InMemoryCache:
    """Process-local backend with the same expiry rules as Redis.

    Expired entries and tag sets are dropped on read and by a sweep that runs
    at most once per ``purge_interval`` seconds on writes.
    """

    def __init__(self, clock: Callable[[], float] = time.time, purge_interval: float = 60.0) -> None:
        self._store: Dict[str, tuple[float, Dict[str, Any]]] = {}
        self._counters: Dict[str, int] = {}
        self._tags: Dict[str, tuple[float, set[str]]] = {}
        self._lock = threading.Lock()
        self._clock = clock
        self.purge_interval = purge_interval
        self._next_purge = clock() + purge_interval

    def _purge(self, now: float) -> None:
        if now < self._next_purge:
            return
        self._next_purge = now + self.purge_interval
        for key in [key for key, (expires_at, _) in self._store.items() if expires_at <= now]:
            del self._store[key]
        for tag in [tag for tag, (expires_at, _) in self._tags.items() if expires_at <= now]:
            del self._tags[tag]

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            value = self._store.get(key)
            if not value:
                return None
            expires_at, payload = value
            if expires_at <= self._clock():
                self._store.pop(key, None)
                return None
            return json.loads(json.dumps(payload))

    def set(self, key: str, value: Dict[str, Any], ttl: int) -> None:
        # Stored as a detached copy so callers can never mutate a cached entry.
        payload = json.loads(json.dumps(value))
        with self._lock:
            now = self._clock()
            self._store[key] = (now + ttl, payload)
            self._purge(now)

    def delete(self, *keys: str) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                if self._store.pop(key, None) is not None:
                    removed += 1
                if self._tags.pop(key, None) is not None:
                    removed += 1
        return removed

    def get_counter(self, key: str) -> int:
        with self._lock:
            return self._counters.get(key, 0)

    def incr(self, key: str) -> int:
        with self._lock:
            self._counters[key] = self._counters.get(key, 0) + 1
            return self._counters[key]

    def add_tags(self, tags: Iterable[str], member: str, ttl: int) -> None:
        with self._lock:
            now = self._clock()
            for tag in tags:
                _expires_at, members = self._tags.get(tag, (now, set()))
                members.add(member)
                # Each write pushes the whole set's expiry out, like EXPIRE.
                self._tags[tag] = (now + ttl, members)
            self._purge(now)

    def keys_for_tag(self, tag: str) -> set[str]:
        with self._lock:
            value = self._tags.get(tag)
            if value is None:
                return set()
            expires_at, members = value
            if expires_at <= self._clock():
                del self._tags[tag]
                return set()
            return set(members)

    def size(self) -> int:
        """Entries plus tag sets currently held, expired or not."""

        with self._lock:
            return len(self._store) + len(self._tags)


class SingleFlight:
    """At most one in-flight computation per key; callers share its result.

    The computation runs as its own task and callers await it through
    ``asyncio.shield``: a caller that is cancelled stops waiting, but the
    computation finishes for everybody else.
    """

    def __init__(self) -> None:
        self._inflight: Dict[str, asyncio.Future] = {}
        self._tasks: set[asyncio.Task] = set()

    def inflight(self, key: str) -> bool:
        return key in self._inflight

    async def do(self, key: str, fn: Callable[[], Awaitable[T]]) -> tuple[T, bool]:
        """Return ``(result, shared)``; ``shared`` is True for followers."""

        future = self._inflight.get(key)
        if future is not None:
            return await asyncio.shield(future), True

        loop = asyncio.get_running_loop()
        future = loop.create_future()
        # Mark the exception retrieved even if every caller went away.
        future.add_done_callback(lambda f: f.cancelled() or f.exception())
        self._inflight[key] = future
        task = loop.create_task(self._run(key, fn, future))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return await asyncio.shield(future), False

    async def _run(self, key: str, fn: Callable[[], Awaitable[T]], future: asyncio.Future) -> None:
        try:
            result = await fn()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as exc:
            future.set_exception(exc)
        else:
            future.set_result(result)
        finally:
            self._inflight.pop(key, None)


@dataclass
class CacheOutcome(Generic[M]):
    value: M
    hit: bool = False
    coalesced: bool = False
    degraded: bool = False


def hash_signature(signature: str) -> str:
    return hashlib.sha256(signature.encode("utf-8")).hexdigest()


class TieredCache:
    def __init__(self, backend: CacheBackend, config: Settings | None = None) -> None:
        self.backend = backend
        self.config = config or settings
        self.prefix = self.config.cache_prefix
        self.ttls = tier_ttls(self.config)
        self.flights = SingleFlight()

    # -- keys ---------------------------------------------------------------

    def _version_key(self, tier: CacheTier) -> str:
        return f"{self.prefix}:version:{tier.value}"

    def _tag_key(self, tag: str) -> str:
        return f"{self.prefix}:tag:{tag}"

    def _stale_key(self, tier: CacheTier, digest: str) -> str:
        return f"{self.prefix}:stale:{tier.value}:{digest}"

    def entry_key(self, tier: CacheTier, version: int, digest: str) -> str:
        return f"{self.prefix}:{tier.value}:v{version}:{digest}"

    async def _call(self, fn: Callable[..., T], *args: Any) -> T:
        return await asyncio.to_thread(fn, *args)

    async def version(self, tier: CacheTier) -> int:
        return await self._call(self.backend.get_counter, self._version_key(tier))

    # -- read-through -------------------------------------------------------

    async def get_or_compute(
        self,
        tier: CacheTier,
        signature: str,
        compute: Callable[[], Awaitable[M]],
        model: Type[M],
        tags: Callable[[M], Iterable[str]] | None = None,
        cacheable: Callable[[M], bool] | None = None,
    ) -> CacheOutcome[M]:
        digest = hash_signature(signature)
        try:
            version = await self.version(tier)
        except UpstreamUnavailable as exc:
            logger.warning("Cache unavailable, computing %s directly: %s", tier.value, exc)
            value, shared = await self.flights.do(f"direct:{tier.value}:{digest}", compute)
            return CacheOutcome(value, hit=False, coalesced=shared, degraded=True)

        key = self.entry_key(tier, version, digest)

        async def lookup_or_compute() -> CacheOutcome[M]:
            degraded = False
            try:
                cached = await self._call(self.backend.get, key)
            except UpstreamUnavailable as exc:
                logger.warning("Cache read failed for %s, computing directly: %s", tier.value, exc)
                cached = None
                degraded = True
            if cached is not None:
                try:
                    return CacheOutcome(model.model_validate(cached), hit=True)
                except ModelValidationError:
                    logger.warning("Dropping undecodable cache entry %s", key)

            value = await compute()
            if degraded or (cacheable is not None and not cacheable(value)):
                return CacheOutcome(value, degraded=degraded)
            degraded = not await self._store(tier, key, digest, value, tags)
            return CacheOutcome(value, degraded=degraded)

        outcome, shared = await self.flights.do(key, lookup_or_compute)
        if shared:
            return CacheOutcome(outcome.value, hit=outcome.hit, coalesced=True, degraded=outcome.degraded)
        return outcome

    async def _store(
        self,
        tier: CacheTier,
        key: str,
        digest: str,
        value: BaseModel,
        tags: Callable[[Any], Iterable[str]] | None,
    ) -> bool:
        payload = value.model_dump(mode="json")
        ttl = self.ttls[tier]
        try:
            await self._call(self.backend.set, key, payload, ttl)
            await self._call(self.backend.set, self._stale_key(tier, digest), payload, self.config.ttl_stale)
            if tags is not None:
                tag_keys = [self._tag_key(tag) for tag in tags(value)]
                if tag_keys:
                    await self._call(self.backend.add_tags, tag_keys, key, max(ttl, self.config.ttl_stale))
        except UpstreamUnavailable as exc:
            logger.warning("Cache write failed for %s: %s", tier.value, exc)
            return False
        logger.debug("cache_store tier=%s key=%s ttl=%s", tier.value, key, ttl)
        return True

    async def get_stale(self, tier: CacheTier, signature: str, model: Type[M]) -> Optional[M]:
        """Last good value for ``signature``, ignoring versions and the tier TTL."""

        try:
            cached = await self._call(self.backend.get, self._stale_key(tier, hash_signature(signature)))
        except UpstreamUnavailable:
            return None
        if cached is None:
            return None
        try:
            return model.model_validate(cached)
        except ModelValidationError:
            return None

    # -- invalidation -------------------------------------------------------

    async def bump(self, *tiers: CacheTier) -> None:
        for tier in tiers:
            version = await self._call(self.backend.incr, self._version_key(tier))
            logger.info("Cache tier %s bumped to v%s", tier.value, version)

    async def invalidate_property(self, property_id: str, tiers: Iterable[CacheTier]) -> int:
        """Drop entries that contained ``property_id`` and bump ``tiers``.

        Tagged entries are the ones known to include the property; the version
        bump covers entries it could newly enter after the change.
        """

        tag = self._tag_key(property_id)
        try:
            members = await self._call(self.backend.keys_for_tag, tag)
            removed = await self._call(self.backend.delete, *members) if members else 0
            await self._call(self.backend.delete, tag)
            await self.bump(*tiers)
        except UpstreamUnavailable as exc:
            logger.warning("Cache invalidation for %s failed: %s", property_id, exc)
            return 0
        logger.info("Invalidated %s cache entries for property %s", len(members), property_id)
        return removed


_backend: CacheBackend | None = None


def get_cache_backend() -> CacheBackend:
    global _backend
    if _backend is not None:
        return _backend
    if settings.cache_backend == "memory":
        _backend = InMemoryCache()
        return _backend
    try:
        client = redis.Redis(host=settings.redis_host, port=settings.redis_port, decode_responses=False)
        client.ping()
        logger.info("Using Redis cache at %s:%s", settings.redis_host, settings.redis_port)
        _backend = RedisCache(client)
    except redis.RedisError:
        if settings.cache_backend == "redis":
            raise
        logger.warning("Redis not available, using in-memory cache")
        _backend = InMemoryCache()
    return _backend
