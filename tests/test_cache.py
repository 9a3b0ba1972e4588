import asyncio

import pytest
from pydantic import BaseModel

from propsearch.cache import CacheTier, InMemoryCache, SingleFlight, TieredCache
from propsearch.errors import UpstreamUnavailable


class Payload(BaseModel):
    value: int


class Counter:
    def __init__(self, value=1):
        self.calls = 0
        self.value = value

    async def __call__(self):
        self.calls += 1
        return Payload(value=self.value)


class ReadOnlyCache(InMemoryCache):
    def set(self, key, value, ttl):
        raise UpstreamUnavailable("redis", "read only replica")


def test_memory_entries_expire():
    now = [1000.0]
    backend = InMemoryCache(clock=lambda: now[0])
    backend.set("k", {"value": 1}, ttl=10)

    assert backend.get("k") == {"value": 1}
    now[0] += 11
    assert backend.get("k") is None


def test_memory_tag_sets_expire_and_are_purged():
    now = [1000.0]
    backend = InMemoryCache(clock=lambda: now[0], purge_interval=30)
    backend.add_tags(["tag:a", "tag:b"], "entry-1", ttl=10)
    backend.set("entry-1", {"value": 1}, ttl=10)

    assert backend.keys_for_tag("tag:a") == {"entry-1"}
    now[0] += 11
    assert backend.keys_for_tag("tag:a") == set()

    now[0] += 30
    backend.set("entry-2", {"value": 2}, ttl=10)
    assert backend.size() == 1


def test_memory_entries_are_detached_copies():
    backend = InMemoryCache()
    payload = {"items": [1, 2]}
    backend.set("k", payload, ttl=10)
    payload["items"].append(3)

    cached = backend.get("k")
    cached["items"].append(4)
    assert backend.get("k") == {"items": [1, 2]}


def test_second_lookup_is_a_hit(config):
    cache = TieredCache(InMemoryCache(), config)
    compute = Counter()

    async def scenario():
        first = await cache.get_or_compute(CacheTier.SEARCH, "q=hotel", compute, Payload)
        second = await cache.get_or_compute(CacheTier.SEARCH, "q=hotel", compute, Payload)
        return first, second

    first, second = asyncio.run(scenario())

    assert (first.hit, second.hit) == (False, True)
    assert second.value == first.value
    assert compute.calls == 1


def test_tiers_do_not_share_entries(config):
    cache = TieredCache(InMemoryCache(), config)
    compute = Counter()

    async def scenario():
        await cache.get_or_compute(CacheTier.SEARCH, "same", compute, Payload)
        return await cache.get_or_compute(CacheTier.FACETS, "same", compute, Payload)

    assert not asyncio.run(scenario()).hit
    assert compute.calls == 2


def test_version_bump_turns_entries_into_misses(config):
    cache = TieredCache(InMemoryCache(), config)
    compute = Counter()

    async def scenario():
        await cache.get_or_compute(CacheTier.SEARCH, "q=hotel", compute, Payload)
        await cache.bump(CacheTier.SEARCH)
        outcome = await cache.get_or_compute(CacheTier.SEARCH, "q=hotel", compute, Payload)
        return outcome, await cache.version(CacheTier.SEARCH)

    outcome, version = asyncio.run(scenario())

    assert not outcome.hit
    assert version == 1
    assert compute.calls == 2


def test_invalidate_property_drops_tagged_entries(config):
    backend = InMemoryCache()
    cache = TieredCache(backend, config)
    compute = Counter()

    async def scenario():
        first = await cache.get_or_compute(
            CacheTier.SEARCH, "q=pearl", compute, Payload, tags=lambda value: ["hn-pearl"]
        )
        removed = await cache.invalidate_property("hn-pearl", [CacheTier.SEARCH])
        again = await cache.get_or_compute(CacheTier.SEARCH, "q=pearl", compute, Payload)
        return first, removed, again

    first, removed, again = asyncio.run(scenario())

    assert not first.hit
    assert removed == 1
    assert backend.keys_for_tag("propsearch:tag:hn-pearl") == set()
    assert not again.hit
    assert compute.calls == 2


def test_stale_copy_survives_invalidation(config):
    cache = TieredCache(InMemoryCache(), config)

    async def scenario():
        await cache.get_or_compute(CacheTier.SEARCH, "q=rex", Counter(7), Payload)
        await cache.bump(CacheTier.SEARCH)
        return await cache.get_stale(CacheTier.SEARCH, "q=rex", Payload)

    assert asyncio.run(scenario()) == Payload(value=7)


def test_uncacheable_values_are_not_stored(config):
    cache = TieredCache(InMemoryCache(), config)
    compute = Counter()

    async def scenario():
        for _ in range(2):
            await cache.get_or_compute(
                CacheTier.SEARCH, "q=x", compute, Payload, cacheable=lambda value: False
            )

    asyncio.run(scenario())
    assert compute.calls == 2


def test_write_failure_marks_outcome_degraded(config):
    cache = TieredCache(ReadOnlyCache(), config)

    outcome = asyncio.run(cache.get_or_compute(CacheTier.SEARCH, "q=x", Counter(3), Payload))

    assert outcome.value == Payload(value=3)
    assert outcome.degraded


def test_single_flight_coalesces_concurrent_calls():
    flight = SingleFlight()
    calls = []

    async def work():
        calls.append(1)
        await asyncio.sleep(0.01)
        return 42

    async def scenario():
        return await asyncio.gather(*(flight.do("k", work) for _ in range(5)))

    results = asyncio.run(scenario())

    assert len(calls) == 1
    assert [value for value, _ in results] == [42] * 5
    assert sum(shared for _, shared in results) == 4


def test_single_flight_survives_leader_cancellation():
    flight = SingleFlight()
    calls = []

    async def scenario():
        gate = asyncio.Event()

        async def work():
            calls.append(1)
            await gate.wait()
            return "done"

        leader = asyncio.create_task(flight.do("k", work))
        await asyncio.sleep(0)
        follower = asyncio.create_task(flight.do("k", work))
        await asyncio.sleep(0)
        leader.cancel()
        gate.set()
        result = await follower
        with pytest.raises(asyncio.CancelledError):
            await leader
        return result

    assert asyncio.run(scenario()) == ("done", True)
    assert len(calls) == 1


def test_single_flight_shares_failures():
    flight = SingleFlight()

    async def work():
        await asyncio.sleep(0.01)
        raise UpstreamUnavailable("text index")

    async def scenario():
        return await asyncio.gather(*(flight.do("k", work) for _ in range(3)), return_exceptions=True)

    results = asyncio.run(scenario())

    assert all(isinstance(item, UpstreamUnavailable) for item in results)
    assert not flight.inflight("k")
