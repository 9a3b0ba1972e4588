import pytest

from propsearch.errors import RateLimited
from propsearch.rate_limit import RateLimiter


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


def test_requests_within_window_are_limited():
    clock = FakeClock()
    limiter = RateLimiter(3, 60, clock=clock)

    for _ in range(3):
        limiter.check("alice")
    with pytest.raises(RateLimited) as excinfo:
        limiter.check("alice")

    assert excinfo.value.retry_after == pytest.approx(60)
    assert limiter.remaining("alice") == 0


def test_window_slides():
    clock = FakeClock()
    limiter = RateLimiter(2, 10, clock=clock)
    limiter.check("bob")
    clock.now += 6
    limiter.check("bob")
    clock.now += 5

    limiter.check("bob")
    assert limiter.remaining("bob") == 0


def test_clients_are_isolated():
    limiter = RateLimiter(1, 60, clock=FakeClock())
    limiter.check("alice")

    limiter.check("bob")
    assert limiter.remaining("carol") == 1


def test_idle_clients_are_forgotten():
    clock = FakeClock()
    limiter = RateLimiter(5, 10, clock=clock)
    for host in ("10.0.0.1", "10.0.0.2", "10.0.0.3"):
        limiter.check(host)
    clock.now += 11

    limiter.check("10.0.0.4")

    assert limiter.tracked_clients() == 1
    assert limiter.remaining("10.0.0.1") == 5
