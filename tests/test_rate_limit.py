"""Tests for the per-user sliding-window rate limiter."""
import pytest

from app.errors import RateLimitExceeded
from app.services.rate_limit import SlidingWindowRateLimiter


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_allows_up_to_limit_then_rejects():
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(3, clock=clock)
    assert [limiter.check("u1") for _ in range(3)] == [2, 1, 0]
    with pytest.raises(RateLimitExceeded) as exc:
        limiter.check("u1")
    assert 1 <= exc.value.retry_after <= 61


def test_keys_are_independent():
    limiter = SlidingWindowRateLimiter(1, clock=FakeClock())
    limiter.check("u1")
    limiter.check("u2")
    with pytest.raises(RateLimitExceeded):
        limiter.check("u1")


def test_window_slides():
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(2, clock=clock)
    limiter.check("u1")
    clock.now += 30
    limiter.check("u1")
    clock.now += 31  # first hit is now outside the window
    assert limiter.check("u1") == 0
    with pytest.raises(RateLimitExceeded) as exc:
        limiter.check("u1")
    assert exc.value.retry_after == 30


def test_reset_clears_state():
    limiter = SlidingWindowRateLimiter(1, clock=FakeClock())
    limiter.check("u1")
    limiter.reset()
    assert limiter.check("u1") == 0


def test_idle_keys_are_dropped():
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(5, clock=clock)
    for user in ("u1", "u2", "u3"):
        limiter.check(user)
    assert limiter.tracked_keys() == 3

    clock.now += 61
    limiter.check("u4")
    assert limiter.tracked_keys() == 1


def test_active_key_survives_sweep():
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(2, clock=clock)
    limiter.check("u1")
    clock.now += 59
    limiter.check("u1")
    clock.now += 2  # sweep runs; the second hit is still inside the window
    limiter.check("u2")
    assert limiter.tracked_keys() == 2
    assert limiter.check("u1") == 0
