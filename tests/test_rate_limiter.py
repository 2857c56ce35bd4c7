"""Tests for the fixed-window rate limiter."""

import pytest

from lamp.errors import RateLimitError
from lamp.rate_limiter import RateLimiter


class FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def limiter(clock):
    return RateLimiter(limits={"image": 2, "transcribe": 5, "default": 3}, window=60, clock=clock)


def test_allows_up_to_ceiling_then_rejects(limiter):
    assert limiter.check("1.2.3.4", "image") == 1
    assert limiter.check("1.2.3.4", "image") == 0
    with pytest.raises(RateLimitError):
        limiter.check("1.2.3.4", "image")


def test_retry_after_is_remaining_window(limiter, clock):
    limiter.check("a", "image")
    clock.now = 15
    limiter.check("a", "image")
    clock.now = 20
    with pytest.raises(RateLimitError) as exc_info:
        limiter.check("a", "image")
    assert exc_info.value.retry_after == pytest.approx(40)
    assert exc_info.value.category == "image"


def test_window_resets_after_elapsed(limiter, clock):
    limiter.check("a", "image")
    limiter.check("a", "image")
    clock.now = 60
    assert limiter.check("a", "image") == 1


def test_categories_and_identities_are_independent(limiter):
    limiter.check("a", "image")
    limiter.check("a", "image")
    # Same caller, other category; other caller, same category.
    assert limiter.check("a", "transcribe") == 4
    assert limiter.check("b", "image") == 1


def test_unknown_category_uses_default(limiter):
    for _ in range(3):
        limiter.check("a", "other")
    with pytest.raises(RateLimitError):
        limiter.check("a", "other")


def test_rejected_call_does_not_extend_window(limiter, clock):
    limiter.check("a", "image")
    limiter.check("a", "image")
    for _ in range(5):
        with pytest.raises(RateLimitError):
            limiter.check("a", "image")
    clock.now = 60
    assert limiter.check("a", "image") == 1


def test_sweep_removes_only_stale_windows(limiter, clock):
    limiter.check("a", "image")
    clock.now = 30
    limiter.check("b", "image")
    clock.now = 61
    assert limiter.sweep() == 1
    assert len(limiter) == 1
