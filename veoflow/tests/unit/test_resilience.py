from __future__ import annotations

import asyncio

import pytest

from veoflow.core.config import get_settings
from veoflow.services.resilience import (
    BackoffConfig,
    BackoffController,
    ModelRateLimiter,
    RateLimitConfig,
    default_rate_limit_config,
)


def _limiter(clock, limits: dict[str, int] | None = None) -> ModelRateLimiter:
    config = RateLimitConfig(
        window_s=60.0,
        limits=limits if limits is not None else {"veo-3.0": 10, "veo-3.1": 50},
        default_limit=50,
        min_wait_ms=100,
    )
    return ModelRateLimiter(config=config, time_source=clock, sleep=clock.sleep)


def test_limit_table_by_model_family(clock) -> None:
    limiter = _limiter(clock)
    assert limiter.limit("veo-3.0-generate-001") == 10
    assert limiter.limit("veo-3.0-fast-generate-001") == 10
    assert limiter.limit("veo-3.1-generate-001") == 50
    assert limiter.limit("some-other-model") == 50


def test_limit_prefers_longest_prefix(clock) -> None:
    limiter = _limiter(clock, {"veo-3.0": 10, "veo-3.0-fast": 5})
    assert limiter.limit("veo-3.0-fast-generate-001") == 5
    assert limiter.limit("veo-3.0-generate-001") == 10


def test_default_limits_come_from_settings(monkeypatch) -> None:
    monkeypatch.setenv("VEO_RATE_LIMITS", '{"veo-3.1": 3}')
    get_settings.cache_clear()
    config = default_rate_limit_config()
    assert dict(config.limits) == {"veo-3.1": 3}
    assert config.default_limit == 50


@pytest.mark.asyncio
async def test_admission_beyond_limit_suspends_until_window_resets(clock) -> None:
    limiter = _limiter(clock, {"m": 2})

    await limiter.admit("m")
    clock.now += 10
    await limiter.admit("m")
    assert clock.sleeps == []

    await limiter.admit("m")
    assert clock.sleeps == [50.0]
    window = limiter.window("m")
    assert window.used == 1
    assert window.window_start == 60.0


@pytest.mark.asyncio
async def test_window_resets_after_sixty_seconds(clock) -> None:
    limiter = _limiter(clock, {"m": 2})
    await limiter.admit("m")
    await limiter.admit("m")
    assert limiter.window("m").used == 2

    clock.now += 60
    await limiter.admit("m")
    assert clock.sleeps == []
    assert limiter.window("m").used == 1


@pytest.mark.asyncio
async def test_wait_has_minimum_duration(clock) -> None:
    limiter = _limiter(clock, {"m": 1})
    await limiter.admit("m")
    clock.now = 59.95
    await limiter.admit("m")
    assert clock.sleeps == [pytest.approx(0.1)]


@pytest.mark.asyncio
async def test_windows_are_tracked_per_model(clock) -> None:
    limiter = _limiter(clock, {"a": 1, "b": 1})
    await limiter.admit("a")
    await limiter.admit("b")
    assert clock.sleeps == []
    assert limiter.window("a").used == 1
    assert limiter.window("b").used == 1


@pytest.mark.asyncio
async def test_concurrent_admissions_count_exactly(clock) -> None:
    limiter = _limiter(clock, {"m": 10})
    await asyncio.gather(*(limiter.admit("m") for _ in range(7)))
    assert limiter.window("m").used == 7


@pytest.mark.asyncio
async def test_backoff_doubles_from_floor_to_ceiling(clock) -> None:
    backoff = BackoffController(config=BackoffConfig(initial_ms=250, max_ms=8000), sleep=clock.sleep)

    delays = [await backoff.delay() for _ in range(8)]

    assert delays == [250, 500, 1000, 2000, 4000, 8000, 8000, 8000]
    assert clock.sleeps == [d / 1000.0 for d in delays]
    assert backoff.current_ms == 8000


@pytest.mark.asyncio
async def test_backoff_reset_is_explicit(clock) -> None:
    backoff = BackoffController(config=BackoffConfig(initial_ms=250, max_ms=8000), sleep=clock.sleep)
    await backoff.delay()
    await backoff.delay()
    assert backoff.current_ms == 1000
    backoff.reset()
    assert backoff.current_ms == 250


@pytest.mark.asyncio
async def test_cancelled_backoff_does_not_advance_delay() -> None:
    sleeping = asyncio.Event()

    async def hanging_sleep(seconds: float) -> None:
        sleeping.set()
        await asyncio.Event().wait()

    backoff = BackoffController(config=BackoffConfig(initial_ms=250, max_ms=8000), sleep=hanging_sleep)
    task = asyncio.create_task(backoff.delay())
    await asyncio.wait_for(sleeping.wait(), timeout=1)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert backoff.current_ms == 250
