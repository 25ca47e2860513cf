from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Mapping

from veoflow.core.config import Settings, get_settings
from veoflow.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


SleepFunc = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RateLimitConfig:
    window_s: float
    # Model id prefix -> admissions per window.
    limits: Mapping[str, int]
    default_limit: int
    min_wait_ms: int


def default_rate_limit_config(settings: Settings | None = None) -> RateLimitConfig:
    settings = settings or get_settings()
    return RateLimitConfig(
        window_s=settings.veo_rate_window_s,
        limits=dict(settings.veo_rate_limits),
        default_limit=settings.veo_rate_limit_default,
        min_wait_ms=settings.veo_rate_min_wait_ms,
    )


@dataclass
class RateWindow:
    window_start: float
    used: int = 0


class ModelRateLimiter:
    """Fixed rolling-window admission control, one window per model id."""

    def __init__(
        self,
        *,
        config: RateLimitConfig | None = None,
        time_source: Callable[[], float] | None = None,
        sleep: SleepFunc | None = None,
    ) -> None:
        self._config = config or default_rate_limit_config()
        self._time = time_source or time.monotonic
        self._sleep = sleep or asyncio.sleep
        self._windows: dict[str, RateWindow] = {}
        self._lock = asyncio.Lock()

    def limit(self, model_id: str) -> int:
        # Longest matching prefix wins.
        best: tuple[int, int] | None = None
        for prefix, value in self._config.limits.items():
            if model_id.startswith(prefix) and (best is None or len(prefix) > best[0]):
                best = (len(prefix), value)
        return best[1] if best is not None else self._config.default_limit

    def window(self, model_id: str) -> RateWindow | None:
        return self._windows.get(model_id)

    async def admit(self, model_id: str) -> None:
        limit = max(1, self.limit(model_id))
        while True:
            async with self._lock:
                now = self._time()
                window = self._windows.get(model_id)
                if window is None:
                    window = RateWindow(window_start=now)
                    self._windows[model_id] = window
                if now - window.window_start >= self._config.window_s:
                    window.window_start = now
                    window.used = 0
                if window.used < limit:
                    window.used += 1
                    return
                observed_start = window.window_start
                wait_s = max(
                    self._config.window_s - (now - window.window_start),
                    self._config.min_wait_ms / 1000.0,
                )
            increment_counter("rate_limit_waits_total")
            logger.info("rate_limit_wait model=%s limit=%s wait_s=%.3f", model_id, limit, wait_s)
            await self._sleep(wait_s)
            async with self._lock:
                window = self._windows[model_id]
                # Reset only if no other waiter already started a fresh window meanwhile.
                if window.window_start == observed_start:
                    window.window_start = self._time()
                    window.used = 0


@dataclass(frozen=True)
class BackoffConfig:
    initial_ms: int
    max_ms: int


def default_backoff_config(settings: Settings | None = None) -> BackoffConfig:
    settings = settings or get_settings()
    return BackoffConfig(
        initial_ms=settings.veo_backoff_initial_ms,
        max_ms=settings.veo_backoff_max_ms,
    )


@dataclass
class BackoffState:
    delay_ms: int


class BackoffController:
    """Exponential delay shared by every model of one client.

    The counter is not reset after a successful generation and is bounded only
    by the ceiling. Call :meth:`reset` to start over.
    """

    def __init__(self, *, config: BackoffConfig | None = None, sleep: SleepFunc | None = None) -> None:
        self._config = config or default_backoff_config()
        self._sleep = sleep or asyncio.sleep
        self._state = BackoffState(delay_ms=self._config.initial_ms)
        self._lock = asyncio.Lock()

    @property
    def current_ms(self) -> int:
        return self._state.delay_ms

    def reset(self) -> None:
        self._state = BackoffState(delay_ms=self._config.initial_ms)

    async def delay(self) -> int:
        # The counter doubles only after a completed sleep; a cancelled wait leaves it unchanged.
        delay_ms = self._state.delay_ms
        increment_counter("quota_backoff_total")
        logger.info("quota_backoff delay_ms=%s", delay_ms)
        await self._sleep(delay_ms / 1000.0)
        async with self._lock:
            self._state.delay_ms = min(self._state.delay_ms * 2, self._config.max_ms)
        return delay_ms
