"""Fixed-window rate governor shared by outbound API callers.

One :class:`RateGovernor` instance is created by the caller that wires the
pipeline together and handed to every component that talks to a rate
limited dependency (``gmail``, ``embedding``). Windows live in memory only.
"""

from __future__ import annotations

import asyncio
import threading
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

import structlog

logger = structlog.get_logger()


def _now_ms() -> float:
    return time.time() * 1000.0


@dataclass(frozen=True)
class RateDecision:
    """Result of a single acquisition attempt."""

    allowed: bool
    remaining: int
    reset_at: float  # epoch milliseconds


@dataclass
class _Window:
    count: int
    window_start: float
    reset_at: float


class RateGovernor:
    """Per-key fixed-window call counter."""

    def __init__(
        self,
        clock: Callable[[], float] = _now_ms,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._clock = clock
        self._sleep = sleep
        self._windows: dict[str, _Window] = {}
        self._lock = threading.Lock()

    def try_acquire(self, key: str, window_ms: int, max_calls: int) -> RateDecision:
        """Take one slot for ``key`` if the current window has room."""
        if window_ms <= 0 or max_calls <= 0:
            raise ValueError("window_ms and max_calls must be positive")

        now = self._clock()
        with self._lock:
            window = self._windows.get(key)
            if window is None or now >= window.reset_at:
                window = _Window(count=1, window_start=now, reset_at=now + window_ms)
                self._windows[key] = window
                return RateDecision(allowed=True, remaining=max_calls - 1, reset_at=window.reset_at)

            if window.count >= max_calls:
                return RateDecision(allowed=False, remaining=0, reset_at=window.reset_at)

            window.count += 1
            return RateDecision(
                allowed=True,
                remaining=max_calls - window.count,
                reset_at=window.reset_at,
            )

    async def acquire(self, key: str, window_ms: int, max_calls: int) -> RateDecision:
        """Wait until a slot for ``key`` is available, then take it."""
        while True:
            decision = self.try_acquire(key, window_ms, max_calls)
            if decision.allowed:
                return decision
            wait_ms = max(decision.reset_at - self._clock(), 1.0)
            logger.debug("rate_limit_wait", key=key, wait_ms=round(wait_ms, 1))
            await self._sleep(wait_ms / 1000.0)

    def reset(self, key: str | None = None) -> None:
        with self._lock:
            if key is None:
                self._windows.clear()
            else:
                self._windows.pop(key, None)


@dataclass(frozen=True)
class RateLimit:
    """A ``(window_ms, max_calls)`` pair bound to a governor key."""

    key: str
    window_ms: int
    max_calls: int

    async def wait(self, governor: RateGovernor) -> RateDecision:
        return await governor.acquire(self.key, self.window_ms, self.max_calls)
