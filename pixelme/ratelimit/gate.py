"""Per-client quota for style conversions."""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from typing import Callable

from pixelme.metrics.prometheus_exporter import rate_limit_rejections_total

logger = logging.getLogger(__name__)


class RateLimitExceededError(RuntimeError):
    """Raised when a client has used up its conversions for the window."""

    def __init__(self, retry_after: float) -> None:
        self.retry_after = max(0, math.ceil(retry_after))
        super().__init__(f"Conversion limit reached. {format_retry_after(self.retry_after)}")


def format_retry_after(seconds: float) -> str:
    """Render a wait time the way users read it: ``Try again in 42 minutes.``"""

    seconds = max(0, math.ceil(seconds))
    if seconds >= 3600:
        hours = math.ceil(seconds / 3600)
        return f"Try again in {hours} hour{'s' if hours != 1 else ''}."
    if seconds >= 60:
        minutes = math.ceil(seconds / 60)
        return f"Try again in {minutes} minute{'s' if minutes != 1 else ''}."
    return f"Try again in {seconds} second{'s' if seconds != 1 else ''}."


@dataclass(slots=True)
class RateLimitEntry:
    count: int
    reset_time: float


@dataclass(slots=True, frozen=True)
class RateLimitStatus:
    remaining: int
    time_until_reset: float
    max_requests: int


class RateLimitStore:
    """In-memory counters keyed by client; expired entries are swept on access."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._entries: dict[str, RateLimitEntry] = {}

    def sweep(self) -> None:
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.reset_time <= now]
        for key in expired:
            del self._entries[key]

    def get(self, key: str) -> RateLimitEntry | None:
        self.sweep()
        return self._entries.get(key)

    def put(self, key: str, entry: RateLimitEntry) -> None:
        self.sweep()
        self._entries[key] = entry

    def __len__(self) -> int:
        self.sweep()
        return len(self._entries)


class RateLimitGate:
    """Admits at most ``max_requests`` conversions per client per window."""

    def __init__(
        self,
        store: RateLimitStore,
        max_requests: int = 5,
        window_seconds: float = 3600.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._max_requests = max_requests
        self._window = window_seconds
        self._clock = clock

    def status(self, client_key: str) -> RateLimitStatus:
        entry = self._store.get(client_key)
        if entry is None:
            return RateLimitStatus(remaining=self._max_requests, time_until_reset=0.0, max_requests=self._max_requests)
        return RateLimitStatus(
            remaining=max(0, self._max_requests - entry.count),
            time_until_reset=max(0.0, entry.reset_time - self._clock()),
            max_requests=self._max_requests,
        )

    def consume(self, client_key: str) -> RateLimitStatus:
        """Count one conversion or raise :class:`RateLimitExceededError`."""

        now = self._clock()
        entry = self._store.get(client_key)
        if entry is None:
            entry = RateLimitEntry(count=0, reset_time=now + self._window)
        if entry.count >= self._max_requests:
            rate_limit_rejections_total.inc()
            logger.info("Rate limit hit for %s", client_key)
            raise RateLimitExceededError(entry.reset_time - now)
        entry.count += 1
        self._store.put(client_key, entry)
        return self.status(client_key)
