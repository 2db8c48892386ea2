"""Recent style conversions a user can switch back to."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import asdict, dataclass
from typing import Callable

logger = logging.getLogger(__name__)

MAX_HISTORY_ENTRIES = 10
HISTORY_TTL_SECONDS = 3600.0


@dataclass(slots=True, frozen=True)
class GenerationEntry:
    """One successful conversion whose result is a remote URL."""

    id: str
    image_url: str
    timestamp: float
    style: str


class GenerationHistory:
    """Newest-first list of conversions, capped and expiring."""

    def __init__(
        self,
        entries: list[GenerationEntry] | None = None,
        *,
        clock: Callable[[], float] = time.time,
        max_entries: int = MAX_HISTORY_ENTRIES,
        ttl: float = HISTORY_TTL_SECONDS,
    ) -> None:
        self._clock = clock
        self._max_entries = max_entries
        self._ttl = ttl
        self._entries = list(entries or [])
        self.prune()

    @property
    def entries(self) -> tuple[GenerationEntry, ...]:
        return tuple(self._entries)

    def prune(self) -> None:
        """Drop expired entries."""

        cutoff = self._clock() - self._ttl
        self._entries = [entry for entry in self._entries if entry.timestamp > cutoff][: self._max_entries]

    def add(self, image_url: str, style: str) -> GenerationEntry | None:
        """Record a conversion; embedded data URIs are not kept."""

        if not image_url.startswith(("http://", "https://")):
            logger.debug("Skipping non-URL conversion result in history")
            return None
        now = self._clock()
        entry = GenerationEntry(id=f"gen-{int(now * 1000)}", image_url=image_url, timestamp=now, style=style)
        self._entries = [entry, *self._entries]
        self.prune()
        return entry

    def find(self, entry_id: str) -> GenerationEntry | None:
        self.prune()
        return next((entry for entry in self._entries if entry.id == entry_id), None)

    def alternatives(self, current: str | None) -> list[GenerationEntry]:
        """Entries other than the one currently shown."""

        self.prune()
        return [entry for entry in self._entries if entry.image_url != current]

    def to_json(self) -> str:
        return json.dumps([asdict(entry) for entry in self._entries])

    @classmethod
    def from_json(cls, raw: str | None, **kwargs) -> "GenerationHistory":
        if not raw:
            return cls(**kwargs)
        try:
            payload = json.loads(raw)
            entries = [GenerationEntry(**item) for item in payload]
        except (ValueError, TypeError) as exc:
            logger.warning("Discarding unreadable generation history: %s", exc)
            entries = []
        return cls(entries, **kwargs)
