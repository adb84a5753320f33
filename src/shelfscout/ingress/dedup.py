"""Short-lived cache that suppresses identical resubmissions."""

from __future__ import annotations

import hashlib
import json
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Mapping, Optional

import structlog

logger = structlog.get_logger(__name__)


def payload_hash(urls: Iterable[str], options: Optional[Mapping[str, Any]] = None) -> str:
    """Hash of a submission with URL order and option key order normalised."""
    normalized = {
        "urls": sorted(u.strip() for u in urls),
        "options": dict(options or {}),
    }
    encoded = json.dumps(normalized, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


@dataclass
class DedupEntry:
    request_hash: str
    last_seen_at: float


class DedupCache:
    """
    Remembers recent payload hashes.

    A hash seen within ``window_seconds`` counts as a duplicate. When the cache
    grows past ``max_entries``, entries older than ``retention_seconds`` are
    purged.
    """

    def __init__(
        self,
        window_seconds: float = 5.0,
        max_entries: int = 1000,
        retention_seconds: float = 300.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.window_seconds = window_seconds
        self.max_entries = max_entries
        self.retention_seconds = retention_seconds
        self._clock = clock
        self._entries: Dict[str, DedupEntry] = {}

    def is_duplicate(self, request_hash: str) -> bool:
        entry = self._entries.get(request_hash)
        if entry is None:
            return False
        return self._clock() - entry.last_seen_at < self.window_seconds

    def retry_after(self, request_hash: str) -> float:
        entry = self._entries.get(request_hash)
        if entry is None:
            return 0.0
        return max(0.0, entry.last_seen_at + self.window_seconds - self._clock())

    def register(self, request_hash: str) -> None:
        self._entries[request_hash] = DedupEntry(request_hash, self._clock())
        if len(self._entries) > self.max_entries:
            self.purge()

    def purge(self) -> int:
        cutoff = self._clock() - self.retention_seconds
        stale = [h for h, entry in self._entries.items() if entry.last_seen_at < cutoff]
        for h in stale:
            del self._entries[h]
        logger.debug("Purged dedup cache", removed=len(stale), remaining=len(self._entries))
        return len(stale)

    def __len__(self) -> int:
        return len(self._entries)
