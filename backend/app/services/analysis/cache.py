"""In-process TTL cache shared by the schema catalog and lookup helpers."""
from __future__ import annotations

import time
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Callable, Dict, Hashable, Optional


DEFAULT_MAX_ENTRIES = 1024


@dataclass
class _Entry:
    value: Any
    expires_at: float


class TTLCacheStore:
    """Key/value store with per-entry expiry and a bound on its size.

    Reads and writes are not synchronized: concurrent refreshes of the same key
    simply overwrite each other. Every cached value must therefore be safe to
    recompute from its source at any time.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        max_entries: int = DEFAULT_MAX_ENTRIES,
    ) -> None:
        self._clock = clock
        self._max_entries = max(1, int(max_entries))
        self._entries: Dict[Hashable, _Entry] = {}

    def get(self, key: Hashable) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() >= entry.expires_at:
            self._entries.pop(key, None)
            return None
        return entry.value

    def set(self, key: Hashable, value: Any, ttl_seconds: float) -> None:
        now = self._clock()
        self._entries.pop(key, None)
        if len(self) >= self._max_entries:
            self._prune(now)
        # Oldest insertions go first once expired entries are gone.
        while len(self) >= self._max_entries:
            self._entries.pop(next(iter(self._entries)))
        self._entries[key] = _Entry(value=value, expires_at=now + max(0.0, float(ttl_seconds)))

    def _prune(self, now: float) -> None:
        expired = [key for key, entry in self._entries.items() if now >= entry.expires_at]
        for key in expired:
            del self._entries[key]

    def __len__(self) -> int:
        return len(self._entries)


@lru_cache
def get_cache_store() -> TTLCacheStore:
    return TTLCacheStore()
