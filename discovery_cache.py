# discovery_cache.py

from __future__ import annotations

import threading
import time
from typing import Any, Callable


DEFAULT_TTL_S = 300.0


class DiscoveryCache:
    """Keyed TTL cache for discovery payloads (account, device list, endpoint graph).

    Entries are never evicted; a stale entry is simply ignored on read and
    overwritten by the next set. Concurrent misses both fetch; last set wins.
    """

    def __init__(self, ttl_s: float = DEFAULT_TTL_S, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl_s = float(ttl_s)
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, tuple[float, Any]] = {}

    @property
    def ttl_s(self) -> float:
        return self._ttl_s

    def get(self, key: str) -> Any | None:
        if self._ttl_s <= 0:
            return None
        with self._lock:
            entry = self._entries.get(key)
        if entry is None:
            return None
        inserted_at, value = entry
        age = self._clock() - inserted_at
        if age < 0 or age >= self._ttl_s:
            return None
        return value

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._entries[key] = (self._clock(), value)
