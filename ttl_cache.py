"""
In-memory TTL cache.

One instance is owned by each collaborator (auth, OneMap client, zone
locator) and passed in through its constructor, so tests get isolated
caches and nothing leaks between queries of different clients.

Entries expire lazily on read.  A cached None is a real value: get()
returns the `default` argument only on a miss, and callers that need to
tell the two apart pass the MISSING sentinel.
"""

import logging
import threading
import time
from typing import Any, Callable, Dict, Hashable, Optional, Tuple

logger = logging.getLogger(__name__)

MISSING = object()


class TTLCache:
    """Thread-safe key/value cache with per-entry expiry."""

    def __init__(
        self,
        default_ttl: float = 3600,
        clock: Callable[[], float] = time.monotonic,
        name: str = "cache",
    ):
        self.default_ttl = default_ttl
        self.name = name
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[Hashable, Tuple[float, Any]] = {}
        self._hits = 0
        self._misses = 0

    def get(self, key: Hashable, default: Any = None) -> Any:
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                expires_at, value = entry
                if self._clock() < expires_at:
                    self._hits += 1
                    return value
                del self._entries[key]
            self._misses += 1
            return default

    def set(self, key: Hashable, value: Any, ttl: Optional[float] = None) -> None:
        lifetime = self.default_ttl if ttl is None else ttl
        if lifetime <= 0:
            return
        with self._lock:
            self._entries[key] = (self._clock() + lifetime, value)

    def has(self, key: Hashable) -> bool:
        return self.get(key, MISSING) is not MISSING

    def delete(self, key: Hashable) -> int:
        with self._lock:
            return 1 if self._entries.pop(key, None) is not None else 0

    def clear(self) -> None:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
        logger.info("Cleared %s (%d entries)", self.name, count)

    def stats(self) -> Dict[str, int]:
        with self._lock:
            now = self._clock()
            live = sum(1 for exp, _ in self._entries.values() if now < exp)
            return {"keys": live, "hits": self._hits, "misses": self._misses}
