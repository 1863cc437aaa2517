import threading
from collections import OrderedDict
from time import monotonic
from typing import Callable


class DedupCache:
    """Bounded set of recently seen event keys.

    Entries expire after ttl_seconds and the oldest insertions are evicted
    once max_entries is reached, so memory stays flat for a long-lived feed.
    """

    def __init__(self,
                 max_entries: int = 10_000,
                 ttl_seconds: float = 600.0,
                 clock: Callable[[], float] = monotonic):
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: "OrderedDict[str, float]" = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def seen(self, key: str) -> bool:
        """Record key and report whether it was already seen inside the window"""
        now = self._clock()
        with self._lock:
            self._expire(now)
            if key in self._entries:
                self.hits += 1
                return True

            self._entries[key] = now
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)
            self.misses += 1
            return False

    def __contains__(self, key: str) -> bool:
        with self._lock:
            self._expire(self._clock())
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def _expire(self, now: float) -> None:
        # Insertion order is also age order, so expired keys sit at the front
        cutoff = now - self.ttl_seconds
        while self._entries:
            key, inserted_at = next(iter(self._entries.items()))
            if inserted_at > cutoff:
                break
            self._entries.popitem(last=False)
