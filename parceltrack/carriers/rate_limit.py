"""
Key-value store with TTL semantics, used to enforce "one live fetch per tracking number per window".
Adapters take the store as a constructor argument; the default is process-wide and in-memory,
so a restart simply forgets the window.
"""
from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Optional, Protocol, Tuple


class RateLimitStore(Protocol):
    def get(self, key: str) -> Optional[float]: ...
    def add(self, key: str, value: float, ttl_s: float) -> bool: ...


class TTLStore:
    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._data: Dict[str, Tuple[float, float]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str) -> Optional[Tuple[float, float]]:
        entry = self._data.get(key)
        if entry is not None and self._clock() >= entry[1]:
            del self._data[key]
            return None
        return entry

    def get(self, key: str) -> Optional[float]:
        with self._lock:
            entry = self._live(key)
            return entry[0] if entry else None

    def add(self, key: str, value: float, ttl_s: float) -> bool:
        """Set `key` only if it is absent or expired. Atomic."""
        with self._lock:
            if self._live(key) is not None:
                return False
            self._data[key] = (value, self._clock() + ttl_s)
            return True

    def clear(self):
        with self._lock:
            self._data.clear()


def try_acquire(store: RateLimitStore, key: str, window_s: float) -> bool:
    """True if no live fetch for `key` happened inside the window; records this one."""
    return store.add(key, time.time(), window_s)


# shared default, keyed by tracking number
_DEFAULT_STORE = TTLStore()


def default_store() -> TTLStore:
    return _DEFAULT_STORE
