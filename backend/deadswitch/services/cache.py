import threading
from datetime import timedelta
from typing import Any, Hashable

from deadswitch.core.clock import Clock, utcnow

_MISSING = object()


class TTLCache:
    """Small keyed cache with an injected clock and explicit invalidation."""

    def __init__(self, ttl_seconds: float, clock: Clock = utcnow):
        self.ttl = timedelta(seconds=ttl_seconds)
        self.clock = clock
        self._items: dict[Hashable, tuple[Any, Any]] = {}
        self._lock = threading.Lock()

    def get(self, key: Hashable, default: Any = None) -> Any:
        with self._lock:
            item = self._items.get(key, _MISSING)
            if item is _MISSING:
                return default
            value, expires_at = item
            if expires_at <= self.clock():
                del self._items[key]
                return default
            return value

    def set(self, key: Hashable, value: Any) -> None:
        with self._lock:
            self._items[key] = (value, self.clock() + self.ttl)

    def invalidate(self, key: Hashable) -> None:
        with self._lock:
            self._items.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._items.clear()

    def __len__(self) -> int:
        return len(self._items)
