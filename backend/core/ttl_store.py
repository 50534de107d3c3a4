"""
Bounded key/value store with per-entry expiry.

Owned by the component that needs it (pending OAuth and device-code flows)
instead of living in a module-level dict. Expired entries are swept on every
access and the oldest entry is evicted when the store is full.
"""
import time
from collections import OrderedDict
from typing import Any, Callable, Generic, Optional, Tuple, TypeVar

V = TypeVar("V")


class TTLStore(Generic[V]):
    """Insertion-ordered store; entries live for `ttl_seconds` unless overridden."""

    def __init__(
        self,
        ttl_seconds: float,
        max_size: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_size < 1:
            raise ValueError("max_size must be >= 1")
        self.ttl_seconds = ttl_seconds
        self.max_size = max_size
        self._clock = clock
        self._entries: "OrderedDict[str, Tuple[float, V]]" = OrderedDict()

    def put(self, key: str, value: V, ttl_seconds: Optional[float] = None) -> None:
        self.sweep()
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        if key in self._entries:
            del self._entries[key]
        while len(self._entries) >= self.max_size:
            self._entries.popitem(last=False)
        self._entries[key] = (self._clock() + ttl, value)

    def get(self, key: str, default: Any = None) -> Optional[V]:
        self.sweep()
        entry = self._entries.get(key)
        return entry[1] if entry else default

    def pop(self, key: str, default: Any = None) -> Optional[V]:
        self.sweep()
        entry = self._entries.pop(key, None)
        return entry[1] if entry else default

    def sweep(self) -> int:
        """Drop expired entries; returns how many were removed."""
        now = self._clock()
        expired = [key for key, (expires_at, _) in self._entries.items() if expires_at <= now]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        self.sweep()
        return len(self._entries)
