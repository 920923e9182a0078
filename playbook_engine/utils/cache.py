from __future__ import annotations
import threading
import time
from typing import Callable, Generic, Optional, TypeVar

from .log import get_child

T = TypeVar("T")

log = get_child("cache")


class SnapshotCache(Generic[T]):
    """Process-wide TTL cache holding one immutable snapshot.

    The loader runs outside the lock; the finished snapshot is swapped in
    under it, so readers see either the previous or the new value, never a
    partially built one. Concurrent readers share the snapshot read-only.
    """

    def __init__(
        self,
        name: str,
        loader: Callable[[], T],
        ttl_seconds: float = 600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self._loader = loader
        self.ttl_seconds = float(ttl_seconds)
        self._clock = clock
        self._lock = threading.RLock()
        self._snapshot: Optional[T] = None
        self._loaded_at: Optional[float] = None

    def is_stale(self) -> bool:
        with self._lock:
            if self._loaded_at is None:
                return True
            return (self._clock() - self._loaded_at) >= self.ttl_seconds

    def load(self) -> T:
        """Build a fresh snapshot and swap it in, regardless of staleness."""
        fresh = self._loader()
        with self._lock:
            self._snapshot = fresh
            self._loaded_at = self._clock()
        log.info("cache refreshed", extra={"cache": self.name, "ttl_seconds": self.ttl_seconds})
        return fresh

    def get(self) -> T:
        with self._lock:
            if self._snapshot is not None and not self.is_stale():
                return self._snapshot
        return self.load()

    def invalidate(self) -> None:
        with self._lock:
            self._snapshot = None
            self._loaded_at = None
        log.info("cache invalidated", extra={"cache": self.name})
