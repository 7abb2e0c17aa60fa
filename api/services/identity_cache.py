"""TTL-bounded cache of resolved node identities.

Each resolver owns its own cache. Entries become unreturnable once they are
older than the TTL; expired entries are reaped lazily on lookup or with an
explicit :meth:`IdentityCache.purge_expired` sweep.
"""

import threading
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Optional

from api.errors import IdentityCacheError
from api.models import NodeIdentityInfo

CACHE_TTL = timedelta(minutes=60)


@dataclass
class CacheEntry:
    info: NodeIdentityInfo
    inserted_at: float

    def is_expired(self, now: float, ttl: float) -> bool:
        return now - self.inserted_at > ttl


class IdentityCache:
    """Thread-safe TTL store keyed by instance id."""

    def __init__(
        self,
        ttl: timedelta = CACHE_TTL,
        clock: Callable[[], float] = time.monotonic,
    ):
        if ttl.total_seconds() <= 0:
            raise ValueError(f"Cache TTL must be positive, got {ttl}")
        self._ttl = ttl.total_seconds()
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    @property
    def ttl(self) -> timedelta:
        return timedelta(seconds=self._ttl)

    def put(self, info: NodeIdentityInfo) -> None:
        """Insert or replace the entry for ``info``, restarting its TTL."""
        key = info.instance_id
        if not key:
            raise IdentityCacheError(f"Empty cache key for {info!r}")

        entry = CacheEntry(info=info.model_copy(deep=True), inserted_at=self._clock())
        with self._lock:
            self._entries[key] = entry

    def get(self, instance_id: str) -> Optional[NodeIdentityInfo]:
        """Return the cached identity, or None if absent or expired."""
        with self._lock:
            entry = self._entries.get(instance_id)
            if entry is None:
                return None
            if entry.is_expired(self._clock(), self._ttl):
                del self._entries[instance_id]
                return None
            return entry.info.model_copy(deep=True)

    def delete(self, instance_id: str) -> bool:
        with self._lock:
            return self._entries.pop(instance_id, None) is not None

    def purge_expired(self) -> int:
        """Drop every expired entry and return how many were removed."""
        with self._lock:
            now = self._clock()
            expired = [k for k, e in self._entries.items() if e.is_expired(now, self._ttl)]
            for key in expired:
                del self._entries[key]
            return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
