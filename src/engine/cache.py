"""In-process caches for configuration snapshots and retrieval results.

Both caches take an explicit ``now`` callable (epoch milliseconds) so tests can
drive expiry deterministically. Neither provides single-flight protection:
concurrent callers racing past an expired entry each recompute the value.

Cache key = sha256 of a key-sorted JSON rendering of the payload, so keys are
stable across runs and independent of dict insertion order.
"""

from __future__ import annotations

import hashlib
import json
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Generic, Optional, TypeVar

T = TypeVar("T")

TTL_CACHE_MAX_ENTRIES = 512

NowFn = Callable[[], int]


def epoch_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class TtlSnapshot(Generic[T]):
    value: T
    fetched_at_epoch_ms: int
    ttl_ms: int

    def is_fresh(self, now_ms: int) -> bool:
        return now_ms - self.fetched_at_epoch_ms < self.ttl_ms


class SnapshotCache(Generic[T]):
    """Holds a single timestamped value with a fixed TTL."""

    def __init__(self, ttl_ms: int, now: NowFn = epoch_ms):
        self.ttl_ms = ttl_ms
        self._now = now
        self._snapshot: Optional[TtlSnapshot[T]] = None

    def get(self) -> Optional[T]:
        snapshot = self._snapshot
        if snapshot is not None and snapshot.is_fresh(self._now()):
            return snapshot.value
        return None

    def set(self, value: T) -> TtlSnapshot[T]:
        self._snapshot = TtlSnapshot(value=value, fetched_at_epoch_ms=self._now(), ttl_ms=self.ttl_ms)
        return self._snapshot

    def clear(self) -> None:
        self._snapshot = None


class TtlCache:
    """Key/value store where each entry expires after its own TTL.

    Expired entries are pruned on every write, and once ``max_entries`` is
    reached the oldest entry is evicted first.
    """

    def __init__(self, now: NowFn = epoch_ms, max_entries: int = TTL_CACHE_MAX_ENTRIES):
        self._now = now
        self.max_entries = max(1, max_entries)
        self._store: dict[str, tuple[Any, int]] = {}

    def get(self, key: str) -> Any | None:
        entry = self._store.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._now() > expires_at:
            # Expired - remove
            del self._store[key]
            return None
        return value

    def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        now = self._now()
        self._prune(now)
        # Re-inserting moves the key to the newest position
        self._store.pop(key, None)
        while len(self._store) >= self.max_entries:
            del self._store[next(iter(self._store))]
        self._store[key] = (value, now + int(ttl_seconds * 1000))

    def _prune(self, now: int) -> None:
        expired = [key for key, (_, expires_at) in self._store.items() if now > expires_at]
        for key in expired:
            del self._store[key]

    def clear(self) -> int:
        """Clear the cache. Returns number of entries cleared."""
        count = len(self._store)
        self._store.clear()
        return count

    def __len__(self) -> int:
        return len(self._store)


def _jsonable(obj: Any) -> Any:
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, dict):
        return {str(k): _jsonable(v) for k, v in obj.items() if v is not None}
    if isinstance(obj, (list, tuple)):
        return [_jsonable(x) for x in obj]
    return obj


def stable_stringify(payload: Any) -> str:
    return json.dumps(_jsonable(payload), sort_keys=True, separators=(",", ":"), default=str)


def hash_payload(payload: Any) -> str:
    return hashlib.sha256(stable_stringify(payload).encode("utf-8")).hexdigest()
