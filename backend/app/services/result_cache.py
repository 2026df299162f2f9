from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from threading import Lock
from time import time
from typing import Generic, TypeVar

T = TypeVar("T")
ItemT = TypeVar("ItemT")


def normalize_cache_key(raw_key: str) -> str:
    return raw_key.strip().casefold()


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    value: T
    stored_at: float


@dataclass(frozen=True)
class CacheStats:
    entries: int
    hits: int
    misses: int


class TtlResultCache(Generic[T]):
    """Expiring map from a normalized lookup key to a result set.

    Expiry is evaluated against the clock at read time; stale entries are
    dropped lazily on the next read of their key or on any write, so no
    eviction thread is needed.
    """

    def __init__(
        self,
        *,
        ttl_seconds: float,
        name: str = "results",
        clock: Callable[[], float] = time,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self._ttl_seconds = ttl_seconds
        self._name = name
        self._clock = clock
        self._lock = Lock()
        self._entries: dict[str, CacheEntry[T]] = {}
        self._hits = 0
        self._misses = 0

    @property
    def name(self) -> str:
        return self._name

    @property
    def ttl_seconds(self) -> float:
        return self._ttl_seconds

    def get(self, key: str) -> T | None:
        normalized = normalize_cache_key(key)
        now = self._clock()
        with self._lock:
            entry = self._entries.get(normalized)
            if entry is None:
                self._misses += 1
                return None
            if not self._is_fresh(entry, now):
                del self._entries[normalized]
                self._misses += 1
                return None
            self._hits += 1
            return entry.value

    def put(self, key: str, value: T) -> None:
        normalized = normalize_cache_key(key)
        now = self._clock()
        with self._lock:
            stale_keys = [
                stale_key
                for stale_key, entry in self._entries.items()
                if not self._is_fresh(entry, now)
            ]
            for stale_key in stale_keys:
                del self._entries[stale_key]
            self._entries[normalized] = CacheEntry(value=value, stored_at=now)

    def invalidate(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(normalize_cache_key(key), None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def stats(self) -> CacheStats:
        now = self._clock()
        with self._lock:
            live = sum(1 for entry in self._entries.values() if self._is_fresh(entry, now))
            return CacheStats(entries=live, hits=self._hits, misses=self._misses)

    def __len__(self) -> int:
        return self.stats().entries

    def _is_fresh(self, entry: CacheEntry[T], now: float) -> bool:
        return now - entry.stored_at < self._ttl_seconds


@dataclass(frozen=True)
class Page(Generic[ItemT]):
    items: tuple[ItemT, ...]
    page: int
    page_size: int
    total: int
    has_more: bool


def paginate(superset: Sequence[ItemT], page: int, page_size: int) -> Page[ItemT]:
    """Slice one 1-indexed page out of a cached superset.

    A page past the end is empty with `has_more=False`.
    """
    if page < 1:
        raise ValueError("page must be >= 1")
    if page_size < 1:
        raise ValueError("page_size must be >= 1")

    total = len(superset)
    start = (page - 1) * page_size
    items = tuple(superset[start : start + page_size])
    return Page(
        items=items,
        page=page,
        page_size=page_size,
        total=total,
        has_more=page * page_size < total,
    )
