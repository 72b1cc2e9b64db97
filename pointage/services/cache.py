from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Hashable
from datetime import date, datetime, timedelta
from typing import Any, TypeVar

from pointage.clock import Clock
from pointage.services.logical_day import logical_date_for

logger = logging.getLogger("pointage.cache")

T = TypeVar("T")


class ReadCache:
    """Short-lived memoization for aggregate reads.

    Entries for the open logical day expire quickly, closed days are kept longer.
    Any write anywhere calls :meth:`invalidate_all`.
    """

    def __init__(self, clock: Clock, *, open_day_ttl_seconds: int = 30, closed_day_ttl_seconds: int = 300):
        self._clock = clock
        self._open_day_ttl = timedelta(seconds=open_day_ttl_seconds)
        self._closed_day_ttl = timedelta(seconds=closed_day_ttl_seconds)
        self._entries: dict[Hashable, tuple[datetime, Any]] = {}
        self._lock = threading.Lock()

    def ttl_for_day(self, day: date | None) -> timedelta:
        if day is None or day >= logical_date_for(self._clock.now()):
            return self._open_day_ttl
        return self._closed_day_ttl

    def get(self, key: Hashable) -> Any | None:
        now = self._clock.now()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if now >= expires_at:
                del self._entries[key]
                return None
            return value

    def set(self, key: Hashable, value: Any, *, day: date | None = None) -> None:
        expires_at = self._clock.now() + self.ttl_for_day(day)
        with self._lock:
            self._entries[key] = (expires_at, value)

    def get_or_compute(self, key: Hashable, compute: Callable[[], T], *, day: date | None = None) -> T:
        cached = self.get(key)
        if cached is not None:
            return cached
        value = compute()
        self.set(key, value, day=day)
        return value

    def invalidate_all(self) -> None:
        with self._lock:
            dropped = len(self._entries)
            self._entries.clear()
        if dropped:
            logger.debug("read_cache_invalidated", extra={"dropped_entries": dropped})

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
