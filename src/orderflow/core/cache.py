"""Process-local memo cache.

Used for values that are cheap to keep in memory for the lifetime of a
worker: raw status -> normalized status per allowed-set signature, and the
allowed-status set introspected from the schema. ``clear`` exists so tests
and schema changes can drop stale entries.
"""

from __future__ import annotations

import time
from collections import OrderedDict
from typing import Any, Hashable


class MemoCache:
    """Bounded LRU dict with optional per-entry TTL.

    Args:
        max_entries: Oldest entries are evicted past this size.
        ttl_seconds: Entry lifetime; None keeps entries until evicted.
    """

    def __init__(self, max_entries: int = 10_000, ttl_seconds: float | None = None) -> None:
        self._max_entries = max_entries
        self._ttl = ttl_seconds
        self._data: OrderedDict[Hashable, tuple[float, Any]] = OrderedDict()

    def get(self, key: Hashable, default: Any = None) -> Any:
        entry = self._data.get(key)
        if entry is None:
            return default
        stored_at, value = entry
        if self._ttl is not None and time.monotonic() - stored_at > self._ttl:
            del self._data[key]
            return default
        self._data.move_to_end(key)
        return value

    def set(self, key: Hashable, value: Any) -> None:
        self._data[key] = (time.monotonic(), value)
        self._data.move_to_end(key)
        while len(self._data) > self._max_entries:
            self._data.popitem(last=False)

    def __contains__(self, key: Hashable) -> bool:
        return self.get(key, _MISSING) is not _MISSING

    def __len__(self) -> int:
        return len(self._data)

    def clear(self) -> None:
        self._data.clear()


_MISSING = object()
