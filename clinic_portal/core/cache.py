"""In-process cache store with the same surface as CacheManager."""

import fnmatch
import json
from datetime import datetime, timedelta
from typing import Any, Protocol

from clinic_portal.core.clock import Clock, utc_now


class CacheStore(Protocol):
    """JSON cache surface shared by CacheManager and MemoryCacheStore."""

    def get_json(self, key: str) -> Any | None: ...

    def set_json(self, key: str, value: Any, ttl: int | None = None) -> bool: ...

    def delete(self, key: str) -> bool: ...

    def delete_pattern(self, pattern: str) -> int: ...


class MemoryCacheStore:
    """
    Dictionary-backed cache store.

    Values are serialized on write so callers never share mutable state with
    the store. A ``ttl`` behaves like Redis ``SETEX``: the key reads as
    missing once it expires, and expired keys are pruned on every write so
    the store only holds live entries.
    """

    def __init__(self, clock: Clock = utc_now) -> None:
        self.clock = clock
        self._data: dict[str, tuple[str, datetime | None]] = {}

    def _expired(self, expires_at: datetime | None, now: datetime) -> bool:
        return expires_at is not None and now >= expires_at

    def prune(self) -> int:
        """Drop expired keys and return how many were removed."""
        now = self.clock()
        expired = [key for key, (_, at) in self._data.items() if self._expired(at, now)]
        for key in expired:
            del self._data[key]
        return len(expired)

    def get_json(self, key: str) -> Any | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._expired(expires_at, self.clock()):
            del self._data[key]
            return None
        return json.loads(value)

    def set_json(self, key: str, value: Any, ttl: int | None = None) -> bool:
        """Serialize and store a value, replacing any previous one."""
        self.prune()
        expires_at = self.clock() + timedelta(seconds=ttl) if ttl else None
        self._data[key] = (json.dumps(value, default=str), expires_at)
        return True

    def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    def delete_pattern(self, pattern: str) -> int:
        """Delete all keys matching a glob pattern."""
        keys = [key for key in self._data if fnmatch.fnmatchcase(key, pattern)]
        for key in keys:
            del self._data[key]
        return len(keys)

    def __len__(self) -> int:
        return len(self._data)
