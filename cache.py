"""
cache.py — small TTL cache for secrets and remote lookups.

Collaborators receive a TTLCache through their constructor instead of
keeping module-level dicts, so tests can build a fresh one (or call clear())
and every entry expires on its own.
"""
from __future__ import annotations

import time
from typing import Any, Awaitable, Callable, Hashable, Optional


class TTLCache:
    """Dict-like cache whose entries expire ``ttl`` seconds after being set."""

    def __init__(self, ttl: float = 300.0, max_entries: int = 1024) -> None:
        self.ttl = ttl
        self.max_entries = max_entries
        self._data: dict[Hashable, tuple[float, Any]] = {}

    def __len__(self) -> int:
        self._evict_expired()
        return len(self._data)

    def __contains__(self, key: Hashable) -> bool:
        return self.get(key) is not None

    def get(self, key: Hashable, default: Any = None) -> Any:
        entry = self._data.get(key)
        if entry is None:
            return default
        expires_at, value = entry
        if time.monotonic() >= expires_at:
            del self._data[key]
            return default
        return value

    def set(self, key: Hashable, value: Any) -> None:
        if len(self._data) >= self.max_entries and key not in self._data:
            self._evict_expired()
            if len(self._data) >= self.max_entries:
                # drop the entry closest to expiry
                oldest = min(self._data, key=lambda k: self._data[k][0])
                del self._data[oldest]
        self._data[key] = (time.monotonic() + self.ttl, value)

    async def get_or_set(self, key: Hashable, loader: Callable[[], Awaitable[Any]]) -> Any:
        """Return the cached value, or await ``loader()`` and cache a non-None result."""
        value = self.get(key)
        if value is not None:
            return value
        value = await loader()
        if value is not None:
            self.set(key, value)
        return value

    def clear(self) -> None:
        self._data.clear()

    def _evict_expired(self) -> None:
        now = time.monotonic()
        for key in [k for k, (exp, _) in self._data.items() if now >= exp]:
            del self._data[key]
