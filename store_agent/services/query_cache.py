"""
TTL cache for answered queries.

The in-memory implementation is process local; a shared implementation only needs
to provide the same four coroutines.
"""

import asyncio
import copy
from abc import ABC, abstractmethod
from collections import OrderedDict
from time import monotonic
from typing import Any, Optional, Tuple

from ..utils.config import CacheConfig, config
from ..utils.logging_config import get_logger

logger = get_logger(__name__)


class QueryCache(ABC):
    """Key/value cache with per-entry expiry."""

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        """Return the cached value, or None when missing or expired."""

    @abstractmethod
    async def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        """Store a value for ttl_seconds (the configured default when None)."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        pass

    @abstractmethod
    async def clear(self) -> None:
        pass


class InMemoryQueryCache(QueryCache):
    """Monotonic-clock TTL cache bounded by max_entries.

    Values are deep-copied on the way in and out so callers never share state
    with the cache. When full, the oldest entry is evicted.
    """

    def __init__(self, cache_config: Optional[CacheConfig] = None):
        self.config = cache_config or config.cache
        self._entries: 'OrderedDict[str, Tuple[Any, float]]' = OrderedDict()
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    async def get(self, key: str) -> Optional[Any]:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if monotonic() >= expires_at:
                del self._entries[key]
                return None
            return copy.deepcopy(value)

    async def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        ttl = self.config.ttl_seconds if ttl_seconds is None else ttl_seconds
        if ttl <= 0:
            return

        async with self._lock:
            self._entries.pop(key, None)
            while len(self._entries) >= self.config.max_entries > 0:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug(f'Evicted cache entry {evicted}')
            self._entries[key] = (copy.deepcopy(value), monotonic() + ttl)

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._entries.pop(key, None)

    async def clear(self) -> None:
        async with self._lock:
            self._entries.clear()
