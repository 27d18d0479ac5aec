"""Disk-backed cache service.

Uses diskcache so cached entries survive restarts when a cache directory is
configured; without one, a temporary directory is created and removed again
on shutdown.
"""

import shutil
import tempfile
from typing import Any, Dict, Optional

from diskcache import Cache
from loguru import logger

from clinical_platform.services.base import CacheService

_MISSING = object()


class DiskCacheService(CacheService):
    """Cache service backed by ``diskcache.Cache``.

    Features:
    - Per-entry expiry (defaults to ``default_ttl`` seconds)
    - LRU eviction once ``size_limit`` bytes are used
    - Hit/miss statistics
    """

    def __init__(
        self,
        cache_dir: Optional[str] = None,
        default_ttl: int = 3600,
        size_limit: int = 256 * 1024 * 1024
    ):
        """Initialize the cache service.

        Args:
            cache_dir: Directory for cache storage (temporary if None)
            default_ttl: Entry lifetime in seconds when ``set`` gets no ttl
            size_limit: Maximum cache size in bytes
        """
        self.cache_dir = cache_dir
        self.default_ttl = default_ttl
        self.size_limit = size_limit
        self._cache: Optional[Cache] = None
        # Temporary directory created by this service, removed on shutdown
        self._owned_dir: Optional[str] = None
        self.hits = 0
        self.misses = 0

    @property
    def cache(self) -> Cache:
        return self._open()

    def _open(self) -> Cache:
        if self._cache is None:
            directory = self.cache_dir
            if directory is None:
                directory = self._owned_dir = tempfile.mkdtemp(prefix="clinical-cache-")
            self._cache = Cache(
                directory=directory,
                size_limit=self.size_limit,
                eviction_policy='least-recently-used'
            )
            logger.info(f"Disk cache opened at {self._cache.directory}")
        return self._cache

    async def initialize(self) -> None:
        self._open()

    async def get(self, key: str, default: Any = None) -> Any:
        value = self.cache.get(key, default=_MISSING)
        if value is _MISSING:
            self.misses += 1
            return default
        self.hits += 1
        return value

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        self.cache.set(key, value, expire=ttl if ttl is not None else self.default_ttl)

    async def delete(self, key: str) -> bool:
        return bool(self.cache.delete(key))

    async def clear(self) -> None:
        cleared = self.cache.clear()
        logger.info(f"Cache cleared: {cleared} entries removed")

    def get_stats(self) -> Dict[str, Any]:
        total = self.hits + self.misses
        return {
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": self.hits / total if total else 0.0,
            "entries": len(self.cache),
            "size_bytes": self.cache.volume(),
        }

    async def shutdown(self) -> None:
        if self._cache is not None:
            self._cache.close()
            self._cache = None
        if self._owned_dir is not None:
            shutil.rmtree(self._owned_dir, ignore_errors=True)
            logger.debug(f"Removed temporary cache directory {self._owned_dir}")
            self._owned_dir = None

    async def health_check(self) -> Dict[str, Any]:
        return {"healthy": True, **self.get_stats()}
