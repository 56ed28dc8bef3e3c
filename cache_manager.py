#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Cache Manager for Vidrich.

Keeps a registry of the enrichment caches and memoized helpers so they can
be cleared and inspected from one place (the /cache and /metrics endpoints).
"""

import asyncio
from typing import Any, Callable, Dict

from logging_config import StructuredLogger

logger = StructuredLogger(__name__)


class CacheManager:
    """Registry of named caches.

    Two kinds are supported: enrichment caches (async `clear()` returning a
    count and async `get_stats()`) and functions decorated with
    `functools.lru_cache`.
    """

    def __init__(self):
        self._caches: Dict[str, Any] = {}
        self._func_caches: Dict[str, Callable] = {}
        self._lock = asyncio.Lock()

    async def register_cache(self, name: str, cache: Any) -> None:
        """Register an enrichment cache under a unique name."""
        async with self._lock:
            if name in self._caches:
                logger.debug(f"Replacing registered cache: {name}")
            self._caches[name] = cache
            logger.debug(f"Registered cache: {name}")

    async def unregister_cache(self, name: str) -> bool:
        async with self._lock:
            return self._caches.pop(name, None) is not None

    def register_func_cache(self, name: str, func: Callable) -> None:
        """Register a function with an @lru_cache decorator."""
        if hasattr(func, 'cache_clear'):
            self._func_caches[name] = func
            logger.debug(f"Registered function cache: {name}")
        else:
            logger.warning(f"Function {name} does not have cache_clear method, not registering")

    async def clear_all_caches(self) -> Dict[str, Any]:
        """Clear every registered cache.

        A cache that fails to clear is reported in the result rather than
        aborting the others.

        Returns:
            dict: Name -> number of removed entries, or an error string.
        """
        logger.info("Clearing all registered caches...")
        results: Dict[str, Any] = {}

        async with self._lock:
            caches = list(self._caches.items())

        for name, cache in caches:
            try:
                results[name] = await cache.clear()
            except Exception as e:
                logger.error(f"Error clearing cache {name}: {e}")
                results[name] = f"Error: {e}"

        func_caches_cleared = 0
        for name, func in self._func_caches.items():
            func.cache_clear()
            func_caches_cleared += 1
        results["function_caches_cleared"] = func_caches_cleared

        logger.info(f"Cache clearing complete. Results: {results}")
        return results

    async def clear_cache_by_name(self, name: str) -> Any:
        """Clear one cache by name.

        Raises:
            ValueError: If no cache is registered under that name.
        """
        if name in self._caches:
            count = await self._caches[name].clear()
            logger.info(f"Cleared cache {name}: {count} items removed")
            return count
        if name in self._func_caches:
            self._func_caches[name].cache_clear()
            logger.info(f"Cleared function cache {name}")
            return "cleared"

        logger.warning(f"Cache {name} not found")
        raise ValueError(f"Cache {name} not found")

    async def get_stats(self) -> Dict[str, Any]:
        """Statistics for all registered caches."""
        stats: Dict[str, Any] = {}

        async with self._lock:
            caches = list(self._caches.items())

        for name, cache in caches:
            try:
                stats[name] = await cache.get_stats()
            except Exception as e:
                logger.error(f"Error getting stats for cache {name}: {e}")
                stats[name] = f"Error: {e}"

        for name, func in self._func_caches.items():
            info = func.cache_info()
            lookups = info.hits + info.misses
            stats[f"func_cache_{name}"] = {
                "hits": info.hits,
                "misses": info.misses,
                "maxsize": info.maxsize,
                "currsize": info.currsize,
                "hit_ratio": info.hits / lookups if lookups else 0
            }

        return stats


# Create a singleton instance
cache_manager = CacheManager()
