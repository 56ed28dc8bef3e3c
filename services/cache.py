#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Enrichment result caches for Vidrich.

InMemoryEnrichmentCache keeps entries in-process on top of LRUCache.
RemoteEnrichmentCache talks to a shared key/value cache service over HTTP.
TieredEnrichmentCache chains the two.
"""

import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional
from urllib.parse import quote

import httpx

from config import config
from logging_config import StructuredLogger
from models import CacheEntry
from utils import LRUCache

logger = StructuredLogger(__name__)

CACHE_ENTRY_TYPE = "video_metadata"


class EnrichmentCache(ABC):
    """Interface shared by all enrichment caches.

    Implementations return only valid (unexpired) entries from get().
    Writes replace whole entries, so concurrent writers resolve to last write wins.
    """

    name: str = "cache"

    @abstractmethod
    async def get(self, identifier: str) -> Optional[CacheEntry]:
        """Return a valid entry or None."""

    @abstractmethod
    async def put(self, identifier: str, entry: CacheEntry) -> None:
        """Store an entry, replacing any previous one."""

    @abstractmethod
    async def clear(self) -> int:
        """Drop all entries; returns how many were dropped (-1 if unknown)."""

    @abstractmethod
    async def get_stats(self) -> Dict[str, Any]:
        """Usage statistics."""

    async def close(self) -> None:
        """Release network resources, if any."""


class InMemoryEnrichmentCache(EnrichmentCache):
    """Process-local cache with LRU eviction."""

    name = "memory"

    def __init__(self, maxsize: int = config.CACHE_MAX_SIZE,
                 clock: Callable[[], float] = time.time):
        self._clock = clock
        self._store = LRUCache(maxsize=maxsize)

    async def get(self, identifier: str) -> Optional[CacheEntry]:
        entry = await self._store.get(identifier)
        if entry is None:
            return None
        if not entry.is_valid(self._clock()):
            await self._store.remove(identifier)
            logger.debug(f"Cache entry expired for {identifier}")
            return None
        return entry

    async def put(self, identifier: str, entry: CacheEntry) -> None:
        await self._store.put(identifier, entry)

    async def clear(self) -> int:
        return await self._store.clear()

    async def get_stats(self) -> Dict[str, Any]:
        stats = await self._store.get_stats()
        stats["backend"] = self.name
        return stats


class RemoteEnrichmentCache(EnrichmentCache):
    """Cache held by a remote key/value service.

    Entries travel as `{key, value, metadata}` documents. The service being
    down degrades to cache misses and skipped writes; it never fails an
    enrichment.
    """

    name = "remote"

    def __init__(self, base_url: str = config.REMOTE_CACHE_URL,
                 timeout_seconds: float = config.REMOTE_CACHE_TIMEOUT_SECONDS,
                 client: Optional[httpx.AsyncClient] = None,
                 clock: Callable[[], float] = time.time):
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)
        self._clock = clock
        self._stats = {"hits": 0, "misses": 0, "writes": 0, "errors": 0}

    def _url(self, identifier: Optional[str] = None) -> str:
        if identifier is None:
            return f"{self.base_url}/cache"
        return f"{self.base_url}/cache/{quote(identifier, safe='')}"

    async def get(self, identifier: str) -> Optional[CacheEntry]:
        try:
            response = await self._client.get(self._url(identifier))
            if response.status_code == 404:
                self._stats["misses"] += 1
                return None
            response.raise_for_status()
            document = response.json()
            if not isinstance(document, dict):
                raise ValueError("cache document is not a JSON object")
            entry = CacheEntry.from_dict(document["value"])
        except httpx.HTTPError as e:
            self._stats["errors"] += 1
            self._stats["misses"] += 1
            logger.warning(f"Remote cache read failed for {identifier}: {e}", identifier=identifier)
            return None
        except (KeyError, TypeError, ValueError) as e:
            self._stats["errors"] += 1
            self._stats["misses"] += 1
            logger.warning(f"Remote cache returned a malformed entry for {identifier}: {e}")
            return None

        if not entry.is_valid(self._clock()):
            self._stats["misses"] += 1
            return None
        self._stats["hits"] += 1
        return entry

    async def put(self, identifier: str, entry: CacheEntry) -> None:
        document = {
            "key": identifier,
            "value": entry.to_dict(),
            "metadata": {
                "type": CACHE_ENTRY_TYPE,
                "source": entry.strategy_used,
                "created_at": datetime.fromtimestamp(entry.computed_at, tz=timezone.utc).isoformat(),
                "tags": [entry.strategy_used],
            },
            "ttl_seconds": int(entry.ttl_remaining(self._clock())),
        }
        try:
            response = await self._client.put(self._url(identifier), json=document)
            response.raise_for_status()
            self._stats["writes"] += 1
        except httpx.HTTPError as e:
            self._stats["errors"] += 1
            logger.warning(f"Remote cache write failed for {identifier}: {e}", identifier=identifier)

    async def clear(self) -> int:
        try:
            response = await self._client.delete(self._url())
            response.raise_for_status()
        except httpx.HTTPError as e:
            self._stats["errors"] += 1
            logger.warning(f"Remote cache clear failed: {e}")
            return 0
        try:
            body = response.json()
        except ValueError:
            return -1
        if not isinstance(body, dict):
            logger.warning("Remote cache clear returned a non-object body")
            return -1
        try:
            return int(body.get("deleted", -1))
        except (TypeError, ValueError):
            return -1

    async def get_stats(self) -> Dict[str, Any]:
        stats = dict(self._stats)
        lookups = stats["hits"] + stats["misses"]
        stats["hit_ratio"] = stats["hits"] / lookups if lookups else 0.0
        stats["backend"] = self.name
        stats["base_url"] = self.base_url
        return stats

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class TieredEnrichmentCache(EnrichmentCache):
    """Local cache in front of a shared one. Remote hits are promoted locally."""

    name = "tiered"

    def __init__(self, local: EnrichmentCache, remote: EnrichmentCache):
        self.local = local
        self.remote = remote

    async def get(self, identifier: str) -> Optional[CacheEntry]:
        entry = await self.local.get(identifier)
        if entry is not None:
            return entry
        entry = await self.remote.get(identifier)
        if entry is not None:
            await self.local.put(identifier, entry)
        return entry

    async def put(self, identifier: str, entry: CacheEntry) -> None:
        await self.local.put(identifier, entry)
        await self.remote.put(identifier, entry)

    async def clear(self) -> int:
        local_count = await self.local.clear()
        await self.remote.clear()
        return local_count

    async def get_stats(self) -> Dict[str, Any]:
        return {
            "backend": self.name,
            "local": await self.local.get_stats(),
            "remote": await self.remote.get_stats(),
        }

    async def close(self) -> None:
        await self.local.close()
        await self.remote.close()


def create_enrichment_cache(cfg=config) -> EnrichmentCache:
    """Build the cache selected by CACHE_BACKEND (memory, remote or tiered)."""
    backend = (cfg.CACHE_BACKEND or "memory").lower()
    if backend == "remote":
        cache: EnrichmentCache = RemoteEnrichmentCache(cfg.REMOTE_CACHE_URL, cfg.REMOTE_CACHE_TIMEOUT_SECONDS)
    elif backend == "tiered":
        cache = TieredEnrichmentCache(
            InMemoryEnrichmentCache(cfg.CACHE_MAX_SIZE),
            RemoteEnrichmentCache(cfg.REMOTE_CACHE_URL, cfg.REMOTE_CACHE_TIMEOUT_SECONDS),
        )
    else:
        if backend != "memory":
            logger.warning(f"Unknown CACHE_BACKEND '{backend}', using in-memory cache.")
        cache = InMemoryEnrichmentCache(cfg.CACHE_MAX_SIZE)
    logger.info(f"Enrichment cache backend: {cache.name}")
    return cache
