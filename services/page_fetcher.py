#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Watch page fetching for the scraping and LLM strategies.

A single httpx client with browser-like headers, a per-host politeness
delay, and mapping of HTTP statuses and page markers onto the enrichment
error types.
"""

import asyncio
import random
import re
import time
from typing import Callable, Dict, Optional
from urllib.parse import urlparse

import httpx

from config import config
from exceptions import (ContentUnavailableError, RateLimitedError,
                        TimeoutExceededError, TransientError)
from logging_config import StructuredLogger

logger = StructuredLogger(__name__)

USER_AGENTS = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Firefox/121.0",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.2 Safari/605.1.15",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:121.0) Gecko/20100101 Firefox/121.0",
)

DEFAULT_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.5",
    "DNT": "1",
    "Upgrade-Insecure-Requests": "1",
    "Cache-Control": "no-cache",
    "Pragma": "no-cache",
}

# Skips the EU consent interstitial
CONSENT_COOKIES = {"CONSENT": "YES+cb"}

UNAVAILABLE_MARKERS = (
    "Video unavailable",
    "This video is not available",
    "This video is private",
    "This video has been removed",
)
PLAYABILITY_ERROR_PATTERN = re.compile(
    r'"playabilityStatus"\s*:\s*\{\s*"status"\s*:\s*"(ERROR|LOGIN_REQUIRED|UNPLAYABLE)"'
)


def detect_unavailable(html: str) -> Optional[str]:
    """Return a reason when the page says the video cannot be watched."""
    match = PLAYABILITY_ERROR_PATTERN.search(html)
    if match:
        return f"playabilityStatus {match.group(1)}"
    # Only the head of the page; recommendations further down can mention other videos
    head = html[:200000]
    for marker in UNAVAILABLE_MARKERS:
        if marker in head and '"videoDetails"' not in head:
            return marker
    return None


class PageFetcher:
    """Fetches watch pages politely and classifies failures."""

    def __init__(self, client: Optional[httpx.AsyncClient] = None,
                 request_delay_ms: int = config.REQUEST_DELAY_MS,
                 timeout_seconds: float = config.SCRAPE_TIMEOUT_SECONDS,
                 url_template: str = config.WATCH_URL_TEMPLATE,
                 sleep: Callable[[float], object] = asyncio.sleep,
                 clock: Callable[[], float] = time.monotonic):
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=timeout_seconds,
            follow_redirects=True,
            headers=DEFAULT_HEADERS,
            cookies=CONSENT_COOKIES,
        )
        self.request_delay = max(0, request_delay_ms) / 1000.0
        self.url_template = url_template
        self._sleep = sleep
        self._clock = clock
        self._next_slot: Dict[str, float] = {}
        self._host_locks: Dict[str, asyncio.Lock] = {}
        self._stats = {"requests": 0, "errors": 0, "bytes": 0}

    def watch_url(self, video_id: str) -> str:
        return self.url_template.format(video_id=video_id)

    async def _wait_for_host(self, host: str) -> None:
        """Space requests to one host by at least request_delay.

        The lock only guards slot bookkeeping; the wait happens outside it.
        """
        if not self.request_delay:
            return
        lock = self._host_locks.setdefault(host, asyncio.Lock())
        async with lock:
            now = self._clock()
            slot = max(now, self._next_slot.get(host, 0.0))
            self._next_slot[host] = slot + self.request_delay
        wait = slot - now
        if wait > 0:
            logger.debug(f"Waiting {wait:.2f}s before requesting {host}")
            await self._sleep(wait)

    async def fetch(self, video_id: str) -> str:
        """Fetch the watch page HTML for a video.

        Raises:
            ContentUnavailableError: The page is gone or says the video is unavailable.
            RateLimitedError: 429, or a 403 anti-bot block.
            TimeoutExceededError: The request timed out.
            TransientError: 5xx, other statuses, or transport errors.
        """
        url = self.watch_url(video_id)
        await self._wait_for_host(urlparse(url).netloc)
        self._stats["requests"] += 1

        try:
            response = await self._client.get(url, headers={"User-Agent": random.choice(USER_AGENTS)})
        except httpx.TimeoutException as e:
            self._stats["errors"] += 1
            raise TimeoutExceededError(f"Timed out fetching {video_id}: {e}") from e
        except httpx.TransportError as e:
            self._stats["errors"] += 1
            raise TransientError(f"Transport error fetching {video_id}: {e}") from e

        status = response.status_code
        if status in (404, 410):
            raise ContentUnavailableError(f"Video not found (HTTP {status}): {video_id}")
        if status == 429:
            self._stats["errors"] += 1
            retry_after = response.headers.get("Retry-After", "")
            raise RateLimitedError(
                f"Rate limited fetching {video_id} (HTTP 429)",
                retry_after=int(retry_after) if retry_after.isdigit() else 30
            )
        if status == 403:
            self._stats["errors"] += 1
            raise RateLimitedError(f"Access forbidden fetching {video_id} (HTTP 403)")
        if status >= 500:
            self._stats["errors"] += 1
            raise TransientError(f"Server error fetching {video_id} (HTTP {status})")
        if status != 200:
            self._stats["errors"] += 1
            raise TransientError(f"Unexpected HTTP {status} fetching {video_id}")

        html = response.text
        self._stats["bytes"] += len(html)
        reason = detect_unavailable(html)
        if reason:
            raise ContentUnavailableError(f"Video is unavailable or private ({reason}): {video_id}")
        return html

    def get_stats(self) -> Dict[str, int]:
        return dict(self._stats)

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
