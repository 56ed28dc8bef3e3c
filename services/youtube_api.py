#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
YouTube Data API v3 strategy for Vidrich.

Fetches metadata for up to 50 videos per videos.list call, charging the
shared ledger one quota unit per call attempt and mapping API errors onto
enrichment failure kinds.
"""

import asyncio
import random
import time
from typing import Any, Callable, Dict, List, Optional

import isodate
from googleapiclient.discovery import Resource, build
from googleapiclient.errors import HttpError

from config import config
from exceptions import (APIConfigurationError, AppBaseError, ContentUnavailableError, ParseFailureError,
                        QuotaExceededError, RateLimitedError, TransientError)
from ledger import YOUTUBE_PROVIDER, QuotaCostLedger
from logging_config import StructuredLogger
from models import EnrichmentResult, Metadata, RetryPolicy
from services.base import BUDGET_QUOTA, EnrichmentStrategy, FetchContext
from utils import RetryableRequest, SecureApiKeyManager, performance_timer

logger = StructuredLogger(__name__)

YOUTUBE_CATEGORIES = {
    "1": "Film & Animation",
    "2": "Autos & Vehicles",
    "10": "Music",
    "15": "Pets & Animals",
    "17": "Sports",
    "19": "Travel & Events",
    "20": "Gaming",
    "22": "People & Blogs",
    "23": "Comedy",
    "24": "Entertainment",
    "25": "News & Politics",
    "26": "Howto & Style",
    "27": "Education",
    "28": "Science & Technology",
    "29": "Nonprofits & Activism",
}
THUMBNAIL_PREFERENCE = ("maxres", "standard", "high", "medium", "default")
SHORT_MAX_SECONDS = 60
QUOTA_REASONS = ("quotaExceeded", "dailyLimitExceeded")
RATE_LIMIT_REASONS = ("rateLimitExceeded", "userRateLimitExceeded")


def map_http_error(error: HttpError) -> AppBaseError:
    """Translate a Google API HttpError into an application error."""
    status_code = int(getattr(error.resp, "status", 500) or 500)
    content = getattr(error, "content", b"") or b""
    details = content.decode(config.DEFAULT_ENCODING, errors="replace") if isinstance(content, bytes) else str(content)
    uri = getattr(error, "uri", "")

    if status_code == 403 and any(reason in details for reason in QUOTA_REASONS):
        return QuotaExceededError(f"YouTube API quota exceeded (URI: {uri})")
    if status_code == 429 or (status_code == 403 and any(reason in details for reason in RATE_LIMIT_REASONS)):
        return RateLimitedError(f"YouTube API rate limit hit (HTTP {status_code})")
    if status_code == 404:
        return ContentUnavailableError(f"YouTube resource not found (URI: {uri})")
    if status_code in (400, 401) and ("keyInvalid" in details or "API key not valid" in details):
        return APIConfigurationError("YouTube API key rejected")
    if status_code >= 500:
        return TransientError(f"YouTube API server error (HTTP {status_code})")
    return TransientError(f"YouTube API error (HTTP {status_code}): {details[:200]}")


def metadata_from_item(item: Dict[str, Any]) -> Metadata:
    """Build Metadata from a videos.list resource (snippet, contentDetails, statistics).

    Raises:
        ParseFailureError: If the snippet has no title.
    """
    snippet = item.get("snippet", {}) or {}
    title = (snippet.get("title") or "").strip()
    if not title:
        raise ParseFailureError(f"videos.list item {item.get('id')} has no title")
    content_details = item.get("contentDetails", {}) or {}
    statistics = item.get("statistics", {}) or {}

    duration_seconds = None
    duration_iso = content_details.get("duration")
    if duration_iso:
        try:
            duration_seconds = int(isodate.parse_duration(duration_iso).total_seconds())
        except (isodate.ISO8601Error, TypeError, ValueError) as e:
            logger.warning(f"Could not parse video duration '{duration_iso}': {e}")

    thumbnails = snippet.get("thumbnails", {}) or {}
    thumbnail_url = next(
        (thumbnails[size]["url"] for size in THUMBNAIL_PREFERENCE if thumbnails.get(size, {}).get("url")),
        None
    )

    category_id = snippet.get("categoryId")
    category = YOUTUBE_CATEGORIES.get(str(category_id), "Unknown") if category_id is not None else None

    def _count(key: str) -> Optional[int]:
        value = statistics.get(key)
        return int(value) if value is not None and str(value).isdigit() else None

    return Metadata(
        title=title,
        channel_name=snippet.get("channelTitle"),
        channel_id=snippet.get("channelId"),
        duration_seconds=duration_seconds,
        view_count=_count("viewCount"),
        like_count=_count("likeCount"),
        comment_count=_count("commentCount"),
        category=category,
        published_at=snippet.get("publishedAt"),
        tags=list(snippet.get("tags", []) or []),
        is_short=bool(duration_seconds and duration_seconds <= SHORT_MAX_SECONDS),
        description=snippet.get("description"),
        thumbnail_url=thumbnail_url,
        is_livestream=snippet.get("liveBroadcastContent", "none") in ("live", "upcoming"),
    )


class OfficialAPIStrategy(EnrichmentStrategy):
    """Enriches identifiers with the YouTube Data API (videos.list)."""

    name = "api"
    provider = YOUTUBE_PROVIDER
    budget_kind = BUDGET_QUOTA

    # API quota costs for the endpoints this strategy calls
    API_COST = {
        "videos.list": 1,
    }

    def __init__(self, ledger: QuotaCostLedger, api_key: Optional[str] = None,
                 youtube: Optional[Resource] = None,
                 retry_policy: Optional[RetryPolicy] = None,
                 batch_size: int = config.API_BATCH_SIZE,
                 timeout_seconds: float = config.API_TIMEOUT_SECONDS,
                 delay_range_ms: tuple = (config.MIN_DELAY_MS, config.MAX_DELAY_MS),
                 sleep: Callable[[float], Any] = asyncio.sleep):
        """Initialize the strategy.

        Args:
            ledger: Shared quota/cost ledger.
            api_key: YouTube Data API key. If None, loaded via SecureApiKeyManager.
            youtube: Prebuilt API resource (skips build()).
            retry_policy: Retry settings for each videos.list call.
            batch_size: Max ids per call (the API accepts 50).
            timeout_seconds: Timeout for each call attempt.
            delay_range_ms: Min/max random delay between consecutive calls.
            sleep: Awaitable sleep, injectable for tests.

        Raises:
            APIConfigurationError: If the key is missing or the client cannot be built.
        """
        super().__init__(ledger)
        self.key_manager = SecureApiKeyManager(provider="youtube")
        self.max_batch_size = max(1, min(batch_size, 50))
        self.retry_policy = retry_policy or RetryPolicy()
        self.timeout_seconds = timeout_seconds
        self.delay_range_ms = delay_range_ms
        self._sleep = sleep

        if youtube is not None:
            self.api_key = api_key or ""
            self.youtube = youtube
        else:
            self.api_key = api_key if api_key is not None else self.key_manager.get_key()
            if not self.api_key:
                logger.critical("YouTube API key is missing.")
                raise APIConfigurationError("YouTube API Key is not configured.")
            self.key_manager.validate_key(self.api_key)
            try:
                # cache_discovery=False prevents issues with stale discovery documents
                self.youtube = build("youtube", "v3", developerKey=self.api_key, cache_discovery=False)
            except Exception as e:
                logger.critical(f"Error initializing YouTube API client build: {e}", error=str(e), exc_info=True)
                raise APIConfigurationError(f"Could not initialize YouTube API service: {e}") from e

        self.api_calls_count = 0
        self.api_quota_used = 0
        self.last_request_time_ms = 0.0
        logger.info("YouTube API strategy initialized.", batch_size=self.max_batch_size)

    def estimated_cost(self) -> float:
        return float(self.API_COST["videos.list"])

    async def _wait_for_rate_limit(self) -> float:
        """Keep a small random gap between consecutive calls.

        Returns:
            float: The delay applied in milliseconds.
        """
        low, high = self.delay_range_ms
        if high <= 0:
            return 0.0
        now_ms = time.monotonic() * 1000
        elapsed_ms = now_ms - self.last_request_time_ms
        required_delay_ms = random.uniform(low, high)

        actual_delay_ms = 0.0
        if elapsed_ms < required_delay_ms:
            actual_delay_ms = required_delay_ms - elapsed_ms
            await self._sleep(actual_delay_ms / 1000.0)
        self.last_request_time_ms = now_ms + actual_delay_ms
        return actual_delay_ms

    async def _list_videos(self, ids: List[str]) -> Dict[str, Any]:
        """One videos.list attempt, charged to the ledger before it leaves the process."""
        cost = self.API_COST["videos.list"]
        if not await self.ledger.try_reserve_quota(self.provider, cost):
            raise QuotaExceededError("YouTube API quota budget exhausted")

        await self._wait_for_rate_limit()
        request = self.youtube.videos().list(
            part="snippet,contentDetails,statistics",
            id=",".join(ids),
            maxResults=len(ids)
        )
        loop = asyncio.get_running_loop()
        try:
            response = await loop.run_in_executor(None, request.execute)
        except HttpError as e:
            raise map_http_error(e) from e
        except OSError as e:
            # Connection never established; the provider did not count it
            await self.ledger.release_quota(self.provider, cost)
            raise TransientError(f"Network error calling YouTube API: {e}") from e

        self.api_calls_count += 1
        self.api_quota_used += cost
        return response

    async def fetch_batch(self, identifiers: List[str],
                          context: Optional[FetchContext] = None) -> List[EnrichmentResult]:
        policy = self.retry_policy_for(context)
        results: List[EnrichmentResult] = []
        for i in range(0, len(identifiers), self.max_batch_size):
            results.extend(await self._fetch_chunk(identifiers[i:i + self.max_batch_size], policy))
        return results

    async def _fetch_chunk(self, ids: List[str], policy: RetryPolicy) -> List[EnrichmentResult]:
        if not ids:
            return []
        logger.debug(f"Calling videos.list API for {len(ids)} IDs: {ids[0]}...")

        try:
            with performance_timer("youtube_videos_list", threshold_ms=1000):
                response = await RetryableRequest.execute_with_retry(
                    self._list_videos,
                    ids,
                    max_retries=policy.retry_attempts,
                    backoff=policy.backoff(),
                    timeout_seconds=self.timeout_seconds,
                    retry_on_exceptions=(TransientError,),
                    operation_name="videos.list",
                    sleep=self._sleep,
                )
        except QuotaExceededError as e:
            await self.ledger.mark_quota_exhausted(self.provider)
            return [self.failure_from_exception(i, e) for i in ids]
        except Exception as e:
            logger.error(f"videos.list failed for IDs starting with {ids[0]}: {e}", exc_info=False)
            return [self.failure_from_exception(i, e) for i in ids]

        items = {item.get("id"): item for item in response.get("items", []) or []}
        results: List[EnrichmentResult] = []
        for identifier in ids:
            item = items.get(identifier)
            if item is None:
                results.append(self.failure_from_exception(
                    identifier, ContentUnavailableError(f"Video {identifier} not returned by the API (deleted or private)")
                ))
                continue
            try:
                metadata = metadata_from_item(item)
            except ParseFailureError as e:
                results.append(self.failure_from_exception(identifier, e))
                continue
            results.append(self.success(identifier, metadata))

        logger.info(
            f"videos.list returned {len(items)}/{len(ids)} video(s)",
            requested=len(ids),
            returned=len(items)
        )
        return results

    async def fetch(self, identifier: str, context: Optional[FetchContext] = None) -> EnrichmentResult:
        return (await self.fetch_batch([identifier], context))[0]

    def get_stats(self) -> Dict[str, Any]:
        stats = super().get_stats()
        stats.update({
            "api_calls": self.api_calls_count,
            "api_quota_used_estimated": self.api_quota_used,
            "api_key_obfuscated": self.key_manager.obfuscate_key(self.api_key) if self.api_key else "[INJECTED]",
        })
        return stats
