#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Watch page scraping strategy for Vidrich.

Extracts metadata from the public watch page with a chain of heuristics,
most structured first: JSON-LD, the embedded player response, meta tags,
then visible DOM text. All network access goes through a circuit breaker.
"""

import json
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

import isodate
from bs4 import BeautifulSoup

from config import config
from exceptions import ContentUnavailableError, ParseFailureError
from ledger import QuotaCostLedger
from logging_config import StructuredLogger
from models import EnrichmentResult, Metadata
from services.base import EnrichmentStrategy, FetchContext
from services.json_parsing import find_balanced_object
from services.page_fetcher import PageFetcher
from utils import CircuitBreaker, performance_timer

logger = StructuredLogger(__name__)

Heuristic = Callable[[BeautifulSoup, str], Optional[Metadata]]

PLAYER_RESPONSE_PATTERN = re.compile(r'(?:var\s+|window\["|)ytInitialPlayerResponse(?:"\])?\s*=\s*')
CONTROL_CHARS_PATTERN = re.compile(r"[\u0000-\u001F\u007F-\u009F]")
RELATIVE_DATE_PATTERN = re.compile(r"(\d+)\s+(second|minute|hour|day|week|month|year)s?\s+ago", re.IGNORECASE)
VIEW_COUNT_PATTERN = re.compile(r"(\d[\d.,]*)(?:\s*([KMB])\b)?", re.IGNORECASE)
SHORT_MAX_SECONDS = 60

UNIT_SECONDS = {
    "second": 1,
    "minute": 60,
    "hour": 3600,
    "day": 86400,
    "week": 7 * 86400,
    "month": 30 * 86400,
    "year": 365 * 86400,
}
MULTIPLIERS = {"K": 1_000, "M": 1_000_000, "B": 1_000_000_000}


# --- Text helpers ---

def sanitize_title(title: Optional[str]) -> str:
    """Collapse whitespace, drop control characters and the ' - YouTube' suffix."""
    if not title:
        return ""
    cleaned = CONTROL_CHARS_PATTERN.sub("", title)
    cleaned = re.sub(r"\s+", " ", cleaned).strip()
    if cleaned.endswith(" - YouTube"):
        cleaned = cleaned[:-len(" - YouTube")].strip()
    return "" if cleaned == "YouTube" else cleaned


def normalize_view_count(text: Any) -> Optional[int]:
    """Parse counts like '1,234 views', '1.2M views' or '3K'."""
    if text is None:
        return None
    if isinstance(text, (int, float)):
        return int(text)
    match = VIEW_COUNT_PATTERN.search(str(text).replace("\u00a0", " "))
    if not match:
        return None
    number, suffix = match.groups()
    if suffix:
        try:
            return int(float(number.replace(",", "")) * MULTIPLIERS[suffix.upper()])
        except ValueError:
            return None
    digits = re.sub(r"[^\d]", "", number)
    return int(digits) if digits else None


def parse_duration_text(text: Any) -> Optional[int]:
    """Seconds from an ISO 8601 duration ('PT1H2M3S'), 'h:mm:ss', 'mm:ss' or plain seconds."""
    if text is None:
        return None
    if isinstance(text, (int, float)):
        return int(text)
    value = str(text).strip()
    if not value:
        return None
    if value.upper().startswith("P"):
        try:
            return int(isodate.parse_duration(value).total_seconds())
        except (isodate.ISO8601Error, ValueError):
            return None
    if ":" in value:
        parts = value.split(":")
        if not all(p.strip().isdigit() for p in parts) or len(parts) > 3:
            return None
        seconds = 0
        for part in parts:
            seconds = seconds * 60 + int(part)
        return seconds
    return int(value) if value.isdigit() else None


def parse_relative_date(text: Optional[str], now: Optional[datetime] = None) -> Optional[str]:
    """ISO timestamp for '3 weeks ago' style text, or an absolute date if parseable."""
    if not text:
        return None
    now = now or datetime.now(timezone.utc)
    match = RELATIVE_DATE_PATTERN.search(text)
    if match:
        amount, unit = int(match.group(1)), match.group(2).lower()
        return (now - timedelta(seconds=amount * UNIT_SECONDS[unit])).isoformat()
    cleaned = re.sub(r"^(Premiered|Streamed live on|Published on)\s+", "", text.strip())
    for fmt in ("%b %d, %Y", "%d %b %Y", "%Y-%m-%d", "%B %d, %Y"):
        try:
            return datetime.strptime(cleaned, fmt).replace(tzinfo=timezone.utc).isoformat()
        except ValueError:
            continue
    return _iso_date(cleaned)


def _iso_date(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return (dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)).isoformat()


def _to_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return normalize_view_count(value) if isinstance(value, str) else None


def _keywords(value: Any) -> List[str]:
    if isinstance(value, list):
        return [str(v).strip() for v in value if str(v).strip()]
    if isinstance(value, str):
        return [k.strip() for k in value.split(",") if k.strip()]
    return []


# --- Heuristics ---

def from_json_ld(soup: BeautifulSoup, html: str) -> Optional[Metadata]:
    """schema.org VideoObject blocks."""
    for script in soup.find_all("script", attrs={"type": "application/ld+json"}):
        try:
            data = json.loads(script.string or "")
        except ValueError:
            continue
        objects = data if isinstance(data, list) else [data]
        for obj in objects:
            if not isinstance(obj, dict) or obj.get("@type") != "VideoObject":
                continue

            author = obj.get("author")
            if isinstance(author, dict):
                author = author.get("name")
            thumbnail = obj.get("thumbnailUrl")
            if isinstance(thumbnail, list):
                thumbnail = thumbnail[0] if thumbnail else None

            meta = Metadata(
                title=sanitize_title(obj.get("name")),
                description=obj.get("description"),
                duration_seconds=parse_duration_text(obj.get("duration")),
                published_at=_iso_date(obj.get("uploadDate")),
                channel_name=author if isinstance(author, str) else None,
                thumbnail_url=thumbnail,
                category=obj.get("genre"),
                tags=_keywords(obj.get("keywords")),
            )
            stats = obj.get("interactionStatistic") or []
            for stat in stats if isinstance(stats, list) else [stats]:
                if not isinstance(stat, dict):
                    continue
                interaction = str(stat.get("interactionType", ""))
                if isinstance(stat.get("interactionType"), dict):
                    interaction = str(stat["interactionType"].get("@type", ""))
                count = _to_int(stat.get("userInteractionCount"))
                if "WatchAction" in interaction:
                    meta.view_count = count
                elif "LikeAction" in interaction:
                    meta.like_count = count
                elif "CommentAction" in interaction:
                    meta.comment_count = count
            return meta
    return None


def extract_player_response(html: str) -> Optional[Dict[str, Any]]:
    match = PLAYER_RESPONSE_PATTERN.search(html)
    if not match:
        return None
    span = find_balanced_object(html, match.end())
    if not span:
        return None
    try:
        data = json.loads(span)
    except ValueError:
        logger.debug("ytInitialPlayerResponse is not valid JSON")
        return None
    return data if isinstance(data, dict) else None


def from_initial_state(soup: BeautifulSoup, html: str) -> Optional[Metadata]:
    """ytInitialPlayerResponse videoDetails and microformat."""
    data = extract_player_response(html)
    if not data:
        return None
    details = data.get("videoDetails") or {}
    micro = (data.get("microformat") or {}).get("playerMicroformatRenderer") or {}
    if not details and not micro:
        return None

    thumbnails = (details.get("thumbnail") or {}).get("thumbnails") or []
    duration = _to_int(details.get("lengthSeconds")) or _to_int(micro.get("lengthSeconds"))
    title = details.get("title") or ((micro.get("title") or {}).get("simpleText"))
    return Metadata(
        title=sanitize_title(title),
        channel_name=details.get("author") or micro.get("ownerChannelName"),
        channel_id=details.get("channelId") or micro.get("externalChannelId"),
        duration_seconds=duration,
        view_count=_to_int(details.get("viewCount")) or _to_int(micro.get("viewCount")),
        category=micro.get("category"),
        published_at=_iso_date(micro.get("publishDate") or micro.get("uploadDate")),
        tags=_keywords(details.get("keywords")),
        is_short=bool(micro.get("isShortsEligible")) or bool(duration and duration <= SHORT_MAX_SECONDS),
        description=details.get("shortDescription"),
        thumbnail_url=thumbnails[-1].get("url") if thumbnails else None,
        is_livestream=bool(details.get("isLiveContent") or details.get("isLive")),
    )


def _meta(soup: BeautifulSoup, **attrs: str) -> Optional[str]:
    tag = soup.find("meta", attrs=attrs)
    content = tag.get("content") if tag else None
    return content.strip() if content else None


def from_meta_tags(soup: BeautifulSoup, html: str) -> Optional[Metadata]:
    """Open Graph, Twitter card and itemprop tags."""
    title = _meta(soup, property="og:title") or _meta(soup, name="twitter:title")
    if not title and soup.title and soup.title.string:
        title = soup.title.string
    author_link = soup.find("link", attrs={"itemprop": "name"})
    meta = Metadata(
        title=sanitize_title(title),
        description=_meta(soup, property="og:description") or _meta(soup, name="description"),
        thumbnail_url=_meta(soup, property="og:image") or _meta(soup, name="twitter:image"),
        duration_seconds=parse_duration_text(_meta(soup, itemprop="duration")),
        published_at=_iso_date(_meta(soup, itemprop="datePublished") or _meta(soup, itemprop="uploadDate")),
        category=_meta(soup, itemprop="genre"),
        view_count=_to_int(_meta(soup, itemprop="interactionCount")),
        channel_id=_meta(soup, itemprop="channelId"),
        channel_name=author_link.get("content") if author_link else None,
        tags=_keywords(_meta(soup, name="keywords")),
    )
    return meta if any(v for v in meta.to_dict().values()) else None


def _text(soup: BeautifulSoup, selectors: Sequence[str]) -> Optional[str]:
    for selector in selectors:
        node = soup.select_one(selector)
        if node:
            text = node.get_text(" ", strip=True)
            if text:
                return text
    return None


def from_dom(soup: BeautifulSoup, html: str) -> Optional[Metadata]:
    """Rendered page text, for pages served without embedded data."""
    title = _text(soup, ("h1.title", "h1.ytd-watch-metadata", "#title h1", "h1"))
    meta = Metadata(
        title=sanitize_title(title),
        channel_name=_text(soup, ("#channel-name a", "#channel-name", "#owner-name a", ".ytd-channel-name a")),
        view_count=normalize_view_count(_text(soup, (".view-count", "#info .view-count", "#count"))),
        published_at=parse_relative_date(_text(soup, ("#info-strings yt-formatted-string", "#date", ".date"))),
        duration_seconds=parse_duration_text(_text(soup, (".ytp-time-duration",))),
        description=_text(soup, ("#description", "#description-inline-expander")),
    )
    return meta if any(v for v in meta.to_dict().values()) else None


DEFAULT_HEURISTICS: Sequence[Heuristic] = (from_json_ld, from_initial_state, from_meta_tags, from_dom)


def extract_metadata(html: str, heuristics: Sequence[Heuristic] = DEFAULT_HEURISTICS) -> Metadata:
    """Run the heuristics in order and merge their output.

    The first heuristic yielding a title provides the base; later ones only
    fill fields that are still missing.

    Raises:
        ParseFailureError: If no heuristic produced a title.
    """
    soup = BeautifulSoup(html, "html.parser")
    result: Optional[Metadata] = None
    partials: List[Metadata] = []

    for heuristic in heuristics:
        found = heuristic(soup, html)
        if found is None:
            continue
        if result is None and found.title:
            result = found
            for earlier in partials:
                result = result.merge_missing(earlier)
        elif result is not None:
            result = result.merge_missing(found)
        else:
            partials.append(found)

    if result is None:
        raise ParseFailureError("No heuristic found a title on the page")
    if result.duration_seconds and not result.is_short and result.duration_seconds <= SHORT_MAX_SECONDS:
        result.is_short = True
    return result


# --- Strategy ---

class ScrapingStrategy(EnrichmentStrategy):
    """Enriches identifiers by scraping the public watch page."""

    name = "scraping"
    provider = "youtube_web"
    max_batch_size = 1
    budget_kind = None

    def __init__(self, ledger: QuotaCostLedger, fetcher: Optional[PageFetcher] = None,
                 breaker: Optional[CircuitBreaker] = None,
                 heuristics: Sequence[Heuristic] = DEFAULT_HEURISTICS):
        super().__init__(ledger)
        self.fetcher = fetcher or PageFetcher()
        self.breaker = breaker or CircuitBreaker(
            "scraping",
            failure_threshold=config.CIRCUIT_BREAKER_THRESHOLD,
            reset_timeout=config.CIRCUIT_BREAKER_RESET_TIMEOUT,
            half_open_max_requests=config.CIRCUIT_HALF_OPEN_REQUESTS,
            success_exceptions=(ContentUnavailableError,),
        )
        self.heuristics = heuristics

    async def fetch(self, identifier: str, context: Optional[FetchContext] = None) -> EnrichmentResult:
        try:
            with performance_timer(f"scrape_{identifier}", threshold_ms=2000):
                html = await self.breaker(self.fetcher.fetch, identifier)
            metadata = extract_metadata(html, self.heuristics)
        except Exception as e:
            return self.failure_from_exception(identifier, e)

        await self.ledger.record(self.provider, 0.0)
        logger.debug(f"Scraped metadata for {identifier}", identifier=identifier, title=metadata.title[:80])
        return self.success(identifier, metadata)

    def get_stats(self) -> Dict[str, Any]:
        stats = super().get_stats()
        stats["circuit_breaker"] = self.breaker.get_stats()
        stats["fetcher"] = self.fetcher.get_stats()
        return stats

    async def close(self) -> None:
        await self.fetcher.close()
