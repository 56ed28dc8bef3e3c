"""
Tests for the scraping strategy and its page heuristics.
"""
import unittest
import sys
import os
import json
from datetime import datetime, timezone

import httpx
import respx

# Add the parent directory to the path so we can import the application modules
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from exceptions import (ContentUnavailableError, FailureKind, ParseFailureError, RateLimitedError,
                        TimeoutExceededError, TransientError)
from ledger import QuotaCostLedger
from models import EnrichmentFailure, EnrichmentSuccess
from services.page_fetcher import PageFetcher, detect_unavailable
from services.scraper import (ScrapingStrategy, extract_metadata, extract_player_response,
                              normalize_view_count, parse_duration_text, parse_relative_date,
                              sanitize_title)
from utils import CircuitBreaker

VIDEO_ID = "dQw4w9WgXcQ"

PLAYER_RESPONSE = {
    "playabilityStatus": {"status": "OK"},
    "videoDetails": {
        "videoId": VIDEO_ID,
        "title": "Rick Astley - Never Gonna Give You Up (Official Music Video)",
        "lengthSeconds": "213",
        "keywords": ["rick astley", "never gonna give you up"],
        "channelId": "UCuAXFkgsw1L7xaCfnd5JJOw",
        "shortDescription": "The official video for {Never Gonna Give You Up}",
        "viewCount": "1500000000",
        "author": "Rick Astley",
        "isLiveContent": False,
        "thumbnail": {"thumbnails": [{"url": "https://i.ytimg.com/vi/x/default.jpg"},
                                     {"url": "https://i.ytimg.com/vi/x/maxresdefault.jpg"}]},
    },
    "microformat": {"playerMicroformatRenderer": {"category": "Music", "publishDate": "2009-10-24"}},
}

PLAYER_PAGE = (
    "<html><head><title>Rick Astley - Never Gonna Give You Up - YouTube</title>"
    '<meta property="og:title" content="Rick Astley - Never Gonna Give You Up">'
    '<meta itemprop="interactionCount" content="1500000001">'
    '<meta name="keywords" content="rick, astley">'
    "</head><body><script>var ytInitialPlayerResponse = "
    + json.dumps(PLAYER_RESPONSE)
    + ";var meta = {};</script></body></html>"
)

JSON_LD = {
    "@context": "https://schema.org",
    "@type": "VideoObject",
    "name": "Short clip",
    "duration": "PT45S",
    "uploadDate": "2023-05-01T10:00:00Z",
    "author": {"name": "Clip Channel"},
    "interactionStatistic": [
        {"@type": "InteractionCounter", "interactionType": {"@type": "WatchAction"}, "userInteractionCount": 1234},
        {"@type": "InteractionCounter", "interactionType": "https://schema.org/LikeAction", "userInteractionCount": "56"},
    ],
}

JSON_LD_PAGE = (
    '<html><head><script type="application/ld+json">' + json.dumps(JSON_LD) + "</script>"
    '<meta property="og:description" content="From the meta tags">'
    "</head><body></body></html>"
)

DOM_PAGE = (
    "<html><body><h1 class='title'>Plain DOM Title</h1>"
    "<div id='channel-name'><a>DOM Channel</a></div>"
    "<span class='view-count'>1.2M views</span>"
    "</body></html>"
)


class FakeFetcher:
    def __init__(self, pages=None, errors=None):
        self.pages = pages or {}
        self.errors = errors or {}
        self.calls = []
        self.closed = False

    async def fetch(self, video_id):
        self.calls.append(video_id)
        if video_id in self.errors:
            raise self.errors[video_id]
        return self.pages[video_id]

    def get_stats(self):
        return {"requests": len(self.calls)}

    async def close(self):
        self.closed = True


class TestTextHelpers(unittest.TestCase):

    def test_sanitize_title(self):
        self.assertEqual(sanitize_title("  My   Video  - YouTube"), "My Video")
        self.assertEqual(sanitize_title("YouTube"), "")
        self.assertEqual(sanitize_title(None), "")

    def test_normalize_view_count(self):
        self.assertEqual(normalize_view_count("1,234,567 views"), 1234567)
        self.assertEqual(normalize_view_count("1.2M views"), 1200000)
        self.assertEqual(normalize_view_count("3K"), 3000)
        self.assertEqual(normalize_view_count(42), 42)
        self.assertIsNone(normalize_view_count("No views"))

    def test_parse_duration_text(self):
        self.assertEqual(parse_duration_text("PT1H2M3S"), 3723)
        self.assertEqual(parse_duration_text("1:02:03"), 3723)
        self.assertEqual(parse_duration_text("4:05"), 245)
        self.assertEqual(parse_duration_text("90"), 90)
        self.assertIsNone(parse_duration_text("soon"))

    def test_parse_relative_date(self):
        now = datetime(2024, 1, 31, tzinfo=timezone.utc)
        self.assertEqual(parse_relative_date("3 days ago", now=now), "2024-01-28T00:00:00+00:00")
        self.assertEqual(parse_relative_date("Premiered Jan 5, 2024"), "2024-01-05T00:00:00+00:00")
        self.assertIsNone(parse_relative_date("sometime"))


class TestHeuristics(unittest.TestCase):

    def test_player_response_extraction(self):
        data = extract_player_response(PLAYER_PAGE)
        self.assertEqual(data["videoDetails"]["videoId"], VIDEO_ID)

    def test_initial_state_is_preferred_over_meta_tags(self):
        meta = extract_metadata(PLAYER_PAGE)

        self.assertEqual(meta.title, "Rick Astley - Never Gonna Give You Up (Official Music Video)")
        self.assertEqual(meta.channel_name, "Rick Astley")
        self.assertEqual(meta.duration_seconds, 213)
        self.assertEqual(meta.view_count, 1500000000)
        self.assertEqual(meta.category, "Music")
        self.assertEqual(meta.published_at, "2009-10-24T00:00:00+00:00")
        self.assertEqual(meta.thumbnail_url, "https://i.ytimg.com/vi/x/maxresdefault.jpg")
        self.assertEqual(meta.tags, ["rick astley", "never gonna give you up"])
        self.assertFalse(meta.is_short)

    def test_json_ld_with_meta_tag_fill(self):
        meta = extract_metadata(JSON_LD_PAGE)

        self.assertEqual(meta.title, "Short clip")
        self.assertEqual(meta.channel_name, "Clip Channel")
        self.assertEqual(meta.view_count, 1234)
        self.assertEqual(meta.like_count, 56)
        self.assertEqual(meta.duration_seconds, 45)
        self.assertTrue(meta.is_short)
        self.assertEqual(meta.description, "From the meta tags")

    def test_dom_fallback(self):
        meta = extract_metadata(DOM_PAGE)

        self.assertEqual(meta.title, "Plain DOM Title")
        self.assertEqual(meta.channel_name, "DOM Channel")
        self.assertEqual(meta.view_count, 1200000)

    def test_no_title_is_parse_failure(self):
        with self.assertRaises(ParseFailureError):
            extract_metadata("<html><body><p>nothing useful</p></body></html>")

    def test_detect_unavailable(self):
        self.assertIsNotNone(detect_unavailable('{"playabilityStatus": {"status": "ERROR", "reason": "x"}}'))
        self.assertEqual(detect_unavailable("<div>This video is private</div>"), "This video is private")
        self.assertIsNone(detect_unavailable(PLAYER_PAGE))


class TestScrapingStrategy(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.ledger = QuotaCostLedger()

    def _strategy(self, fetcher, threshold=3):
        breaker = CircuitBreaker("scraping-test", failure_threshold=threshold, reset_timeout=300,
                                 success_exceptions=(ContentUnavailableError,))
        return ScrapingStrategy(self.ledger, fetcher=fetcher, breaker=breaker)

    async def test_success(self):
        strategy = self._strategy(FakeFetcher(pages={VIDEO_ID: PLAYER_PAGE}))

        result = await strategy.fetch(VIDEO_ID)

        self.assertIsInstance(result, EnrichmentSuccess)
        self.assertEqual(result.strategy_used, "scraping")
        self.assertEqual(result.cost, 0.0)
        self.assertEqual((await self.ledger.snapshot())["youtube_web"]["calls"], 1)

    async def test_unavailable_does_not_trip_breaker(self):
        fetcher = FakeFetcher(errors={VIDEO_ID: ContentUnavailableError("gone")})
        strategy = self._strategy(fetcher, threshold=1)

        for _ in range(3):
            result = await strategy.fetch(VIDEO_ID)
            self.assertEqual(result.kind, FailureKind.CONTENT_UNAVAILABLE)
        self.assertEqual(strategy.breaker.state, CircuitBreaker.STATE_CLOSED)

    async def test_open_breaker_short_circuits(self):
        fetcher = FakeFetcher(errors={VIDEO_ID: TransientError("503")})
        strategy = self._strategy(fetcher, threshold=2)

        kinds = [(await strategy.fetch(VIDEO_ID)).kind for _ in range(3)]

        self.assertEqual(kinds, [FailureKind.TRANSIENT, FailureKind.TRANSIENT, FailureKind.CIRCUIT_OPEN])
        self.assertEqual(len(fetcher.calls), 2)

    async def test_parse_failure(self):
        strategy = self._strategy(FakeFetcher(pages={VIDEO_ID: "<html></html>"}))

        result = await strategy.fetch(VIDEO_ID)

        self.assertIsInstance(result, EnrichmentFailure)
        self.assertEqual(result.kind, FailureKind.PARSE_FAILURE)

    async def test_close_closes_fetcher(self):
        fetcher = FakeFetcher()
        await self._strategy(fetcher).close()
        self.assertTrue(fetcher.closed)


class TestPageFetcher(unittest.IsolatedAsyncioTestCase):

    async def _fetch(self, response=None, side_effect=None):
        with respx.mock() as router:
            route = router.get(f"https://www.youtube.com/watch?v={VIDEO_ID}")
            if side_effect is not None:
                route.mock(side_effect=side_effect)
            else:
                route.mock(return_value=response)
            fetcher = PageFetcher(request_delay_ms=0)
            try:
                return await fetcher.fetch(VIDEO_ID)
            finally:
                await fetcher.close()

    async def test_ok(self):
        html = await self._fetch(httpx.Response(200, text=PLAYER_PAGE))
        self.assertIn("ytInitialPlayerResponse", html)

    async def test_status_mapping(self):
        cases = [
            (httpx.Response(404), ContentUnavailableError),
            (httpx.Response(429, headers={"Retry-After": "12"}), RateLimitedError),
            (httpx.Response(403), RateLimitedError),
            (httpx.Response(503), TransientError),
            (httpx.Response(200, text="<p>Video unavailable</p>"), ContentUnavailableError),
        ]
        for response, expected in cases:
            with self.subTest(status=response.status_code):
                with self.assertRaises(expected):
                    await self._fetch(response)

    async def test_retry_after_header(self):
        with self.assertRaises(RateLimitedError) as ctx:
            await self._fetch(httpx.Response(429, headers={"Retry-After": "12"}))
        self.assertEqual(ctx.exception.retry_after, 12)

    async def test_timeout(self):
        with self.assertRaises(TimeoutExceededError):
            await self._fetch(side_effect=httpx.ReadTimeout("slow"))

    async def test_politeness_delay(self):
        delays = []
        now = [100.0]

        async def fake_sleep(seconds):
            delays.append(seconds)

        with respx.mock() as router:
            router.get(f"https://www.youtube.com/watch?v={VIDEO_ID}").mock(
                return_value=httpx.Response(200, text=PLAYER_PAGE)
            )
            fetcher = PageFetcher(request_delay_ms=2000, sleep=fake_sleep, clock=lambda: now[0])
            await fetcher.fetch(VIDEO_ID)
            await fetcher.fetch(VIDEO_ID)
            await fetcher.close()

        self.assertEqual(delays, [2.0])


if __name__ == '__main__':
    unittest.main()
