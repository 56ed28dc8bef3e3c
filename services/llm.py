#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
LLM extraction strategy for Vidrich.

Reduces the watch page to its metadata-bearing parts and asks an
OpenAI-compatible chat completion endpoint (OpenRouter by default) to return
the metadata as JSON. Every attempt is priced and settled against the
shared ledger, including attempts whose output cannot be parsed.
"""

import asyncio
import json
import math
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, NamedTuple, Optional

import httpx
import tiktoken
from bs4 import BeautifulSoup

from config import config
from exceptions import (APIConfigurationError, CostLimitReachedError, ParseFailureError,
                        RateLimitedError, TimeoutExceededError, TransientError)
from ledger import QuotaCostLedger, SpendScope
from logging_config import StructuredLogger
from models import EnrichmentResult, Metadata, RetryPolicy
from services.base import BUDGET_COST, EnrichmentStrategy, FetchContext
from services.json_parsing import parse_llm_json
from services.page_fetcher import PageFetcher
from services.scraper import (extract_player_response, normalize_view_count,
                              parse_duration_text, parse_relative_date, sanitize_title)
from utils import RetryableRequest, SecureApiKeyManager, performance_timer

logger = StructuredLogger(__name__)


class ModelPricing(NamedTuple):
    input_per_1k: float
    output_per_1k: float


# Short names accepted in configuration -> provider model ids
MODEL_MAPPINGS = {
    "claude-3-haiku": "anthropic/claude-3-haiku",
    "claude-3-haiku-20240307": "anthropic/claude-3-haiku",
    "claude-3-sonnet": "anthropic/claude-3-sonnet",
    "claude-3-sonnet-20240229": "anthropic/claude-3-sonnet",
    "claude-3-opus": "anthropic/claude-3-opus",
    "claude-3-opus-20240229": "anthropic/claude-3-opus",
    "gpt-3.5-turbo": "openai/gpt-3.5-turbo",
    "gpt-4-turbo-preview": "openai/gpt-4-turbo-preview",
    "gpt-4o": "openai/gpt-4o",
    "llama-3.1-8b-instruct": "meta-llama/llama-3.1-8b-instruct",
    "llama-3.1-70b-instruct": "meta-llama/llama-3.1-70b-instruct",
    "gemini-pro": "google/gemini-pro",
    "gemma-3-4b-it": "google/gemma-3-4b-it",
}

# USD per 1K tokens; these drift, keep in sync with the provider's price page
MODEL_PRICING = {
    "anthropic/claude-3-haiku": ModelPricing(0.00025, 0.00125),
    "anthropic/claude-3-sonnet": ModelPricing(0.003, 0.015),
    "anthropic/claude-3-opus": ModelPricing(0.015, 0.075),
    "openai/gpt-3.5-turbo": ModelPricing(0.0015, 0.002),
    "openai/gpt-4-turbo-preview": ModelPricing(0.01, 0.03),
    "openai/gpt-4o": ModelPricing(0.005, 0.015),
    "meta-llama/llama-3.1-8b-instruct": ModelPricing(0.0002, 0.0002),
    "meta-llama/llama-3.1-70b-instruct": ModelPricing(0.0009, 0.0009),
    "google/gemma-3-4b-it": ModelPricing(0.00000002, 0.00000004),
}
FALLBACK_PRICING = ModelPricing(0.001, 0.002)

AVG_TOKENS_PER_VIDEO = 12500
ESTIMATE_INPUT_SHARE = 0.8
USAGE_INPUT_SHARE = 0.7  # Split used when the provider only reports total_tokens
SECONDS_PER_VIDEO = 2

RELEVANT_META_KEYS = {
    "description", "author", "title", "keywords",
    "og:title", "og:description", "og:image", "og:video:duration", "og:video:tag",
    "twitter:title", "twitter:description",
    "duration", "uploadDate", "datePublished", "genre", "channelId", "videoId", "interactionCount",
}

SYSTEM_PROMPT = """You extract YouTube video metadata from page fragments.

Rules:
1. Respond with a single JSON object and nothing else.
2. Use null for anything the page does not state. Never invent values.
3. Numbers must be numbers ("1.2M views" -> 1200000).
4. Durations are in seconds ("10:25" -> 625).

JSON format:
{
  "title": "exact video title",
  "description": "first 200 characters of the description",
  "channelName": "exact channel name",
  "channelId": "UC... channel id if present",
  "duration": seconds,
  "viewCount": number,
  "likeCount": number,
  "commentCount": number,
  "publishedAt": "YYYY-MM-DDTHH:MM:SSZ",
  "tags": ["up to 10 tags"],
  "thumbnailUrl": "highest quality thumbnail url",
  "category": "category name",
  "isLivestream": boolean,
  "isShort": boolean
}"""


# --- Pricing ---

def resolve_model(model: str) -> str:
    """Provider model id for a configured model name."""
    return MODEL_MAPPINGS.get(model, model)


def get_pricing(model: str) -> ModelPricing:
    return MODEL_PRICING.get(resolve_model(model), FALLBACK_PRICING)


def calculate_cost(model: str, prompt_tokens: int = 0, completion_tokens: int = 0,
                   total_tokens: Optional[int] = None) -> float:
    """USD cost of a call. With only total_tokens, assumes a 70/30 input/output split."""
    pricing = get_pricing(model)
    if not prompt_tokens and not completion_tokens and total_tokens:
        prompt_tokens = int(total_tokens * USAGE_INPUT_SHARE)
        completion_tokens = total_tokens - prompt_tokens
    return (prompt_tokens * pricing.input_per_1k + completion_tokens * pricing.output_per_1k) / 1000


def estimate_batch_cost(video_count: int, model: Optional[str] = None,
                        cost_ceiling: Optional[float] = None) -> Dict[str, Any]:
    """Rough cost of LLM-enriching `video_count` videos.

    Assumes an average of 12,500 tokens per video split 80/20 input/output.
    """
    model = model or config.LLM_MODEL
    ceiling = config.COST_CEILING if cost_ceiling is None else cost_ceiling
    total_tokens = video_count * AVG_TOKENS_PER_VIDEO
    input_tokens = int(total_tokens * ESTIMATE_INPUT_SHARE)
    total_cost = calculate_cost(model, input_tokens, total_tokens - input_tokens)
    cost_per_video = total_cost / video_count if video_count else 0.0

    return {
        "video_count": video_count,
        "model": resolve_model(model),
        "total_tokens": total_tokens,
        "total_cost": round(total_cost, 4),
        "cost_per_video": round(cost_per_video, 6),
        "estimated_time_minutes": math.ceil(video_count * SECONDS_PER_VIDEO / 60),
        "recommended_batch_size": min(10, video_count),
        "videos_within_ceiling": int(ceiling // cost_per_video) if cost_per_video > 0 else video_count,
    }


# --- Token counting ---

_ENCODING: Optional[Any] = None
_ENCODING_LOADED = False


def count_tokens(text: str) -> int:
    """Token count with tiktoken's cl100k_base; chars/4 if the encoding cannot be loaded."""
    global _ENCODING, _ENCODING_LOADED
    if not _ENCODING_LOADED:
        _ENCODING_LOADED = True
        try:
            _ENCODING = tiktoken.get_encoding("cl100k_base")
        except Exception as e:
            logger.warning(f"Could not load tiktoken cl100k_base encoding: {e}. Estimating tokens from length.")
    if _ENCODING is not None:
        return len(_ENCODING.encode(text, disallowed_special=()))
    return max(1, len(text) // 4)


# --- Page reduction and output normalization ---

def extract_relevant_content(html: str, max_chars: int = config.LLM_MAX_CONTENT_CHARS) -> str:
    """Keep only the parts of a watch page that carry metadata."""
    soup = BeautifulSoup(html, "html.parser")
    sections: List[str] = []

    if soup.title and soup.title.string:
        sections.append(f"<!-- Page Title -->\n<title>{soup.title.string.strip()}</title>")

    meta_lines = []
    for tag in soup.find_all("meta"):
        key = tag.get("name") or tag.get("property") or tag.get("itemprop")
        if key in RELEVANT_META_KEYS and tag.get("content"):
            meta_lines.append(f'<meta {key}="{tag["content"]}">')
    if meta_lines:
        sections.append("<!-- Meta Tags -->\n" + "\n".join(meta_lines))

    ld_blocks = [s.string.strip() for s in soup.find_all("script", attrs={"type": "application/ld+json"}) if s.string]
    if ld_blocks:
        sections.append("<!-- JSON-LD -->\n" + "\n".join(ld_blocks[:3]))

    player = extract_player_response(html)
    if player:
        fragment = {
            "videoDetails": player.get("videoDetails"),
            "microformat": player.get("microformat"),
        }
        sections.append("<!-- Player Response -->\n" + json.dumps(fragment, ensure_ascii=False))

    content = "\n\n".join(sections) if sections else html
    return content[:max_chars]


def _first(data: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if value is not None and value != "":
            return value
    return None


def _as_text(value: Any) -> str:
    if value is None or isinstance(value, (dict, list)):
        return ""
    return str(value)


def _as_optional_text(value: Any) -> Optional[str]:
    """Text of a nullable field; the model's quoted nulls ("null", "None") count as missing."""
    text = _as_text(value)
    if not text.strip() or text.strip().lower() in ("null", "none"):
        return None
    return text


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "yes", "1")
    return bool(value)


def _as_count(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    return normalize_view_count(value)


def normalize_llm_metadata(data: Dict[str, Any]) -> Metadata:
    """Coerce a model's JSON answer into Metadata.

    Raises:
        ParseFailureError: If the answer has no title.
    """
    title = sanitize_title(_as_text(_first(data, "title", "name")))
    if not title:
        raise ParseFailureError("Model output has no title")

    tags = _first(data, "tags", "keywords") or []
    if isinstance(tags, str):
        tags = [t.strip() for t in tags.split(",")] if _as_optional_text(tags) else []
    elif not isinstance(tags, list):
        tags = []
    tags = [str(t).strip() for t in tags if str(t).strip()]

    duration = _first(data, "duration", "durationSeconds", "duration_seconds")
    duration_seconds = duration if isinstance(duration, int) and not isinstance(duration, bool) else parse_duration_text(duration)

    published = _as_optional_text(_first(data, "publishedAt", "published_at", "uploadDate"))
    is_short = _as_bool(_first(data, "isShort", "is_short"))
    if duration_seconds and duration_seconds <= 60:
        is_short = True

    return Metadata(
        title=title,
        channel_name=_as_optional_text(_first(data, "channelName", "channel_name", "author")),
        channel_id=_as_optional_text(_first(data, "channelId", "channel_id")),
        duration_seconds=duration_seconds,
        view_count=_as_count(_first(data, "viewCount", "view_count", "views")),
        like_count=_as_count(_first(data, "likeCount", "like_count", "likes")),
        comment_count=_as_count(_first(data, "commentCount", "comment_count", "comments")),
        category=_as_optional_text(_first(data, "category", "genre")),
        published_at=parse_relative_date(published) if published else None,
        tags=tags[:10],
        is_short=is_short,
        description=_as_optional_text(_first(data, "description")),
        thumbnail_url=_as_optional_text(_first(data, "thumbnailUrl", "thumbnail_url")),
        is_livestream=_as_bool(_first(data, "isLivestream", "is_livestream", "isLive")),
    )


# --- Strategy ---

@dataclass
class _CallTally:
    """Spend across the attempts of one fetch."""

    attempts: int = 0
    cost: float = 0.0
    tokens: int = 0


class LLMStrategy(EnrichmentStrategy):
    """Enriches identifiers by having an LLM read the watch page."""

    name = "llm"
    max_batch_size = 1
    budget_kind = BUDGET_COST

    def __init__(self, ledger: QuotaCostLedger, fetcher: Optional[PageFetcher] = None,
                 client: Optional[httpx.AsyncClient] = None,
                 api_key: Optional[str] = None,
                 model: str = config.LLM_MODEL,
                 provider: str = config.LLM_PROVIDER,
                 base_url: str = config.LLM_BASE_URL,
                 max_tokens: int = config.LLM_MAX_TOKENS,
                 temperature: float = config.LLM_TEMPERATURE,
                 max_content_chars: int = config.LLM_MAX_CONTENT_CHARS,
                 retry_policy: Optional[RetryPolicy] = None,
                 timeout_seconds: float = config.CALL_TIMEOUT_SECONDS,
                 sleep: Callable[[float], Any] = asyncio.sleep,
                 token_counter: Callable[[str], int] = count_tokens):
        """Initialize the strategy.

        Raises:
            APIConfigurationError: If no API key is available.
        """
        super().__init__(ledger)
        self.provider = provider
        self.model = resolve_model(model)
        self.base_url = base_url.rstrip("/")
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.max_content_chars = max_content_chars
        self.retry_policy = retry_policy or RetryPolicy()
        self.timeout_seconds = timeout_seconds
        self._sleep = sleep
        self._count_tokens = token_counter

        self.key_manager = SecureApiKeyManager(
            provider=provider,
            key_env_var=config.LLM_API_KEY_ENV_VAR,
            key_salt_env_var=config.LLM_API_KEY_SALT_ENV_VAR,
            key_password_env_var=config.LLM_API_KEY_PASSWORD_ENV_VAR,
            length_range=(20, 120),
        )
        self.api_key = api_key if api_key is not None else self.key_manager.get_key()
        if not self.api_key:
            raise APIConfigurationError(f"{provider} API key is not configured.")

        self.fetcher = fetcher or PageFetcher()
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)
        logger.info(f"LLM strategy initialized with model {self.model}", model=self.model, provider=provider)

    @property
    def headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "HTTP-Referer": config.LLM_APP_URL,
            "X-Title": config.LLM_APP_TITLE,
        }

    def estimate_call_cost(self, prompt_tokens: int) -> float:
        """Upper estimate for one call: the prompt plus a full completion."""
        return calculate_cost(self.model, prompt_tokens, self.max_tokens)

    def estimated_cost(self) -> float:
        typical_prompt = int(AVG_TOKENS_PER_VIDEO * ESTIMATE_INPUT_SHARE)
        return self.estimate_call_cost(min(typical_prompt, self.max_content_chars // 4 + 500))

    def build_messages(self, content: str) -> List[Dict[str, str]]:
        return [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": f"Extract YouTube video metadata. Return compact JSON only:\n\n{content}"},
        ]

    async def _complete(self, messages: List[Dict[str, str]], prompt_tokens: int,
                        tally: _CallTally, spend: Optional[SpendScope] = None) -> Metadata:
        """One priced attempt: reserve, call, settle, parse."""
        tally.attempts += 1
        estimate = self.estimate_call_cost(prompt_tokens)
        if not await self.ledger.try_reserve(self.provider, estimate, spend):
            raise CostLimitReachedError(f"LLM call (est. ${estimate:.4f}) would exceed the cost ceiling")

        settled = False
        try:
            try:
                response = await self._client.post(
                    f"{self.base_url}/chat/completions",
                    json={
                        "model": self.model,
                        "messages": messages,
                        "max_tokens": self.max_tokens,
                        "temperature": self.temperature,
                    },
                    headers=self.headers,
                    timeout=self.timeout_seconds,
                )
            except httpx.TimeoutException as e:
                raise TimeoutExceededError(f"LLM request timed out: {e}") from e
            except httpx.TransportError as e:
                raise TransientError(f"LLM transport error: {e}") from e

            if response.status_code in (401, 403):
                raise APIConfigurationError(f"{self.provider} rejected the API key (HTTP {response.status_code})")
            if response.status_code == 429:
                retry_after = response.headers.get("Retry-After", "")
                raise RateLimitedError(
                    f"{self.provider} rate limit (HTTP 429)",
                    retry_after=int(retry_after) if retry_after.isdigit() else 30
                )
            if response.status_code >= 500:
                raise TransientError(f"{self.provider} server error (HTTP {response.status_code})")
            if response.status_code != 200:
                raise TransientError(f"{self.provider} error (HTTP {response.status_code}): {response.text[:200]}")

            try:
                data = response.json()
            except ValueError as e:
                raise ParseFailureError(f"{self.provider} returned a non-JSON body") from e

            usage = data.get("usage") or {}
            actual = calculate_cost(
                self.model,
                usage.get("prompt_tokens", 0) or 0,
                usage.get("completion_tokens", 0) or 0,
                usage.get("total_tokens"),
            )
            tokens = usage.get("total_tokens") or (
                (usage.get("prompt_tokens", 0) or 0) + (usage.get("completion_tokens", 0) or 0)
            )
            await self.ledger.commit(self.provider, estimate, actual, tokens, spend)
            settled = True
            tally.cost += actual
            tally.tokens += tokens
        finally:
            if not settled:
                await self.ledger.release(self.provider, estimate, spend)

        choices = data.get("choices") or []
        content = ((choices[0] or {}).get("message") or {}).get("content") if choices else None
        if not content:
            raise ParseFailureError("LLM response has no content")
        return normalize_llm_metadata(parse_llm_json(content))

    async def _fetch_page(self, identifier: str, spend: Optional[SpendScope]) -> str:
        """Download the watch page while holding one call's worth of budget.

        Identifiers that could not afford the completion fail here, before
        any network traffic.
        """
        hold = self.estimated_cost()
        if not await self.ledger.try_reserve(self.provider, hold, spend):
            raise CostLimitReachedError(f"No budget left for an LLM call (est. ${hold:.4f})")
        try:
            return await self.fetcher.fetch(identifier)
        finally:
            await self.ledger.release(self.provider, hold, spend)

    async def fetch(self, identifier: str, context: Optional[FetchContext] = None) -> EnrichmentResult:
        spend = context.spend if context is not None else None
        policy = self.retry_policy_for(context)
        try:
            html = await self._fetch_page(identifier, spend)
        except Exception as e:
            return self.failure_from_exception(identifier, e)

        content = extract_relevant_content(html, self.max_content_chars)
        messages = self.build_messages(content)
        prompt_tokens = sum(self._count_tokens(m["content"]) for m in messages)
        tally = _CallTally()

        try:
            with performance_timer(f"llm_extract_{identifier}", threshold_ms=5000):
                metadata = await RetryableRequest.execute_with_retry(
                    self._complete,
                    messages,
                    prompt_tokens,
                    tally,
                    spend,
                    max_retries=policy.retry_attempts,
                    backoff=policy.backoff(),
                    timeout_seconds=self.timeout_seconds,
                    retry_on_exceptions=(TransientError,),
                    operation_name=f"llm_extract_{identifier}",
                    sleep=self._sleep,
                )
        except Exception as e:
            logger.warning(
                f"LLM extraction failed for {identifier} after {tally.attempts} attempt(s): {e}",
                identifier=identifier,
                attempts=tally.attempts,
                cost=tally.cost
            )
            return self.failure_from_exception(identifier, e, tally.cost, tally.tokens)

        logger.debug(
            f"LLM extracted metadata for {identifier}",
            identifier=identifier,
            attempts=tally.attempts,
            cost=tally.cost,
            tokens=tally.tokens
        )
        return self.success(identifier, metadata, tally.cost, tally.tokens)

    def get_stats(self) -> Dict[str, Any]:
        stats = super().get_stats()
        stats.update({
            "model": self.model,
            "api_key_obfuscated": self.key_manager.obfuscate_key(self.api_key),
        })
        return stats

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
        await self.fetcher.close()
