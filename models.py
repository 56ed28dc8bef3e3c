#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Pydantic models and Dataclasses for Vidrich API requests, responses,
and internal enrichment data structures.
"""

import time
from dataclasses import asdict, dataclass, field, fields, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import BaseModel, Field, field_validator

from config import config
from exceptions import FailureKind, InvalidInputError
from logging_config import StructuredLogger
from utils import exponential_backoff, extract_video_id

logger = StructuredLogger(__name__)

# Strategy names accepted in strategy_order
KNOWN_STRATEGIES = ("api", "scraping", "llm")


@dataclass
class Metadata:
    """Video metadata produced by any strategy.

    Only the title is required; partial metadata is kept as-is.
    """

    title: str
    channel_name: Optional[str] = None
    channel_id: Optional[str] = None
    duration_seconds: Optional[int] = None
    view_count: Optional[int] = None
    like_count: Optional[int] = None
    comment_count: Optional[int] = None
    category: Optional[str] = None
    published_at: Optional[str] = None  # ISO 8601
    tags: List[str] = field(default_factory=list)
    is_short: bool = False
    description: Optional[str] = None
    thumbnail_url: Optional[str] = None
    is_livestream: bool = False

    def merge_missing(self, other: Optional["Metadata"]) -> "Metadata":
        """Return a copy where fields unset here are filled from `other`.

        Fields already populated are never overwritten.
        """
        if other is None:
            return replace(self, tags=list(self.tags))

        updates: Dict[str, Any] = {}
        for f in fields(self):
            mine = getattr(self, f.name)
            theirs = getattr(other, f.name)
            if _is_unset(mine) and not _is_unset(theirs):
                updates[f.name] = list(theirs) if isinstance(theirs, list) else theirs
        merged = replace(self, **updates)
        if "tags" not in updates:
            merged.tags = list(self.tags)
        return merged

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Metadata":
        """Build from a dict, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        values["title"] = values.get("title") or ""
        values["tags"] = list(values.get("tags") or [])
        return cls(**values)

    def get_published_at_datetime(self) -> Optional[datetime]:
        """Parse published_at into a timezone-aware datetime (UTC), or None."""
        if not self.published_at:
            return None
        try:
            dt = datetime.fromisoformat(self.published_at.replace("Z", "+00:00"))
        except ValueError:
            logger.debug(f"Invalid publication date format: {self.published_at}")
            return None
        return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def _is_unset(value: Any) -> bool:
    return value is None or value is False or value == "" or value == []


@dataclass
class RawHint:
    """Raw title/channel text parsed upstream, used when enrichment fails."""

    title: Optional[str] = None
    channel_name: Optional[str] = None

    def to_metadata(self) -> Metadata:
        return Metadata(title=self.title or "", channel_name=self.channel_name)


@dataclass
class AttemptRecord:
    """One stage of an identifier's fallback chain."""

    strategy: str
    kind: Optional[FailureKind] = None  # None means the stage succeeded
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "strategy": self.strategy,
            "kind": self.kind.value if self.kind else None,
            "message": self.message,
        }


@dataclass
class EnrichmentSuccess:
    identifier: str
    metadata: Metadata
    strategy_used: str
    cost: float = 0.0
    tokens_used: int = 0
    cached_at: Optional[float] = None
    from_cache: bool = False
    attempts: List[AttemptRecord] = field(default_factory=list)

    ok = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": "success",
            "identifier": self.identifier,
            "metadata": self.metadata.to_dict(),
            "strategy_used": self.strategy_used,
            "cost": round(self.cost, 6),
            "tokens_used": self.tokens_used,
            "cached_at": self.cached_at,
            "from_cache": self.from_cache,
            "attempts": [a.to_dict() for a in self.attempts],
        }


@dataclass
class EnrichmentFailure:
    identifier: str
    kind: FailureKind
    message: str
    strategy_attempted: Optional[str] = None
    cost: float = 0.0
    tokens_used: int = 0
    attempts: List[AttemptRecord] = field(default_factory=list)

    ok = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": "failure",
            "identifier": self.identifier,
            "kind": self.kind.value,
            "message": self.message,
            "strategy_attempted": self.strategy_attempted,
            "cost": round(self.cost, 6),
            "tokens_used": self.tokens_used,
            "attempts": [a.to_dict() for a in self.attempts],
        }


EnrichmentResult = Union[EnrichmentSuccess, EnrichmentFailure]


@dataclass(frozen=True)
class CacheEntry:
    """Snapshot of a successful enrichment. Replaced on refresh, never mutated."""

    identifier: str
    metadata: Metadata
    strategy_used: str
    computed_at: float
    expires_at: float

    @classmethod
    def create(cls, identifier: str, metadata: Metadata, strategy_used: str,
               ttl_seconds: float, now: Optional[float] = None) -> "CacheEntry":
        now = time.time() if now is None else now
        return cls(identifier, metadata, strategy_used, now, now + ttl_seconds)

    def is_valid(self, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        return now < self.expires_at

    def ttl_remaining(self, now: Optional[float] = None) -> float:
        now = time.time() if now is None else now
        return max(0.0, self.expires_at - now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "identifier": self.identifier,
            "metadata": self.metadata.to_dict(),
            "strategy_used": self.strategy_used,
            "computed_at": self.computed_at,
            "expires_at": self.expires_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CacheEntry":
        return cls(
            identifier=data["identifier"],
            metadata=Metadata.from_dict(data.get("metadata") or {}),
            strategy_used=data.get("strategy_used", "unknown"),
            computed_at=float(data["computed_at"]),
            expires_at=float(data["expires_at"]),
        )


@dataclass
class RetryPolicy:
    retry_attempts: int = config.RETRY_ATTEMPTS
    base_delay_ms: int = config.RETRY_BASE_DELAY_MS
    max_delay_ms: int = config.RETRY_MAX_DELAY_MS

    def backoff(self) -> Callable[[int], float]:
        """Backoff function (attempt -> seconds) for this policy."""
        return exponential_backoff(self.base_delay_ms, self.max_delay_ms)


@dataclass
class EnrichmentRequest:
    """Parameters of one enrichment call. Built per call, never persisted."""

    identifiers: List[str]
    strategy_order: List[str] = field(default_factory=lambda: list(config.STRATEGY_ORDER))
    batch_size: int = config.BATCH_SIZE
    concurrency_limit: int = config.CONCURRENCY_LIMIT
    cost_ceiling: Optional[float] = None  # Caps this request only; the provider ceiling still applies
    cache_ttl: float = config.CACHE_TTL_SECONDS
    retry_policy: Optional[RetryPolicy] = None  # None keeps each strategy's own policy
    enable_fallback: bool = config.ENABLE_FALLBACK
    hints: Dict[str, RawHint] = field(default_factory=dict)

    def __post_init__(self):
        if self.batch_size <= 0:
            raise InvalidInputError("batch_size must be greater than 0")
        if self.concurrency_limit <= 0:
            raise InvalidInputError("concurrency_limit must be greater than 0")
        if self.cache_ttl < 0:
            raise InvalidInputError("cache_ttl must not be negative")
        if self.cost_ceiling is not None and self.cost_ceiling < 0:
            raise InvalidInputError("cost_ceiling must not be negative")
        if not self.strategy_order:
            raise InvalidInputError("strategy_order must name at least one strategy")

    @classmethod
    def from_config(cls, identifiers: List[str], **overrides: Any) -> "EnrichmentRequest":
        """Request with configured defaults; keyword overrides set to None are ignored."""
        return cls(identifiers=list(identifiers), **{k: v for k, v in overrides.items() if v is not None})

    def unique_identifiers(self) -> List[str]:
        """Identifiers with duplicates and blanks removed, first occurrence kept."""
        seen = set()
        unique = []
        for identifier in self.identifiers:
            if identifier and identifier not in seen:
                seen.add(identifier)
                unique.append(identifier)
        return unique

    def batches(self) -> List[List[str]]:
        ids = self.unique_identifiers()
        return [ids[i:i + self.batch_size] for i in range(0, len(ids), self.batch_size)]


@dataclass
class StrategyStats:
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0  # Dispatches refused by the budget gate
    cost: float = 0.0
    tokens: int = 0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["cost"] = round(self.cost, 6)
        return data


@dataclass
class BatchSummary:
    request_id: str
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    from_cache: int = 0
    total_cost: float = 0.0
    total_tokens: int = 0
    per_strategy: Dict[str, StrategyStats] = field(default_factory=dict)
    failures_by_kind: Dict[str, int] = field(default_factory=dict)
    budget_exhausted: int = 0  # Identifiers left unenriched after a budget halt
    halted_strategies: List[str] = field(default_factory=list)
    duration_ms: float = 0.0

    @property
    def success_rate(self) -> float:
        return self.succeeded / self.total if self.total else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "request_id": self.request_id,
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "from_cache": self.from_cache,
            "success_rate": round(self.success_rate, 4),
            "total_cost": round(self.total_cost, 6),
            "total_tokens": self.total_tokens,
            "per_strategy": {name: s.to_dict() for name, s in self.per_strategy.items()},
            "failures_by_kind": dict(self.failures_by_kind),
            "budget_exhausted": self.budget_exhausted,
            "halted_strategies": list(self.halted_strategies),
            "duration_ms": round(self.duration_ms, 2),
        }


@dataclass
class EnrichedRecord:
    """What the persistence collaborator receives for one identifier."""

    identifier: str
    metadata: Metadata
    enriched: bool
    strategy_used: Optional[str] = None
    cost: float = 0.0
    tokens_used: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "identifier": self.identifier,
            "metadata": self.metadata.to_dict(),
            "enriched": self.enriched,
            "strategy_used": self.strategy_used,
            "cost": round(self.cost, 6),
            "tokens_used": self.tokens_used,
        }


@dataclass
class BatchOutcome:
    results: Dict[str, EnrichmentResult]
    summary: BatchSummary
    hints: Dict[str, RawHint] = field(default_factory=dict)

    def records(self) -> List[EnrichedRecord]:
        """Per-identifier records; failed identifiers fall back to their raw hint."""
        records = []
        for identifier, result in self.results.items():
            if isinstance(result, EnrichmentSuccess):
                records.append(EnrichedRecord(
                    identifier=identifier,
                    metadata=result.metadata,
                    enriched=True,
                    strategy_used=result.strategy_used,
                    cost=result.cost,
                    tokens_used=result.tokens_used,
                ))
            else:
                hint = self.hints.get(identifier) or RawHint()
                records.append(EnrichedRecord(
                    identifier=identifier,
                    metadata=hint.to_metadata(),
                    enriched=False,
                    strategy_used=None,
                    cost=result.cost,
                    tokens_used=result.tokens_used,
                ))
        return records


# --- API models ---

def normalize_identifier(raw: str) -> str:
    """Strip an identifier; YouTube URLs become their video id."""
    value = raw.strip()
    if value.startswith(("http://", "https://", "www.", "youtu")):
        value = extract_video_id(value) or value
    return value


class HintModel(BaseModel):
    title: Optional[str] = Field(None, description="Raw title text as parsed upstream.")
    channel_name: Optional[str] = Field(None, description="Raw channel text as parsed upstream.")


class EnrichRequest(BaseModel):
    """Data model for batch enrichment requests (/enrich)."""

    identifiers: List[str] = Field(
        ...,
        description="Video identifiers (or YouTube URLs) to enrich."
    )
    strategy_order: Optional[List[str]] = Field(
        None,
        description=f"Ordered fallback chain. Defaults to {config.STRATEGY_ORDER}."
    )
    batch_size: Optional[int] = Field(None, ge=1, le=1000)
    concurrency_limit: Optional[int] = Field(None, ge=1, le=100)
    cost_ceiling: Optional[float] = Field(None, ge=0, description="Spend cap in USD for this request; cannot raise the configured ceiling.")
    cache_ttl: Optional[int] = Field(None, ge=0, description="Cache TTL in seconds for new results.")
    retry_attempts: Optional[int] = Field(None, ge=0, le=10)
    enable_fallback: Optional[bool] = None
    hints: Dict[str, HintModel] = Field(default_factory=dict)

    @field_validator("identifiers")
    @classmethod
    def identifiers_must_be_valid(cls, v: List[str]) -> List[str]:
        """Strip identifiers and turn YouTube URLs into video ids.

        Raises:
            ValueError: If the list is empty, too long, or only blanks.
        """
        cleaned = [normalize_identifier(raw) for raw in v if isinstance(raw, str) and raw.strip()]

        if not cleaned:
            raise ValueError("At least one identifier is required")
        if len(cleaned) > config.MAX_IDENTIFIERS_PER_REQUEST:
            raise ValueError(
                f"Too many identifiers ({len(cleaned)}), max {config.MAX_IDENTIFIERS_PER_REQUEST}"
            )
        return cleaned

    @field_validator("strategy_order")
    @classmethod
    def strategy_order_must_be_known(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        if v is None:
            return None
        names = [name.strip().lower() for name in v if name and name.strip()]
        unknown = [name for name in names if name not in KNOWN_STRATEGIES]
        if unknown:
            raise ValueError(f"Unknown strategies: {unknown}. Known: {list(KNOWN_STRATEGIES)}")
        if not names:
            raise ValueError("strategy_order must name at least one strategy")
        # Drop repeats, keep order
        return list(dict.fromkeys(names))

    def to_enrichment_request(self) -> EnrichmentRequest:
        """Build the internal request, falling back to configured defaults."""
        retry_policy = None
        if self.retry_attempts is not None:
            retry_policy = RetryPolicy(retry_attempts=self.retry_attempts)

        return EnrichmentRequest(
            identifiers=self.identifiers,
            strategy_order=self.strategy_order or list(config.STRATEGY_ORDER),
            batch_size=self.batch_size or config.BATCH_SIZE,
            concurrency_limit=self.concurrency_limit or config.CONCURRENCY_LIMIT,
            cost_ceiling=self.cost_ceiling,
            cache_ttl=self.cache_ttl if self.cache_ttl is not None else config.CACHE_TTL_SECONDS,
            retry_policy=retry_policy,
            enable_fallback=self.enable_fallback if self.enable_fallback is not None else config.ENABLE_FALLBACK,
            hints={
                normalize_identifier(k): RawHint(title=h.title, channel_name=h.channel_name)
                for k, h in self.hints.items()
            },
        )


class EnrichResponse(BaseModel):
    """Response of the /enrich endpoints."""

    request_id: str
    results: Dict[str, Dict[str, Any]] = Field(..., description="Identifier -> result.")
    records: List[Dict[str, Any]] = Field(..., description="Records for the persistence layer.")
    summary: Dict[str, Any] = Field(..., description="Batch summary metrics.")


class CostEstimateRequest(BaseModel):
    video_count: int = Field(..., ge=1, le=1_000_000)
    model: Optional[str] = Field(None, description="LLM model name; defaults to the configured model.")


class CostEstimateResponse(BaseModel):
    video_count: int
    model: str
    total_tokens: int
    total_cost: float
    cost_per_video: float
    estimated_time_minutes: int
    recommended_batch_size: int
    videos_within_ceiling: int


class ExtractVideoIdRequest(BaseModel):
    url: str = Field(..., min_length=1, max_length=2000)


class ErrorResponse(BaseModel):
    """Model for error responses.

    Defines the structure of error responses returned by the API.
    """

    detail: str = Field(
        ...,
        description="Detailed error message."
    )
    error_code: Optional[str] = Field(
        None,
        description="Optional internal error code."
    )
    suggestion: Optional[str] = Field(
        None,
        description="Optional suggestion for the user."
    )
