#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Common interface for metadata enrichment strategies.

Every source (official API, page scraping, LLM extraction) implements
EnrichmentStrategy. The orchestrator only talks to this interface.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from exceptions import FailureKind, failure_kind_for
from ledger import QuotaCostLedger, SpendScope
from logging_config import StructuredLogger
from models import EnrichmentFailure, EnrichmentResult, EnrichmentSuccess, Metadata, RetryPolicy

logger = StructuredLogger(__name__)

BUDGET_QUOTA = "quota"
BUDGET_COST = "cost"


@dataclass
class FetchContext:
    """Per-request settings handed to a strategy with each dispatch.

    retry_policy: Overrides the strategy's own policy when set.
    spend: The request's cost scope; paid strategies reserve against it.
    """

    retry_policy: Optional[RetryPolicy] = None
    spend: SpendScope = field(default_factory=SpendScope)


class EnrichmentStrategy(ABC):
    """A source of video metadata.

    Attributes:
        name: Strategy name used in strategy_order ("api", "scraping", "llm").
        provider: Ledger account this strategy draws from.
        max_batch_size: Identifiers accepted per fetch_batch call; 1 means per-item.
        budget_kind: "quota", "cost" or None when the strategy is free.
        retry_policy: Default retries for strategies that retry provider calls.
    """

    name: str = "base"
    provider: str = "none"
    max_batch_size: int = 1
    budget_kind: Optional[str] = None
    retry_policy: Optional[RetryPolicy] = None

    def __init__(self, ledger: QuotaCostLedger):
        self.ledger = ledger
        self._stats = {
            "calls": 0,
            "successes": 0,
            "failures": 0,
            "cost": 0.0,
            "tokens": 0,
            "failures_by_kind": {},
        }

    def estimated_cost(self) -> float:
        """Expected cost of one call, in the unit of budget_kind (USD or quota units)."""
        return 0.0

    def retry_policy_for(self, context: Optional[FetchContext]) -> RetryPolicy:
        """The request's retry policy if it set one, else the strategy's."""
        if context is not None and context.retry_policy is not None:
            return context.retry_policy
        return self.retry_policy or RetryPolicy()

    async def check_budget(self, ledger: QuotaCostLedger,
                           context: Optional[FetchContext] = None) -> Optional[FailureKind]:
        """Pre-dispatch gate. Returns the refusal kind, or None when allowed."""
        if self.budget_kind == BUDGET_QUOTA:
            if not await ledger.has_quota(self.provider, max(1, int(self.estimated_cost()))):
                return FailureKind.QUOTA_EXCEEDED
        elif self.budget_kind == BUDGET_COST:
            spend = context.spend if context is not None else None
            if not await ledger.has_budget(self.provider, self.estimated_cost(), spend):
                return FailureKind.COST_LIMIT_REACHED
        return None

    @abstractmethod
    async def fetch(self, identifier: str, context: Optional[FetchContext] = None) -> EnrichmentResult:
        """Enrich one identifier. Must return a result, not raise, for source errors."""

    async def fetch_batch(self, identifiers: List[str],
                          context: Optional[FetchContext] = None) -> List[EnrichmentResult]:
        """Enrich several identifiers; results keep the input order."""
        results = await asyncio.gather(*(self.fetch(i, context) for i in identifiers), return_exceptions=True)
        return [
            self.failure_from_exception(identifier, r) if isinstance(r, Exception) else r
            for identifier, r in zip(identifiers, results)
        ]

    async def close(self) -> None:
        """Release network clients. Default: nothing to release."""

    # --- Result helpers ---

    def success(self, identifier: str, metadata: Metadata, cost: float = 0.0,
                tokens: int = 0) -> EnrichmentSuccess:
        self._stats["calls"] += 1
        self._stats["successes"] += 1
        self._stats["cost"] += cost
        self._stats["tokens"] += tokens
        return EnrichmentSuccess(
            identifier=identifier,
            metadata=metadata,
            strategy_used=self.name,
            cost=cost,
            tokens_used=tokens,
        )

    def failure(self, identifier: str, kind: FailureKind, message: str,
                cost: float = 0.0, tokens: int = 0) -> EnrichmentFailure:
        self._stats["calls"] += 1
        self._stats["failures"] += 1
        self._stats["cost"] += cost
        self._stats["tokens"] += tokens
        by_kind = self._stats["failures_by_kind"]
        by_kind[kind.value] = by_kind.get(kind.value, 0) + 1
        return EnrichmentFailure(
            identifier=identifier,
            kind=kind,
            message=message,
            strategy_attempted=self.name,
            cost=cost,
            tokens_used=tokens,
        )

    def failure_from_exception(self, identifier: str, exc: Exception,
                               cost: float = 0.0, tokens: int = 0) -> EnrichmentFailure:
        kind = failure_kind_for(exc)
        if kind == FailureKind.TRANSIENT and not str(exc):
            message = type(exc).__name__
        else:
            message = str(exc)
        logger.debug(
            f"{self.name} failed for {identifier}: {kind.value}",
            strategy=self.name,
            identifier=identifier,
            kind=kind.value,
            error=message
        )
        return self.failure(identifier, kind, message, cost, tokens)

    def get_stats(self) -> Dict[str, Any]:
        stats = dict(self._stats)
        stats["failures_by_kind"] = dict(self._stats["failures_by_kind"])
        stats["cost"] = round(stats["cost"], 6)
        stats.update({
            "name": self.name,
            "provider": self.provider,
            "max_batch_size": self.max_batch_size,
            "budget_kind": self.budget_kind,
        })
        return stats
