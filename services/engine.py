#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Enrichment orchestrator for Vidrich.

Takes a batch of video identifiers and produces exactly one result per
distinct identifier: cached entries first, then each strategy of the
fallback chain in order, under a shared concurrency bound and the budget
gate of the quota/cost ledger.
"""

import asyncio
import time
import uuid
from typing import Any, Dict, List, Mapping, Optional, Set

from cache_manager import cache_manager
from config import config
from exceptions import FailureKind
from ledger import QuotaCostLedger, SpendScope
from logging_config import StructuredLogger
from models import (AttemptRecord, BatchOutcome, BatchSummary, CacheEntry,
                    EnrichmentFailure, EnrichmentRequest, EnrichmentResult,
                    EnrichmentSuccess, RawHint, StrategyStats)
from services.base import EnrichmentStrategy, FetchContext
from services.cache import EnrichmentCache, InMemoryEnrichmentCache
from utils import extract_video_id, performance_timer

logger = StructuredLogger(__name__)


class _BatchState:
    """Working state of one batch; discarded once its results are final."""

    def __init__(self, identifiers: List[str]):
        self.pending: List[str] = list(identifiers)
        self.attempts: Dict[str, List[AttemptRecord]] = {i: [] for i in identifiers}
        self.spent: Dict[str, float] = {i: 0.0 for i in identifiers}
        self.tokens: Dict[str, int] = {i: 0 for i in identifiers}
        self.last_failure: Dict[str, EnrichmentFailure] = {}
        self.halted: Dict[str, FailureKind] = {}


class EnrichmentOrchestrator:
    """Runs identifiers through the cache and the strategy fallback chain.

    Strategies are looked up by name and used only through the
    EnrichmentStrategy interface.
    """

    def __init__(self, strategies: Mapping[str, EnrichmentStrategy], ledger: QuotaCostLedger,
                 cache: Optional[EnrichmentCache] = None,
                 fallback_on_unavailable: bool = config.FALLBACK_ON_UNAVAILABLE):
        """Initialize the orchestrator.

        Args:
            strategies: Strategy name -> strategy instance.
            ledger: The ledger the strategies were constructed with.
            cache: Result cache. Defaults to an in-memory cache.
            fallback_on_unavailable: Try later strategies after ContentUnavailable.
        """
        self.strategies: Dict[str, EnrichmentStrategy] = dict(strategies)
        self.ledger = ledger
        self.cache = cache or InMemoryEnrichmentCache()
        self.fallback_on_unavailable = fallback_on_unavailable

        self._global_stats = {
            "requests_processed": 0,
            "identifiers_processed": 0,
            "succeeded": 0,
            "failed": 0,
            "from_cache": 0,
            "total_cost": 0.0,
            "total_tokens": 0,
            "total_processing_time_ms": 0.0,
            "failures_by_kind": {},
            "engine_start_time": time.monotonic(),
        }
        logger.info(
            "EnrichmentOrchestrator initialized.",
            strategies=list(self.strategies),
            cache=getattr(self.cache, "name", type(self.cache).__name__)
        )

    async def register_caches(self) -> None:
        """Make the result cache and URL parser visible to the cache manager."""
        await cache_manager.register_cache("enrichment_results", self.cache)
        cache_manager.register_func_cache("video_id_parser", extract_video_id)

    # --- Public API ---

    async def enrich(self, request: EnrichmentRequest) -> BatchOutcome:
        """Enrich every identifier of the request.

        Returns:
            BatchOutcome with one result per distinct identifier, in first-seen order.
        """
        request_id = str(uuid.uuid4())[:8]
        log_prefix = f"[REQ-{request_id}]"
        start_time_mono = time.monotonic()
        identifiers = request.unique_identifiers()
        chain = request.strategy_order if request.enable_fallback else request.strategy_order[:1]

        logger.info(
            f"{log_prefix} Enriching {len(identifiers)} identifier(s) with chain {chain}",
            request_id=request_id,
            identifiers=len(identifiers),
            chain=chain,
            batch_size=request.batch_size,
            concurrency=request.concurrency_limit
        )

        # The request ceiling narrows the provider ceilings for this call only
        context = FetchContext(retry_policy=request.retry_policy, spend=SpendScope.for_ceiling(request.cost_ceiling))

        summary = BatchSummary(request_id=request_id, total=len(identifiers))
        for name in chain:
            summary.per_strategy[name] = StrategyStats()
        results: Dict[str, EnrichmentResult] = {}
        halted_overall: Set[str] = set()

        for batch_number, batch in enumerate(request.batches(), start=1):
            logger.debug(f"{log_prefix} Processing batch {batch_number} ({len(batch)} identifiers)")
            with performance_timer(f"enrich_batch_{batch_number}", threshold_ms=5000):
                batch_results, halted = await self._run_batch(batch, chain, request, context, summary, log_prefix)
            results.update(batch_results)
            halted_overall.update(halted)

        summary.halted_strategies = [name for name in chain if name in halted_overall]
        ordered = {identifier: results[identifier] for identifier in identifiers}
        self._finalize_summary(ordered, summary, start_time_mono)
        self._log_summary(summary, log_prefix)
        return BatchOutcome(results=ordered, summary=summary, hints=dict(request.hints))

    async def enrich_one(self, identifier: str, hint: Optional[RawHint] = None,
                         **overrides: Any) -> EnrichmentResult:
        """Enrich a single identifier with default settings."""
        request = EnrichmentRequest.from_config(
            [identifier],
            hints={identifier: hint} if hint else None,
            **overrides
        )
        outcome = await self.enrich(request)
        return outcome.results[identifier]

    # --- Batch processing ---

    async def _run_batch(self, identifiers: List[str], chain: List[str], request: EnrichmentRequest,
                         context: FetchContext, summary: BatchSummary, log_prefix: str):
        semaphore = asyncio.Semaphore(request.concurrency_limit)
        state = _BatchState(identifiers)
        final: Dict[str, EnrichmentResult] = {}

        cached = await asyncio.gather(*(self._cache_lookup(i, semaphore) for i in identifiers))
        for identifier, entry in zip(identifiers, cached):
            if entry is not None:
                final[identifier] = EnrichmentSuccess(
                    identifier=identifier,
                    metadata=entry.metadata,
                    strategy_used=entry.strategy_used,
                    cost=0.0,
                    tokens_used=0,
                    cached_at=entry.computed_at,
                    from_cache=True,
                )
        state.pending = [i for i in identifiers if i not in final]
        if final:
            logger.debug(f"{log_prefix} {len(final)} cache hit(s), {len(state.pending)} to fetch")

        for name in chain:
            if not state.pending:
                break
            stage_results = await self._run_stage(name, state, context, semaphore, log_prefix)
            stats = summary.per_strategy.setdefault(name, StrategyStats())
            still_pending = []

            for identifier in state.pending:
                result = stage_results[identifier]
                state.spent[identifier] += result.cost
                state.tokens[identifier] += result.tokens_used
                stats.cost += result.cost
                stats.tokens += result.tokens_used

                if isinstance(result, EnrichmentSuccess):
                    stats.attempted += 1
                    stats.succeeded += 1
                    state.attempts[identifier].append(AttemptRecord(name))
                    final[identifier] = EnrichmentSuccess(
                        identifier=identifier,
                        metadata=result.metadata,
                        strategy_used=result.strategy_used or name,
                        cost=state.spent[identifier],
                        tokens_used=state.tokens[identifier],
                        attempts=state.attempts[identifier],
                    )
                    await self._cache_store(identifier, final[identifier], request.cache_ttl)
                    continue

                if result.strategy_attempted is None:
                    stats.skipped += 1
                else:
                    stats.attempted += 1
                    stats.failed += 1
                state.attempts[identifier].append(AttemptRecord(name, result.kind, result.message))
                state.last_failure[identifier] = result
                if result.kind == FailureKind.CONTENT_UNAVAILABLE and not self.fallback_on_unavailable:
                    final[identifier] = self._final_failure(identifier, state)
                else:
                    still_pending.append(identifier)
            state.pending = still_pending

        for identifier in state.pending:
            final[identifier] = self._final_failure(identifier, state)
        return final, set(state.halted)

    async def _run_stage(self, name: str, state: _BatchState, context: FetchContext,
                         semaphore: asyncio.Semaphore, log_prefix: str) -> Dict[str, EnrichmentResult]:
        """Dispatch every pending identifier to one strategy."""
        strategy = self.strategies.get(name)
        if strategy is None:
            logger.warning(f"{log_prefix} Strategy '{name}' is not configured, skipping")
            return {
                i: EnrichmentFailure(i, FailureKind.TRANSIENT, f"Strategy '{name}' is not available")
                for i in state.pending
            }

        size = max(1, strategy.max_batch_size)
        groups = [state.pending[i:i + size] for i in range(0, len(state.pending), size)]
        grouped = await asyncio.gather(*(self._dispatch(strategy, group, state, context, semaphore, log_prefix)
                                         for group in groups))
        return {result.identifier: result for group_results in grouped for result in group_results}

    async def _dispatch(self, strategy: EnrichmentStrategy, identifiers: List[str], state: _BatchState,
                        context: FetchContext, semaphore: asyncio.Semaphore, log_prefix: str) -> List[EnrichmentResult]:
        async with semaphore:
            halted_kind = state.halted.get(strategy.name)
            if halted_kind is None:
                halted_kind = await strategy.check_budget(self.ledger, context)
                if halted_kind is not None:
                    self._halt(strategy.name, halted_kind, state, log_prefix)
            if halted_kind is not None:
                return [self._skipped(i, strategy.name, halted_kind) for i in identifiers]

            try:
                results = await strategy.fetch_batch(identifiers, context)
            except Exception as e:
                logger.error(f"{log_prefix} Strategy '{strategy.name}' raised: {e}", exc_info=True)
                results = [strategy.failure_from_exception(i, e) for i in identifiers]

        for result in results:
            if isinstance(result, EnrichmentFailure) and result.kind.is_budget:
                self._halt(strategy.name, result.kind, state, log_prefix)
        return results

    def _halt(self, name: str, kind: FailureKind, state: _BatchState, log_prefix: str) -> None:
        if name not in state.halted:
            state.halted[name] = kind
            logger.warning(
                f"{log_prefix} Strategy '{name}' halted for this batch: {kind.value}",
                strategy=name,
                kind=kind.value
            )

    @staticmethod
    def _skipped(identifier: str, name: str, kind: FailureKind) -> EnrichmentFailure:
        return EnrichmentFailure(
            identifier=identifier,
            kind=kind,
            message=f"Strategy '{name}' skipped: {kind.value}",
            strategy_attempted=None,
        )

    @staticmethod
    def _final_failure(identifier: str, state: _BatchState) -> EnrichmentFailure:
        last = state.last_failure[identifier]
        attempted = [a.strategy for a in state.attempts[identifier]]
        return EnrichmentFailure(
            identifier=identifier,
            kind=last.kind,
            message=last.message,
            strategy_attempted=attempted[-1] if attempted else None,
            cost=state.spent[identifier],
            tokens_used=state.tokens[identifier],
            attempts=list(state.attempts[identifier]),
        )

    # --- Cache ---

    async def _cache_lookup(self, identifier: str, semaphore: asyncio.Semaphore) -> Optional[CacheEntry]:
        async with semaphore:
            return await self.cache.get(identifier)

    async def _cache_store(self, identifier: str, result: EnrichmentSuccess, ttl: float) -> None:
        if ttl <= 0:
            return
        entry = CacheEntry.create(identifier, result.metadata, result.strategy_used, ttl)
        await self.cache.put(identifier, entry)
        result.cached_at = entry.computed_at

    # --- Summary & stats ---

    def _finalize_summary(self, results: Dict[str, EnrichmentResult], summary: BatchSummary,
                          start_time_mono: float) -> None:
        for result in results.values():
            summary.total_cost += result.cost
            summary.total_tokens += result.tokens_used
            if isinstance(result, EnrichmentSuccess):
                summary.succeeded += 1
                if result.from_cache:
                    summary.from_cache += 1
            else:
                summary.failed += 1
                kind = result.kind.value
                summary.failures_by_kind[kind] = summary.failures_by_kind.get(kind, 0) + 1
                if any(a.kind is not None and a.kind.is_budget for a in result.attempts):
                    summary.budget_exhausted += 1
        summary.duration_ms = (time.monotonic() - start_time_mono) * 1000

        stats = self._global_stats
        stats["requests_processed"] += 1
        stats["identifiers_processed"] += summary.total
        stats["succeeded"] += summary.succeeded
        stats["failed"] += summary.failed
        stats["from_cache"] += summary.from_cache
        stats["total_cost"] += summary.total_cost
        stats["total_tokens"] += summary.total_tokens
        stats["total_processing_time_ms"] += summary.duration_ms
        for kind, count in summary.failures_by_kind.items():
            stats["failures_by_kind"][kind] = stats["failures_by_kind"].get(kind, 0) + count

    @staticmethod
    def _log_summary(summary: BatchSummary, log_prefix: str) -> None:
        logger.info(
            f"{log_prefix} Enrichment complete: {summary.succeeded}/{summary.total} succeeded "
            f"({summary.from_cache} cached), cost ${summary.total_cost:.4f}, {summary.duration_ms:.0f}ms",
            **summary.to_dict()
        )

    async def get_global_stats(self) -> Dict[str, Any]:
        """Operational statistics for this orchestrator instance."""
        uptime = time.monotonic() - self._global_stats["engine_start_time"]
        requests = self._global_stats["requests_processed"]
        identifiers = self._global_stats["identifiers_processed"]

        return {
            "engine_uptime_seconds": round(uptime, 1),
            "total_requests_processed": requests,
            "total_identifiers_processed": identifiers,
            "succeeded": self._global_stats["succeeded"],
            "failed": self._global_stats["failed"],
            "from_cache": self._global_stats["from_cache"],
            "success_rate": round(self._global_stats["succeeded"] / identifiers, 4) if identifiers else 0.0,
            "total_cost": round(self._global_stats["total_cost"], 6),
            "total_tokens": self._global_stats["total_tokens"],
            "failures_by_kind": dict(self._global_stats["failures_by_kind"]),
            "avg_processing_time_ms": round(self._global_stats["total_processing_time_ms"] / requests, 2) if requests else 0.0,
            "strategies": {name: s.get_stats() for name, s in self.strategies.items()},
            "ledger": await self.ledger.snapshot(),
            "caches": await cache_manager.get_stats(),
        }

    async def clear_caches(self) -> Dict[str, Any]:
        """Clear the result cache and every other registered cache."""
        logger.warning("Force clearing all caches...")
        results = await cache_manager.clear_all_caches()
        if "enrichment_results" not in results:
            results["enrichment_results"] = await self.cache.clear()
        return results

    async def reset_ledger(self, provider: Optional[str] = None) -> Dict[str, Any]:
        await self.ledger.reset(provider)
        return await self.ledger.snapshot()

    async def shutdown(self) -> None:
        """Close strategy clients and the cache."""
        logger.info("Shutting down EnrichmentOrchestrator...")
        for name, strategy in self.strategies.items():
            try:
                await strategy.close()
            except Exception as e:
                logger.error(f"Error closing strategy '{name}': {e}")
        await self.cache.close()
        logger.info("EnrichmentOrchestrator shut down complete.")
