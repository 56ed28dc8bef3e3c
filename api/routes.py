#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
API Routes for the Vidrich application using FastAPI.

Defines endpoints for batch and single enrichment, cost estimation,
metrics, cache clearing and health checks.
"""

import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, Response, status

from config import config
from exceptions import InvalidInputError, handle_exception
from ledger import QuotaCostLedger
from models import (CostEstimateRequest, CostEstimateResponse, EnrichRequest, EnrichResponse,
                    ErrorResponse, ExtractVideoIdRequest, RawHint)
from services.engine import EnrichmentOrchestrator
from services.llm import estimate_batch_cost
from api.dependencies import get_ledger, get_orchestrator
from logging_config import StructuredLogger
from utils import extract_video_id

from __init__ import __version__ as app_version

logger = StructuredLogger(__name__)

router = APIRouter()

# Common error responses for OpenAPI documentation
ERROR_RESPONSES: Dict[int | str, Dict[str, Any]] = {
    400: {"model": ErrorResponse, "description": "Invalid input parameters"},
    403: {"model": ErrorResponse, "description": "Forbidden (e.g., Quota Exceeded, API Key Issue)"},
    422: {"model": ErrorResponse, "description": "Request validation failed"},
    429: {"model": ErrorResponse, "description": "Rate limit exceeded"},
    500: {"model": ErrorResponse, "description": "Internal server error"},
    503: {"model": ErrorResponse, "description": "Service unavailable (e.g., initialization failed)"}
}


def _response_from_outcome(outcome) -> EnrichResponse:
    return EnrichResponse(
        request_id=outcome.summary.request_id,
        results={identifier: result.to_dict() for identifier, result in outcome.results.items()},
        records=[record.to_dict() for record in outcome.records()],
        summary=outcome.summary.to_dict(),
    )


# --- Enrichment ---

@router.post(
    "/enrich",
    response_model=EnrichResponse,
    responses=ERROR_RESPONSES,
    summary="Enrich a batch of videos",
    description="Runs each identifier through the cache and the strategy fallback chain. Returns one result per distinct identifier plus batch metrics."
)
async def enrich_batch(
    request: EnrichRequest,
    orchestrator: EnrichmentOrchestrator = Depends(get_orchestrator)
):
    """Batch enrichment endpoint.

    Individual failures are reported per identifier; only request-level
    problems (bad parameters, uninitialized services) become HTTP errors.
    """
    logger.info(f"Received /enrich request for {len(request.identifiers)} identifier(s)")
    try:
        outcome = await orchestrator.enrich(request.to_enrichment_request())
        return _response_from_outcome(outcome)
    except Exception as e:
        logger.error(f"{type(e).__name__} processing /enrich: {e}", exc_info=True)
        raise handle_exception(e)


@router.get(
    "/enrich/{identifier}",
    response_model=EnrichResponse,
    responses=ERROR_RESPONSES,
    summary="Enrich a single video"
)
async def enrich_single(
    identifier: str,
    title: Optional[str] = Query(None, description="Raw title hint used if enrichment fails."),
    channel: Optional[str] = Query(None, description="Raw channel hint used if enrichment fails."),
    orchestrator: EnrichmentOrchestrator = Depends(get_orchestrator)
):
    try:
        request = EnrichRequest(identifiers=[identifier]).to_enrichment_request()
        # Key the hint by the normalized id, the path may carry a URL
        if title or channel:
            request.hints = {request.identifiers[0]: RawHint(title=title, channel_name=channel)}
        outcome = await orchestrator.enrich(request)
        return _response_from_outcome(outcome)
    except Exception as e:
        logger.error(f"{type(e).__name__} processing /enrich/{identifier[:50]}: {e}", exc_info=True)
        raise handle_exception(e)


@router.post(
    "/estimate-cost",
    response_model=CostEstimateResponse,
    responses=ERROR_RESPONSES,
    summary="Estimate LLM enrichment cost"
)
async def estimate_cost(request: CostEstimateRequest):
    estimate = estimate_batch_cost(request.video_count, request.model)
    return CostEstimateResponse(**estimate)


@router.post(
    "/extract-video-id",
    responses=ERROR_RESPONSES,
    summary="Extract a video id from a YouTube URL"
)
async def extract_video_id_endpoint(request: ExtractVideoIdRequest) -> Dict[str, Any]:
    video_id = extract_video_id(request.url)
    if video_id is None:
        raise handle_exception(InvalidInputError(f"No YouTube video id found in: {request.url[:100]}"))
    return {"url": request.url, "video_id": video_id}


# --- Operations ---

@router.get(
    "/metrics",
    summary="Enrichment metrics",
    description="Orchestrator totals, per-strategy statistics, ledger balances and cache statistics."
)
async def get_metrics(orchestrator: EnrichmentOrchestrator = Depends(get_orchestrator)):
    try:
        return await orchestrator.get_global_stats()
    except Exception as e:
        logger.error(f"Error collecting metrics: {e}", exc_info=True)
        raise handle_exception(e)


@router.post(
    "/metrics/reset",
    summary="Reset the quota/cost ledger",
    description="Zeroes quota and cost usage. Limits and ceilings are kept."
)
async def reset_metrics(
    provider: Optional[str] = Query(None, description="Reset only this provider account."),
    orchestrator: EnrichmentOrchestrator = Depends(get_orchestrator)
):
    logger.warning(f"Received request to reset ledger (provider={provider or 'all'})")
    snapshot = await orchestrator.reset_ledger(provider)
    return {"status": "success", "ledger": snapshot}


@router.delete(
    "/cache",
    summary="Clear All Caches",
    description="Clears the enrichment result cache and memoized helpers.",
    status_code=status.HTTP_200_OK
)
async def clear_all_caches(orchestrator: EnrichmentOrchestrator = Depends(get_orchestrator)):
    logger.warning("Received request to clear all caches via DELETE /cache.")
    try:
        results = await orchestrator.clear_caches()
        return {
            "status": "success",
            "message": "All caches cleared successfully.",
            "details": results
        }
    except Exception as e:
        logger.error(f"Error occurred during manual cache clearing via endpoint: {e}", exc_info=True)
        raise handle_exception(e)


@router.get(
    "/health",
    summary="Health Check",
    description="Operational status of the service, its strategies and the ledger."
)
async def health_check(
    orchestrator: EnrichmentOrchestrator = Depends(get_orchestrator),
    ledger: QuotaCostLedger = Depends(get_ledger)
):
    logger.debug("Health check endpoint requested.")
    configured = list(config.STRATEGY_ORDER)
    available = [name for name in configured if name in orchestrator.strategies]
    missing = [name for name in configured if name not in orchestrator.strategies]

    health_data = {
        "status": "healthy" if not missing else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service_version": app_version,
        "components": {
            "strategies": {name: ("ready" if name in available else "unavailable") for name in configured},
            "cache": getattr(orchestrator.cache, "name", "custom"),
        },
    }
    try:
        health_data["ledger"] = await ledger.totals()
    except Exception as e:
        logger.error(f"Error collecting ledger totals for /health endpoint: {e}", exc_info=True)
        health_data["ledger"] = {"error": f"Failed to collect ledger totals: {str(e)}"}

    return Response(
        content=json.dumps(health_data, default=str),
        status_code=status.HTTP_200_OK,
        media_type="application/json"
    )


@router.get(
    "/config",
    summary="Effective configuration",
    description="Non-secret configuration values in effect."
)
async def get_config() -> Dict[str, Any]:
    return {
        "strategy_order": list(config.STRATEGY_ORDER),
        "enable_fallback": config.ENABLE_FALLBACK,
        "fallback_on_unavailable": config.FALLBACK_ON_UNAVAILABLE,
        "batch_size": config.BATCH_SIZE,
        "concurrency_limit": config.CONCURRENCY_LIMIT,
        "retry_attempts": config.RETRY_ATTEMPTS,
        "retry_base_delay_ms": config.RETRY_BASE_DELAY_MS,
        "retry_max_delay_ms": config.RETRY_MAX_DELAY_MS,
        "call_timeout_seconds": config.CALL_TIMEOUT_SECONDS,
        "cache_backend": config.CACHE_BACKEND,
        "cache_ttl_seconds": config.CACHE_TTL_SECONDS,
        "api_quota_limit": config.API_QUOTA_LIMIT,
        "cost_ceiling": config.COST_CEILING,
        "llm_provider": config.LLM_PROVIDER,
        "llm_model": config.LLM_MODEL,
        "circuit_breaker_threshold": config.CIRCUIT_BREAKER_THRESHOLD,
        "circuit_breaker_reset_timeout": config.CIRCUIT_BREAKER_RESET_TIMEOUT,
    }
