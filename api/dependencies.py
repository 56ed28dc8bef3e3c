#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
FastAPI dependency injection functions for Vidrich services.

build_services() wires the ledger, cache, strategies and orchestrator at
startup; the get_* functions hand them to route handlers.
"""

from typing import Dict, Optional

from fastapi import HTTPException, status

from config import config
from exceptions import APIConfigurationError
from ledger import QuotaCostLedger
from logging_config import StructuredLogger
from services.base import EnrichmentStrategy
from services.cache import EnrichmentCache, create_enrichment_cache
from services.engine import EnrichmentOrchestrator
from services.llm import LLMStrategy
from services.page_fetcher import PageFetcher
from services.scraper import ScrapingStrategy
from services.youtube_api import OfficialAPIStrategy

logger = StructuredLogger(__name__)

# --- Global Service Instances ---
# Populated during the application lifespan startup.
ledger: Optional[QuotaCostLedger] = None
cache: Optional[EnrichmentCache] = None
orchestrator: Optional[EnrichmentOrchestrator] = None


def build_strategies(shared_ledger: QuotaCostLedger, cfg=config) -> Dict[str, EnrichmentStrategy]:
    """Instantiate every strategy whose configuration is complete.

    A strategy missing its credentials is left out; requests naming it get
    a Transient "not available" failure for that stage.
    """
    fetcher = PageFetcher()
    strategies: Dict[str, EnrichmentStrategy] = {}

    try:
        strategies["api"] = OfficialAPIStrategy(shared_ledger)
    except APIConfigurationError as e:
        logger.warning(f"Official API strategy disabled: {e}")

    strategies["scraping"] = ScrapingStrategy(shared_ledger, fetcher=fetcher)

    try:
        strategies["llm"] = LLMStrategy(shared_ledger, fetcher=fetcher)
    except APIConfigurationError as e:
        logger.warning(f"LLM strategy disabled: {e}")

    logger.info(f"Strategies available: {list(strategies)}", configured_order=cfg.STRATEGY_ORDER)
    return strategies


async def build_services(cfg=config) -> EnrichmentOrchestrator:
    """Create the shared ledger, cache and orchestrator and store them globally."""
    global ledger, cache, orchestrator

    ledger = QuotaCostLedger.from_config(cfg)
    cache = create_enrichment_cache(cfg)
    orchestrator = EnrichmentOrchestrator(build_strategies(ledger, cfg), ledger, cache)
    await orchestrator.register_caches()
    return orchestrator


async def shutdown_services() -> None:
    global ledger, cache, orchestrator

    if orchestrator is not None:
        await orchestrator.shutdown()
    ledger = None
    cache = None
    orchestrator = None


# --- Dependency Injection Functions ---

def get_orchestrator() -> EnrichmentOrchestrator:
    """Dependency function to get the initialized EnrichmentOrchestrator.

    Raises:
        HTTPException: 503 Service Unavailable if the orchestrator is not initialized.
    """
    if not orchestrator:
        logger.critical("Dependency Error: Enrichment orchestrator not initialized.")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service Initialization Error: Enrichment orchestrator is not available.",
            headers={"X-Error-Code": "SERVICE_UNAVAILABLE_ORCHESTRATOR"}
        )
    return orchestrator


def get_ledger() -> QuotaCostLedger:
    if not ledger:
        logger.critical("Dependency Error: Quota/cost ledger not initialized.")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service Initialization Error: Ledger is not available.",
            headers={"X-Error-Code": "SERVICE_UNAVAILABLE_LEDGER"}
        )
    return ledger
