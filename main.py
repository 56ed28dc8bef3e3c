#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Main FastAPI application setup for Vidrich.

Initializes the FastAPI application, sets up lifespan management for the
enrichment services, registers CORS and includes the API routes.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from __init__ import __version__

from api import dependencies, routes
from config import config
from logging_config import StructuredLogger

logger = StructuredLogger(__name__)


# --- Lifespan Management ---

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Build the services on startup and close their clients on shutdown."""
    logger.info("Starting Vidrich FastAPI application lifespan...")

    try:
        logger.info("Initializing services...")
        orchestrator = await dependencies.build_services()
        logger.info(
            "Vidrich services initialized successfully.",
            strategies=list(orchestrator.strategies)
        )
        if not orchestrator.strategies:
            logger.critical("No enrichment strategy could be initialized. Every identifier will fail.")
    except Exception as e:
        logger.critical(f"Critical unexpected error during service initialization: {e}", exc_info=True)
        dependencies.ledger = None
        dependencies.cache = None
        dependencies.orchestrator = None

    yield

    logger.info("Shutting down Vidrich FastAPI application lifespan...")
    try:
        await dependencies.shutdown_services()
    except Exception as e:
        logger.error(f"Error during service shutdown: {e}", exc_info=True)
    logger.info("Lifespan cleanup finished.")


# --- FastAPI Application Instantiation ---

app = FastAPI(
    lifespan=lifespan,
    title="Vidrich API",
    description="API to enrich YouTube video identifiers with metadata from the Data API, page scraping or an LLM.",
    version=__version__
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["*"]
)
logger.debug(f"CORS Middleware added. Allowed origins: {config.ALLOWED_ORIGINS}")

app.include_router(routes.router)
logger.info("FastAPI application setup complete.")
