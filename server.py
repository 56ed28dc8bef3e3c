#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Uvicorn server entry point for the Vidrich application.

Handles environment loading (.env), logging configuration based on
environment, and starts the Uvicorn server process.
"""

import logging
import os
from pathlib import Path

import uvicorn
from dotenv import load_dotenv

from config import config
from logging_config import setup_logging_from_env


def load_environment(env_path: Path = Path(".") / ".env") -> bool:
    """Load a .env file if present, then re-read configuration from the environment."""
    loaded = False
    if env_path.is_file():
        load_dotenv(dotenv_path=env_path, override=True)
        print(f"Loaded environment variables from: {env_path.resolve()}")
        loaded = True
    else:
        print(".env file not found, using system environment variables.")

    config.load_from_env()
    return loaded


def main():
    load_environment()
    setup_logging_from_env()

    if not config.API_KEY:
        logging.warning("YOUTUBE_API_KEY is not defined; the official API strategy will be disabled.")
    if not config.LLM_API_KEY:
        logging.warning(f"{config.LLM_API_KEY_ENV_VAR} is not defined; the LLM strategy will be disabled.")

    run_host = os.environ.get("HOST", "127.0.0.1")
    try:
        run_port = int(os.environ.get("PORT", "8000"))
    except ValueError:
        logging.warning(f"Invalid PORT environment variable '{os.environ.get('PORT')}', using default 8000.")
        run_port = 8000

    # The ledger and caches live in process memory, so one worker keeps budgets exact
    try:
        run_workers = int(os.environ.get("WEB_CONCURRENCY", "1"))
        if run_workers > 1:
            logging.warning(f"Running with {run_workers} workers. Each worker keeps its own ledger and cache.")
    except ValueError:
        logging.warning(f"Invalid WEB_CONCURRENCY environment variable '{os.environ.get('WEB_CONCURRENCY')}', using default 1.")
        run_workers = 1

    debug_mode = os.environ.get("DEBUG", "false").lower() in ("true", "1", "yes")
    uvicorn_log_level = os.environ.get("UVICORN_LOG_LEVEL", "debug" if debug_mode else "info").lower()

    logging.info(f"Starting Uvicorn server on http://{run_host}:{run_port}")
    logging.info(f"Debug mode: {debug_mode}, Workers: {run_workers}, Uvicorn Log Level: {uvicorn_log_level}")

    uvicorn.run(
        "main:app",
        host=run_host,
        port=run_port,
        reload=debug_mode,
        workers=run_workers if not debug_mode else 1,
        log_level=uvicorn_log_level,
    )


if __name__ == "__main__":
    main()
