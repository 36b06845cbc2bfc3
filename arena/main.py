#!/usr/bin/env python3
"""
main.py — Trading Arena Entry Point

Serves the arena API and event stream:
1. Loads configuration from the environment (.env supported)
2. Builds the runtime (store, decision sources, market feed, orchestrator)
3. Runs the FastAPI app under uvicorn, with the live price stream attached

Usage:
    python main.py [--host 0.0.0.0] [--port 5000] [--log-level INFO]
    python main.py --once        # run a single cycle headless and exit

Environment:
    See .env.example for the provider keys and ARENA_* settings.
"""

import argparse
import asyncio
import os
import sys

from dotenv import load_dotenv
from loguru import logger

from arena_config import ArenaConfig

load_dotenv()


def setup_logging(log_level: str = "INFO") -> None:
    os.makedirs("logs", exist_ok=True)
    logger.remove()
    logger.add(
        sys.stdout,
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | {message}",
        level=log_level,
        colorize=True,
    )
    logger.add(
        "logs/arena.log",
        rotation="10 MB",
        retention="7 days",
        level="DEBUG",
        format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {message}",
    )


async def run_once(config: ArenaConfig) -> int:
    """Run one cycle without the HTTP server; exit code 0 if a trade was made."""
    from arena_api import ArenaRuntime

    runtime = ArenaRuntime.from_config(config)
    try:
        trade = await runtime.orchestrator.run_cycle()
    finally:
        await runtime.source.aclose()
    if trade is None:
        logger.error("Cycle did not complete")
        return 1
    logger.info(f"Trade: {trade.to_dict()}")
    for weight in runtime.store.get_agent_weights():
        logger.info(f"Weights: {weight.to_dict()}")
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Trading Arena")
    parser.add_argument("--host", default=None, help="Bind address (default: ARENA_HOST or 0.0.0.0)")
    parser.add_argument("--port", type=int, default=None, help="Port (default: ARENA_PORT or 5000)")
    parser.add_argument("--log-level", default=None, help="Log level (default: ARENA_LOG_LEVEL or INFO)")
    parser.add_argument("--once", action="store_true", help="Run one cycle then exit")
    args = parser.parse_args()

    try:
        config = ArenaConfig.from_env()
    except ValueError as e:
        print(f"Startup failed: {e}", file=sys.stderr)
        sys.exit(1)

    log_level = (args.log_level or config.log_level).upper()
    setup_logging(log_level)
    logger.info(
        f"Providers configured: {config.configured_agents() or 'none (local synthesis)'}"
    )

    if args.once:
        sys.exit(asyncio.run(run_once(config)))

    import uvicorn
    from arena_api import ArenaRuntime, app, set_runtime

    set_runtime(ArenaRuntime.from_config(config))
    uvicorn.run(
        app,
        host=args.host or config.host,
        port=args.port or config.port,
        log_level=log_level.lower(),
    )


if __name__ == "__main__":
    main()
