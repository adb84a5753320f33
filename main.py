#!/usr/bin/env python3
"""
Production entry point for ShelfScout workers.

Runs the job queue worker pool until SIGINT/SIGTERM, logging a health
snapshot periodically. ``python main.py health`` prints the snapshot and exits.
"""

from __future__ import annotations

import asyncio
import json
import os
import signal
import sys
from pathlib import Path
from typing import Any, Dict

import structlog

from shelfscout.config import Config
from shelfscout.container import DependencyContainer
from shelfscout.observability import configure_logging

logger = structlog.get_logger(__name__)

HEALTH_INTERVAL_SECONDS = 30.0


def _load_config() -> tuple[Path | None, Config]:
    config_path = os.getenv("SHELFSCOUT_CONFIG")
    path = Path(config_path) if config_path else None
    config = Config.from_yaml(path) if path else Config()
    return path, config


async def health_check(container: DependencyContainer) -> Dict[str, Any]:
    """Health snapshot for container orchestration."""
    try:
        queue = await container.get_queue()
        return {
            "status": "healthy",
            "timestamp": asyncio.get_running_loop().time(),
            "jobs": await queue.counts(),
            "queue": queue.get_stats(),
            **container.get_health_status(),
        }
    except Exception as e:
        return {
            "status": "unhealthy",
            "error": str(e),
            "timestamp": asyncio.get_running_loop().time(),
        }


async def run_workers(container: DependencyContainer) -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop.set)

    await container.start_metrics()
    queue = await container.get_queue()
    await queue.start()
    logger.info("ShelfScout workers started", concurrency=queue.concurrency)

    while not stop.is_set():
        try:
            await asyncio.wait_for(stop.wait(), timeout=HEALTH_INTERVAL_SECONDS)
        except asyncio.TimeoutError:
            health = await health_check(container)
            logger.info("Health check", status=health["status"], jobs=health.get("jobs"))

    logger.info("Shutdown signal received, stopping workers")
    await queue.stop()


async def main() -> None:
    config_path, config = _load_config()
    configure_logging(config.monitoring)
    container = DependencyContainer(config_path=config_path, config=config)

    try:
        async with container.lifecycle():
            if len(sys.argv) > 1 and sys.argv[1] == "health":
                health = await health_check(container)
                print(json.dumps(health, indent=2, default=str))
                sys.exit(0 if health["status"] == "healthy" else 1)
            await run_workers(container)
    except Exception as e:
        logger.error("Unhandled exception in main", error=str(e))
        sys.exit(1)
    finally:
        logger.info("ShelfScout workers stopped")


if __name__ == "__main__":
    asyncio.run(main())
