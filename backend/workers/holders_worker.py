"""Holders refresh worker: re-populates every enabled collection on an interval.

Runs inside the API process (lifespan, HOLDERS_REFRESH_ENABLED) or standalone
from the backend dir:
  python -m workers.holders_worker
"""

from __future__ import annotations

import asyncio
import os
import sys
from typing import Optional

_BACKEND = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _BACKEND not in sys.path:
    sys.path.insert(0, _BACKEND)
if os.getcwd() != _BACKEND:
    os.chdir(_BACKEND)

from config import settings
from models.contracts import ContractConfigError, enabled_contracts
from models.database import init_database
from services.population import PopulationOrchestrator, population_orchestrator
from utils.logger import get_logger, setup_logging

logger = get_logger("holders_worker")

_MIN_INTERVAL_SECONDS = 5


async def refresh_all(orchestrator: PopulationOrchestrator) -> dict[str, str]:
    """One incremental pass over enabled collections; returns key -> status."""
    statuses: dict[str, str] = {}
    for config in enabled_contracts():
        try:
            result = await orchestrator.populate(config.key, force_update=False)
        except ContractConfigError as e:
            logger.warning("Skipping misconfigured contract", contract=config.key, error=str(e))
            statuses[config.key] = "skipped"
            continue
        statuses[config.key] = result.status
    return statuses


async def run_refresh_loop(
    orchestrator: PopulationOrchestrator,
    interval_seconds: Optional[float] = None,
    stop_event: Optional[asyncio.Event] = None,
) -> None:
    interval = max(_MIN_INTERVAL_SECONDS, interval_seconds or settings.HOLDERS_REFRESH_INTERVAL_SECONDS)
    stop_event = stop_event or asyncio.Event()
    logger.info("Holders refresh worker started", interval_seconds=interval)

    while not stop_event.is_set():
        try:
            statuses = await refresh_all(orchestrator)
            logger.info("Holders refresh cycle complete", statuses=statuses)
        except Exception as e:
            logger.exception("Holders refresh cycle failed", error=str(e))

        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass

    logger.info("Holders refresh worker stopped")


async def main() -> None:
    setup_logging(level=settings.LOG_LEVEL, json_format=settings.LOG_JSON)
    if settings.CACHE_BACKEND == "sqlite":
        await init_database()
        logger.info("Database initialized")
    try:
        await run_refresh_loop(population_orchestrator)
    except asyncio.CancelledError:
        logger.info("Holders worker shutting down")
    finally:
        await population_orchestrator.gateway.close()
        await population_orchestrator.store.close()


if __name__ == "__main__":
    asyncio.run(main())
