from __future__ import annotations

import asyncio
import signal
import sys

from loguru import logger

from data.store import create_store
from engine.errors import StoreUnavailable
from services.config_service import WorkerSettings
from services.orchestrator import GatewayFactory, default_handlers
from services.scheduler import TickScheduler


def configure_logging(level: str) -> None:
    logger.remove()
    logger.add(sys.stderr, level=level.upper())


async def main() -> int:
    settings = WorkerSettings()
    configure_logging(settings.LOG_LEVEL)
    store = create_store(settings.DATABASE_URL or None, settings.DATABASE_PATH)
    scheduler = TickScheduler(
        store,
        GatewayFactory(settings),
        default_handlers(),
        interval_seconds=settings.TICK_INTERVAL_SECONDS,
        tick_timeout=settings.TICK_TIMEOUT_SECONDS,
        max_concurrency=settings.MAX_CONCURRENCY,
    )

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, scheduler.stop)

    logger.info("Worker starting (paper={})", settings.PAPER_TRADING)
    try:
        await scheduler.run_forever()
    except StoreUnavailable as exc:
        logger.critical("Store unavailable, worker halted: {}", exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
