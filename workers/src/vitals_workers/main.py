"""Vitals Workers: background job processor for wearable data ingestion."""

import asyncio
import logging

from .config import Config
from .health import start_health_server
from .logging import setup_logging
from .registry import registered_types
from .worker import Worker

# Import handlers to register them
from . import handlers  # noqa: F401

logger = logging.getLogger(__name__)


def _log_startup(config: Config) -> None:
    logger.info(
        "Vitals worker starting (log_format=%s, health_port=%d, batch_size=%d, max_attempts=%d)",
        config.log_format,
        config.health_port,
        config.batch_size,
        config.max_attempts,
    )
    logger.info("Registered job types: %s", sorted(registered_types()))
    if not (config.terra_api_key and config.terra_dev_id):
        # Only terra_backfill talks to the Terra API.
        logger.warning("TERRA_API_KEY/TERRA_DEV_ID not set: terra_backfill jobs will fail")


def main() -> None:
    config = Config.from_env()
    setup_logging(config.log_format)
    _log_startup(config)
    asyncio.run(_run(config))


async def _run(config: Config) -> None:
    health_server = await start_health_server(config.health_port, config.database_url)
    try:
        await Worker(config).run()
    finally:
        health_server.close()
        await health_server.wait_closed()
        logger.info("Vitals worker stopped")


if __name__ == "__main__":
    main()
