"""Progress worker entry point: background recalculation of exercise progress aggregates."""

import asyncio
import logging

from .config import Config, baseline_in_max_weight_enabled, max_retries_setting
from .health import start_health_server
from .logging import setup_logging
from .registry import registered_types
from .worker import Worker

# Import handlers to register them
from . import handlers  # noqa: F401


def main() -> None:
    config = Config.from_env()
    setup_logging(config.log_format)

    logger = logging.getLogger(__name__)
    logger.info("Progress worker starting")
    logger.info("Log format: %s", config.log_format)
    logger.info("Health port: %d", config.health_port)
    logger.info("Registered job types: %s", registered_types())
    logger.info(
        "Retries: %d attempts per queued job, backoff from %.1fs",
        max_retries_setting(),
        config.backoff_seconds,
    )
    logger.info("Baseline in max weight: %s", baseline_in_max_weight_enabled())

    asyncio.run(_run(config))


async def _run(config: Config) -> None:
    logger = logging.getLogger(__name__)

    health_server = await start_health_server(config.health_port, config.database_url)
    logger.info("Health server started")

    try:
        worker = Worker(config)
        await worker.run()
    finally:
        health_server.close()
        await health_server.wait_closed()


if __name__ == "__main__":
    main()
