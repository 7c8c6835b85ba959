"""Worker entry point.

Usage:
    python -m genjobs
"""

import asyncio
import sys

import structlog

from genjobs.core import timezone  # noqa: F401
from genjobs.core.config import Settings, configure_logging
from genjobs.core.database import setup_db_session
from genjobs.workers.generation_worker import run_generation_worker

logger = structlog.get_logger()


async def async_main() -> int:
    settings = Settings()  # type: ignore[call-arg]
    configure_logging(settings)

    logger.info("app.starting", env=settings.app_env, batch_size=settings.worker_batch_size)
    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)

    await run_generation_worker(session_factory, settings)
    return 0


def main() -> None:
    """Synchronous entry point."""
    try:
        sys.exit(asyncio.run(async_main()))
    except KeyboardInterrupt:
        logger.info("app.shutdown")
        sys.exit(130)


if __name__ == "__main__":
    main()
