import asyncio
import logging
import signal

from api_ingest.config.base_config import settings
from api_ingest.database import init_db
from api_ingest.dependencies import build_container


logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


async def main():
    """Main entry point for a standalone transcoding worker."""
    if settings.QUEUE_BACKEND != "kafka":
        raise SystemExit("A standalone worker needs QUEUE_BACKEND=kafka; the local queue only lives inside the API")

    container = build_container(settings)
    init_db(container.engine)
    await container.queue.start()

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    logger.info("Starting transcoding worker...")
    container.worker_pool.start()
    try:
        await stop.wait()
    finally:
        logger.info("Worker shutting down...")
        await container.worker_pool.stop()
        await container.queue.stop()
        logger.info("Worker stopped")


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
