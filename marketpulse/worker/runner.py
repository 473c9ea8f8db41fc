"""Worker process entry point."""

import asyncio
import logging
import signal

from marketpulse.config import settings
from marketpulse.logging_config import setup_logging
from marketpulse.services import Services

logger = logging.getLogger(__name__)


async def run_worker() -> None:
    """Run the worker pool and scheduler until SIGINT/SIGTERM."""
    services = Services(settings)
    await services.startup()

    pool = services.build_worker_pool()
    scheduler = services.build_scheduler()

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(stop.set))

    await pool.start()
    scheduler.start()
    logger.info("Worker running")

    try:
        await stop.wait()
    finally:
        logger.info("Shutting down worker...")
        scheduler.shutdown(wait=False)
        await pool.stop()
        await services.shutdown()
        logger.info("Shutdown complete")


def main() -> None:
    setup_logging(role="worker")
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
