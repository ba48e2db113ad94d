"""Cadence entry point."""

import asyncio
import logging
import signal

from cadence.config import settings

logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    level=getattr(logging, settings.log_level),
)
logger = logging.getLogger(__name__)


async def run() -> None:
    """Start the engine and block until SIGINT/SIGTERM."""
    from cadence.app import CadenceApp

    app = CadenceApp.build()
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    logger.info(
        "Starting Cadence (db=%s, tz=%s)...", settings.database_path, settings.scheduler_timezone
    )
    await app.start()
    try:
        await stop.wait()
    finally:
        logger.info("Shutting down...")
        await app.stop()


def main() -> None:
    asyncio.run(run())


if __name__ == "__main__":
    main()
