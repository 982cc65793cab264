"""Main entry point for the bot."""
import asyncio
import logging
import signal

from flashdrill.app import FlashDrillApp
from flashdrill.config import ensure_directories, settings
from flashdrill.logging_config import setup_logging
from flashdrill.monitoring import start_monitoring

logger = logging.getLogger("flashdrill")


async def shutdown(sig: signal.Signals, stop_event: asyncio.Event) -> None:
    """Wake the main loop so the app can stop cleanly."""
    print()  # Print newline before logging
    logger.info(f"Received exit signal {sig.name}...")
    stop_event.set()


def handle_exception(loop, context):
    """Handle exceptions in the event loop."""
    msg = context.get("exception", context["message"])
    logger.error(f"Caught exception: {msg}")


async def main() -> None:
    """Run the bot."""
    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: asyncio.create_task(shutdown(s, stop_event)))
    loop.set_exception_handler(handle_exception)

    app = FlashDrillApp()
    try:
        logger.info("Starting bot...")
        await app.start()
        await stop_event.wait()
    finally:
        logger.info("Cleaning up...")
        await app.stop()


def run() -> None:
    """Console entry point."""
    ensure_directories()

    setup_logging("Starting FlashDrill ...")

    if settings.monitoring.enabled:
        start_monitoring(settings.monitoring.port)
        logger.info(f"Metrics served on port {settings.monitoring.port}")

    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt, shutting down...")


if __name__ == "__main__":
    run()
