"""meshcall signaling relay - Entry Point."""

import asyncio
import logging
import signal

from meshcall.config import server_config
from meshcall.server import start_server
from meshcall.utils import configure_logging

logger = logging.getLogger("meshcall")


async def main():
    """Main entry point for the signaling relay."""
    configure_logging()
    runner = await start_server(host=server_config.HOST, port=server_config.PORT)

    # Handle shutdown gracefully
    stop_event = asyncio.Event()

    def handle_signal():
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, handle_signal)

    logger.info("Press Ctrl+C to stop the relay")

    try:
        await stop_event.wait()
    finally:
        logger.info("Shutting down relay...")
        await runner.cleanup()
        logger.info("Relay stopped.")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
