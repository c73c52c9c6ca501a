"""aiohttp application setup for the signaling relay."""

import logging

from aiohttp import web

from ..config import server_config
from .relay import HUB_KEY, RoomHub, websocket_handler

logger = logging.getLogger(__name__)


def create_app(hub: RoomHub = None) -> web.Application:
    """Create and configure the aiohttp application."""
    app = web.Application()
    app[HUB_KEY] = hub or RoomHub()

    # Routes
    app.router.add_get("/ws", websocket_handler)

    return app


async def start_server(host: str = server_config.HOST, port: int = server_config.PORT):
    """Start the relay."""
    app = create_app()
    runner = web.AppRunner(app)
    await runner.setup()

    site = web.TCPSite(runner, host, port)
    await site.start()

    logger.info("Signaling relay started at ws://%s:%d/ws", host, port)

    return runner
