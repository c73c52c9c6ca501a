"""Reference signaling relay."""

from .app import HUB_KEY, create_app, start_server
from .relay import RoomHub

__all__ = ["HUB_KEY", "RoomHub", "create_app", "start_server"]
