"""Runtime configuration for meshcall.

Values are read from the environment once at import time. An optional
``.env`` file in the working directory is loaded first.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Optional

from aiortc import RTCIceServer
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

load_dotenv()


def _env_list(name: str, default: tuple) -> tuple:
    raw = os.getenv(name)
    if not raw:
        return default
    return tuple(item.strip() for item in raw.split(",") if item.strip())


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    return float(raw) if raw else default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    return int(raw) if raw else default


# ============================================================
# ICE servers
# ============================================================

@dataclass(frozen=True)
class ICEServerConfig:
    """STUN/TURN servers handed to every new transport."""

    STUN_URLS: tuple = field(default_factory=lambda: _env_list(
        "MESHCALL_STUN_URLS",
        (
            "stun:stun.l.google.com:19302",
            "stun:stun1.l.google.com:19302",
            "stun:global.stun.twilio.com:3478",
        ),
    ))

    TURN_URL: Optional[str] = field(default_factory=lambda: os.getenv("MESHCALL_TURN_URL"))
    TURN_USERNAME: Optional[str] = field(default_factory=lambda: os.getenv("MESHCALL_TURN_USERNAME"))
    TURN_CREDENTIAL: Optional[str] = field(default_factory=lambda: os.getenv("MESHCALL_TURN_CREDENTIAL"))

    @property
    def has_turn_server(self) -> bool:
        return all([self.TURN_URL, self.TURN_USERNAME, self.TURN_CREDENTIAL])

    def ice_servers(self) -> list[RTCIceServer]:
        """Build the aiortc server list, STUN first."""
        servers = [RTCIceServer(urls=[url]) for url in self.STUN_URLS]
        if self.has_turn_server:
            servers.append(RTCIceServer(
                urls=[self.TURN_URL],
                username=self.TURN_USERNAME,
                credential=self.TURN_CREDENTIAL,
            ))
        return servers


# ============================================================
# Connection health
# ============================================================

@dataclass(frozen=True)
class ConnectionConfig:
    """Grace periods and limits used by the health monitor."""

    # seconds a "disconnected" peer may stay that way before an ICE restart
    DISCONNECT_GRACE_SECONDS: float = field(
        default_factory=lambda: _env_float("MESHCALL_DISCONNECT_GRACE", 5.0))

    # seconds a failed transport may stay failed before the peer is dropped
    FAILURE_GRACE_SECONDS: float = field(
        default_factory=lambda: _env_float("MESHCALL_FAILURE_GRACE", 15.0))

    MAX_RESTART_ATTEMPTS: int = field(
        default_factory=lambda: _env_int("MESHCALL_MAX_RESTARTS", 3))

    STATS_INTERVAL_SECONDS: float = field(
        default_factory=lambda: _env_float("MESHCALL_STATS_INTERVAL", 5.0))

    PACKET_LOSS_WARNING_PCT: float = 5.0


# ============================================================
# Local capture devices
# ============================================================

@dataclass(frozen=True)
class MediaConfig:
    """FFmpeg input devices for camera, microphone and screen capture."""

    CAMERA_DEVICE: str = field(default_factory=lambda: os.getenv("MESHCALL_CAMERA_DEVICE", "/dev/video0"))
    CAMERA_FORMAT: str = field(default_factory=lambda: os.getenv("MESHCALL_CAMERA_FORMAT", "v4l2"))

    MICROPHONE_DEVICE: str = field(default_factory=lambda: os.getenv("MESHCALL_MIC_DEVICE", "default"))
    MICROPHONE_FORMAT: str = field(default_factory=lambda: os.getenv("MESHCALL_MIC_FORMAT", "pulse"))

    SCREEN_DEVICE: str = field(default_factory=lambda: os.getenv("MESHCALL_SCREEN_DEVICE", ":0.0"))
    SCREEN_FORMAT: str = field(default_factory=lambda: os.getenv("MESHCALL_SCREEN_FORMAT", "x11grab"))
    SCREEN_FRAMERATE: int = 15


# ============================================================
# Signaling relay
# ============================================================

@dataclass(frozen=True)
class ServerConfig:
    HOST: str = field(default_factory=lambda: os.getenv("MESHCALL_HOST", "0.0.0.0"))
    PORT: int = field(default_factory=lambda: _env_int("MESHCALL_PORT", 8080))


ice_config = ICEServerConfig()
connection_config = ConnectionConfig()
media_config = MediaConfig()
server_config = ServerConfig()

logger.debug("TURN server configured: %s", ice_config.has_turn_server)
