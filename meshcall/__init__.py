"""Multi-peer WebRTC mesh call orchestration on aiortc."""

from .errors import (
    AcquisitionError,
    AcquisitionReason,
    MalformedNegotiationError,
    MeshCallError,
    ProtocolViolation,
    ScreenShareConflictError,
)
from .media import QUALITY_PRESETS, LocalMediaManager, get_preset
from .session import CallSession
from .signaling import SignalingChannel, WebSocketSignalingChannel
from .state import CallSnapshot, RemoteStreamEntry

__version__ = "0.1.0"

__all__ = [
    "AcquisitionError",
    "AcquisitionReason",
    "CallSession",
    "CallSnapshot",
    "LocalMediaManager",
    "MalformedNegotiationError",
    "MeshCallError",
    "ProtocolViolation",
    "QUALITY_PRESETS",
    "RemoteStreamEntry",
    "ScreenShareConflictError",
    "SignalingChannel",
    "WebSocketSignalingChannel",
    "get_preset",
]
