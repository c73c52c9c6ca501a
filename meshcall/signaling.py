"""Signaling message taxonomy and the client side of the signaling channel."""

import abc
import json
import logging
from typing import AsyncIterator, Optional

import aiohttp

logger = logging.getLogger(__name__)

# Message types
JOIN = "join"
LEAVE = "leave"
PARTICIPANTS = "participants"
OFFER = "offer"
ANSWER = "answer"
CANDIDATE = "candidate"
TRACK_TOGGLE = "track-toggle"
SCREEN_SHARE_STARTED = "screen-share-started"
SCREEN_SHARE_STOPPED = "screen-share-stopped"
ERROR = "error"

# Forwarded to a single participant named by "targetId"
TARGETED_TYPES = frozenset({OFFER, ANSWER, CANDIDATE})

# Fanned out to everyone else in the room
BROADCAST_TYPES = frozenset({JOIN, LEAVE, TRACK_TOGGLE, SCREEN_SHARE_STARTED, SCREEN_SHARE_STOPPED})


def make_message(msg_type: str, room_id: str, sender_id: str, sender_name: str, **fields) -> dict:
    """Build an outbound message stamped with the sender's identity."""
    message = {
        "type": msg_type,
        "roomId": room_id,
        "participantId": sender_id,
        "displayName": sender_name,
    }
    message.update(fields)
    return message


class SignalingChannel(abc.ABC):
    """Ordered, reliable, room-scoped message channel supplied by the host."""

    @abc.abstractmethod
    async def send(self, message: dict) -> None:
        """Send one message to the relay."""

    @abc.abstractmethod
    def messages(self) -> AsyncIterator[dict]:
        """Iterate inbound messages until the channel closes."""

    async def close(self) -> None:
        pass


class WebSocketSignalingChannel(SignalingChannel):
    """Signaling over an aiohttp WebSocket connected to the relay's ``/ws`` route."""

    def __init__(self, url: str, session: Optional[aiohttp.ClientSession] = None):
        self.url = url
        self._session = session
        self._owns_session = session is None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    async def connect(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession()
        self._ws = await self._session.ws_connect(self.url, heartbeat=30.0)
        logger.info("Signaling connected to %s", self.url)

    async def send(self, message: dict) -> None:
        if not self.connected:
            logger.warning("Dropping %s message: signaling channel is closed", message.get("type"))
            return
        await self._ws.send_json(message)

    async def messages(self) -> AsyncIterator[dict]:
        if self._ws is None:
            raise RuntimeError("connect() must be called before reading messages")
        async for msg in self._ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                try:
                    yield json.loads(msg.data)
                except json.JSONDecodeError:
                    logger.warning("Ignoring non-JSON signaling frame")
            elif msg.type == aiohttp.WSMsgType.ERROR:
                logger.error("Signaling socket error: %s", self._ws.exception())
                break

    async def close(self) -> None:
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
