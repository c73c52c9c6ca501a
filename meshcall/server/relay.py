"""WebSocket relay that fans signaling messages out within a room."""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Optional

from aiohttp import WSMsgType, web

from .. import signaling
from ..utils import short_id

logger = logging.getLogger(__name__)


@dataclass
class Member:
    ws: web.WebSocketResponse
    display_name: str


class RoomHub:
    """Tracks which socket belongs to which participant in which room."""

    def __init__(self):
        self.rooms: dict[str, dict[str, Member]] = {}
        self._lock = asyncio.Lock()

    async def register(self, room_id: str, participant_id: str, display_name: str, ws) -> list[dict]:
        """Add a participant and return the roster of everyone already present."""
        async with self._lock:
            members = self.rooms.setdefault(room_id, {})
            roster = [
                {"participantId": pid, "displayName": member.display_name}
                for pid, member in members.items()
                if pid != participant_id
            ]
            members[participant_id] = Member(ws, display_name)
        logger.info(
            "%s joined room %s (%d present)", short_id(participant_id), room_id, len(roster) + 1,
        )
        return roster

    async def unregister(self, room_id: str, participant_id: str, ws=None) -> bool:
        """Remove a participant; with ``ws`` given, only if it is still that socket."""
        async with self._lock:
            members = self.rooms.get(room_id)
            if not members or participant_id not in members:
                return False
            if ws is not None and members[participant_id].ws is not ws:
                return False
            del members[participant_id]
            if not members:
                del self.rooms[room_id]
        logger.info("%s left room %s", short_id(participant_id), room_id)
        return True

    def members(self, room_id: str) -> dict[str, Member]:
        return dict(self.rooms.get(room_id, {}))

    async def send_to(self, room_id: str, participant_id: str, message: dict) -> bool:
        member = self.rooms.get(room_id, {}).get(participant_id)
        if member is None or member.ws.closed:
            logger.debug("Cannot deliver %s to %s", message.get("type"), short_id(participant_id))
            return False
        await member.ws.send_json(message)
        return True

    async def broadcast(self, room_id: str, message: dict, exclude_id: Optional[str] = None) -> None:
        for pid, member in self.members(room_id).items():
            if pid == exclude_id or member.ws.closed:
                continue
            try:
                await member.ws.send_json(message)
            except ConnectionResetError as exc:
                logger.warning("Failed to send %s to %s: %s", message.get("type"), short_id(pid), exc)

    async def route(self, room_id: str, sender_id: str, message: dict) -> None:
        """Forward a message from ``sender_id`` to its target or the whole room."""
        msg_type = message.get("type")
        message["participantId"] = sender_id
        message["roomId"] = room_id
        if msg_type in signaling.TARGETED_TYPES:
            target_id = message.get("targetId")
            if not target_id:
                raise ValueError(f"{msg_type} message without targetId")
            await self.send_to(room_id, target_id, message)
        elif msg_type in signaling.BROADCAST_TYPES:
            await self.broadcast(room_id, message, exclude_id=sender_id)
        else:
            raise ValueError(f"Unsupported message type: {msg_type}")

    async def join(self, room_id: str, participant_id: str, display_name: str, ws, message: dict) -> None:
        """Register a joiner, send it the roster, then announce it to the room."""
        roster = await self.register(room_id, participant_id, display_name, ws)
        await ws.send_json({
            "type": signaling.PARTICIPANTS,
            "roomId": room_id,
            "participants": roster,
        })
        await self.route(room_id, participant_id, message)

    async def leave(self, room_id: str, participant_id: str, display_name: str, ws=None) -> None:
        if await self.unregister(room_id, participant_id, ws):
            await self.broadcast(room_id, signaling.make_message(
                signaling.LEAVE, room_id, participant_id, display_name,
            ))


HUB_KEY = web.AppKey("hub", RoomHub)


async def _send_error(ws: web.WebSocketResponse, text: str) -> None:
    if not ws.closed:
        await ws.send_json({"type": signaling.ERROR, "message": text})


async def websocket_handler(request: web.Request) -> web.WebSocketResponse:
    """Handle one participant's signaling socket."""
    hub: RoomHub = request.app[HUB_KEY]
    ws = web.WebSocketResponse(heartbeat=30.0)
    await ws.prepare(request)

    room_id: Optional[str] = None
    participant_id: Optional[str] = None
    display_name = ""

    try:
        async for msg in ws:
            if msg.type == WSMsgType.ERROR:
                logger.error("Socket error: %s", ws.exception())
                break
            if msg.type != WSMsgType.TEXT:
                continue

            try:
                data = json.loads(msg.data)
            except json.JSONDecodeError:
                await _send_error(ws, "Malformed JSON")
                continue
            if not isinstance(data, dict):
                await _send_error(ws, "Message must be an object")
                continue

            msg_type = data.get("type")
            logger.debug("Received %s from %s", msg_type, short_id(participant_id or "unknown"))

            if msg_type == signaling.JOIN:
                if participant_id is not None:
                    await _send_error(ws, "Already joined")
                    continue
                room_id = data.get("roomId")
                participant_id = data.get("participantId")
                display_name = data.get("displayName") or "Anonymous"
                if not room_id or not participant_id:
                    room_id = participant_id = None
                    await _send_error(ws, "join requires roomId and participantId")
                    continue
                await hub.join(room_id, participant_id, display_name, ws, data)

            elif participant_id is None:
                await _send_error(ws, "join first")

            elif msg_type == signaling.LEAVE:
                break

            else:
                try:
                    await hub.route(room_id, participant_id, data)
                except ValueError as exc:
                    await _send_error(ws, str(exc))

    finally:
        if participant_id is not None:
            await hub.leave(room_id, participant_id, display_name, ws)

    return ws
