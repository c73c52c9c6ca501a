"""Call session: wires the orchestrator components to a signaling channel."""

import asyncio
import logging
from collections import defaultdict
from typing import Callable, Optional

from aiortc import MediaStreamTrack, RTCIceServer
from pyee.asyncio import AsyncIOEventEmitter

from . import signaling
from .candidates import CandidateBuffer
from .config import ConnectionConfig, connection_config
from .errors import AcquisitionError, MeshCallError, ProtocolViolation
from .health import HealthMonitor
from .media import DEFAULT_QUALITY, LocalMediaManager, MediaSource
from .negotiation import NegotiationCoordinator
from .registry import ConnectionRegistry, PeerConnection, TransportFactory
from .screenshare import ScreenShareController
from .signaling import SignalingChannel
from .state import CallSnapshot, CallState
from .utils import BackgroundTasks, short_id

logger = logging.getLogger(__name__)


class CallSession(AsyncIOEventEmitter):
    """
    One participant's view of a mesh call in a single room.

    Events:
        "participant-joined" (participant_id, display_name)
        "participant-left" (participant_id): explicit leave or lost transport

    Inbound messages are handled concurrently across senders and in arrival
    order for each sender.
    """

    def __init__(
        self,
        room_id: str,
        participant_id: str,
        display_name: str,
        channel: SignalingChannel,
        *,
        media: Optional[LocalMediaManager] = None,
        transport_factory: Optional[TransportFactory] = None,
        ice_servers: Optional[list[RTCIceServer]] = None,
        config: ConnectionConfig = connection_config,
    ):
        super().__init__()
        self.room_id = room_id
        self.participant_id = participant_id
        self.display_name = display_name
        self.channel = channel
        self.joined = False

        self.state = CallState()
        self.media = media or LocalMediaManager()
        self.media.on_track_toggle = self._announce_track
        self.candidates = CandidateBuffer()
        self.registry = ConnectionRegistry(
            participant_id,
            self.media,
            self.candidates,
            transport_factory=transport_factory,
            ice_servers=ice_servers,
        )
        self.negotiation = NegotiationCoordinator(self.registry, self.candidates, self._send_to)
        self.health = HealthMonitor(
            self.registry,
            restart=self.negotiation.restart_connectivity,
            drop=self._drop_peer,
            config=config,
        )
        self.screenshare = ScreenShareController(
            participant_id, self.media, self.registry, self.state, self._broadcast,
        )
        self.tasks = BackgroundTasks("session")
        self._sender_locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

        self.registry.on_ice_candidate = self._on_ice_candidate
        self.registry.on_ice_state_change = self._on_ice_state
        self.registry.on_connection_state_change = self.health.on_connection_state
        self.registry.on_negotiation_needed = self._on_negotiation_needed
        self.registry.on_track = self._on_track
        self.registry.on_peer_created = self._on_peer_created
        self.registry.on_peer_destroyed = self._on_peer_destroyed

    # Snapshot access

    @property
    def snapshot(self) -> CallSnapshot:
        return self.state.snapshot

    def subscribe(self, listener: Callable[[CallSnapshot], None]) -> Callable[[], None]:
        return self.state.subscribe(listener)

    # Outbound signaling

    async def _send(self, msg_type: str, **fields) -> None:
        message = signaling.make_message(
            msg_type, self.room_id, self.participant_id, self.display_name, **fields,
        )
        await self.channel.send(message)

    async def _send_to(self, msg_type: str, target_id: str, **fields) -> None:
        await self._send(msg_type, targetId=target_id, **fields)

    async def _broadcast(self, msg_type: str, **fields) -> None:
        await self._send(msg_type, **fields)

    async def _announce_track(self, kind: str, enabled: bool) -> None:
        await self._send(signaling.TRACK_TOGGLE, kind=kind, enabled=enabled)

    # Registry callbacks

    def _on_ice_candidate(self, peer: PeerConnection, candidate: dict) -> None:
        self.tasks.spawn(self._send_to(signaling.CANDIDATE, peer.id, candidate=candidate))

    def _on_ice_state(self, peer: PeerConnection, state: str) -> None:
        self.state.set_peer_state(peer.id, state)
        self.health.on_ice_state(peer, state)

    def _on_negotiation_needed(self, peer: PeerConnection) -> None:
        self.negotiation.schedule(peer.id)

    def _on_track(self, peer: PeerConnection, track: MediaStreamTrack) -> None:
        self.state.add_remote_track(peer.id, peer.display_name, track)

    def _on_peer_created(self, peer: PeerConnection) -> None:
        self.state.set_peer_state(peer.id, peer.transport.ice_connection_state)

    def _on_peer_destroyed(self, peer: PeerConnection) -> None:
        self.health.forget(peer.id)

    # Membership

    async def join(self, quality: str = DEFAULT_QUALITY) -> MediaSource:
        """Acquire local media and announce presence to the room."""
        try:
            source = await self.media.acquire(quality)
        except AcquisitionError as exc:
            logger.error("Failed to access media devices: %s", exc)
            self.state.set_error(str(exc))
            raise
        self.state.set_local_stream(source)
        self.joined = True
        logger.info("Joining room %s as %s", self.room_id, short_id(self.participant_id))
        await self._send(signaling.JOIN)
        return source

    async def connect_to(self, participant_id: str, display_name: str) -> None:
        if participant_id == self.participant_id or not self.joined:
            return
        await self.registry.get_or_create(participant_id, display_name)
        if not self.joined:
            # left while an unhealthy connection was being replaced
            await self.registry.destroy(participant_id)
            return
        await self.negotiation.request_negotiation(participant_id)

    async def on_roster(self, participants: list[dict]) -> None:
        logger.info("Roster has %d other participants", len(participants))
        for entry in participants:
            if not self.joined:
                return
            participant_id = entry.get("participantId")
            if participant_id and participant_id != self.participant_id:
                await self.connect_to(participant_id, entry.get("displayName", ""))

    async def on_participant_joined(self, participant_id: str, display_name: str) -> None:
        logger.info("%s (%s) joined", display_name or "unknown", short_id(participant_id))
        self.emit("participant-joined", participant_id, display_name)
        await self.connect_to(participant_id, display_name)

    async def on_participant_left(self, participant_id: str) -> None:
        logger.info("%s left", short_id(participant_id))
        await self._drop_peer(participant_id)

    async def _drop_peer(self, participant_id: str) -> None:
        destroyed = await self.registry.destroy(participant_id)
        known = participant_id in self.state.snapshot.remote_streams
        self.state.remove_participant(participant_id)
        if destroyed or known:
            self.emit("participant-left", participant_id)

    # Inbound signaling

    async def serve(self) -> None:
        """Consume the channel until it closes."""
        async for message in self.channel.messages():
            self.dispatch(message)
        logger.info("Signaling channel closed")

    def dispatch(self, message: dict) -> asyncio.Task:
        return self.tasks.spawn(self._handle_in_order(message))

    async def _handle_in_order(self, message: dict) -> None:
        sender = message.get("participantId") or ""
        async with self._sender_locks[sender]:
            await self.handle_message(message)

    async def handle_message(self, message: dict) -> None:
        msg_type = message.get("type")
        sender = message.get("participantId")
        if sender is not None and sender == self.participant_id:
            return
        target = message.get("targetId")
        if target is not None and target != self.participant_id:
            return
        if not self.joined:
            logger.debug("Ignoring %s before join", msg_type)
            return

        name = message.get("displayName", "")
        try:
            if msg_type == signaling.PARTICIPANTS:
                await self.on_roster(message.get("participants") or [])
            elif msg_type == signaling.JOIN:
                await self.on_participant_joined(sender, name)
            elif msg_type == signaling.LEAVE:
                await self.on_participant_left(sender)
            elif msg_type == signaling.OFFER:
                await self.negotiation.on_offer(sender, name, message["sdp"])
            elif msg_type == signaling.ANSWER:
                await self.negotiation.on_answer(sender, message["sdp"])
            elif msg_type == signaling.CANDIDATE:
                await self.negotiation.on_candidate(sender, message.get("candidate") or {})
            elif msg_type == signaling.TRACK_TOGGLE:
                self.state.set_remote_track_enabled(sender, message["kind"], bool(message["enabled"]))
            elif msg_type == signaling.SCREEN_SHARE_STARTED:
                await self.screenshare.on_remote_started(sender)
            elif msg_type == signaling.SCREEN_SHARE_STOPPED:
                self.screenshare.on_remote_stopped(sender)
            elif msg_type == signaling.ERROR:
                logger.warning("Relay reported an error: %s", message.get("message"))
            else:
                logger.warning("Unknown message type: %s", msg_type)
        except ProtocolViolation as exc:
            logger.warning("Ignoring %s: %s", msg_type, exc)
        except Exception:
            logger.exception("Error handling %s from %s", msg_type, short_id(sender or "relay"))

    # Local actions

    async def set_audio_enabled(self, enabled: bool) -> None:
        await self.media.set_audio_enabled(enabled)

    async def set_video_enabled(self, enabled: bool) -> None:
        await self.media.set_video_enabled(enabled)

    async def start_screen_share(self) -> MediaSource:
        try:
            return await self.screenshare.start()
        except MeshCallError as exc:
            logger.error("Screen share failed: %s", exc)
            self.state.set_error(str(exc))
            raise

    async def stop_screen_share(self) -> None:
        await self.screenshare.stop()

    async def leave(self) -> None:
        await self.cleanup(announce=True)

    async def cleanup(self, announce: bool = False) -> None:
        """Tear down every connection and stop all local media."""
        logger.info("Cleaning up call in room %s", self.room_id)
        was_joined = self.joined
        self.joined = False
        # in-flight handlers must not create connections after teardown
        await self.tasks.cancel_all()
        await self.negotiation.tasks.cancel_all()
        await self.screenshare.tasks.cancel_all()
        await self.health.close()
        await self.registry.destroy_all()
        self.candidates.clear()
        self.media.stop_all()
        self._sender_locks.clear()
        self.state.reset()
        if announce and was_joined:
            await self._send(signaling.LEAVE)

    async def wait_idle(self) -> None:
        """Wait for every background task of the session to finish."""
        while len(self.tasks) or len(self.negotiation.tasks) or len(self.screenshare.tasks):
            await self.tasks.wait_idle()
            await self.negotiation.tasks.wait_idle()
            await self.screenshare.tasks.wait_idle()
