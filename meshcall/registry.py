"""Per-participant connection objects and the registry that owns them."""

import asyncio
import enum
import logging
from typing import Callable, Optional

from aiortc import MediaStreamTrack, RTCIceServer

from .candidates import CandidateBuffer
from .config import ice_config
from .media import LocalMediaManager
from .transport import STABLE, AiortcTransport, MediaTransport
from .utils import short_id

logger = logging.getLogger(__name__)


def is_polite(local_id: str, remote_id: str) -> bool:
    """
    Decide whether the local side yields on an offer collision.

    The lower id is polite. Both sides evaluate the same comparison with the
    arguments swapped, so exactly one of them is polite.
    """
    local_id, remote_id = str(local_id), str(remote_id)
    if local_id == remote_id:
        raise ValueError(f"Cannot negotiate with ourselves ({local_id})")
    return local_id < remote_id


class NegotiationPhase(enum.Enum):
    IDLE = "idle"
    NEGOTIATING = "negotiating"
    # a follow-up negotiation has been scheduled and not yet started
    QUEUED = "queued"


class PeerConnection:
    """Represents the connection to a single remote participant."""

    def __init__(self, participant_id: str, display_name: str, transport: MediaTransport, polite: bool):
        self.id = participant_id
        self.display_name = display_name
        self.transport = transport
        self._polite = polite

        self.phase = NegotiationPhase.IDLE
        self.needs_renegotiation = False
        self.needs_recreation = False
        self.ignore_offer = False
        # serializes changes to the signaling state
        self.operations = asyncio.Lock()

        self.ice_state = "new"
        self.connection_state = "new"
        self.restart_attempts = 0
        self.packet_loss_pct: Optional[float] = None

    @property
    def polite(self) -> bool:
        return self._polite

    @property
    def is_negotiating(self) -> bool:
        return self.phase is NegotiationPhase.NEGOTIATING

    @property
    def is_stable(self) -> bool:
        return self.transport.signaling_state == STABLE

    @property
    def is_healthy(self) -> bool:
        return not self.transport.is_closed and not self.needs_recreation

    def begin_negotiation(self) -> None:
        self.phase = NegotiationPhase.NEGOTIATING
        self.needs_renegotiation = False

    def finish_negotiation(self) -> bool:
        """Leave the negotiating phase; True when a follow-up must be scheduled."""
        if self.needs_renegotiation:
            self.phase = NegotiationPhase.QUEUED
            return True
        self.phase = NegotiationPhase.IDLE
        return False

    def queue_follow_up(self) -> bool:
        """Mark a deferred follow-up as scheduled; False if one already is."""
        if self.phase is not NegotiationPhase.IDLE:
            return False
        self.phase = NegotiationPhase.QUEUED
        return True

    def take_follow_up(self) -> None:
        if self.phase is NegotiationPhase.QUEUED:
            self.phase = NegotiationPhase.IDLE

    def __repr__(self) -> str:
        return f"<PeerConnection {short_id(self.id)} polite={self.polite} phase={self.phase.value}>"


TransportFactory = Callable[[list[RTCIceServer]], MediaTransport]


class ConnectionRegistry:
    """
    Arena of PeerConnection objects indexed by participant id.

    Event callbacks are looked up when an event fires and are only invoked
    for the connection currently registered under that id, so events from a
    destroyed or replaced connection are dropped.
    """

    def __init__(
        self,
        local_id: str,
        media: LocalMediaManager,
        candidates: CandidateBuffer,
        transport_factory: Optional[TransportFactory] = None,
        ice_servers: Optional[list[RTCIceServer]] = None,
    ):
        self.local_id = local_id
        self.media = media
        self.candidates = candidates
        self.peers: dict[str, PeerConnection] = {}
        self._transport_factory = transport_factory or AiortcTransport
        self._ice_servers = ice_servers if ice_servers is not None else ice_config.ice_servers()

        self.on_ice_candidate: Optional[Callable[[PeerConnection, dict], None]] = None
        self.on_ice_state_change: Optional[Callable[[PeerConnection, str], None]] = None
        self.on_connection_state_change: Optional[Callable[[PeerConnection, str], None]] = None
        self.on_negotiation_needed: Optional[Callable[[PeerConnection], None]] = None
        self.on_track: Optional[Callable[[PeerConnection, MediaStreamTrack], None]] = None
        self.on_peer_created: Optional[Callable[[PeerConnection], None]] = None
        self.on_peer_destroyed: Optional[Callable[[PeerConnection], None]] = None

    def __contains__(self, participant_id: str) -> bool:
        return participant_id in self.peers

    def __len__(self) -> int:
        return len(self.peers)

    def get(self, participant_id: str) -> Optional[PeerConnection]:
        return self.peers.get(participant_id)

    def is_current(self, peer: PeerConnection) -> bool:
        """Whether ``peer`` is still the registered connection for its id."""
        return self.peers.get(peer.id) is peer

    async def get_or_create(self, participant_id: str, display_name: str) -> PeerConnection:
        peer = self.peers.get(participant_id)
        if peer is not None:
            if peer.is_healthy:
                if display_name:
                    peer.display_name = display_name
                return peer
            logger.info("Replacing unhealthy connection to %s", short_id(participant_id))
            await self.destroy(participant_id)
        return self._create(participant_id, display_name)

    async def force_recreate(self, participant_id: str) -> Optional[PeerConnection]:
        """Tear down and rebuild a connection after a malformed negotiation."""
        peer = self.peers.get(participant_id)
        if peer is None:
            return None
        logger.warning("Recreating connection to %s", short_id(participant_id))
        await self.destroy(participant_id)
        return self._create(participant_id, peer.display_name)

    def _create(self, participant_id: str, display_name: str) -> PeerConnection:
        transport = self._transport_factory(self._ice_servers)
        peer = PeerConnection(
            participant_id,
            display_name,
            transport,
            polite=is_polite(self.local_id, participant_id),
        )
        # no await between reading the active tracks and registering the peer,
        # so a concurrent screen share swap cannot be missed
        for track in self.media.outbound_tracks():
            transport.add_track(track)
        self.peers[participant_id] = peer

        @transport.on("icecandidate")
        def on_icecandidate(candidate: dict):
            if self.is_current(peer) and self.on_ice_candidate:
                self.on_ice_candidate(peer, candidate)

        @transport.on("iceconnectionstatechange")
        def on_iceconnectionstatechange(state: str):
            logger.info("ICE connection state for %s: %s", short_id(participant_id), state)
            peer.ice_state = state
            if self.is_current(peer) and self.on_ice_state_change:
                self.on_ice_state_change(peer, state)

        @transport.on("connectionstatechange")
        def on_connectionstatechange(state: str):
            logger.info("Connection state for %s: %s", short_id(participant_id), state)
            peer.connection_state = state
            if self.is_current(peer) and self.on_connection_state_change:
                self.on_connection_state_change(peer, state)

        @transport.on("negotiationneeded")
        def on_negotiationneeded():
            if self.is_current(peer) and self.on_negotiation_needed:
                self.on_negotiation_needed(peer)

        @transport.on("track")
        def on_track(track: MediaStreamTrack):
            logger.info("Track received from %s: %s", short_id(participant_id), track.kind)
            if self.is_current(peer) and self.on_track:
                self.on_track(peer, track)

        logger.info(
            "Created connection to %s (%s), polite=%s",
            display_name or "unknown", short_id(participant_id), peer.polite,
        )
        if self.on_peer_created:
            self.on_peer_created(peer)
        return peer

    async def destroy(self, participant_id: str) -> bool:
        """Remove a peer immediately, then close its transport."""
        self.candidates.discard(participant_id)
        peer = self.peers.pop(participant_id, None)
        if peer is None:
            return False
        peer.transport.remove_all_listeners()
        if self.on_peer_destroyed:
            self.on_peer_destroyed(peer)
        await peer.transport.close()
        logger.info("Closed connection to %s", short_id(participant_id))
        return True

    async def destroy_all(self) -> None:
        for participant_id in list(self.peers):
            await self.destroy(participant_id)

    def replace_outbound_track(self, kind: str, track: MediaStreamTrack) -> None:
        """Swap the sender track on every registered connection in one step."""
        for peer in self.peers.values():
            peer.transport.replace_track(kind, track)
