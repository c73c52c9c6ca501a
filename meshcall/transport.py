"""Media transports: one bidirectional audio/video connection per remote peer."""

import abc
import logging
from typing import Optional

from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.sdp import candidate_from_sdp
from pyee.asyncio import AsyncIOEventEmitter

logger = logging.getLogger(__name__)

STABLE = "stable"
HAVE_LOCAL_OFFER = "have-local-offer"
HAVE_REMOTE_OFFER = "have-remote-offer"


class MediaTransport(AsyncIOEventEmitter, metaclass=abc.ABCMeta):
    """
    Abstract transport toward a single remote participant.

    Events:
        "icecandidate" (dict): a local candidate to trickle to the peer
        "iceconnectionstatechange" (str): new ICE connectivity state
        "connectionstatechange" (str): new overall transport state
        "negotiationneeded": local changes require a new offer
        "track" (MediaStreamTrack): inbound media arrived
    """

    @property
    @abc.abstractmethod
    def signaling_state(self) -> str: ...

    @property
    @abc.abstractmethod
    def connection_state(self) -> str: ...

    @property
    @abc.abstractmethod
    def ice_connection_state(self) -> str: ...

    @property
    @abc.abstractmethod
    def local_description(self) -> Optional[RTCSessionDescription]: ...

    @property
    @abc.abstractmethod
    def has_remote_description(self) -> bool: ...

    @property
    def is_closed(self) -> bool:
        return self.connection_state == "closed"

    @abc.abstractmethod
    def add_track(self, track: MediaStreamTrack) -> None: ...

    @abc.abstractmethod
    def replace_track(self, kind: str, track: MediaStreamTrack) -> None:
        """Swap the outbound track of ``kind`` without renegotiating."""

    @abc.abstractmethod
    def sender_tracks(self) -> dict[str, MediaStreamTrack]: ...

    @abc.abstractmethod
    def transceiver_count(self) -> int: ...

    @abc.abstractmethod
    async def create_offer(self) -> RTCSessionDescription: ...

    @abc.abstractmethod
    async def create_answer(self) -> RTCSessionDescription: ...

    @abc.abstractmethod
    async def set_local_description(self, description: RTCSessionDescription) -> None: ...

    @abc.abstractmethod
    async def set_remote_description(self, description: RTCSessionDescription) -> None: ...

    @abc.abstractmethod
    async def rollback(self) -> None:
        """Discard an uncommitted local offer and return to "stable"."""

    @abc.abstractmethod
    async def add_ice_candidate(self, candidate: dict) -> None: ...

    @abc.abstractmethod
    async def restart_ice(self) -> None: ...

    @abc.abstractmethod
    async def get_stats(self) -> dict: ...

    @abc.abstractmethod
    async def close(self) -> None: ...


def parse_candidate(candidate: dict):
    """Convert a browser-style candidate dict into an aiortc RTCIceCandidate."""
    line = candidate.get("candidate") or ""
    if line.startswith("candidate:"):
        line = line.split(":", 1)[1]
    ice_candidate = candidate_from_sdp(line)
    ice_candidate.sdpMid = candidate.get("sdpMid")
    ice_candidate.sdpMLineIndex = candidate.get("sdpMLineIndex")
    return ice_candidate


class AiortcTransport(MediaTransport):
    """
    MediaTransport backed by an aiortc RTCPeerConnection.

    aiortc has neither description rollback nor ICE restart, so both are
    emulated by rebuilding the underlying connection with the same outbound
    tracks. Old connections are detached before they are closed, so their
    late events never reach listeners.
    """

    def __init__(self, ice_servers: list[RTCIceServer]):
        super().__init__()
        self._ice_servers = list(ice_servers)
        self._tracks: dict[str, MediaStreamTrack] = {}
        self._closed = False
        self._pc = self._build()

    def _build(self) -> RTCPeerConnection:
        pc = RTCPeerConnection(configuration=RTCConfiguration(iceServers=self._ice_servers))
        for track in self._tracks.values():
            pc.addTrack(track)

        @pc.on("track")
        def on_track(track: MediaStreamTrack):
            if pc is self._pc:
                self.emit("track", track)

        @pc.on("connectionstatechange")
        def on_connectionstatechange():
            if pc is self._pc:
                self.emit("connectionstatechange", pc.connectionState)

        @pc.on("iceconnectionstatechange")
        def on_iceconnectionstatechange():
            if pc is self._pc:
                self.emit("iceconnectionstatechange", pc.iceConnectionState)

        return pc

    async def _rebuild(self) -> None:
        old = self._pc
        self._pc = self._build()
        await old.close()

    @property
    def signaling_state(self) -> str:
        return "closed" if self._closed else self._pc.signalingState

    @property
    def connection_state(self) -> str:
        return "closed" if self._closed else self._pc.connectionState

    @property
    def ice_connection_state(self) -> str:
        return "closed" if self._closed else self._pc.iceConnectionState

    @property
    def local_description(self) -> Optional[RTCSessionDescription]:
        return self._pc.localDescription

    @property
    def has_remote_description(self) -> bool:
        return self._pc.remoteDescription is not None

    def add_track(self, track: MediaStreamTrack) -> None:
        self._tracks[track.kind] = track
        self._pc.addTrack(track)

    def replace_track(self, kind: str, track: MediaStreamTrack) -> None:
        self._tracks[kind] = track
        for transceiver in self._pc.getTransceivers():
            if transceiver.kind == kind:
                transceiver.sender.replaceTrack(track)
                return
        logger.warning("No %s sender to replace", kind)

    def sender_tracks(self) -> dict[str, MediaStreamTrack]:
        return {
            t.kind: t.sender.track
            for t in self._pc.getTransceivers()
            if t.sender.track is not None
        }

    def transceiver_count(self) -> int:
        return len(self._pc.getTransceivers())

    async def create_offer(self) -> RTCSessionDescription:
        return await self._pc.createOffer()

    async def create_answer(self) -> RTCSessionDescription:
        return await self._pc.createAnswer()

    async def set_local_description(self, description: RTCSessionDescription) -> None:
        await self._pc.setLocalDescription(description)

    async def set_remote_description(self, description: RTCSessionDescription) -> None:
        await self._pc.setRemoteDescription(description)

    async def rollback(self) -> None:
        if self._pc.signalingState == STABLE:
            return
        logger.debug("Emulating rollback from %s", self._pc.signalingState)
        await self._rebuild()

    async def add_ice_candidate(self, candidate: dict) -> None:
        if not candidate or not candidate.get("candidate"):
            # end-of-candidates marker
            await self._pc.addIceCandidate(None)
            return
        await self._pc.addIceCandidate(parse_candidate(candidate))

    async def restart_ice(self) -> None:
        # fresh ICE credentials come with the next offer from the new connection
        await self._rebuild()

    async def get_stats(self) -> dict:
        report = await self._pc.getStats()
        return dict(report)

    async def close(self) -> None:
        self._closed = True
        await self._pc.close()
