"""
Pytest Configuration and Fixtures
=================================

Shared fixtures for the meshcall test suite: a scripted transport standing
in for aiortc, blank capture tracks, and an in-memory room driven by the
real RoomHub so whole sessions can talk to each other.
"""

import asyncio
import itertools
import json
from typing import Callable, Optional

import pytest
import pytest_asyncio
from aiortc import RTCSessionDescription
from aiortc.mediastreams import AudioStreamTrack, VideoStreamTrack

from meshcall.config import ConnectionConfig
from meshcall.media import LocalMediaManager, MediaSource, SwitchableTrack
from meshcall.server.relay import RoomHub
from meshcall.session import CallSession
from meshcall.signaling import LEAVE, JOIN, SignalingChannel
from meshcall.transport import HAVE_LOCAL_OFFER, HAVE_REMOTE_OFFER, STABLE, MediaTransport

_sdp_counter = itertools.count(1)


# =============================================================================
# FAKE TRANSPORT
# =============================================================================

class FakeTransport(MediaTransport):
    """
    Scripted transport that follows the offer/answer state machine.

    Every committed local description produces one candidate. Once both
    descriptions are set and the state is stable the transport reports
    "connected". Tests can hold offers with ``offer_gate`` and inject
    failures through ``fail_next_offer``/``fail_next_remote``.
    """

    instances: list = []

    def __init__(self, ice_servers=None):
        super().__init__()
        self.ice_servers = ice_servers
        self._signaling = STABLE
        self._ice = "new"
        self._connection = "new"
        self._local: Optional[RTCSessionDescription] = None
        self._remote: Optional[RTCSessionDescription] = None
        self._closed = False
        self.senders: dict = {}

        self.offers_created = 0
        self.rollbacks = 0
        self.restarts = 0
        self.applied_candidates: list = []
        self.stats: dict = {}

        self.offer_gate: Optional[asyncio.Event] = None
        self.fail_next_offer: Optional[Exception] = None
        self.fail_next_remote: Optional[Exception] = None
        FakeTransport.instances.append(self)

    # State

    @property
    def signaling_state(self) -> str:
        return "closed" if self._closed else self._signaling

    @property
    def connection_state(self) -> str:
        return "closed" if self._closed else self._connection

    @property
    def ice_connection_state(self) -> str:
        return "closed" if self._closed else self._ice

    @property
    def local_description(self):
        return self._local

    @property
    def has_remote_description(self) -> bool:
        return self._remote is not None

    def set_ice_state(self, state: str) -> None:
        self._ice = state
        self.emit("iceconnectionstatechange", state)

    def set_connection_state(self, state: str) -> None:
        self._connection = state
        self.emit("connectionstatechange", state)

    def _maybe_connect(self) -> None:
        if (
            self._signaling == STABLE
            and self._local is not None
            and self._remote is not None
            and self._ice not in ("connected", "completed")
        ):
            self.set_ice_state("connected")
            self.set_connection_state("connected")

    # Tracks

    def add_track(self, track) -> None:
        self.senders[track.kind] = track

    def replace_track(self, kind: str, track) -> None:
        if kind in self.senders:
            self.senders[kind] = track

    def sender_tracks(self) -> dict:
        return dict(self.senders)

    def transceiver_count(self) -> int:
        return len(self.senders)

    # Offer / answer

    async def create_offer(self) -> RTCSessionDescription:
        await asyncio.sleep(0)
        if self.offer_gate is not None:
            await self.offer_gate.wait()
        if self.fail_next_offer is not None:
            exc, self.fail_next_offer = self.fail_next_offer, None
            raise exc
        self.offers_created += 1
        return RTCSessionDescription(sdp=f"v=0 offer {next(_sdp_counter)}", type="offer")

    async def create_answer(self) -> RTCSessionDescription:
        await asyncio.sleep(0)
        if self._signaling != HAVE_REMOTE_OFFER:
            raise RuntimeError(f"Cannot create answer in signaling state {self._signaling}")
        return RTCSessionDescription(sdp=f"v=0 answer {next(_sdp_counter)}", type="answer")

    async def set_local_description(self, description: RTCSessionDescription) -> None:
        await asyncio.sleep(0)
        if description.type == "offer":
            if self._signaling != STABLE:
                raise RuntimeError(f"Cannot set local offer in signaling state {self._signaling}")
            self._signaling = HAVE_LOCAL_OFFER
        else:
            if self._signaling != HAVE_REMOTE_OFFER:
                raise RuntimeError(f"Cannot set local answer in signaling state {self._signaling}")
            self._signaling = STABLE
        self._local = description
        self.emit("icecandidate", {
            "candidate": f"candidate:{next(_sdp_counter)} 1 udp 2130706431 10.0.0.1 9 typ host",
            "sdpMid": "0",
            "sdpMLineIndex": 0,
        })
        self._maybe_connect()

    async def set_remote_description(self, description: RTCSessionDescription) -> None:
        await asyncio.sleep(0)
        if self.fail_next_remote is not None:
            exc, self.fail_next_remote = self.fail_next_remote, None
            raise exc
        if description.type == "offer":
            if self._signaling != STABLE:
                raise RuntimeError(f"Cannot set remote offer in signaling state {self._signaling}")
            self._signaling = HAVE_REMOTE_OFFER
        else:
            if self._signaling != HAVE_LOCAL_OFFER:
                raise RuntimeError(f"Cannot set remote answer in signaling state {self._signaling}")
            self._signaling = STABLE
        self._remote = description
        self._maybe_connect()

    async def rollback(self) -> None:
        await asyncio.sleep(0)
        if self._signaling == STABLE:
            return
        self.rollbacks += 1
        self._signaling = STABLE

    async def add_ice_candidate(self, candidate: dict) -> None:
        if self._remote is None:
            raise RuntimeError("Candidate applied before the remote description")
        self.applied_candidates.append(candidate)

    async def restart_ice(self) -> None:
        self.restarts += 1

    async def get_stats(self) -> dict:
        return dict(self.stats)

    async def close(self) -> None:
        self._closed = True


@pytest.fixture(autouse=True)
def reset_fake_transports():
    FakeTransport.instances = []
    yield
    FakeTransport.instances = []


# =============================================================================
# MEDIA FIXTURES
# =============================================================================

def open_blank_camera(preset) -> MediaSource:
    return MediaSource(
        audio=SwitchableTrack(AudioStreamTrack()),
        video=SwitchableTrack(VideoStreamTrack()),
    )


def open_blank_screen() -> MediaSource:
    return MediaSource(video=SwitchableTrack(VideoStreamTrack()))


def make_media() -> LocalMediaManager:
    return LocalMediaManager(camera_opener=open_blank_camera, screen_opener=open_blank_screen)


@pytest.fixture
def media() -> LocalMediaManager:
    return make_media()


@pytest.fixture
def fast_config() -> ConnectionConfig:
    """Short grace periods so timer tests finish quickly"""
    return ConnectionConfig(
        DISCONNECT_GRACE_SECONDS=0.05,
        FAILURE_GRACE_SECONDS=0.1,
        MAX_RESTART_ATTEMPTS=3,
        STATS_INTERVAL_SECONDS=0.02,
        PACKET_LOSS_WARNING_PCT=5.0,
    )


# =============================================================================
# IN-MEMORY ROOM
# =============================================================================

class QueueSocket:
    """Stands in for a relay-side WebSocketResponse."""

    def __init__(self):
        self.queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    async def send_json(self, message: dict) -> None:
        if self.closed:
            raise ConnectionResetError("socket closed")
        # copy, as a real socket would serialize
        await self.queue.put(json.loads(json.dumps(message)))


class RoomChannel(SignalingChannel):
    """Client channel wired straight into a RoomHub."""

    def __init__(self, hub: RoomHub, room_id: str):
        self.hub = hub
        self.room_id = room_id
        self.socket = QueueSocket()
        self.sent: list = []
        self._participant_id: Optional[str] = None
        self._display_name = ""

    async def send(self, message: dict) -> None:
        self.sent.append(dict(message))
        message = json.loads(json.dumps(message))
        msg_type = message.get("type")
        if msg_type == JOIN:
            self._participant_id = message["participantId"]
            self._display_name = message.get("displayName", "")
            await self.hub.join(self.room_id, self._participant_id, self._display_name, self.socket, message)
        elif msg_type == LEAVE:
            await self.hub.leave(self.room_id, self._participant_id, self._display_name, self.socket)
        else:
            await self.hub.route(self.room_id, self._participant_id, message)

    async def messages(self):
        while not self.socket.closed:
            message = await self.socket.queue.get()
            if message is None:
                return
            yield message

    async def close(self) -> None:
        self.socket.closed = True
        self.socket.queue.put_nowait(None)

    def sent_of_type(self, msg_type: str) -> list:
        return [m for m in self.sent if m["type"] == msg_type]


class Room:
    """A RoomHub plus the sessions serving from it."""

    def __init__(self, room_id: str = "room-1", config: Optional[ConnectionConfig] = None):
        self.room_id = room_id
        self.hub = RoomHub()
        self.config = config
        self.sessions: dict = {}
        self._servers: list = []

    def add(self, participant_id: str, display_name: Optional[str] = None) -> CallSession:
        channel = RoomChannel(self.hub, self.room_id)
        kwargs = {"media": make_media(), "transport_factory": FakeTransport, "ice_servers": []}
        if self.config is not None:
            kwargs["config"] = self.config
        session = CallSession(
            self.room_id, participant_id, display_name or participant_id, channel, **kwargs,
        )
        self.sessions[participant_id] = session
        self._servers.append(asyncio.ensure_future(session.serve()))
        return session

    def busy(self) -> bool:
        for session in self.sessions.values():
            if not session.channel.socket.queue.empty():
                return True
            if len(session.tasks) or len(session.negotiation.tasks) or len(session.screenshare.tasks):
                return True
        return False

    async def settle(self, timeout: float = 2.0) -> None:
        """Wait until no message is queued and no session task is running."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        quiet_rounds = 0
        while quiet_rounds < 3:
            if loop.time() > deadline:
                raise AssertionError("room did not settle")
            await asyncio.sleep(0.005)
            quiet_rounds = 0 if self.busy() else quiet_rounds + 1

    async def close(self) -> None:
        for session in self.sessions.values():
            await session.tasks.cancel_all()
            await session.cleanup()
            await session.health.close()
            await session.channel.close()
        for server in self._servers:
            server.cancel()
        await asyncio.gather(*self._servers, return_exceptions=True)


@pytest_asyncio.fixture
async def room():
    room = Room()
    yield room
    await room.close()


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)
