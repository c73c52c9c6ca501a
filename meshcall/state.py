"""Call snapshot published to the UI layer after every state change."""

import dataclasses
import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Callable, Mapping, Optional

from aiortc import MediaStreamTrack

from .media import MediaSource, RemoteStream

logger = logging.getLogger(__name__)

LOCAL_OWNER = "local"


@dataclass(frozen=True)
class RemoteStreamEntry:
    participant_id: str
    media_stream: RemoteStream
    display_name: str
    is_screen_sharing: bool = False
    audio_enabled: bool = True
    video_enabled: bool = True


@dataclass(frozen=True)
class CallSnapshot:
    local_stream: Optional[MediaSource] = None
    screen_stream: Optional[MediaSource] = None
    remote_streams: Mapping[str, RemoteStreamEntry] = field(default_factory=lambda: MappingProxyType({}))
    peer_states: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    screen_share_owner: Optional[str] = None
    last_error: Optional[str] = None

    @property
    def is_screen_sharing(self) -> bool:
        return self.screen_share_owner is not None


Listener = Callable[[CallSnapshot], None]


class CallState:
    """
    Single source of truth for what the UI renders.

    Each named action builds a new immutable snapshot and hands it to the
    subscribers. Listener failures are logged and never reach the caller.
    """

    def __init__(self):
        self._snapshot = CallSnapshot()
        self._listeners: list[Listener] = []

    @property
    def snapshot(self) -> CallSnapshot:
        return self._snapshot

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns a function that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _publish(self, **changes) -> None:
        self._snapshot = dataclasses.replace(self._snapshot, **changes)
        for listener in list(self._listeners):
            try:
                listener(self._snapshot)
            except Exception:
                logger.exception("Snapshot listener failed")

    # Actions

    def set_local_stream(self, stream: Optional[MediaSource]) -> None:
        self._publish(local_stream=stream)

    def add_remote_track(self, participant_id: str, display_name: str, track: MediaStreamTrack) -> None:
        streams = dict(self._snapshot.remote_streams)
        entry = streams.get(participant_id)
        if entry is None:
            stream = RemoteStream(participant_id)
            stream.add_track(track)
            entry = RemoteStreamEntry(
                participant_id=participant_id,
                media_stream=stream,
                display_name=display_name,
                is_screen_sharing=self._snapshot.screen_share_owner == participant_id,
            )
        else:
            entry.media_stream.add_track(track)
            entry = dataclasses.replace(entry, display_name=display_name)
        streams[participant_id] = entry
        self._publish(remote_streams=MappingProxyType(streams))

    def set_remote_track_enabled(self, participant_id: str, kind: str, enabled: bool) -> None:
        entry = self._snapshot.remote_streams.get(participant_id)
        if entry is None:
            return
        if kind == "audio":
            entry = dataclasses.replace(entry, audio_enabled=enabled)
        elif kind == "video":
            entry = dataclasses.replace(entry, video_enabled=enabled)
        else:
            return
        streams = dict(self._snapshot.remote_streams)
        streams[participant_id] = entry
        self._publish(remote_streams=MappingProxyType(streams))

    def remove_participant(self, participant_id: str) -> None:
        streams = dict(self._snapshot.remote_streams)
        states = dict(self._snapshot.peer_states)
        streams.pop(participant_id, None)
        states.pop(participant_id, None)
        owner = self._snapshot.screen_share_owner
        if owner == participant_id:
            owner = None
        self._publish(
            remote_streams=MappingProxyType(streams),
            peer_states=MappingProxyType(states),
            screen_share_owner=owner,
        )

    def set_peer_state(self, participant_id: str, state: str) -> None:
        if self._snapshot.peer_states.get(participant_id) == state:
            return
        states = dict(self._snapshot.peer_states)
        states[participant_id] = state
        self._publish(peer_states=MappingProxyType(states))

    def set_screen_share(self, owner: Optional[str], stream: Optional[MediaSource] = None) -> None:
        streams = {
            pid: dataclasses.replace(entry, is_screen_sharing=(pid == owner))
            for pid, entry in self._snapshot.remote_streams.items()
        }
        self._publish(
            screen_share_owner=owner,
            screen_stream=stream,
            remote_streams=MappingProxyType(streams),
        )

    def set_error(self, message: Optional[str]) -> None:
        self._publish(last_error=message)

    def reset(self) -> None:
        self._snapshot = CallSnapshot()
        self._publish()
