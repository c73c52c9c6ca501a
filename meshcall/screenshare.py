"""Swapping the outbound video between camera and screen capture."""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from aiortc import MediaStreamTrack

from .errors import ScreenShareConflictError
from .media import LocalMediaManager, MediaSource
from .registry import ConnectionRegistry
from .signaling import SCREEN_SHARE_STARTED, SCREEN_SHARE_STOPPED
from .state import LOCAL_OWNER, CallState
from .utils import BackgroundTasks, short_id

logger = logging.getLogger(__name__)


class ScreenShareController:
    """
    Replaces the video sender track on every connection, never renegotiating.

    Only one participant shares at a time. A local start is refused while a
    remote participant owns the share. If two participants start at the same
    moment, the one with the lower id keeps sharing and the other stops.
    """

    def __init__(
        self,
        local_id: str,
        media: LocalMediaManager,
        registry: ConnectionRegistry,
        state: CallState,
        broadcast: Callable[..., Awaitable[None]],
    ):
        self.local_id = local_id
        self.media = media
        self.registry = registry
        self.state = state
        self._broadcast = broadcast
        self.tasks = BackgroundTasks("screenshare")
        # one start or stop at a time, so a second capture is never opened
        self._lock = asyncio.Lock()

    @property
    def owner(self) -> Optional[str]:
        return self.state.snapshot.screen_share_owner

    def _check_owner(self) -> None:
        owner = self.owner
        if owner is not None and owner != LOCAL_OWNER:
            raise ScreenShareConflictError(owner)

    def _swap(self, track: Optional[MediaStreamTrack]) -> None:
        # both steps are synchronous, so peers created concurrently read the new track
        self.media.active_video = track
        if track is not None:
            self.registry.replace_outbound_track("video", track)

    async def start(self) -> MediaSource:
        async with self._lock:
            return await self._start()

    async def _start(self) -> MediaSource:
        self._check_owner()
        if self.media.is_screen_active:
            return self.media.screen

        source = await self.media.acquire_screen()
        try:
            # a remote share may have started while the capture was opening
            self._check_owner()
        except ScreenShareConflictError:
            self.media.release_screen()
            raise

        track = source.video
        self._swap(track)
        track.on("ended", self._on_capture_ended)
        self.state.set_screen_share(LOCAL_OWNER, source)
        logger.info("Screen share started on %d connections", len(self.registry))
        await self._broadcast(SCREEN_SHARE_STARTED)
        return source

    def _on_capture_ended(self) -> None:
        if self.media.is_screen_active:
            logger.info("Screen capture ended externally")
            self.tasks.spawn(self.stop())

    async def stop(self) -> None:
        async with self._lock:
            await self._stop()

    async def _stop(self) -> None:
        if not self.media.is_screen_active:
            return
        camera = self.media.camera_track
        self._swap(camera)
        self.media.release_screen()
        self.state.set_screen_share(None, None)
        logger.info("Screen share stopped, camera restored")

        if camera is not None and self.media.on_track_toggle:
            await self.media.on_track_toggle("video", camera.enabled)
        await self._broadcast(SCREEN_SHARE_STOPPED)

    async def on_remote_started(self, participant_id: str) -> None:
        if self.owner == LOCAL_OWNER:
            if str(self.local_id) < str(participant_id):
                logger.info("Keeping local screen share over %s", short_id(participant_id))
                return
            logger.info("Yielding screen share to %s", short_id(participant_id))
            await self.stop()
        self.state.set_screen_share(participant_id, None)

    def on_remote_stopped(self, participant_id: str) -> None:
        if self.owner == participant_id:
            self.state.set_screen_share(None, None)
