"""Local capture sources and the tracks fanned out to every peer."""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from av import AudioFrame, VideoFrame
from av.error import FFmpegError
from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer
from aiortc.mediastreams import MediaStreamError

from .config import MediaConfig, media_config
from .errors import AcquisitionError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QualityPreset:
    width: int
    height: int
    frame_rate: int

    @property
    def video_size(self) -> str:
        return f"{self.width}x{self.height}"


QUALITY_PRESETS = {
    "low": QualityPreset(640, 360, 15),
    "medium": QualityPreset(1280, 720, 24),
    "high": QualityPreset(1920, 1080, 30),
}

DEFAULT_QUALITY = "medium"


def get_preset(quality: str) -> QualityPreset:
    """Look up a quality tier, falling back to medium for unknown names."""
    return QUALITY_PRESETS.get(quality, QUALITY_PRESETS[DEFAULT_QUALITY])


class SwitchableTrack(MediaStreamTrack):
    """
    Wraps a capture track and adds an ``enabled`` switch.

    A disabled track keeps producing frames at the source's pace but replaces
    their content with silence or black, so senders never renegotiate.
    If the source ends on its own (device unplugged, capture stopped from the
    OS), this track ends too.
    """

    def __init__(self, source: MediaStreamTrack):
        super().__init__()
        self.kind = source.kind
        self.source = source
        self.enabled = True
        source.on("ended", self.stop)

    async def recv(self):
        if self.readyState != "live":
            raise MediaStreamError
        frame = await self.source.recv()
        if self.enabled:
            return frame
        return _blank_like(frame)

    def stop(self) -> None:
        super().stop()
        self.source.stop()


def _blank_like(frame):
    if isinstance(frame, AudioFrame):
        blank = AudioFrame(format=frame.format.name, layout=frame.layout.name, samples=frame.samples)
        blank.sample_rate = frame.sample_rate
    else:
        blank = VideoFrame(width=frame.width, height=frame.height, format="yuv420p")
    for plane in blank.planes:
        plane.update(bytes(plane.buffer_size))
    blank.pts = frame.pts
    blank.time_base = frame.time_base
    return blank


@dataclass
class MediaSource:
    """Tracks opened from one capture request."""

    audio: Optional[SwitchableTrack] = None
    video: Optional[SwitchableTrack] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def tracks(self) -> list[SwitchableTrack]:
        return [t for t in (self.audio, self.video) if t is not None]

    def stop(self) -> None:
        for track in self.tracks():
            track.stop()


class RemoteStream:
    """Inbound tracks received from one remote participant."""

    def __init__(self, participant_id: str):
        self.participant_id = participant_id
        self.tracks: dict[str, MediaStreamTrack] = {}

    def add_track(self, track: MediaStreamTrack) -> None:
        self.tracks[track.kind] = track

    @property
    def audio(self) -> Optional[MediaStreamTrack]:
        return self.tracks.get("audio")

    @property
    def video(self) -> Optional[MediaStreamTrack]:
        return self.tracks.get("video")


def open_camera(preset: QualityPreset, config: MediaConfig = media_config) -> MediaSource:
    """Open camera and microphone through FFmpeg. Blocks while devices open."""
    video_player = MediaPlayer(
        config.CAMERA_DEVICE,
        format=config.CAMERA_FORMAT,
        options={"video_size": preset.video_size, "framerate": str(preset.frame_rate)},
    )
    try:
        audio_player = MediaPlayer(config.MICROPHONE_DEVICE, format=config.MICROPHONE_FORMAT)
    except Exception:
        if video_player.video:
            video_player.video.stop()
        raise
    if video_player.video is None:
        if audio_player.audio:
            audio_player.audio.stop()
        raise FileNotFoundError(f"No video stream on {config.CAMERA_DEVICE}")
    return MediaSource(
        audio=SwitchableTrack(audio_player.audio) if audio_player.audio else None,
        video=SwitchableTrack(video_player.video),
    )


def open_screen(config: MediaConfig = media_config) -> MediaSource:
    """Open a display-capture source (video only)."""
    player = MediaPlayer(
        config.SCREEN_DEVICE,
        format=config.SCREEN_FORMAT,
        options={"framerate": str(config.SCREEN_FRAMERATE)},
    )
    if player.video is None:
        raise FileNotFoundError(f"No video stream on {config.SCREEN_DEVICE}")
    return MediaSource(video=SwitchableTrack(player.video))


TrackToggleCallback = Callable[[str, bool], Awaitable[None]]


class LocalMediaManager:
    """
    Holds the local camera/microphone source and the optional screen source.

    ``active_video`` is the single track every peer's video sender should
    carry. Only this class and the screen share controller change it.
    """

    def __init__(
        self,
        config: MediaConfig = media_config,
        camera_opener: Optional[Callable[[QualityPreset], MediaSource]] = None,
        screen_opener: Optional[Callable[[], MediaSource]] = None,
    ):
        self.config = config
        self._camera_opener = camera_opener or (lambda preset: open_camera(preset, config))
        self._screen_opener = screen_opener or (lambda: open_screen(config))
        self.camera: Optional[MediaSource] = None
        self.screen: Optional[MediaSource] = None
        self.active_video: Optional[MediaStreamTrack] = None

        # Sends the track-toggle notification; wired by the session
        self.on_track_toggle: Optional[TrackToggleCallback] = None

    async def _open(self, opener, *args) -> MediaSource:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, opener, *args)
        except AcquisitionError:
            raise
        except (OSError, FFmpegError) as exc:
            raise AcquisitionError.from_os_error(exc) from exc

    async def acquire(self, quality: str = DEFAULT_QUALITY) -> MediaSource:
        """Open camera and microphone with the given quality tier."""
        if self.camera is not None:
            return self.camera
        preset = get_preset(quality)
        logger.info("Requesting camera/microphone at %s@%dfps", preset.video_size, preset.frame_rate)
        self.camera = await self._open(self._camera_opener, preset)
        self.active_video = self.camera.video
        logger.info("Got local media source %s", self.camera.id)
        return self.camera

    async def acquire_screen(self) -> MediaSource:
        self.screen = await self._open(self._screen_opener)
        return self.screen

    @property
    def audio_track(self) -> Optional[SwitchableTrack]:
        return self.camera.audio if self.camera else None

    @property
    def camera_track(self) -> Optional[SwitchableTrack]:
        return self.camera.video if self.camera else None

    @property
    def is_screen_active(self) -> bool:
        return self.screen is not None and self.active_video is self.screen.video

    def outbound_tracks(self) -> list[MediaStreamTrack]:
        """Tracks a newly created connection should send, in a fixed order."""
        return [t for t in (self.audio_track, self.active_video) if t is not None]

    async def set_audio_enabled(self, enabled: bool) -> None:
        if self.audio_track is None:
            return
        self.audio_track.enabled = enabled
        if self.on_track_toggle:
            await self.on_track_toggle("audio", enabled)

    async def set_video_enabled(self, enabled: bool) -> None:
        if self.camera_track is None:
            return
        self.camera_track.enabled = enabled
        # while sharing, peers see the screen; they learn the camera state on stop
        if self.on_track_toggle and not self.is_screen_active:
            await self.on_track_toggle("video", enabled)

    def release_screen(self) -> None:
        if self.screen is not None:
            self.screen.stop()
            self.screen = None

    def stop_all(self) -> None:
        """Stop every local track and forget the sources."""
        self.release_screen()
        if self.camera is not None:
            self.camera.stop()
            self.camera = None
        self.active_video = None
