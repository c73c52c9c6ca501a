"""Exception types raised by the call orchestrator."""

import enum
import errno
import re


class MeshCallError(Exception):
    """Base class for meshcall errors."""


class AcquisitionReason(str, enum.Enum):
    PERMISSION_DENIED = "permission-denied"
    DEVICE_NOT_FOUND = "device-not-found"
    DEVICE_BUSY = "device-busy"
    UNAVAILABLE = "unavailable"


_ACQUISITION_MESSAGES = {
    AcquisitionReason.PERMISSION_DENIED: "Permission denied. Please allow camera/microphone access.",
    AcquisitionReason.DEVICE_NOT_FOUND: "No camera or microphone found.",
    AcquisitionReason.DEVICE_BUSY: "Camera/microphone is already in use by another application.",
    AcquisitionReason.UNAVAILABLE: "Failed to access camera/microphone.",
}


class AcquisitionError(MeshCallError):
    """Local capture device could not be opened."""

    def __init__(self, reason: AcquisitionReason, detail: str = ""):
        self.reason = reason
        self.detail = detail
        super().__init__(_ACQUISITION_MESSAGES[reason])

    @classmethod
    def from_os_error(cls, exc: Exception) -> "AcquisitionError":
        """Categorize an FFmpeg/OS error raised while opening a device."""
        code = getattr(exc, "errno", None)
        if isinstance(exc, PermissionError) or code in (errno.EACCES, errno.EPERM):
            reason = AcquisitionReason.PERMISSION_DENIED
        elif isinstance(exc, FileNotFoundError) or code in (errno.ENOENT, errno.ENODEV):
            reason = AcquisitionReason.DEVICE_NOT_FOUND
        elif code == errno.EBUSY:
            reason = AcquisitionReason.DEVICE_BUSY
        else:
            reason = AcquisitionReason.UNAVAILABLE
        return cls(reason, detail=str(exc))


class MalformedNegotiationError(MeshCallError):
    """A description changed the order of existing media lines."""


class ProtocolViolation(MeshCallError):
    """A peer sent a message that does not fit the current signaling state."""


class ScreenShareConflictError(MeshCallError):
    """Local screen share requested while another participant is sharing."""

    def __init__(self, owner_id: str):
        self.owner_id = owner_id
        super().__init__(f"Participant {owner_id} is already sharing their screen")


_MEDIA_LINE_CONFLICT = re.compile(
    r"order of m-lines|m-line.*(order|match)|media sections .* do not match",
    re.IGNORECASE,
)


def is_media_line_conflict(exc: BaseException) -> bool:
    """Whether ``exc`` reports a media-line ordering violation."""
    if isinstance(exc, MalformedNegotiationError):
        return True
    return bool(_MEDIA_LINE_CONFLICT.search(str(exc)))
