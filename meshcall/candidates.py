"""Buffering of ICE candidates that arrive ahead of the remote description."""

import logging
from collections import defaultdict
from typing import TYPE_CHECKING, Optional

from .utils import short_id

if TYPE_CHECKING:
    from .registry import PeerConnection

logger = logging.getLogger(__name__)


class CandidateBuffer:
    """Per-peer FIFO of candidates that cannot be applied yet."""

    def __init__(self):
        self._pending: dict[str, list[dict]] = defaultdict(list)

    def pending(self, participant_id: str) -> list[dict]:
        return list(self._pending.get(participant_id, ()))

    async def on_candidate(self, participant_id: str, peer: Optional["PeerConnection"], candidate: dict) -> bool:
        """
        Apply ``candidate`` now if possible, otherwise queue it.

        Returns True when the candidate was applied immediately.
        """
        if peer is None or not peer.transport.has_remote_description:
            self._pending[participant_id].append(candidate)
            logger.debug(
                "Queued ICE candidate for %s (%d pending)",
                short_id(participant_id), len(self._pending[participant_id]),
            )
            return False
        await self._apply(peer, candidate)
        return True

    async def drain(self, peer: "PeerConnection") -> int:
        """Apply every queued candidate for ``peer`` in arrival order."""
        queued = self._pending.pop(peer.id, None)
        if not queued:
            return 0
        logger.info("Processing %d pending ICE candidates for %s", len(queued), short_id(peer.id))
        for candidate in queued:
            await self._apply(peer, candidate)
        return len(queued)

    def discard(self, participant_id: str) -> None:
        self._pending.pop(participant_id, None)

    def clear(self) -> None:
        self._pending.clear()

    async def _apply(self, peer: "PeerConnection", candidate: dict) -> None:
        try:
            await peer.transport.add_ice_candidate(candidate)
        except Exception as exc:
            # candidates for an offer we deliberately ignored are expected to fail
            if peer.ignore_offer:
                logger.debug("Dropped ICE candidate for %s: %s", short_id(peer.id), exc)
            else:
                logger.warning("Failed to add ICE candidate for %s: %s", short_id(peer.id), exc)
