"""
Offer/answer sequencing per peer ("perfect negotiation").

Both sides may start an offer at the same time. The politeness decided at
connection creation settles who yields: an impolite peer drops a colliding
offer, a polite peer rolls its own offer back and answers the remote one.
Requests that arrive while a negotiation is running, or while the signaling
state is not stable, are coalesced into a single follow-up.

Every step that changes a peer's signaling state runs under that peer's
``operations`` lock, so an inbound offer never interleaves with the commit
of a local one.
"""

import logging
from typing import Awaitable, Callable

from aiortc import RTCSessionDescription

from .candidates import CandidateBuffer
from .errors import ProtocolViolation, is_media_line_conflict
from .registry import ConnectionRegistry, NegotiationPhase, PeerConnection
from .signaling import ANSWER, OFFER
from .transport import HAVE_LOCAL_OFFER
from .utils import BackgroundTasks, short_id

logger = logging.getLogger(__name__)

# send(message_type, target_id, **fields)
SendFunction = Callable[..., Awaitable[None]]


class NegotiationCoordinator:
    """Drives offer/answer/rollback for every peer in the registry."""

    def __init__(self, registry: ConnectionRegistry, candidates: CandidateBuffer, send: SendFunction):
        self.registry = registry
        self.candidates = candidates
        self._send = send
        self.tasks = BackgroundTasks("negotiation")

    def schedule(self, participant_id: str) -> None:
        """Request a negotiation without waiting for it."""
        self.tasks.spawn(self.request_negotiation(participant_id))

    async def request_negotiation(self, participant_id: str, follow_up: bool = False) -> None:
        peer = self.registry.get(participant_id)
        if peer is None:
            return

        if follow_up:
            peer.take_follow_up()
        elif peer.phase is NegotiationPhase.QUEUED:
            # the scheduled follow-up will cover this request
            peer.needs_renegotiation = True
            return

        if peer.needs_recreation:
            peer = await self.registry.force_recreate(participant_id)
            if peer is None:
                return

        if peer.is_negotiating:
            logger.debug("Negotiation with %s in progress, coalescing", short_id(participant_id))
            peer.needs_renegotiation = True
            return

        if not peer.is_stable:
            self._defer(peer)
            return

        peer.begin_negotiation()
        try:
            async with peer.operations:
                if not self.registry.is_current(peer):
                    return
                if not peer.is_stable:
                    self._defer(peer)
                    return
                offer = await peer.transport.create_offer()
                if not self.registry.is_current(peer):
                    return
                await peer.transport.set_local_description(offer)
                if not self.registry.is_current(peer):
                    return
                await self._send(OFFER, peer.id, sdp=peer.transport.local_description.sdp)
                logger.info("Sent offer to %s", short_id(peer.id))
        except Exception as exc:
            if not self.registry.is_current(peer):
                logger.debug("Abandoned offer to %s: %s", short_id(peer.id), exc)
            elif is_media_line_conflict(exc):
                logger.warning("Media line conflict with %s, connection will be rebuilt", short_id(peer.id))
                peer.needs_recreation = True
            else:
                logger.error("Failed to create offer for %s: %s", short_id(peer.id), exc)
        finally:
            if self.registry.is_current(peer) and peer.finish_negotiation():
                self.tasks.spawn(self.request_negotiation(peer.id, follow_up=True))

    def _defer(self, peer: PeerConnection) -> None:
        logger.debug(
            "Deferring negotiation with %s (signaling state %s)",
            short_id(peer.id), peer.transport.signaling_state,
        )
        peer.needs_renegotiation = True

    async def on_offer(self, participant_id: str, display_name: str, sdp: str) -> None:
        peer = await self.registry.get_or_create(participant_id, display_name)

        async with peer.operations:
            if not self.registry.is_current(peer):
                return
            collision = peer.is_negotiating or not peer.is_stable
            peer.ignore_offer = collision and not peer.polite
            if peer.ignore_offer:
                logger.info("Ignoring colliding offer from %s (impolite)", short_id(participant_id))
                return

            try:
                if collision:
                    logger.info("Offer collision with %s, rolling back (polite)", short_id(participant_id))
                    await peer.transport.rollback()
                    if not self.registry.is_current(peer):
                        return

                await peer.transport.set_remote_description(RTCSessionDescription(sdp=sdp, type="offer"))
                if not self.registry.is_current(peer):
                    return
                await self.candidates.drain(peer)

                answer = await peer.transport.create_answer()
                if not self.registry.is_current(peer):
                    return
                await peer.transport.set_local_description(answer)
                if not self.registry.is_current(peer):
                    return
                await self._send(ANSWER, peer.id, sdp=peer.transport.local_description.sdp)
                logger.info("Sent answer to %s", short_id(peer.id))
            except Exception as exc:
                if not self.registry.is_current(peer):
                    logger.debug("Dropped offer from departed peer %s: %s", short_id(participant_id), exc)
                    return
                if is_media_line_conflict(exc):
                    # the remote side has to send a fresh offer to the new connection
                    logger.warning("Media line conflict in offer from %s, recreating", short_id(participant_id))
                    await self.registry.force_recreate(participant_id)
                    return
                logger.error("Failed to handle offer from %s: %s", short_id(participant_id), exc)
                return

        self._resume_deferred(peer)

    async def on_answer(self, participant_id: str, sdp: str) -> None:
        peer = self.registry.get(participant_id)
        if peer is None:
            logger.warning("No connection for answer from %s", short_id(participant_id))
            return

        async with peer.operations:
            if peer.transport.signaling_state != HAVE_LOCAL_OFFER:
                raise ProtocolViolation(
                    f"Answer from {short_id(participant_id)} in signaling state "
                    f"{peer.transport.signaling_state}"
                )
            try:
                await peer.transport.set_remote_description(RTCSessionDescription(sdp=sdp, type="answer"))
            except Exception as exc:
                if is_media_line_conflict(exc) and self.registry.is_current(peer):
                    logger.warning("Media line conflict in answer from %s", short_id(participant_id))
                    peer.needs_recreation = True
                else:
                    logger.error("Failed to apply answer from %s: %s", short_id(participant_id), exc)
                return
            if not self.registry.is_current(peer):
                return
            logger.info("Set remote answer from %s", short_id(participant_id))
            await self.candidates.drain(peer)

        self._resume_deferred(peer)

    async def on_candidate(self, participant_id: str, candidate: dict) -> None:
        await self.candidates.on_candidate(participant_id, self.registry.get(participant_id), candidate)

    async def restart_connectivity(self, participant_id: str) -> None:
        """Restart ICE on a peer and renegotiate so new credentials are exchanged."""
        peer = self.registry.get(participant_id)
        if peer is None:
            return
        peer.restart_attempts += 1
        logger.info("Restarting ICE with %s (attempt %d)", short_id(participant_id), peer.restart_attempts)
        async with peer.operations:
            await peer.transport.restart_ice()
        if self.registry.is_current(peer):
            await self.request_negotiation(participant_id)

    def _resume_deferred(self, peer: PeerConnection) -> None:
        """Run a renegotiation that was deferred until the state was stable again."""
        if (
            self.registry.is_current(peer)
            and peer.needs_renegotiation
            and peer.is_stable
            and peer.queue_follow_up()
        ):
            self.tasks.spawn(self.request_negotiation(peer.id, follow_up=True))
