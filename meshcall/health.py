"""Connectivity supervision: ICE restarts, grace timers and quality probing."""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from .config import ConnectionConfig, connection_config
from .registry import ConnectionRegistry, PeerConnection
from .utils import BackgroundTasks, short_id

logger = logging.getLogger(__name__)

HEALTHY_STATES = ("connected", "completed")


def inbound_video_loss(stats: dict) -> Optional[float]:
    """Packet loss percentage of the inbound video stream, if reported."""
    for report in stats.values():
        if getattr(report, "type", None) == "inbound-rtp" and getattr(report, "kind", None) == "video":
            lost = report.packetsLost or 0
            received = report.packetsReceived or 0
            if received <= 0:
                return 0.0
            return lost / (lost + received) * 100
    return None


class HealthMonitor:
    """
    Reacts to per-peer connectivity transitions.

    ICE "failed" restarts immediately. ICE "disconnected" restarts only if it
    lasts longer than the disconnect grace period. A transport that stays
    "failed" past the failure grace period, or a peer that exhausted its
    restart budget, is dropped as if the participant had left.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        restart: Callable[[str], Awaitable[None]],
        drop: Callable[[str], Awaitable[None]],
        config: ConnectionConfig = connection_config,
    ):
        self.registry = registry
        self._restart = restart
        self._drop = drop
        self.config = config
        self.tasks = BackgroundTasks("health")
        self._disconnect_timers: dict[str, asyncio.TimerHandle] = {}
        self._failure_timers: dict[str, asyncio.TimerHandle] = {}
        self._probes: dict[str, asyncio.Task] = {}

    def on_ice_state(self, peer: PeerConnection, state: str) -> None:
        if state in HEALTHY_STATES:
            self._cancel(self._disconnect_timers, peer.id)
            peer.restart_attempts = 0
            self._start_probe(peer)
        elif state == "failed":
            self._cancel(self._disconnect_timers, peer.id)
            self._restart_or_drop(peer)
        elif state == "disconnected":
            if peer.id not in self._disconnect_timers:
                loop = asyncio.get_running_loop()
                self._disconnect_timers[peer.id] = loop.call_later(
                    self.config.DISCONNECT_GRACE_SECONDS, self._disconnect_grace_expired, peer,
                )
        elif state == "closed":
            self.forget(peer.id)

    def on_connection_state(self, peer: PeerConnection, state: str) -> None:
        if state == "failed":
            if peer.id not in self._failure_timers:
                loop = asyncio.get_running_loop()
                self._failure_timers[peer.id] = loop.call_later(
                    self.config.FAILURE_GRACE_SECONDS, self._failure_grace_expired, peer,
                )
        elif state in HEALTHY_STATES:
            self._cancel(self._failure_timers, peer.id)

    def _disconnect_grace_expired(self, peer: PeerConnection) -> None:
        self._disconnect_timers.pop(peer.id, None)
        if self.registry.is_current(peer) and peer.ice_state == "disconnected":
            logger.info("%s still disconnected after grace period", short_id(peer.id))
            self._restart_or_drop(peer)

    def _failure_grace_expired(self, peer: PeerConnection) -> None:
        self._failure_timers.pop(peer.id, None)
        if self.registry.is_current(peer) and peer.connection_state == "failed":
            logger.warning("Transport to %s did not recover, dropping peer", short_id(peer.id))
            self.tasks.spawn(self._drop(peer.id))

    def _restart_or_drop(self, peer: PeerConnection) -> None:
        if peer.restart_attempts >= self.config.MAX_RESTART_ATTEMPTS:
            logger.warning("Max reconnection attempts reached for %s", short_id(peer.id))
            self.tasks.spawn(self._drop(peer.id))
            return
        self.tasks.spawn(self._restart(peer.id))

    def _start_probe(self, peer: PeerConnection) -> None:
        probe = self._probes.get(peer.id)
        if probe is not None and not probe.done():
            return
        self._probes[peer.id] = self.tasks.spawn(self._probe(peer))

    async def _probe(self, peer: PeerConnection) -> None:
        while True:
            await asyncio.sleep(self.config.STATS_INTERVAL_SECONDS)
            if not self.registry.is_current(peer) or peer.ice_state not in HEALTHY_STATES:
                return
            try:
                stats = await peer.transport.get_stats()
            except Exception as exc:
                logger.error("Failed to get stats for %s: %s", short_id(peer.id), exc)
                continue
            loss = inbound_video_loss(stats)
            if loss is None:
                continue
            peer.packet_loss_pct = loss
            if loss > self.config.PACKET_LOSS_WARNING_PCT:
                logger.warning("High packet loss from %s: %.2f%%", short_id(peer.id), loss)

    @staticmethod
    def _cancel(timers: dict, participant_id: str) -> None:
        handle = timers.pop(participant_id, None)
        if handle is not None:
            handle.cancel()

    def has_pending_restart(self, participant_id: str) -> bool:
        return participant_id in self._disconnect_timers

    def forget(self, participant_id: str) -> None:
        """Cancel every timer and probe for a departed peer."""
        self._cancel(self._disconnect_timers, participant_id)
        self._cancel(self._failure_timers, participant_id)
        probe = self._probes.pop(participant_id, None)
        if probe is not None:
            probe.cancel()

    async def close(self) -> None:
        for participant_id in set(self._disconnect_timers) | set(self._failure_timers) | set(self._probes):
            self.forget(participant_id)
        await self.tasks.cancel_all()
