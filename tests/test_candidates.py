"""
Tests for CandidateBuffer
"""

import pytest
from aiortc import RTCSessionDescription

from conftest import FakeTransport
from meshcall.candidates import CandidateBuffer
from meshcall.registry import PeerConnection


def candidate(n: int) -> dict:
    return {"candidate": f"candidate:{n} 1 udp 2130706431 10.0.0.{n} 9 typ host", "sdpMid": "0", "sdpMLineIndex": 0}


@pytest.fixture
def buffer():
    return CandidateBuffer()


@pytest.fixture
def peer():
    return PeerConnection("carol", "Carol", FakeTransport(), polite=True)


async def give_remote_offer(peer):
    await peer.transport.set_remote_description(RTCSessionDescription(sdp="v=0 offer", type="offer"))


class TestCandidateBuffer:
    """Tests for buffering and draining candidates"""

    async def test_buffers_for_unknown_peer(self, buffer):
        applied = await buffer.on_candidate("carol", None, candidate(1))

        assert applied is False
        assert buffer.pending("carol") == [candidate(1)]

    async def test_buffers_until_remote_description(self, buffer, peer):
        assert await buffer.on_candidate("carol", peer, candidate(1)) is False
        assert await buffer.on_candidate("carol", peer, candidate(2)) is False

        assert peer.transport.applied_candidates == []
        assert len(buffer.pending("carol")) == 2

    async def test_drain_applies_in_arrival_order_once(self, buffer, peer):
        for n in (1, 2, 3):
            await buffer.on_candidate("carol", peer, candidate(n))
        await give_remote_offer(peer)

        assert await buffer.drain(peer) == 3
        assert await buffer.drain(peer) == 0

        assert peer.transport.applied_candidates == [candidate(1), candidate(2), candidate(3)]
        assert buffer.pending("carol") == []

    async def test_applies_immediately_once_remote_is_known(self, buffer, peer):
        await give_remote_offer(peer)

        assert await buffer.on_candidate("carol", peer, candidate(4)) is True
        assert peer.transport.applied_candidates == [candidate(4)]
        assert buffer.pending("carol") == []

    async def test_buffered_for_unknown_peer_then_drained(self, buffer, peer):
        await buffer.on_candidate("carol", None, candidate(1))
        await give_remote_offer(peer)

        await buffer.drain(peer)

        assert peer.transport.applied_candidates == [candidate(1)]

    async def test_application_failure_is_logged_not_raised(self, buffer, peer, caplog):
        await give_remote_offer(peer)

        async def broken(_):
            raise ValueError("bad candidate")

        peer.transport.add_ice_candidate = broken
        await buffer.on_candidate("carol", peer, candidate(1))

        assert "Failed to add ICE candidate" in caplog.text

    async def test_failure_while_ignoring_offer_is_quiet(self, buffer, peer, caplog):
        await give_remote_offer(peer)
        peer.ignore_offer = True

        async def broken(_):
            raise ValueError("bad candidate")

        peer.transport.add_ice_candidate = broken
        with caplog.at_level("WARNING"):
            await buffer.on_candidate("carol", peer, candidate(1))

        assert "Failed to add ICE candidate" not in caplog.text

    async def test_discard_and_clear(self, buffer):
        await buffer.on_candidate("carol", None, candidate(1))
        await buffer.on_candidate("dave", None, candidate(2))

        buffer.discard("carol")
        assert buffer.pending("carol") == []
        assert buffer.pending("dave") == [candidate(2)]

        buffer.clear()
        assert buffer.pending("dave") == []
