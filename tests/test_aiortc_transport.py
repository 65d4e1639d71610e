"""Tests covering the aiortc transport adapter."""

from __future__ import annotations

import asyncio

import pytest

from peerlink.rtc.webrtc import ICECandidate, TransportOptions

pytest.importorskip("aiortc")

from peerlink.rtc.aiortc_transport import AiortcTransport, aiortc_transport_factory  # noqa: E402


def test_offer_answer_exchange_over_negotiated_channel() -> None:
    async def scenario() -> None:
        offerer = AiortcTransport()
        answerer = AiortcTransport()
        offer_channel = offerer.create_channel("chat", 0)
        answer_channel = answerer.create_channel("chat", 0)

        try:
            offer = await offerer.create_offer()
            await offerer.set_local_description(offer)
            local_offer = offerer.local_description
            assert local_offer is not None
            assert local_offer.type == "offer"
            assert "m=application" in local_offer.sdp

            await answerer.set_remote_description(local_offer)
            answer = await answerer.create_answer()
            await answerer.set_local_description(answer)
            await offerer.set_remote_description(answerer.local_description)

            assert offerer.remote_description.type == "answer"
            assert answerer.remote_description.type == "offer"
            assert offer_channel.ready_state in {"connecting", "open"}
            assert answer_channel.ready_state in {"connecting", "open"}
        finally:
            await offerer.close()
            await answerer.close()

    asyncio.run(scenario())


def test_factory_applies_options() -> None:
    async def scenario() -> None:
        factory = aiortc_transport_factory(TransportOptions(ice_servers=["stun:stun.example.com:3478"]))
        transport = factory()
        try:
            assert transport.options.ice_servers == ["stun:stun.example.com:3478"]
            assert transport.local_description is None
            assert transport.remote_description is None
        finally:
            await transport.close()

    asyncio.run(scenario())


def test_candidate_round_trip_uses_browser_keys() -> None:
    candidate = ICECandidate.from_dict(
        {"candidate": "candidate:1 1 udp 2130706431 10.0.0.1 5000 typ host", "sdpMid": "0", "sdpMLineIndex": "0"}
    )

    assert candidate.sdp_mline_index == 0
    assert candidate.to_dict()["sdpMid"] == "0"
    with pytest.raises(ValueError):
        ICECandidate.from_dict({"sdpMid": "0"})
