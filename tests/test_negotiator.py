import asyncio

import pytest

from fakes import FakeSignaling, FakeTransport, YieldingTransport
from hordelink.net.negotiator import ConnectionNegotiator, NegotiationState
from hordelink.shared.errors import ChannelClosed, NegotiationFailed


def _negotiator(initiator, transport=None, signaling=None, **callbacks):
    transport = transport or FakeTransport(initiator)
    signaling = signaling or FakeSignaling()
    negotiator = ConnectionNegotiator("peer-2", transport, signaling, initiator, **callbacks)
    return negotiator, transport, signaling


def test_initiator_sends_offer_through_relay():
    async def scenario():
        negotiator, _, signaling = _negotiator(True)
        await negotiator.start()
        return negotiator, signaling

    negotiator, signaling = asyncio.run(scenario())

    assert negotiator.state == NegotiationState.OFFER_CREATED
    assert signaling.offers == [("peer-2", "v=0 offer")]


def test_answerer_applies_offer_and_answers():
    async def scenario():
        negotiator, transport, signaling = _negotiator(False)
        await negotiator.handle_offer("v=0 remote")
        return negotiator, transport, signaling

    negotiator, transport, signaling = asyncio.run(scenario())

    assert transport.remote == [("offer", "v=0 remote")]
    assert signaling.answers == [("peer-2", "v=0 answer")]
    assert negotiator.state == NegotiationState.ANSWER_CREATED


def test_early_candidates_are_buffered_then_applied_in_order():
    async def scenario():
        negotiator, transport, _ = _negotiator(False)
        await negotiator.handle_candidate({"candidate": "c1"})
        await negotiator.handle_candidate({"candidate": "c2"})
        buffered = negotiator.buffered_candidates
        applied_early = list(transport.candidates)
        await negotiator.handle_offer("v=0 remote")
        await negotiator.handle_candidate({"candidate": "c3"})
        return buffered, applied_early, transport.candidates

    buffered, applied_early, applied = asyncio.run(scenario())

    assert buffered == 2
    assert applied_early == []
    assert [c["candidate"] for c in applied] == ["c1", "c2", "c3"]


def test_candidates_arriving_mid_flush_keep_their_order():
    async def scenario():
        transport = YieldingTransport(initiator=False)
        negotiator, _, _ = _negotiator(False, transport=transport)

        async def arrive(name, yields):
            for _ in range(yields):
                await asyncio.sleep(0)
            await negotiator.handle_candidate({"candidate": name})

        await negotiator.handle_candidate({"candidate": "c1"})
        await asyncio.gather(
            negotiator.handle_offer("v=0 remote"),
            arrive("c2", 0),   # While the offer is being applied
            arrive("c3", 1),   # While the buffer drains
            arrive("c4", 3),
            arrive("c5", 20),  # Long after, applied directly
        )
        return negotiator, transport

    negotiator, transport = asyncio.run(scenario())

    assert transport.applied == ["offer", "c1", "c2", "c3", "c4", "c5"]
    assert negotiator.buffered_candidates == 0


def test_not_connected_until_channel_opens():
    opened = []

    async def scenario():
        negotiator, transport, _ = _negotiator(True, on_connected=lambda pid, ch: opened.append(pid))
        await negotiator.start()
        await negotiator.handle_answer("v=0 answer")
        before = negotiator.connected
        transport.open()
        return before, negotiator.connected

    before, after = asyncio.run(scenario())

    assert before is False
    assert after is True
    assert opened == ["peer-2"]


def test_bad_candidate_does_not_fail_negotiation():
    async def scenario():
        negotiator, transport, _ = _negotiator(False)
        await negotiator.handle_offer("v=0 remote")
        await negotiator.handle_candidate({"bad": True})
        await negotiator.handle_candidate({"candidate": "ok"})
        return negotiator, transport

    negotiator, transport = asyncio.run(scenario())

    assert not negotiator.finished
    assert transport.candidates == [{"candidate": "ok"}]


def test_local_candidates_are_forwarded():
    async def scenario():
        negotiator, transport, signaling = _negotiator(True)
        await negotiator.start()
        transport.gather({"candidate": "local-1"})
        await asyncio.sleep(0)
        return signaling

    signaling = asyncio.run(scenario())

    assert signaling.candidates == [("peer-2", {"candidate": "local-1"})]


def test_offer_failure_reports_and_raises():
    closed = []

    async def scenario():
        transport = FakeTransport(True)
        transport.fail_offer = True
        negotiator, _, _ = _negotiator(True, transport=transport,
                                       on_closed=lambda pid, reason: closed.append(pid))
        with pytest.raises(NegotiationFailed):
            await negotiator.start()
        return negotiator, transport

    negotiator, transport = asyncio.run(scenario())

    assert negotiator.state == NegotiationState.FAILED
    assert transport.closed
    assert closed == ["peer-2"]


def test_transport_drop_after_open_is_closed_not_failed():
    closed = []

    async def scenario():
        negotiator, transport, _ = _negotiator(False, on_closed=lambda pid, reason: closed.append(reason))
        await negotiator.handle_offer("v=0 remote")
        transport.open()
        transport.on_closed("ice failed")
        return negotiator

    negotiator = asyncio.run(scenario())

    assert negotiator.state == NegotiationState.CLOSED
    assert closed == ["ice failed"]


def test_close_is_idempotent_and_silent():
    closed = []

    async def scenario():
        negotiator, transport, _ = _negotiator(False, on_closed=lambda pid, reason: closed.append(pid))
        await negotiator.handle_candidate({"candidate": "c1"})
        negotiator.close()
        negotiator.close()
        await negotiator.handle_candidate({"candidate": "c2"})
        return negotiator, transport

    negotiator, transport = asyncio.run(scenario())

    assert negotiator.state == NegotiationState.CLOSED
    assert negotiator.buffered_candidates == 0
    assert transport.closed
    assert closed == []


def test_send_before_open_raises_channel_closed():
    negotiator, _, _ = _negotiator(True)

    with pytest.raises(ChannelClosed):
        negotiator.send("hello")


def test_messages_only_delivered_once_connected():
    received = []

    async def scenario():
        negotiator, transport, _ = _negotiator(False, on_message=lambda pid, text: received.append(text))
        await negotiator.handle_offer("v=0 remote")
        transport.on_message("too early")
        transport.open()
        transport.on_message("hello")

    asyncio.run(scenario())

    assert received == ["hello"]
