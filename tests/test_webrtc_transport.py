import asyncio

import pytest

from hordelink.net.webrtc_transport import AiortcTransport


def test_initiator_owns_the_data_channel():
    async def scenario():
        transport = AiortcTransport(initiator=True, ice_servers=[])
        try:
            return transport.channel.label, transport.channel.ordered
        finally:
            await transport.pc.close()

    assert asyncio.run(scenario()) == ("game", True)


def test_answerer_waits_for_remote_channel():
    async def scenario():
        transport = AiortcTransport(initiator=False, ice_servers=[])
        try:
            return transport.channel
        finally:
            await transport.pc.close()

    assert asyncio.run(scenario()) is None


def test_unusable_candidates():
    async def scenario():
        transport = AiortcTransport(initiator=True, ice_servers=[])
        try:
            await transport.add_candidate({"candidate": ""})
            with pytest.raises(ValueError):
                await transport.add_candidate({"candidate": "candidate:garbage"})
        finally:
            await transport.pc.close()

    asyncio.run(scenario())


def test_send_before_open_fails():
    async def scenario():
        transport = AiortcTransport(initiator=True, ice_servers=[])
        try:
            with pytest.raises(ConnectionError):
                transport.send("hello")
        finally:
            await transport.pc.close()

    asyncio.run(scenario())
