import asyncio
import json
import socket
import time

import pytest
import websockets

from livecall_comms.broker import Broker
from livecall_comms.errors import TransportError
from livecall_comms.signaler import Signaler


def free_port():
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.mark.asyncio
async def test_signaler_reconnects_and_routes_messages():
    port = free_port()
    sig = Signaler(f"ws://127.0.0.1:{port}")

    async def delayed_server():
        await asyncio.sleep(0.1)

        async def handler(ws):
            await ws.send(json.dumps({"event": "offer", "payload": {"from": "x", "sdp": "ok"}}))
            await ws.send(json.dumps({"event": "chat-message", "payload": {"message": "hi"}}))
            await asyncio.sleep(1)

        async with websockets.serve(handler, "127.0.0.1", port):
            await asyncio.sleep(2)

    server_task = asyncio.create_task(delayed_server())

    start = time.monotonic()
    await asyncio.wait_for(sig.connect_with_backoff(), timeout=8)
    elapsed = time.monotonic() - start
    assert elapsed >= 0.9

    msg = await asyncio.wait_for(sig.broker.topic_queue("signal").get(), timeout=1)
    assert msg["event"] == "offer"
    chat = await asyncio.wait_for(sig.broker.topic_queue("chat").get(), timeout=1)
    assert chat["payload"]["message"] == "hi"

    await sig.close()
    await server_task


@pytest.mark.asyncio
async def test_signaler_sends_envelopes():
    received = asyncio.Queue()

    async def handler(ws):
        async for raw in ws:
            await received.put(json.loads(raw))

    async with websockets.serve(handler, "127.0.0.1", 0) as server:
        port = next(iter(server.sockets)).getsockname()[1]
        sig = Signaler(f"ws://127.0.0.1:{port}")
        await sig.connect_with_backoff()
        await sig.send("join-room", {"roomId": "r1", "userName": "Ada"})
        msg = await asyncio.wait_for(received.get(), timeout=2)
        assert msg == {"event": "join-room", "payload": {"roomId": "r1", "userName": "Ada"}}
        assert sig.is_connected()
        await sig.close()
        assert not sig.is_connected()


@pytest.mark.asyncio
async def test_signaler_publishes_transport_closed_when_server_drops():
    async def handler(ws):
        await ws.close()

    async with websockets.serve(handler, "127.0.0.1", 0) as server:
        port = next(iter(server.sockets)).getsockname()[1]
        sig = Signaler(f"ws://127.0.0.1:{port}")
        await sig.connect_with_backoff()
        msg = await asyncio.wait_for(sig.broker.topic_queue("signal").get(), timeout=2)
        assert msg["event"] == "transport/closed"
        await sig.close()


@pytest.mark.asyncio
async def test_signaler_close_does_not_publish_transport_closed():
    async def handler(ws):
        await asyncio.sleep(5)

    async with websockets.serve(handler, "127.0.0.1", 0) as server:
        port = next(iter(server.sockets)).getsockname()[1]
        sig = Signaler(f"ws://127.0.0.1:{port}")
        await sig.connect_with_backoff()
        await sig.close()
        assert sig.broker.topic_queue("signal").empty()


@pytest.mark.asyncio
async def test_signaler_gives_up_after_max_attempts():
    sig = Signaler(f"ws://127.0.0.1:{free_port()}", max_attempts=1)
    with pytest.raises(TransportError):
        await sig.connect_with_backoff()


def test_broker_topics():
    assert Broker.topic_for("existing-participants") == "signal"
    assert Broker.topic_for("ice-candidate") == "signal"
    assert Broker.topic_for("transport/closed") == "signal"
    assert Broker.topic_for("chat-message") == "chat"
    assert Broker.topic_for("whatever") == "misc"


def test_broker_drops_when_topic_full():
    broker = Broker(maxsize=1)
    broker.publish({"event": "chat-message", "payload": {}})
    broker.publish({"event": "chat-message", "payload": {}})
    assert broker.topic_queue("chat").qsize() == 1
