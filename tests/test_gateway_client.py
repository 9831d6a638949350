"""
Tests for the gateway RPC client.

Tests:
- Idempotency keys on every call
- Timeouts surface as TransportError without retry
- Remote errors keep their text
- Frame parsing
- WebSocket transport against a live aiohttp server
"""

import asyncio
import json

import aiohttp
import pytest
from aiohttp import test_utils, web

from fleetgate.gateway.client import RpcClient, WebSocketTransport
from fleetgate.gateway.errors import ProtocolError, RemoteError, TransportError
from fleetgate.gateway.protocol import GatewayMethod, RpcRequest, RpcResponse


class TestIdempotencyKeys:
    """Every call carries a key; supplied keys are kept."""

    @pytest.mark.asyncio
    async def test_fresh_key_per_call(self, client, gateway):
        await client.invoke(GatewayMethod.NODE_LIST)
        await client.invoke(GatewayMethod.NODE_LIST)

        keys = [r.idempotency_key for r in gateway.requests]
        assert all(keys)
        assert keys[0] != keys[1]

    @pytest.mark.asyncio
    async def test_supplied_key_is_sent_unchanged(self, client, gateway):
        await client.invoke("node.list", idempotency_key="attempt-1")

        assert gateway.requests[0].idempotency_key == "attempt-1"
        assert gateway.requests[0].to_dict()["idempotencyKey"] == "attempt-1"


class TestFailures:
    """Timeouts, remote errors and connection failures."""

    @pytest.mark.asyncio
    async def test_timeout_raises_transport_error(self, client, gateway):
        gateway.delay = 1.0

        with pytest.raises(TransportError) as exc_info:
            await client.invoke(GatewayMethod.NODE_LIST, timeout_ms=20)

        assert exc_info.value.timed_out is True
        assert "timed out" in exc_info.value.message
        # No silent retry
        assert len(gateway.requests) == 1

    @pytest.mark.asyncio
    async def test_remote_error_keeps_message(self, client, gateway):
        gateway.run_error = RemoteError("node exploded: disk full", "UNAVAILABLE")

        with pytest.raises(RemoteError) as exc_info:
            await client.invoke(GatewayMethod.NODE_INVOKE, {"nodeId": "mac-1", "command": "system.run", "params": {}})

        assert exc_info.value.message == "node exploded: disk full"
        assert exc_info.value.remote_code == "UNAVAILABLE"

    @pytest.mark.asyncio
    async def test_connection_error_is_transport_error(self):
        class BrokenTransport:
            async def send(self, request):
                raise ConnectionResetError("peer went away")

            async def close(self):
                pass

        client = RpcClient(BrokenTransport())

        with pytest.raises(TransportError) as exc_info:
            await client.invoke(GatewayMethod.NODE_LIST)

        assert exc_info.value.timed_out is False

    @pytest.mark.asyncio
    async def test_close_closes_transport(self, client, transport):
        async with client:
            pass

        assert transport.closed is True

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self, client, gateway):
        gateway.delay = 5.0
        task = asyncio.create_task(client.invoke(GatewayMethod.NODE_LIST, timeout_ms=10000))
        await asyncio.sleep(0.01)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task


class TestFrames:
    """Request/response frame serialization."""

    def test_request_to_dict(self):
        request = RpcRequest(method="node.list", params={"a": 1}, idempotency_key="k", timeout_ms=500)
        data = request.to_dict()

        assert data["type"] == "req"
        assert data["method"] == "node.list"
        assert data["params"] == {"a": 1}
        assert data["timeoutMs"] == 500
        assert data["idempotencyKey"] == "k"

    def test_response_without_id_is_rejected(self):
        with pytest.raises(ProtocolError):
            RpcResponse.from_dict({"type": "res", "ok": True})

    def test_error_response(self):
        response = RpcResponse.from_dict({
            "type": "res",
            "id": "r1",
            "ok": False,
            "error": {"message": "nope", "code": "INVALID_REQUEST"},
        })

        assert response.ok is False
        assert response.error.message == "nope"
        assert response.error.code == "INVALID_REQUEST"

    def test_ok_defaults_from_error_presence(self):
        assert RpcResponse.from_dict({"id": "r1", "payload": {}}).ok is True
        assert RpcResponse.from_dict({"id": "r1", "error": "boom"}).ok is False


class WebSocketGateway:
    """
    Minimal gateway speaking the connect/hello handshake over a real socket.

    Answers every request frame with an empty node list. Frames listed in
    `preamble` are sent right after the hello frame.
    """

    def __init__(self):
        self.preamble: list = []
        self.close_after = 0
        self.connections = 0
        self.connect_frames: list[dict] = []
        self.server: test_utils.TestServer | None = None

    async def handle(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        self.connections += 1
        self.connect_frames.append(await ws.receive_json())
        await ws.send_json({"type": "hello"})
        for frame in self.preamble:
            await ws.send_str(json.dumps(frame))

        answered = 0
        async for msg in ws:
            if msg.type != aiohttp.WSMsgType.TEXT:
                break
            frame = json.loads(msg.data)
            await ws.send_json({"type": "res", "id": frame["id"], "ok": True, "payload": {"nodes": []}})
            answered += 1
            if self.close_after and answered >= self.close_after:
                break
        await ws.close()
        return ws

    def url(self) -> str:
        return str(self.server.make_url("/ws"))


@pytest.fixture
async def ws_gateway():
    gateway = WebSocketGateway()
    app = web.Application()
    app.router.add_get("/ws", gateway.handle)
    gateway.server = test_utils.TestServer(app)
    await gateway.server.start_server()
    yield gateway
    await gateway.server.close()


async def wait_disconnected(transport: WebSocketTransport) -> None:
    for _ in range(200):
        if not transport.connected:
            return
        await asyncio.sleep(0.01)
    raise AssertionError("transport never noticed the closed socket")


class TestWebSocketTransport:
    """The socket reader keeps routing responses and recovers from drops."""

    @pytest.mark.asyncio
    async def test_handshake_sends_token(self, ws_gateway):
        async with RpcClient(WebSocketTransport(ws_gateway.url(), token="secret")) as client:
            assert await client.invoke(GatewayMethod.NODE_LIST) == {"nodes": []}

        assert ws_gateway.connect_frames[0]["type"] == "connect"
        assert ws_gateway.connect_frames[0]["token"] == "secret"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("frame", [[], "hello", 42, None])
    async def test_non_object_frame_is_skipped(self, ws_gateway, frame):
        ws_gateway.preamble = [frame]
        client = RpcClient(WebSocketTransport(ws_gateway.url()), default_timeout_ms=2000)

        first = await client.invoke(GatewayMethod.NODE_LIST)
        second = await client.invoke(GatewayMethod.NODE_LIST)
        await client.close()

        assert first == second == {"nodes": []}
        assert ws_gateway.connections == 1

    @pytest.mark.asyncio
    async def test_reconnects_after_gateway_closes(self, ws_gateway):
        ws_gateway.close_after = 1
        transport = WebSocketTransport(ws_gateway.url())
        client = RpcClient(transport, default_timeout_ms=2000)

        assert await client.invoke(GatewayMethod.NODE_LIST) == {"nodes": []}
        await wait_disconnected(transport)
        assert await client.invoke(GatewayMethod.NODE_LIST) == {"nodes": []}
        await client.close()

        assert ws_gateway.connections == 2

    @pytest.mark.asyncio
    async def test_close_after_gateway_went_away(self, ws_gateway):
        ws_gateway.close_after = 1
        transport = WebSocketTransport(ws_gateway.url())
        client = RpcClient(transport, default_timeout_ms=2000)
        await client.invoke(GatewayMethod.NODE_LIST)
        await wait_disconnected(transport)

        await client.close()

        assert transport.connected is False
