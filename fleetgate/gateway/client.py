"""
Gateway RPC client for fleetgate.

Sends typed request frames to the gateway and waits for the matching
response, with a per-call timeout and an idempotency key on every call.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from typing import Any, TYPE_CHECKING

import aiohttp
from loguru import logger

from fleetgate import __version__
from fleetgate.gateway.errors import ProtocolError, RemoteError, TransportError
from fleetgate.gateway.protocol import (
    FrameType,
    GatewayMethod,
    RpcRequest,
    RpcResponse,
    random_idempotency_key,
)

if TYPE_CHECKING:
    from fleetgate.config.schema import Config


class GatewayTransport(ABC):
    """Carries request frames to the gateway and returns the response frame."""

    @abstractmethod
    async def send(self, request: RpcRequest) -> RpcResponse:
        """Send a request and wait for its response."""
        pass

    async def close(self) -> None:
        """Release any connection held by the transport."""
        return None


class WebSocketTransport(GatewayTransport):
    """
    WebSocket transport to the gateway.

    Responses are matched to pending requests by frame id, so several
    dispatches can share one connection concurrently.
    """

    def __init__(
        self,
        url: str,
        token: str = "",
        connect_timeout: float = 10.0,
    ):
        """
        Initialize the transport.

        Args:
            url: WebSocket URL of the gateway (e.g., ws://127.0.0.1:18789)
            token: Authentication token sent in the connect frame
            connect_timeout: Seconds to wait for the gateway handshake
        """
        self.url = url
        self.token = token
        self.connect_timeout = connect_timeout

        self._session: aiohttp.ClientSession | None = None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._reader: asyncio.Task | None = None
        self._pending: dict[str, asyncio.Future] = {}
        self._connect_lock = asyncio.Lock()

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    async def _connect(self) -> None:
        """Open the socket and complete the connect/hello handshake."""
        if self._session is None:
            self._session = aiohttp.ClientSession()

        try:
            self._ws = await self._session.ws_connect(self.url, heartbeat=30.0)
            await self._ws.send_json({
                "type": FrameType.CONNECT.value,
                "token": self.token,
                "client": {"name": "fleetgate", "version": __version__},
            })
            msg = await self._ws.receive(timeout=self.connect_timeout)
        except asyncio.TimeoutError:
            await self.close()
            raise TransportError(
                f"Gateway handshake timed out after {self.connect_timeout}s",
                timed_out=True,
            ) from None
        except aiohttp.ClientError as e:
            await self.close()
            raise TransportError(f"Cannot connect to gateway at {self.url}: {e}") from e

        if msg.type != aiohttp.WSMsgType.TEXT:
            await self.close()
            raise TransportError("Gateway closed the connection during handshake")

        try:
            data = json.loads(msg.data)
        except json.JSONDecodeError:
            data = None
        if not isinstance(data, dict):
            await self.close()
            raise ProtocolError("Gateway sent an invalid handshake frame")
        if data.get("type") != FrameType.HELLO.value:
            await self.close()
            reason = data.get("error") or data.get("reason") or "unexpected handshake frame"
            raise TransportError(f"Gateway rejected connection: {reason}")

        self._reader = asyncio.create_task(self._read_loop(self._ws))
        logger.debug(f"Connected to gateway {self.url}")

    async def _read_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        """
        Route response frames to their pending futures.

        When the loop ends the socket is dropped, so the next send opens a
        fresh connection instead of waiting on a dead one.
        """
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    try:
                        data = json.loads(msg.data)
                    except json.JSONDecodeError:
                        logger.warning("Invalid JSON from gateway")
                        continue
                    if not isinstance(data, dict):
                        logger.warning(f"Dropping non-object frame from gateway: {type(data).__name__}")
                        continue
                    if data.get("type") != FrameType.RESPONSE.value:
                        continue
                    try:
                        response = RpcResponse.from_dict(data)
                    except ProtocolError as e:
                        logger.warning(f"Dropping malformed response frame: {e}")
                        continue
                    future = self._pending.get(response.id)
                    if future and not future.done():
                        future.set_result(response)

                elif msg.type == aiohttp.WSMsgType.ERROR:
                    logger.error(f"Gateway WebSocket error: {ws.exception()}")
                    break
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Gateway reader stopped: {e}")
        finally:
            # A newer connection may already have replaced this one
            if self._ws is ws:
                self._ws = None
                self._fail_pending("Gateway connection closed")
            if not ws.closed:
                await ws.close()

    def _fail_pending(self, reason: str) -> None:
        for request_id, future in self._pending.items():
            if not future.done():
                future.set_exception(TransportError(f"{reason} during request {request_id}"))
        self._pending.clear()

    async def send(self, request: RpcRequest) -> RpcResponse:
        async with self._connect_lock:
            if not self.connected:
                await self._connect()
            ws = self._ws

        future: asyncio.Future[RpcResponse] = asyncio.get_running_loop().create_future()
        self._pending[request.id] = future
        try:
            await ws.send_json(request.to_dict())
            return await future
        except (aiohttp.ClientError, ConnectionResetError) as e:
            raise TransportError(f"Failed to send {request.method}: {e}") from e
        finally:
            self._pending.pop(request.id, None)

    async def close(self) -> None:
        if self._reader:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.debug(f"Gateway reader had failed: {e}")
            self._reader = None

        if self._ws and not self._ws.closed:
            await self._ws.close()
        self._ws = None

        if self._session:
            await self._session.close()
            self._session = None

        self._fail_pending("Gateway connection closed")


class RpcClient:
    """
    Typed request/response calls against the gateway.

    Every call carries an idempotency key: a fresh one unless the caller
    passes the key of an earlier attempt it is retrying. The client itself
    never retries.
    """

    def __init__(
        self,
        transport: GatewayTransport,
        default_timeout_ms: int = 30000,
    ):
        self._transport = transport
        self.default_timeout_ms = default_timeout_ms

    async def invoke(
        self,
        method: GatewayMethod | str,
        params: dict[str, Any] | None = None,
        timeout_ms: int | None = None,
        idempotency_key: str | None = None,
    ) -> Any:
        """
        Call a gateway method and return its payload.

        Args:
            method: Gateway method name
            params: Method parameters
            timeout_ms: Per-call timeout (defaults to default_timeout_ms)
            idempotency_key: Key of the attempt being retried, if any

        Returns:
            The response payload

        Raises:
            TransportError: on timeout (timed_out=True) or connection failure
            RemoteError: when the gateway answers with an error
        """
        method_name = method.value if isinstance(method, GatewayMethod) else method
        timeout_ms = timeout_ms or self.default_timeout_ms
        request = RpcRequest(
            method=method_name,
            params=params or {},
            idempotency_key=idempotency_key or random_idempotency_key(),
            timeout_ms=timeout_ms,
        )

        logger.debug(f"-> {method_name} ({request.id[:8]}, key={request.idempotency_key[:8]})")

        try:
            response = await asyncio.wait_for(
                self._transport.send(request),
                timeout=timeout_ms / 1000,
            )
        except asyncio.TimeoutError:
            raise TransportError(
                f"{method_name} timed out after {timeout_ms}ms",
                timed_out=True,
            ) from None
        except (aiohttp.ClientError, ConnectionError) as e:
            raise TransportError(f"{method_name} failed: {e}") from e

        if not response.ok:
            error = response.error
            message = error.message if error else "gateway error"
            logger.debug(f"<- {method_name} error: {message}")
            raise RemoteError(message, error.code if error else "")

        return response.payload

    async def close(self) -> None:
        await self._transport.close()

    async def __aenter__(self) -> "RpcClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()


def create_rpc_client(config: "Config") -> RpcClient:
    """Build a WebSocket-backed client from configuration."""
    transport = WebSocketTransport(
        url=config.gateway.url,
        token=config.gateway.token,
        connect_timeout=config.gateway.connect_timeout_ms / 1000,
    )
    return RpcClient(transport, default_timeout_ms=config.gateway.timeout_ms)
