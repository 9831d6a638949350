"""Gateway RPC layer."""

from fleetgate.gateway.errors import GatewayError, TransportError, RemoteError, ProtocolError
from fleetgate.gateway.protocol import GatewayMethod, RpcRequest, RpcResponse, random_idempotency_key
from fleetgate.gateway.client import GatewayTransport, WebSocketTransport, RpcClient, create_rpc_client

__all__ = [
    "GatewayError",
    "TransportError",
    "RemoteError",
    "ProtocolError",
    "GatewayMethod",
    "RpcRequest",
    "RpcResponse",
    "random_idempotency_key",
    "GatewayTransport",
    "WebSocketTransport",
    "RpcClient",
    "create_rpc_client",
]
