"""
Gateway RPC frame definitions.

Every call to the gateway is a request frame answered by exactly one
response frame with the same id.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any
import uuid

from fleetgate.gateway.errors import ProtocolError


class GatewayMethod(str, Enum):
    """RPC methods consumed by the dispatch core."""
    NODE_LIST = "node.list"
    NODE_INVOKE = "node.invoke"
    APPROVALS_NODE_GET = "exec.approvals.node.get"
    APPROVAL_REQUEST = "exec.approval.request"


class FrameType(str, Enum):
    """Types of frames exchanged with the gateway."""
    CONNECT = "connect"
    HELLO = "hello"
    REQUEST = "req"
    RESPONSE = "res"


def random_idempotency_key() -> str:
    """Generate a fresh idempotency key."""
    return str(uuid.uuid4())


@dataclass
class RpcRequest:
    """A request frame sent to the gateway."""
    method: str
    params: dict[str, Any] = field(default_factory=dict)
    idempotency_key: str = ""
    timeout_ms: int = 30000
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        data: dict[str, Any] = {
            "type": FrameType.REQUEST.value,
            "id": self.id,
            "method": self.method,
            "params": self.params,
            "timeoutMs": self.timeout_ms,
        }
        if self.idempotency_key:
            data["idempotencyKey"] = self.idempotency_key
        return data


@dataclass
class RpcErrorShape:
    """Error body of a failed response."""
    message: str
    code: str = ""

    @classmethod
    def from_dict(cls, data: Any) -> "RpcErrorShape":
        if isinstance(data, str):
            return cls(message=data)
        if not isinstance(data, dict):
            return cls(message=str(data))
        return cls(
            message=str(data.get("message", "") or "gateway error"),
            code=str(data.get("code", "") or ""),
        )


@dataclass
class RpcResponse:
    """A response frame received from the gateway."""
    id: str
    ok: bool = True
    payload: Any = None
    error: RpcErrorShape | None = None

    @classmethod
    def from_dict(cls, data: Any) -> "RpcResponse":
        """Create from dictionary, rejecting frames without an id."""
        if not isinstance(data, dict):
            raise ProtocolError("response frame must be an object")
        frame_id = data.get("id")
        if not isinstance(frame_id, str) or not frame_id:
            raise ProtocolError("response frame is missing an id")
        ok = bool(data.get("ok", data.get("error") is None))
        return cls(
            id=frame_id,
            ok=ok,
            payload=data.get("payload"),
            error=None if ok else RpcErrorShape.from_dict(data.get("error")),
        )

    @classmethod
    def success(cls, frame_id: str, payload: Any = None) -> "RpcResponse":
        return cls(id=frame_id, ok=True, payload=payload)

    @classmethod
    def failure(cls, frame_id: str, message: str, code: str = "") -> "RpcResponse":
        return cls(id=frame_id, ok=False, error=RpcErrorShape(message=message, code=code))
