"""
Pytest configuration and shared fixtures for fleetgate tests.
"""

import asyncio
from typing import Any

import pytest

from fleetgate.gateway.client import GatewayTransport, RpcClient
from fleetgate.gateway.errors import RemoteError
from fleetgate.gateway.protocol import RpcRequest, RpcResponse
from fleetgate.nodes.dispatcher import DispatchOptions, NodeDispatcher
from fleetgate.nodes.protocol import CommandRequest


PREPARE_UNSUPPORTED = (
    'node command not allowed: the node (platform: macos) does not support "system.run.prepare"'
)


class FakeGateway:
    """
    In-memory gateway answering the four methods the dispatcher uses.

    Every request is recorded so tests can assert on the exact call
    sequence.
    """

    def __init__(self):
        self.nodes: list[dict[str, Any]] = [
            {
                "nodeId": "mac-1",
                "displayName": "Mac",
                "platform": "macos",
                "caps": [],
                "commands": ["system.run"],
                "connected": True,
                "permissions": {"screenRecording": True},
            },
        ]
        self.policy: dict[str, Any] = {
            "file": {
                "version": 1,
                "defaults": {"security": "allowlist", "ask": "off", "askFallback": "deny"},
                "agents": {},
            },
        }
        self.decision: Any = "allow-once"
        self.approval_error: Exception | None = None
        self.prepare_error: Exception | None = RemoteError(PREPARE_UNSUPPORTED)
        self.prepare_payload: Any = {"plan": {"argv": ["echo", "hi"], "cwd": "/tmp"}}
        self.run_error: Exception | None = None
        self.run_payload: Any = {
            "payload": {"stdout": "hi\n", "stderr": "", "exitCode": 0, "success": True, "timedOut": False},
        }
        self.delay: float = 0.0
        self.requests: list[RpcRequest] = []
        # node.invoke commands forwarded to a node
        self.delivered: list[str] = []

    def _forwards(self, node_id: str, command: str) -> bool:
        """The gateway only forwards commands a node declared, if it declared any."""
        for node in self.nodes:
            if node["nodeId"] == node_id:
                declared = node.get("commands")
                return declared is None or command in declared
        return False

    async def handle(self, request: RpcRequest) -> Any:
        if self.delay:
            await asyncio.sleep(self.delay)
        params = request.params
        if request.method == "node.list":
            return {"nodes": self.nodes}
        if request.method == "node.invoke":
            command = params["command"]
            if command.endswith(".prepare") and self.prepare_error:
                # Rejected by the gateway or by the node, depending on declarations
                if self._forwards(params["nodeId"], command):
                    self.delivered.append(command)
                raise self.prepare_error
            self.delivered.append(command)
            if command.endswith(".prepare"):
                return {"payload": self.prepare_payload}
            if self.run_error:
                raise self.run_error
            return self.run_payload
        if request.method == "exec.approvals.node.get":
            return self.policy
        if request.method == "exec.approval.request":
            if self.approval_error:
                raise self.approval_error
            return {"decision": self.decision}
        return {"ok": True}

    def calls(self, method: str) -> list[RpcRequest]:
        return [r for r in self.requests if r.method == method]

    def invoke_commands(self) -> list[str]:
        return [r.params["command"] for r in self.calls("node.invoke")]

    def methods(self) -> list[str]:
        return [r.method for r in self.requests]


class FakeTransport(GatewayTransport):
    """Transport that hands requests to a FakeGateway."""

    def __init__(self, gateway: FakeGateway):
        self.gateway = gateway
        self.closed = False

    async def send(self, request: RpcRequest) -> RpcResponse:
        self.gateway.requests.append(request)
        try:
            payload = await self.gateway.handle(request)
        except RemoteError as e:
            return RpcResponse.failure(request.id, e.message, e.remote_code)
        return RpcResponse.success(request.id, payload)

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def gateway():
    """A fake gateway with one macOS node."""
    return FakeGateway()


@pytest.fixture
def transport(gateway):
    return FakeTransport(gateway)


@pytest.fixture
def client(transport):
    return RpcClient(transport, default_timeout_ms=2000)


@pytest.fixture
def dispatcher(client):
    return NodeDispatcher(client, options=DispatchOptions(invoke_timeout_ms=2000, approval_timeout_ms=2000))


@pytest.fixture
def run_request():
    """`echo hi` on mac-1 for the main agent."""
    return CommandRequest(
        node_id="mac-1",
        command="system.run",
        argv=("echo", "hi"),
        agent_id="main",
    )
