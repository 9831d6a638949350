"""
Node dispatch data model for fleetgate.

Defines the node snapshot, the caller's command request, the command plan
and the normalized execution result, plus the typed payloads exchanged with
the gateway for each method. Wire payloads use camelCase keys and are
validated here so malformed data never reaches the planner or the
approval engine.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from fleetgate.gateway.errors import ProtocolError
from fleetgate.gateway.protocol import random_idempotency_key


class NodePlatform(str, Enum):
    """Platform a node runs on."""
    MACOS = "macos"
    IOS = "ios"
    ANDROID = "android"
    LINUX = "linux"
    WINDOWS = "windows"
    UNKNOWN = "unknown"

    @classmethod
    def from_wire(cls, value: Any) -> "NodePlatform":
        try:
            return cls(str(value or "").strip().lower())
        except ValueError:
            return cls.UNKNOWN


def _str_list(value: Any, name: str) -> list[str]:
    if not isinstance(value, (list, tuple)) or not all(isinstance(v, str) for v in value):
        raise ProtocolError(f"{name} must be a list of strings")
    return list(value)


@dataclass(frozen=True)
class Node:
    """
    Point-in-time snapshot of a node.

    `commands` is what the node advertised. It is a hint only: None means
    the node did not declare anything, which does not mean nothing works.
    """
    node_id: str
    display_name: str = ""
    platform: NodePlatform = NodePlatform.UNKNOWN
    commands: frozenset[str] | None = None
    connected: bool = False
    permissions: dict[str, bool] = field(default_factory=dict)

    def advertises(self, command: str) -> bool:
        """Check whether the node advertised a command."""
        return self.commands is not None and command in self.commands

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "nodeId": self.node_id,
            "displayName": self.display_name,
            "platform": self.platform.value,
            "commands": sorted(self.commands) if self.commands is not None else None,
            "connected": self.connected,
            "permissions": dict(self.permissions),
        }

    @classmethod
    def from_dict(cls, data: Any) -> "Node":
        """Create from a node.list entry."""
        if not isinstance(data, dict):
            raise ProtocolError("node entry must be an object")
        node_id = data.get("nodeId")
        if not isinstance(node_id, str) or not node_id:
            raise ProtocolError("node entry is missing nodeId")

        commands = data.get("commands")
        permissions = data.get("permissions") or {}
        if not isinstance(permissions, dict):
            raise ProtocolError(f"node {node_id}: permissions must be an object")

        return cls(
            node_id=node_id,
            display_name=str(data.get("displayName") or node_id),
            platform=NodePlatform.from_wire(data.get("platform")),
            commands=frozenset(_str_list(commands, "commands")) if commands is not None else None,
            connected=bool(data.get("connected", False)),
            permissions={str(k): bool(v) for k, v in permissions.items()},
        )


@dataclass(frozen=True)
class CommandRequest:
    """What the caller wants run, on which node, on whose behalf."""
    node_id: str
    command: str
    argv: tuple[str, ...] = ()
    raw_command: str | None = None
    agent_id: str = "main"
    params: dict[str, Any] = field(default_factory=dict)


class StepKind(str, Enum):
    PREPARE = "prepare"
    RUN = "run"


@dataclass(frozen=True)
class InvokeStep:
    """
    One node.invoke call of a plan.

    The idempotency key is fixed when the step is built, so a retry of the
    same step sends the same key.
    """
    kind: StepKind
    command: str
    argv: tuple[str, ...] = ()
    raw_command: str | None = None
    run_plan: dict[str, Any] | None = None
    idempotency_key: str = field(default_factory=random_idempotency_key)


@dataclass(frozen=True)
class CommandPlan:
    """
    Ordered prepare/run steps for one request.

    Plans are values: attaching a run plan or falling back returns a new
    plan.
    """
    request: CommandRequest
    steps: tuple[InvokeStep, ...]
    fallback: bool = False

    @property
    def prepare_step(self) -> InvokeStep | None:
        for step in self.steps:
            if step.kind == StepKind.PREPARE:
                return step
        return None

    @property
    def run_step(self) -> InvokeStep:
        return self.steps[-1]

    @property
    def is_two_phase(self) -> bool:
        """Still a prepare/run plan (not a fallback)."""
        return self.prepare_step is not None and not self.fallback

    @property
    def run_plan(self) -> dict[str, Any] | None:
        return self.run_step.run_plan if self.is_two_phase else None

    def with_run_plan(self, run_plan: dict[str, Any] | None) -> "CommandPlan":
        """Plan whose run step carries the payload returned by prepare."""
        steps = self.steps[:-1] + (replace(self.run_step, run_plan=run_plan),)
        return replace(self, steps=steps)

    def fallback_plan(self) -> "CommandPlan":
        """Single-phase plan with the base command only and a new key."""
        run = InvokeStep(
            kind=StepKind.RUN,
            command=self.run_step.command,
            argv=self.request.argv,
            raw_command=self.request.raw_command,
        )
        return CommandPlan(request=self.request, steps=(run,), fallback=True)

    def describe(self) -> list[str]:
        return [step.command for step in self.steps]


@dataclass(frozen=True)
class ExecutionResult:
    """Normalized outcome of a completed run step."""
    stdout: str = ""
    stderr: str = ""
    exit_code: int | None = 0
    success: bool = True
    timed_out: bool = False

    def to_output(self) -> str:
        """Convert to tool/CLI output string."""
        output_parts = []

        if self.stdout:
            output_parts.append(self.stdout.rstrip("\n"))

        if self.stderr:
            output_parts.append(f"STDERR: {self.stderr.rstrip()}")

        if self.timed_out:
            output_parts.append("Command timed out")

        if self.exit_code not in (0, None):
            output_parts.append(f"Exit code: {self.exit_code}")

        if output_parts:
            return "\n".join(output_parts)
        return "Command completed successfully" if self.success else "Command failed"

    def to_dict(self) -> dict[str, Any]:
        return {
            "stdout": self.stdout,
            "stderr": self.stderr,
            "exitCode": self.exit_code,
            "success": self.success,
            "timedOut": self.timed_out,
        }

    @classmethod
    def from_payload(cls, payload: Any) -> "ExecutionResult":
        """Build from the payload of a successful node.invoke response."""
        if not isinstance(payload, dict):
            raise ProtocolError("node.invoke payload must be an object")
        exit_code = payload.get("exitCode")
        if exit_code is not None and not isinstance(exit_code, int):
            raise ProtocolError("node.invoke payload exitCode must be an integer")
        timed_out = bool(payload.get("timedOut", False))
        return cls(
            stdout=str(payload.get("stdout") or ""),
            stderr=str(payload.get("stderr") or ""),
            exit_code=exit_code,
            success=bool(payload.get("success", exit_code == 0 and not timed_out)),
            timed_out=timed_out,
        )


# ---------------------------------------------------------------------------
# Typed gateway payloads, one pair per method
# ---------------------------------------------------------------------------


@dataclass
class NodeListResult:
    """Result of node.list."""
    nodes: list[Node] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> "NodeListResult":
        if not isinstance(data, dict) or not isinstance(data.get("nodes"), list):
            raise ProtocolError("node.list result must contain a nodes array")
        return cls(nodes=[Node.from_dict(entry) for entry in data["nodes"]])


@dataclass
class NodeInvokeParams:
    """
    Parameters of node.invoke.

    `params` goes to the node untouched; the top-level fields describe the
    invocation to the gateway.
    """
    node_id: str
    command: str
    agent_id: str
    params: dict[str, Any] = field(default_factory=dict)
    command_argv: list[str] | None = None
    run_plan: dict[str, Any] | None = None
    host: str = "node"
    timeout_ms: int | None = None
    idempotency_key: str = ""

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.node_id,
            "nodeId": self.node_id,
            "command": self.command,
            "host": self.host,
            "agentId": self.agent_id,
            "params": self.params,
            "idempotencyKey": self.idempotency_key,
        }
        if self.command_argv is not None:
            data["commandArgv"] = self.command_argv
        if self.run_plan is not None:
            data["systemRunPlanV2"] = self.run_plan
        if self.timeout_ms is not None:
            data["timeoutMs"] = self.timeout_ms
        return data


@dataclass
class NodeInvokeResult:
    """Result of node.invoke; the command-specific payload is left raw."""
    payload: Any = None

    @classmethod
    def from_dict(cls, data: Any) -> "NodeInvokeResult":
        if not isinstance(data, dict) or "payload" not in data:
            raise ProtocolError("node.invoke result must contain a payload")
        return cls(payload=data["payload"])


class ApprovalSecurity(str, Enum):
    """Whether approval gating applies at all."""
    OFF = "off"
    ALLOWLIST = "allowlist"


class AskMode(str, Enum):
    """When to ask a human."""
    OFF = "off"
    ON_MISS = "on-miss"
    ALWAYS = "always"

    @property
    def rank(self) -> int:
        return _ASK_RANK[self]


_ASK_RANK = {AskMode.OFF: 0, AskMode.ON_MISS: 1, AskMode.ALWAYS: 2}


class AskFallback(str, Enum):
    """Decision applied when an approval round trip cannot complete."""
    ALLOW = "allow"
    DENY = "deny"


class ApprovalDecision(str, Enum):
    ALLOW_ONCE = "allow-once"
    ALLOW_ALWAYS = "allow-always"
    DENY = "deny"

    @property
    def allows(self) -> bool:
        return self != ApprovalDecision.DENY


# Older policy files use these names
_SECURITY_ALIASES = {"full": ApprovalSecurity.OFF}
_FALLBACK_ALIASES = {"full": AskFallback.ALLOW}


def _parse_enum(enum_cls: type[Enum], value: Any, name: str, aliases: dict | None = None) -> Any:
    if value is None:
        return None
    text = str(value).strip().lower()
    if aliases and text in aliases:
        return aliases[text]
    try:
        return enum_cls(text)
    except ValueError:
        raise ProtocolError(f"invalid {name}: {value!r}") from None


@dataclass
class PolicyOverride:
    """Policy fields as they appear in one section of the policy document."""
    security: ApprovalSecurity | None = None
    ask: AskMode | None = None
    ask_fallback: AskFallback | None = None
    allowlist: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any, where: str) -> "PolicyOverride":
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ProtocolError(f"{where} must be an object")
        entries = data.get("allowlist") or []
        if not isinstance(entries, list):
            raise ProtocolError(f"{where}.allowlist must be an array")
        allowlist: list[str] = []
        for entry in entries:
            pattern = entry.get("pattern") if isinstance(entry, dict) else entry
            if isinstance(pattern, str) and pattern.strip():
                allowlist.append(pattern.strip())
        return cls(
            security=_parse_enum(ApprovalSecurity, data.get("security"), f"{where}.security", _SECURITY_ALIASES),
            ask=_parse_enum(AskMode, data.get("ask"), f"{where}.ask"),
            ask_fallback=_parse_enum(AskFallback, data.get("askFallback"), f"{where}.askFallback", _FALLBACK_ALIASES),
            allowlist=allowlist,
        )


@dataclass
class ApprovalsSnapshot:
    """Result of exec.approvals.node.get."""
    version: int = 1
    defaults: PolicyOverride = field(default_factory=PolicyOverride)
    agents: dict[str, PolicyOverride] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Any) -> "ApprovalsSnapshot":
        if isinstance(data, dict) and isinstance(data.get("file"), dict):
            data = data["file"]
        if not isinstance(data, dict):
            raise ProtocolError("approvals policy document must be an object")
        agents = data.get("agents") or {}
        if not isinstance(agents, dict):
            raise ProtocolError("approvals agents must be an object")
        version = data.get("version") or 1
        if isinstance(version, bool) or not isinstance(version, int):
            raise ProtocolError(f"invalid approvals version: {version!r}")
        return cls(
            version=version,
            defaults=PolicyOverride.from_dict(data.get("defaults"), "defaults"),
            agents={
                str(agent_id): PolicyOverride.from_dict(section, f"agents.{agent_id}")
                for agent_id, section in agents.items()
            },
        )


@dataclass
class ApprovalRequestParams:
    """Parameters of exec.approval.request."""
    command: str
    command_argv: list[str]
    agent_id: str
    node_id: str
    host: str = "node"
    run_plan: dict[str, Any] | None = None
    timeout_ms: int | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "command": self.command,
            "commandArgv": self.command_argv,
            "host": self.host,
            "agentId": self.agent_id,
            "nodeId": self.node_id,
        }
        if self.run_plan is not None:
            data["systemRunPlanV2"] = self.run_plan
        if self.timeout_ms is not None:
            data["timeoutMs"] = self.timeout_ms
        return data


@dataclass
class ApprovalRequestResult:
    """Result of exec.approval.request. `decision` is None when nobody answered."""
    decision: ApprovalDecision | None = None

    @classmethod
    def from_dict(cls, data: Any) -> "ApprovalRequestResult":
        if not isinstance(data, dict):
            raise ProtocolError("approval result must be an object")
        return cls(decision=_parse_enum(ApprovalDecision, data.get("decision"), "decision"))
