"""
Exec approvals for fleetgate.

Resolves the approval policy for an agent/node pair, decides whether a
human has to approve the command, runs the approval round trip and turns
its outcome into an authorization (or a denial).
"""

import fnmatch
import os
import shlex
from dataclasses import dataclass
from enum import Enum
from typing import Any

from loguru import logger

from fleetgate.gateway.client import RpcClient
from fleetgate.gateway.errors import GatewayError
from fleetgate.gateway.protocol import GatewayMethod
from fleetgate.nodes.errors import ApprovalDenied
from fleetgate.nodes.preflight import raw_command_matches
from fleetgate.nodes.protocol import (
    ApprovalDecision,
    ApprovalRequestParams,
    ApprovalRequestResult,
    ApprovalSecurity,
    ApprovalsSnapshot,
    AskFallback,
    AskMode,
    CommandPlan,
    Node,
    PolicyOverride,
)


# Commands gated by exec approvals
EXEC_COMMANDS = frozenset({"system.run"})

# Used for fields the policy document leaves unset
DEFAULT_SECURITY = ApprovalSecurity.ALLOWLIST
DEFAULT_ASK = AskMode.ON_MISS
DEFAULT_ASK_FALLBACK = AskFallback.DENY

DEFAULT_APPROVAL_TIMEOUT_MS = 120000


def format_command(argv: tuple[str, ...] | list[str], raw_command: str | None = None) -> str:
    """
    The literal command string shown to the approver.

    The raw string is only shown when it tokenizes to argv; otherwise the
    approver sees the shell-quoted argv that will actually run.
    """
    if raw_command and raw_command_matches(tuple(argv), raw_command):
        return raw_command
    return shlex.join(list(argv))


@dataclass(frozen=True)
class ApprovalPolicy:
    """Effective policy for one agent on one node."""
    security: ApprovalSecurity = DEFAULT_SECURITY
    ask: AskMode = DEFAULT_ASK
    ask_fallback: AskFallback = DEFAULT_ASK_FALLBACK
    allowlist: tuple[str, ...] = ()

    def match_allowlist(self, argv: tuple[str, ...]) -> str:
        """
        Return the first allowlist pattern matching the command, or "".

        Patterns are globs tried against the shell-quoted argv, the
        executable as given, and the executable's basename. The raw command
        string is never matched.
        """
        if not argv:
            return ""
        candidates = [shlex.join(argv), argv[0], os.path.basename(argv[0])]
        for pattern in self.allowlist:
            if any(fnmatch.fnmatchcase(candidate, pattern) for candidate in candidates):
                return pattern
        return ""

    def tightened(self, requested_ask: AskMode | None) -> "ApprovalPolicy":
        """Apply a caller-requested ask mode; it can only make asking stricter."""
        if requested_ask is None or requested_ask.rank <= self.ask.rank:
            return self
        return ApprovalPolicy(
            security=self.security,
            ask=requested_ask,
            ask_fallback=self.ask_fallback,
            allowlist=self.allowlist,
        )

    @classmethod
    def resolve(cls, snapshot: ApprovalsSnapshot, agent_id: str) -> "ApprovalPolicy":
        """Overlay defaults, the "*" agent section and the agent's own section."""
        security, ask, ask_fallback = DEFAULT_SECURITY, DEFAULT_ASK, DEFAULT_ASK_FALLBACK
        allowlist: list[str] = []
        layers: list[PolicyOverride] = [snapshot.defaults]
        for key in ("*", agent_id):
            if key in snapshot.agents:
                layers.append(snapshot.agents[key])
        for layer in layers:
            security = layer.security or security
            ask = layer.ask or ask
            ask_fallback = layer.ask_fallback or ask_fallback
            allowlist.extend(p for p in layer.allowlist if p not in allowlist)
        return cls(security=security, ask=ask, ask_fallback=ask_fallback, allowlist=tuple(allowlist))


class ApprovalSource(str, Enum):
    """What authorized a command."""
    POLICY = "policy"        # No approval needed
    USER = "user"            # Explicit human decision
    FALLBACK = "fallback"    # askFallback applied


@dataclass(frozen=True)
class Authorization:
    """Permission to invoke the planned command."""
    source: ApprovalSource = ApprovalSource.POLICY
    decision: ApprovalDecision | None = None
    matched_pattern: str = ""

    @property
    def approved(self) -> bool:
        return self.source != ApprovalSource.POLICY

    def to_params(self) -> dict[str, Any]:
        """Audit fields for the node invocation."""
        return {
            "approved": self.approved,
            "approvalDecision": self.decision.value if self.decision else None,
        }


class ApprovalState(str, Enum):
    POLICY_UNRESOLVED = "policy_unresolved"
    POLICY_RESOLVED = "policy_resolved"
    SKIPPED = "skipped"
    REQUEST_SENT = "request_sent"
    DECISION_RECEIVED = "decision_received"
    AUTHORIZED = "authorized"
    REJECTED = "rejected"


class ApprovalEngine:
    """
    Gates one dispatch behind the exec approval policy.

    An engine resolves at most once; create one per dispatch.
    """

    def __init__(
        self,
        client: RpcClient,
        approval_timeout_ms: int = DEFAULT_APPROVAL_TIMEOUT_MS,
        timeout_ms: int | None = None,
    ):
        """
        Initialize the engine.

        Args:
            client: Gateway RPC client
            approval_timeout_ms: Longest wait for a human decision before
                askFallback applies
            timeout_ms: Timeout for the policy fetch
        """
        self._client = client
        self.approval_timeout_ms = approval_timeout_ms
        self.timeout_ms = timeout_ms

        self.state = ApprovalState.POLICY_UNRESOLVED
        self.policy: ApprovalPolicy | None = None

    def _transition(self, state: ApprovalState) -> None:
        logger.debug(f"approval {self.state.value} -> {state.value}")
        self.state = state

    async def load_policy(
        self,
        node: Node,
        agent_id: str,
        requested_ask: AskMode | None = None,
    ) -> ApprovalPolicy:
        """Fetch the policy document and resolve it for this agent."""
        payload = await self._client.invoke(
            GatewayMethod.APPROVALS_NODE_GET,
            {"nodeId": node.node_id},
            timeout_ms=self.timeout_ms,
        )
        snapshot = ApprovalsSnapshot.from_dict(payload)
        return ApprovalPolicy.resolve(snapshot, agent_id).tightened(requested_ask)

    def requires_approval(self, policy: ApprovalPolicy, plan: CommandPlan) -> tuple[bool, str]:
        """
        Decide whether to ask a human.

        Returns:
            Tuple of (ask, matched allowlist pattern)
        """
        if policy.security == ApprovalSecurity.OFF or policy.ask == AskMode.OFF:
            return False, ""
        matched = policy.match_allowlist(plan.request.argv)
        if policy.ask == AskMode.ALWAYS:
            return True, matched
        return not matched, matched

    async def authorize(
        self,
        plan: CommandPlan,
        node: Node,
        requested_ask: AskMode | None = None,
    ) -> Authorization:
        """
        Resolve the policy and, if needed, ask for approval.

        Args:
            plan: The plan at its authorization point
            node: Target node snapshot
            requested_ask: Ask mode requested by the caller

        Returns:
            Authorization to invoke the run step

        Raises:
            ApprovalDenied: the approver said no, or askFallback is deny
        """
        if self.state != ApprovalState.POLICY_UNRESOLVED:
            raise RuntimeError("approval already resolved for this dispatch")

        request = plan.request
        if request.command not in EXEC_COMMANDS:
            self._transition(ApprovalState.SKIPPED)
            self._transition(ApprovalState.AUTHORIZED)
            return Authorization()

        self.policy = await self.load_policy(node, request.agent_id, requested_ask)
        self._transition(ApprovalState.POLICY_RESOLVED)

        ask, matched = self.requires_approval(self.policy, plan)
        if not ask:
            self._transition(ApprovalState.SKIPPED)
            self._transition(ApprovalState.AUTHORIZED)
            return Authorization(matched_pattern=matched)

        return await self._request_decision(plan, node, matched)

    async def _request_decision(self, plan: CommandPlan, node: Node, matched: str) -> Authorization:
        request = plan.request
        command_text = format_command(request.argv, request.raw_command)
        params = ApprovalRequestParams(
            command=command_text,
            command_argv=list(request.argv),
            agent_id=request.agent_id,
            node_id=node.node_id,
            run_plan=plan.run_plan,
            timeout_ms=self.approval_timeout_ms,
        )

        self._transition(ApprovalState.REQUEST_SENT)
        failure = ""
        decision: ApprovalDecision | None = None
        try:
            payload = await self._client.invoke(
                GatewayMethod.APPROVAL_REQUEST,
                params.to_dict(),
                timeout_ms=self.approval_timeout_ms,
            )
            decision = ApprovalRequestResult.from_dict(payload).decision
            if decision is None:
                failure = "no decision returned"
        except GatewayError as e:
            failure = e.message

        if decision is None:
            return self._apply_fallback(command_text, failure, matched)

        self._transition(ApprovalState.DECISION_RECEIVED)
        if not decision.allows:
            self._transition(ApprovalState.REJECTED)
            logger.info(f"Approval denied for '{command_text}' on {node.node_id} (agent {request.agent_id})")
            raise ApprovalDenied(f"Approval denied: {command_text}")

        self._transition(ApprovalState.AUTHORIZED)
        logger.info(f"Approval {decision.value} for '{command_text}' on {node.node_id} (agent {request.agent_id})")
        return Authorization(source=ApprovalSource.USER, decision=decision, matched_pattern=matched)

    def _apply_fallback(self, command_text: str, failure: str, matched: str) -> Authorization:
        fallback = self.policy.ask_fallback if self.policy else DEFAULT_ASK_FALLBACK
        if fallback == AskFallback.ALLOW:
            self._transition(ApprovalState.AUTHORIZED)
            logger.warning(f"Approval unavailable ({failure}); askFallback=allow authorized '{command_text}'")
            return Authorization(source=ApprovalSource.FALLBACK, matched_pattern=matched)

        self._transition(ApprovalState.REJECTED)
        logger.warning(f"Approval unavailable ({failure}); askFallback=deny rejected '{command_text}'")
        raise ApprovalDenied(
            f"Approval unavailable ({failure}); askFallback=deny",
            by_fallback=True,
        )
