"""
Command planner for fleetgate.

Decides whether a command uses the two-phase prepare/run handshake, issues
the prepare call, and falls back to a single run when the node rejects
prepare for capability reasons.

Advertised node commands are never used to skip the prepare attempt. Nodes
have been seen to under-report what they support, so only the node's own
rejection counts.
"""

import asyncio
from enum import Enum
from typing import Any

from loguru import logger

from fleetgate.gateway.client import RpcClient
from fleetgate.gateway.errors import GatewayError, ProtocolError, RemoteError, TransportError
from fleetgate.gateway.protocol import GatewayMethod
from fleetgate.nodes.errors import CommandUnsupported, NodeCommandError
from fleetgate.nodes.protocol import (
    CommandPlan,
    CommandRequest,
    ExecutionResult,
    InvokeStep,
    Node,
    NodeInvokeParams,
    NodeInvokeResult,
    StepKind,
)
from fleetgate.nodes.registry import CapabilityCache


# Commands that are staged with a prepare call before they run
PREPARE_COMMANDS: dict[str, str] = {
    "system.run": "system.run.prepare",
}

# Commands whose params carry an argv/rawCommand pair
ARGV_COMMANDS = frozenset({"system.run"})

# Rejection texts meaning "this node cannot do that command", lowercased.
# The gateway reports capability problems as free text, so this list is the
# whole contract; anything else is a real failure.
UNSUPPORTED_MARKERS = (
    "did not declare any supported commands",
    "command not supported",
    "unsupported command",
    "command not allowed",
    "unknown command",
)


def is_command_unsupported(message: str, command: str) -> bool:
    """
    Check whether a rejection message says the node cannot run `command`.

    Matches a rejection naming the command (`does not support "x"`), a node
    that declared no commands at all, or a generic not supported / not
    allowed rejection.
    """
    text = (message or "").lower()
    name = command.lower()
    if f'does not support "{name}"' in text or f"does not support {name}" in text:
        return True
    return any(marker in text for marker in UNSUPPORTED_MARKERS)


class PlannerState(str, Enum):
    PLANNING = "planning"
    PREPARE_PENDING = "prepare_pending"
    PREPARE_SUCCEEDED = "prepare_succeeded"
    PREPARE_FALLBACK = "prepare_fallback"
    RUN_PENDING = "run_pending"
    COMPLETED = "completed"
    FAILED = "failed"


class CommandPlanner:
    """
    Plans and executes the node.invoke steps of one dispatch attempt.

    Usage:
        planner = CommandPlanner(client, request, node)
        plan = await planner.prepare()    # up to the authorization point
        result = await planner.run(audit_params)
    """

    def __init__(
        self,
        client: RpcClient,
        request: CommandRequest,
        node: Node,
        capability_cache: CapabilityCache | None = None,
        timeout_ms: int | None = None,
        invoke_retries: int = 0,
    ):
        """
        Initialize the planner.

        Args:
            client: Gateway RPC client
            request: The validated command request
            node: Snapshot of the target node
            capability_cache: Shared cache of known-unsupported commands
            timeout_ms: Timeout for each node.invoke call
            invoke_retries: Extra attempts of the same step on transport
                failure; each retry reuses the step's idempotency key
        """
        self._client = client
        self.request = request
        self.node = node
        self.capability_cache = capability_cache
        self.timeout_ms = timeout_ms
        self.invoke_retries = max(0, invoke_retries)

        self.state = PlannerState.PLANNING
        self.plan: CommandPlan | None = None

    def _transition(self, state: PlannerState) -> None:
        logger.debug(f"planner[{self.request.node_id}:{self.request.command}] {self.state.value} -> {state.value}")
        self.state = state

    def build(self) -> CommandPlan:
        """Build the initial plan from the static prepare mapping."""
        request = self.request
        run = InvokeStep(
            kind=StepKind.RUN,
            command=request.command,
            argv=request.argv,
            raw_command=request.raw_command,
        )
        prepare_command = PREPARE_COMMANDS.get(request.command)
        if prepare_command:
            prepare = InvokeStep(
                kind=StepKind.PREPARE,
                command=prepare_command,
                argv=request.argv,
                raw_command=request.raw_command,
            )
            self.plan = CommandPlan(request=request, steps=(prepare, run))
        else:
            self.plan = CommandPlan(request=request, steps=(run,))
        return self.plan

    async def prepare(self) -> CommandPlan:
        """
        Take the plan up to the authorization point.

        Issues the prepare call when the command needs one. Returns the plan
        whose run step is ready to be authorized: carrying the prepared run
        plan, or a fallback plan after a capability rejection.

        Raises:
            NodeCommandError: prepare was rejected for a non-capability reason
            TransportError: prepare timed out or the connection failed
        """
        plan = self.plan or self.build()
        step = plan.prepare_step
        if step is None:
            self._transition(PlannerState.RUN_PENDING)
            return plan

        node_id = self.request.node_id
        if self.capability_cache and self.capability_cache.is_unsupported(node_id, step.command):
            logger.debug(f"{step.command} already rejected by {node_id} in this snapshot")
            return self._fall_back(plan)

        self._transition(PlannerState.PREPARE_PENDING)
        try:
            payload = await self._invoke_step(step)
        except RemoteError as e:
            if not is_command_unsupported(e.message, step.command):
                self._transition(PlannerState.FAILED)
                raise NodeCommandError(e.message, command=step.command, remote_code=e.remote_code) from e
            logger.warning(
                f"Node {node_id} rejected {step.command} ({e.message}); "
                f"falling back to {plan.run_step.command}"
            )
            if self.capability_cache:
                self.capability_cache.mark_unsupported(node_id, step.command)
            return self._fall_back(plan)
        except (GatewayError, asyncio.CancelledError):
            self._transition(PlannerState.FAILED)
            raise

        try:
            run_plan = _extract_run_plan(payload)
        except ProtocolError:
            self._transition(PlannerState.FAILED)
            raise
        self.plan = plan.with_run_plan(run_plan)
        self._transition(PlannerState.PREPARE_SUCCEEDED)
        self._transition(PlannerState.RUN_PENDING)
        return self.plan

    def _fall_back(self, plan: CommandPlan) -> CommandPlan:
        self._transition(PlannerState.PREPARE_FALLBACK)
        self.plan = plan.fallback_plan()
        self._transition(PlannerState.RUN_PENDING)
        return self.plan

    async def run(self, extra_params: dict[str, Any] | None = None) -> ExecutionResult:
        """
        Invoke the run step and normalize its result.

        Args:
            extra_params: Audit fields merged into the invocation params
                (agentId, approved, approvalDecision, runId)

        Raises:
            CommandUnsupported: the node cannot run the command
            NodeCommandError: the node rejected the run for another reason
            TransportError: the run timed out or the connection failed
        """
        if self.state != PlannerState.RUN_PENDING or self.plan is None:
            raise RuntimeError(f"run step requested in state {self.state.value}")

        step = self.plan.run_step
        try:
            payload = await self._invoke_step(step, extra_params)
            result = ExecutionResult.from_payload(payload)
        except RemoteError as e:
            self._transition(PlannerState.FAILED)
            if is_command_unsupported(e.message, step.command):
                raise CommandUnsupported(e.message, command=step.command) from e
            raise NodeCommandError(e.message, command=step.command, remote_code=e.remote_code) from e
        except (GatewayError, asyncio.CancelledError):
            self._transition(PlannerState.FAILED)
            raise

        self._transition(PlannerState.COMPLETED)
        return result

    def _step_params(self, step: InvokeStep, extra: dict[str, Any] | None) -> dict[str, Any]:
        params = dict(self.request.params)
        if self.request.command in ARGV_COMMANDS:
            params.update({
                "command": list(step.argv),
                "rawCommand": step.raw_command,
                "agentId": self.request.agent_id,
            })
        if extra:
            params.update(extra)
        return params

    async def _invoke_step(self, step: InvokeStep, extra: dict[str, Any] | None = None) -> Any:
        argv_command = self.request.command in ARGV_COMMANDS
        invoke = NodeInvokeParams(
            node_id=self.request.node_id,
            command=step.command,
            agent_id=self.request.agent_id,
            params=self._step_params(step, extra),
            command_argv=list(step.argv) if argv_command else None,
            run_plan=step.run_plan,
            timeout_ms=self.timeout_ms,
            idempotency_key=step.idempotency_key,
        )

        attempt = 0
        while True:
            try:
                payload = await self._client.invoke(
                    GatewayMethod.NODE_INVOKE,
                    invoke.to_dict(),
                    timeout_ms=self.timeout_ms,
                    idempotency_key=step.idempotency_key,
                )
                return NodeInvokeResult.from_dict(payload).payload
            except TransportError as e:
                if attempt >= self.invoke_retries:
                    raise
                attempt += 1
                logger.warning(
                    f"{step.command} on {self.request.node_id} failed ({e.message}); "
                    f"retry {attempt}/{self.invoke_retries} with the same idempotency key"
                )


def _extract_run_plan(payload: Any) -> dict[str, Any] | None:
    """Pull the structured run plan out of a prepare payload, if any."""
    if payload is None:
        return None
    if not isinstance(payload, dict):
        raise ProtocolError("prepare payload must be an object")
    run_plan = payload.get("plan")
    if run_plan is None:
        return None
    if not isinstance(run_plan, dict):
        raise ProtocolError("prepare payload plan must be an object")
    return run_plan
