"""
Node command dispatcher for fleetgate.

Runs one command on one node: validate, resolve the node, plan up to the
authorization point, authorize, invoke, and return the normalized result.
"""

import asyncio
import uuid
from dataclasses import dataclass

from loguru import logger

from fleetgate.gateway.client import RpcClient
from fleetgate.nodes.approvals import DEFAULT_APPROVAL_TIMEOUT_MS, ApprovalEngine
from fleetgate.nodes.planner import CommandPlanner
from fleetgate.nodes.preflight import validate
from fleetgate.nodes.protocol import AskMode, CommandRequest, ExecutionResult, Node
from fleetgate.nodes.registry import NodeRegistry


@dataclass
class DispatchOptions:
    """Per-dispatcher timeouts and retry policy."""
    invoke_timeout_ms: int | None = None
    approval_timeout_ms: int = DEFAULT_APPROVAL_TIMEOUT_MS
    invoke_retries: int = 0


class NodeDispatcher:
    """
    Dispatches commands to nodes.

    Holds no per-dispatch state, so independent dispatches can run
    concurrently on one instance.
    """

    def __init__(
        self,
        client: RpcClient,
        registry: NodeRegistry | None = None,
        options: DispatchOptions | None = None,
    ):
        self._client = client
        self.registry = registry or NodeRegistry(client)
        self.options = options or DispatchOptions()

    async def list_nodes(self) -> list[Node]:
        return await self.registry.list_nodes()

    async def dispatch(
        self,
        request: CommandRequest,
        ask: AskMode | str | None = None,
    ) -> ExecutionResult:
        """
        Run a command on a node.

        Args:
            request: What to run, where, and for which agent
            ask: Ask mode requested by the caller (can only tighten policy)

        Returns:
            ExecutionResult of the run step. A command that ran but failed is
            reported through result.success, not raised.

        Raises:
            ValidationError: preflight rejected the request (no gateway call)
            NodeNotFound: the node id is not in the fleet
            ApprovalDenied: approval was denied; nothing was run
            CommandUnsupported: the node cannot run the command at all
            NodeCommandError: the node rejected the invocation
            TransportError: a gateway call timed out or failed
        """
        requested_ask = AskMode(ask) if isinstance(ask, str) else ask

        # Pure checks first: an invalid request never reaches the gateway
        validate(request)

        try:
            node = await self.registry.resolve(request.node_id)

            planner = CommandPlanner(
                self._client,
                request,
                node,
                capability_cache=self.registry.capability_cache,
                timeout_ms=self.options.invoke_timeout_ms,
                invoke_retries=self.options.invoke_retries,
            )
            plan = await planner.prepare()

            engine = ApprovalEngine(
                self._client,
                approval_timeout_ms=self.options.approval_timeout_ms,
                timeout_ms=self.options.invoke_timeout_ms,
            )
            authorization = await engine.authorize(plan, node, requested_ask)

            run_id = str(uuid.uuid4())
            audit = {
                "agentId": request.agent_id,
                "runId": run_id,
                **authorization.to_params(),
            }
            result = await planner.run(audit)
        except asyncio.CancelledError:
            logger.warning(f"Dispatch of {request.command} to {request.node_id} aborted")
            raise

        logger.info(
            f"{' -> '.join(plan.describe())} on {node.node_id} finished "
            f"(exit={result.exit_code}, success={result.success}, run={run_id[:8]})"
        )
        return result
