"""
Nodes tool for fleetgate agents.

Lets an agent list the fleet and run commands on nodes through the same
dispatcher the CLI uses, approvals included.
"""

import json
import shlex
from typing import Any

from fleetgate.agent.tools.base import Tool
from fleetgate.gateway.errors import GatewayError
from fleetgate.nodes.dispatcher import NodeDispatcher
from fleetgate.nodes.errors import DispatchError, ValidationError
from fleetgate.nodes.protocol import CommandRequest


class NodesTool(Tool):
    """
    Remote node tool.

    Supports:
    - status: List nodes and what they advertise
    - run: Run a shell command on a node (system.run)
    - screen_record: Record a node's screen (at most 60s)
    - invoke: Invoke any node command with raw params
    """

    def __init__(
        self,
        dispatcher: NodeDispatcher,
        agent_id: str = "main",
        default_node: str = "",
    ):
        self.dispatcher = dispatcher
        self.agent_id = agent_id
        self.default_node = default_node

    @property
    def name(self) -> str:
        return "nodes"

    @property
    def description(self) -> str:
        return """Run commands on paired remote nodes (desktops, phones).

Actions:
- status: List nodes with platform, connectivity and advertised commands
- run: Run a command on a node; "command" is an argv array or a shell string
- screen_record: Record the screen of a node for "durationMs" ms or a "duration" like "30s" (max 60s)
- invoke: Invoke a node command by name with "params"

Commands may need human approval before they run.
"""

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "action": {
                    "type": "string",
                    "enum": ["status", "run", "screen_record", "invoke"],
                    "description": "The nodes action to perform"
                },
                "node": {
                    "type": "string",
                    "description": "Target node id"
                },
                "command": {
                    "description": "For run: argv array or shell string. For invoke: node command name",
                    "anyOf": [
                        {"type": "string"},
                        {"type": "array", "items": {"type": "string"}}
                    ]
                },
                "durationMs": {
                    "type": "integer",
                    "description": "screen_record duration in milliseconds"
                },
                "duration": {
                    "type": "string",
                    "description": "screen_record duration, e.g. '10s'"
                },
                "params": {
                    "type": "object",
                    "description": "Params for invoke"
                }
            },
            "required": ["action"]
        }

    async def execute(self, **kwargs: Any) -> str:
        """Execute nodes action."""
        action = kwargs.get("action", "")

        try:
            if action == "status":
                return await self._status()

            node = kwargs.get("node") or self.default_node
            if not node:
                return f"Error: node is required for {action}"

            if action == "run":
                request = self._run_request(node, kwargs.get("command"))
            elif action == "screen_record":
                request = self._screen_record_request(node, kwargs)
            elif action == "invoke":
                request = CommandRequest(
                    node_id=node,
                    command=str(kwargs.get("command") or ""),
                    agent_id=self.agent_id,
                    params=dict(kwargs.get("params") or {}),
                )
                if not request.command:
                    return "Error: command is required for invoke"
            else:
                return f"Unknown action: {action}"

            result = await self.dispatcher.dispatch(request)
            return result.to_output()

        except (DispatchError, GatewayError) as e:
            return f"Error: {type(e).__name__}: {e.message}"

    async def _status(self) -> str:
        nodes = await self.dispatcher.list_nodes()
        if not nodes:
            return "No nodes paired"
        return json.dumps([node.to_dict() for node in nodes], indent=2)

    def _run_request(self, node: str, command: Any) -> CommandRequest:
        raw_command = None
        if isinstance(command, str):
            raw_command = command
            try:
                argv = tuple(shlex.split(command))
            except ValueError as e:
                raise ValidationError(f"Cannot parse command: {e}") from None
        else:
            argv = tuple(str(part) for part in command or ())
        return CommandRequest(
            node_id=node,
            command="system.run",
            argv=argv,
            raw_command=raw_command,
            agent_id=self.agent_id,
        )

    def _screen_record_request(self, node: str, kwargs: dict[str, Any]) -> CommandRequest:
        params: dict[str, Any] = {}
        if kwargs.get("durationMs") is not None:
            params["durationMs"] = kwargs["durationMs"]
        elif kwargs.get("duration") is not None:
            params["duration"] = kwargs["duration"]
        return CommandRequest(
            node_id=node,
            command="screen.record",
            agent_id=self.agent_id,
            params=params,
        )
