"""Agent tools."""

from fleetgate.agent.tools.base import Tool
from fleetgate.agent.tools.nodes import NodesTool

__all__ = ["Tool", "NodesTool"]
