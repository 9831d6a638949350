"""
Node registry for fleetgate.

Fetches the fleet from the gateway on demand. Connectivity and advertised
commands change between calls, so every lookup is a fresh node.list.
"""

from loguru import logger

from fleetgate.gateway.client import RpcClient
from fleetgate.gateway.protocol import GatewayMethod
from fleetgate.nodes.errors import NodeNotFound
from fleetgate.nodes.protocol import Node, NodeListResult


class CapabilityCache:
    """
    Commands a node has rejected as unsupported, keyed by node id.

    Entries only describe the fleet snapshot they were learned against;
    the registry clears the whole cache on every node.list fetch.
    """

    def __init__(self):
        self._unsupported: dict[str, set[str]] = {}

    def mark_unsupported(self, node_id: str, command: str) -> None:
        self._unsupported.setdefault(node_id, set()).add(command)

    def is_unsupported(self, node_id: str, command: str) -> bool:
        return command in self._unsupported.get(node_id, ())

    def invalidate(self, node_id: str | None = None) -> None:
        """Forget one node, or every node when node_id is None."""
        if node_id is None:
            self._unsupported.clear()
        else:
            self._unsupported.pop(node_id, None)

    def __len__(self) -> int:
        return sum(len(commands) for commands in self._unsupported.values())


class NodeRegistry:
    """Live view of the fleet known to the gateway."""

    def __init__(
        self,
        client: RpcClient,
        capability_cache: CapabilityCache | None = None,
        timeout_ms: int | None = None,
    ):
        self._client = client
        self.capability_cache = capability_cache or CapabilityCache()
        self.timeout_ms = timeout_ms

    async def list_nodes(self) -> list[Node]:
        """Fetch the current fleet, in gateway order."""
        payload = await self._client.invoke(GatewayMethod.NODE_LIST, {}, timeout_ms=self.timeout_ms)
        nodes = NodeListResult.from_dict(payload).nodes
        self.capability_cache.invalidate()
        logger.debug(f"Fleet snapshot: {len(nodes)} node(s)")
        return nodes

    async def resolve(self, node_id: str) -> Node:
        """
        Find a node by exact, case-sensitive id.

        Raises:
            NodeNotFound: if the id is not in a fresh fleet snapshot
        """
        for node in await self.list_nodes():
            if node.node_id == node_id:
                if not node.connected:
                    logger.warning(f"Node {node_id} is listed but not connected")
                return node
        raise NodeNotFound(node_id)
