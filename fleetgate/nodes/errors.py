"""
Dispatch errors.

Each failure path of a dispatch has its own class so the CLI and agent tool
can report the error class alongside the message.
"""


class DispatchError(Exception):
    """Base class for dispatch failures."""
    code = "DISPATCH_FAILED"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NodeNotFound(DispatchError):
    """No node in the fleet snapshot has the requested id."""
    code = "NODE_NOT_FOUND"

    def __init__(self, node_id: str):
        super().__init__(f"Unknown node: {node_id}")
        self.node_id = node_id


class ValidationError(DispatchError):
    """Preflight rejection. Raised before any gateway call."""
    code = "INVALID_REQUEST"


class CommandUnsupported(DispatchError):
    """The node rejected a command for capability reasons."""
    code = "CAPABILITY_NOT_SUPPORTED"

    def __init__(self, message: str, command: str = ""):
        super().__init__(message)
        self.command = command


class ApprovalDenied(DispatchError):
    """Approval was denied, explicitly or through askFallback."""
    code = "EXEC_DENIED"

    def __init__(self, message: str, by_fallback: bool = False):
        super().__init__(message)
        self.by_fallback = by_fallback


class NodeCommandError(DispatchError):
    """
    The node rejected an invocation for a reason other than capability.

    The message is the remote error text, unchanged.
    """
    code = "NODE_COMMAND_FAILED"

    def __init__(self, message: str, command: str = "", remote_code: str = ""):
        super().__init__(message)
        self.command = command
        self.remote_code = remote_code
