"""
Gateway call errors.

Raised by the RPC client. Callers decide whether to retry; the client never
retries on its own.
"""


class GatewayError(Exception):
    """Base class for errors raised by a gateway call."""
    code = "GATEWAY_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class TransportError(GatewayError):
    """The call did not complete: timeout, connection loss, socket error."""
    code = "TRANSPORT_ERROR"

    def __init__(self, message: str, timed_out: bool = False):
        super().__init__(message)
        self.timed_out = timed_out


class RemoteError(GatewayError):
    """
    The gateway (or the node behind it) answered with an error.

    The message is kept verbatim; the planner classifies it for fallback.
    """
    code = "REMOTE_ERROR"

    def __init__(self, message: str, remote_code: str = ""):
        super().__init__(message)
        self.remote_code = remote_code


class ProtocolError(GatewayError):
    """A frame or payload did not match the expected shape."""
    code = "PROTOCOL_ERROR"
