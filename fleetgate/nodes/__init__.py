"""
Node command dispatch for fleetgate.

Runs commands on remote nodes through the gateway, with two-phase
prepare/run planning and exec approvals.
"""

from fleetgate.nodes.protocol import (
    NodePlatform,
    Node,
    CommandRequest,
    StepKind,
    InvokeStep,
    CommandPlan,
    ExecutionResult,
    ApprovalSecurity,
    AskMode,
    AskFallback,
    ApprovalDecision,
)
from fleetgate.nodes.errors import (
    DispatchError,
    NodeNotFound,
    ValidationError,
    CommandUnsupported,
    ApprovalDenied,
    NodeCommandError,
)
from fleetgate.nodes.registry import NodeRegistry, CapabilityCache
from fleetgate.nodes.preflight import validate, parse_duration_ms, SCREEN_RECORD_MAX_DURATION_MS
from fleetgate.nodes.planner import CommandPlanner, PlannerState, PREPARE_COMMANDS, is_command_unsupported
from fleetgate.nodes.approvals import ApprovalEngine, ApprovalPolicy, ApprovalState, Authorization
from fleetgate.nodes.dispatcher import NodeDispatcher, DispatchOptions

__all__ = [
    # Protocol
    "NodePlatform",
    "Node",
    "CommandRequest",
    "StepKind",
    "InvokeStep",
    "CommandPlan",
    "ExecutionResult",
    "ApprovalSecurity",
    "AskMode",
    "AskFallback",
    "ApprovalDecision",
    # Errors
    "DispatchError",
    "NodeNotFound",
    "ValidationError",
    "CommandUnsupported",
    "ApprovalDenied",
    "NodeCommandError",
    # Registry
    "NodeRegistry",
    "CapabilityCache",
    # Preflight
    "validate",
    "parse_duration_ms",
    "SCREEN_RECORD_MAX_DURATION_MS",
    # Planner
    "CommandPlanner",
    "PlannerState",
    "PREPARE_COMMANDS",
    "is_command_unsupported",
    # Approvals
    "ApprovalEngine",
    "ApprovalPolicy",
    "ApprovalState",
    "Authorization",
    # Dispatcher
    "NodeDispatcher",
    "DispatchOptions",
]
