"""
Preflight validation for node commands.

Validators are pure functions of the request, keyed by command name. They
run before anything touches the network and never consult node state.
"""

import math
import re
import shlex
from decimal import Decimal
from typing import Any, Callable

from fleetgate.nodes.errors import ValidationError
from fleetgate.nodes.protocol import CommandRequest


# Hard ceiling enforced by the node runtime for screen recordings
SCREEN_RECORD_MAX_DURATION_MS = 60000

_DURATION_RE = re.compile(r"^(\d+(?:\.\d+)?)\s*(ms|s|m|h|d)?$", re.IGNORECASE)
_UNIT_MS = {
    "ms": 1,
    "s": 1000,
    "m": 60 * 1000,
    "h": 60 * 60 * 1000,
    "d": 24 * 60 * 60 * 1000,
}


def parse_duration_ms(value: str) -> int:
    """
    Parse a human-readable duration into milliseconds.

    Accepts "500ms", "30s", "2m", "1h", "1d"; a bare number is taken as
    milliseconds. Fractions round up, so a duration is never under-reported.

    Raises:
        ValueError: if the string is not a duration
    """
    match = _DURATION_RE.match(value.strip())
    if not match:
        raise ValueError(f"invalid duration: {value!r}")
    amount, unit = match.groups()
    return math.ceil(Decimal(amount) * _UNIT_MS[(unit or "ms").lower()])


def _resolve_duration_ms(params: dict[str, Any], label: str) -> float | None:
    duration_ms = params.get("durationMs")
    if duration_ms is not None:
        if isinstance(duration_ms, bool) or not isinstance(duration_ms, (int, float)):
            raise ValidationError(f"{label} durationMs must be a number")
        if not math.isfinite(duration_ms) or duration_ms < 0:
            raise ValidationError(f"{label} durationMs must be non-negative")
        return duration_ms

    duration = params.get("duration")
    if duration is None:
        return None
    if isinstance(duration, (int, float)) and not isinstance(duration, bool):
        if not math.isfinite(duration) or duration < 0:
            raise ValidationError(f"{label} duration must be non-negative")
        return duration
    if not isinstance(duration, str):
        raise ValidationError(f"{label} duration must be a string like 30s")
    try:
        return parse_duration_ms(duration)
    except ValueError as e:
        raise ValidationError(f"{label} {e}") from None


def validate_screen_record(request: CommandRequest) -> None:
    duration_ms = _resolve_duration_ms(request.params, "screen_record")
    if duration_ms is not None and duration_ms > SCREEN_RECORD_MAX_DURATION_MS:
        raise ValidationError(
            f"screen_record durationMs must be at most {SCREEN_RECORD_MAX_DURATION_MS}"
        )


def raw_command_matches(argv: tuple[str, ...], raw_command: str) -> bool:
    """Check that a raw command string tokenizes to exactly argv."""
    try:
        return shlex.split(raw_command) == list(argv)
    except ValueError:
        return False


def validate_system_run(request: CommandRequest) -> None:
    if not request.argv or not request.argv[0].strip():
        raise ValidationError("system.run requires a command")
    # The approver sees the raw string, so it must describe what runs
    if request.raw_command is not None and not raw_command_matches(request.argv, request.raw_command):
        raise ValidationError("system.run rawCommand does not match the command argv")


VALIDATORS: dict[str, Callable[[CommandRequest], None]] = {
    "screen.record": validate_screen_record,
    "screen_record": validate_screen_record,
    "system.run": validate_system_run,
}


def validate(request: CommandRequest) -> None:
    """
    Run the validator registered for the request's command, if any.

    Raises:
        ValidationError: if the request must not be dispatched
    """
    validator = VALIDATORS.get(request.command)
    if validator:
        validator(request)
