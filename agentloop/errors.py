"""Error types for the agent loop.

Expected failures (a tool that is missing, a process that times out, a
quality gate that fails) are reported as values on ExecutionResult via
FailureKind. Only configuration and programmer errors are raised.
"""

from __future__ import annotations

from enum import StrEnum

import click


class ConfigurationError(click.ClickException):
    """Raised when settings or CLI arguments are invalid."""


class ProtocolParseError(ValueError):
    """A single line of agent output could not be decoded."""

    def __init__(self, line: str, reason: str) -> None:
        super().__init__(f"{reason}: {line[:120]!r}")
        self.line = line
        self.reason = reason


class FailureKind(StrEnum):
    """Why an execution did not succeed."""

    TOOL_UNAVAILABLE = "tool_unavailable"
    SPAWN_ERROR = "spawn_error"
    TIMEOUT = "timeout"
    NO_COMPLETION = "no_completion"
    AGENT_ERROR = "agent_error"
    QUALITY_GATE = "quality_gate"
