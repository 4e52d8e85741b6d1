"""
Error taxonomy for command execution.

Every error carries a machine `kind` and a short, non-technical
`user_message`. The exception text itself may hold provider or domain
detail and is only ever logged.
"""

from __future__ import annotations


class CommandError(Exception):
    """Base class for failures surfaced by the command pipeline."""

    kind = "internal"
    default_user_message = "An error occurred while processing your command."

    def __init__(self, message: str = "", user_message: str | None = None):
        super().__init__(message or self.default_user_message)
        self.user_message = user_message or self.default_user_message


class Unauthorized(CommandError):
    """No valid identity or tenant. Fatal, no tool calls attempted."""

    kind = "unauthorized"
    default_user_message = "You are not authorized to run commands in this workspace."


class AmbiguousContext(CommandError):
    """The target entity cannot be inferred. Surfaced as a disambiguation prompt."""

    kind = "ambiguous_context"
    default_user_message = "Which project should I use?"


class DomainError(CommandError):
    """Raised by tool executors (domain layer) for a failed operation."""

    kind = "domain"
    default_user_message = "The requested change could not be applied."


class ToolExecutionError(DomainError):
    """A single tool call failed. Recorded per call, never aborts siblings."""

    kind = "tool_execution"


class ToolValidationError(ToolExecutionError):
    """Arguments did not match the tool's declared schema."""

    kind = "invalid_arguments"


class ModelError(CommandError):
    """The model backend failed or returned an unusable payload."""

    kind = "model"
    default_user_message = "The assistant is unavailable right now. Please try again."


class ModelTimeout(ModelError):
    """A suspension point exceeded the caller-configured timeout."""

    kind = "timeout"
    default_user_message = "The command took too long to complete. Please try again."


class CommandCancelled(CommandError):
    """The stream consumer went away; no further phases are started."""

    kind = "cancelled"
    default_user_message = "The command was cancelled."


class ToolTimeout(CommandError):
    """A tool invocation exceeded the caller-configured timeout."""

    kind = "timeout"
    default_user_message = "The command took too long to complete. Please try again."
