"""strategy_agent/errors.py

Failure taxonomy for orchestration runs.

Terminal errors short-circuit the round loop and are turned into a reply by
the result normalizer.  ``PrerequisiteFailure`` and ``ValidatorFailure`` are
raised inside their components and logged at the boundary; they never end a
run.
"""

from __future__ import annotations

from typing import Any


class OrchestrationError(Exception):
    """Base class for every orchestration failure."""

    def __init__(
        self, message: str, context: dict[str, Any] | None = None
    ) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}


class PlannerUnavailable(OrchestrationError):
    """The planner could not be reached or returned an unusable response."""


class UnknownTool(OrchestrationError):
    """The planner asked for a tool that is not registered."""

    def __init__(self, tool_name: str) -> None:
        super().__init__(
            f"Tool {tool_name} is not available.", {"tool": tool_name}
        )
        self.tool_name = tool_name


class ApprovalWorkflowFailure(OrchestrationError):
    """The approval gate itself failed while handling a request."""

    def __init__(self, tool_name: str, reason: str) -> None:
        super().__init__(reason, {"tool": tool_name})
        self.tool_name = tool_name
        self.reason = reason


class ApprovalRejected(OrchestrationError):
    """A human declined the tool call."""

    def __init__(
        self,
        tool_name: str,
        label: str,
        feedback: str | None = None,
        call_id: str | None = None,
    ) -> None:
        super().__init__(
            feedback or f"Tool call {tool_name} was rejected.",
            {"tool": tool_name, "call_id": call_id},
        )
        self.tool_name = tool_name
        self.label = label
        self.feedback = feedback
        self.call_id = call_id


class ApprovalTimedOut(ApprovalRejected):
    """No decision arrived before the approval timeout."""


class ToolExecutionFailure(OrchestrationError):
    """A tool raised or reported a failure."""

    def __init__(self, tool_name: str, label: str, reason: str) -> None:
        super().__init__(reason, {"tool": tool_name})
        self.tool_name = tool_name
        self.label = label
        self.reason = reason


class RunCancelled(OrchestrationError):
    """The caller aborted the run (e.g. client disconnect)."""


class PrerequisiteFailure(OrchestrationError):
    """The prerequisite tool failed; the target tool still runs."""


class ValidatorFailure(OrchestrationError):
    """The post-action quick simulation failed; the guard is still set."""


class ApprovalNotFound(KeyError):
    """A decision was submitted for a call id the gate has never seen."""


class ArgumentParseWarning(UserWarning):
    """Tool arguments could not be parsed and were replaced with ``{}``."""


class ClarificationRequested(Exception):
    """A tool needs more information from the user.

    Not an error: dispatch raises it to end the run with the tool's question.
    """

    def __init__(self, tool_name: str, message: str) -> None:
        super().__init__(message)
        self.tool_name = tool_name
        self.message = message
