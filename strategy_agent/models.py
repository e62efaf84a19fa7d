"""strategy_agent/models.py

Value types passed between the controller, the planner and callers.
"""

from __future__ import annotations

# Standard Library
import dataclasses
from enum import StrEnum
from typing import Any


class ActionTag(StrEnum):
    """Machine-readable outcome attached to every reply."""

    AGENT_REPLY = "AGENT_REPLY"
    CLARIFICATION_NEEDED = "CLARIFICATION_NEEDED"
    TOOL_CALL_REJECTED = "TOOL_CALL_REJECTED"
    UNKNOWN_TOOL = "UNKNOWN_TOOL"
    APPROVAL_ERROR = "APPROVAL_ERROR"
    TOOL_CALL_ERROR = "TOOL_CALL_ERROR"
    PLANNER_ERROR = "PLANNER_ERROR"
    RUN_CANCELLED = "RUN_CANCELLED"
    ORCHESTRATOR_ERROR = "ORCHESTRATOR_ERROR"


class Termination(StrEnum):
    """How the round loop ended."""

    FINAL_TEXT = "final_text"
    PLANNER_STOPPED = "planner_stopped"
    ITERATIONS_EXHAUSTED = "iterations_exhausted"
    CLARIFICATION = "clarification"
    REJECTION = "rejection"
    ERROR = "error"
    CANCELLED = "cancelled"


@dataclasses.dataclass(slots=True)
class RunRequest:
    """One user request entering the controller.

    Attributes:
        conversation_id: Conversation the request belongs to.
        user_id: Requesting user.
        message: The new user message.
        history: Prior ``{"role", "content"}`` turns.  ``None`` asks the
            controller's history provider instead.
    """

    conversation_id: str
    user_id: str
    message: str
    history: list[dict[str, str]] | None = None


@dataclasses.dataclass(slots=True, frozen=True)
class SamplingConfig:
    temperature: float = 0.6
    max_tokens: int = 1200


@dataclasses.dataclass(slots=True, frozen=True)
class PlannerToolCall:
    """A tool invocation requested by the planner.

    ``raw_arguments`` is whatever the backend produced: a JSON string, an
    already-decoded dict, or ``None``.
    """

    id: str
    name: str
    raw_arguments: str | dict[str, Any] | None = None

    def to_message(self) -> dict[str, Any]:
        """Render in the chat-completions ``tool_calls`` format."""
        arguments = self.raw_arguments
        if arguments is None:
            arguments = "{}"
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": arguments},
        }


@dataclasses.dataclass(slots=True)
class PlannerResponse:
    """Normalised planner output.

    Attributes:
        text: Free text produced by the planner, if any.
        tool_calls: Requested tool calls in emission order.
        finish_reason: Backend termination hint (``"stop"``,
            ``"tool_calls"``...).
    """

    text: str | None = None
    tool_calls: list[PlannerToolCall] = dataclasses.field(default_factory=list)
    finish_reason: str | None = None


@dataclasses.dataclass(slots=True)
class Reply:
    """The single structured answer produced for a run."""

    message: str
    action: ActionTag
    termination: Termination
    metadata: dict[str, Any] = dataclasses.field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "message": self.message,
            "metadata": {
                "action": str(self.action),
                "termination": str(self.termination),
                **self.metadata,
            },
        }
