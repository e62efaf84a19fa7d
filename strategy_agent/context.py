"""strategy_agent/context.py

Planner-visible conversation for one run.

Messages follow the chat-completions layout: system prompt, prior turns,
the user message, then alternating assistant tool-call turns and tool
results.  Notes from the prerequisite injector and the validator are
buffered while a round's tool calls are processed and flushed as system
messages once the round's tool results are in, so the planner sees them on
the next round without breaking the assistant/tool message pairing.
"""

from __future__ import annotations

# Standard Library
import json
import logging
from typing import Any

# Local Modules
from strategy_agent.models import PlannerToolCall

logger = logging.getLogger(__name__)


class PlannerContext:
    """Accumulated planner input for a single run."""

    def __init__(
        self,
        system_prompt: str,
        history: list[dict[str, str]] | tuple[dict[str, str], ...],
        user_message: str,
    ) -> None:
        self._messages: list[dict[str, Any]] = [
            {"role": "system", "content": system_prompt}
        ]
        for turn in history:
            self._messages.append(
                {"role": turn["role"], "content": turn["content"]}
            )
        self._messages.append({"role": "user", "content": user_message})
        self._pending_notes: list[str] = []
        self.notes: list[str] = []

    @property
    def messages(self) -> list[dict[str, Any]]:
        """Copy of the messages to send on the next planner call."""
        return [dict(m) for m in self._messages]

    def add_assistant_turn(
        self, text: str | None, tool_calls: list[PlannerToolCall]
    ) -> None:
        message: dict[str, Any] = {"role": "assistant", "content": text or ""}
        if tool_calls:
            message["tool_calls"] = [call.to_message() for call in tool_calls]
        self._messages.append(message)

    def add_tool_result(
        self, call: PlannerToolCall, content: dict[str, Any]
    ) -> None:
        """Append the observation for ``call`` as a ``tool`` message."""
        body = json.dumps(content, ensure_ascii=False, default=str)
        self._messages.append(
            {
                "role": "tool",
                "tool_call_id": call.id,
                "name": call.name,
                "content": body,
            }
        )

    def add_note(self, text: str) -> None:
        """Queue a system note for the planner; visible from the next round."""
        if not text:
            return
        self._pending_notes.append(text)
        self.notes.append(text)

    def flush_notes(self) -> int:
        """Move queued notes into the message list.

        Returns:
            Number of notes flushed.
        """
        count = len(self._pending_notes)
        for note in self._pending_notes:
            self._messages.append({"role": "system", "content": note})
        self._pending_notes.clear()
        if count:
            logger.debug("[context] flushed %d note(s)", count)
        return count
