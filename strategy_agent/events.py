"""strategy_agent/events.py

Best-effort progress events.

Events are purely observational: a failing or missing sink never changes
control flow or the final reply.
"""

from __future__ import annotations

# Standard Library
import logging
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

ProgressSink = Callable[[str, dict[str, Any]], None]

TOOL_CALL_STARTED = "tool_call_started"
TOOL_CALL_SUCCEEDED = "tool_call_succeeded"
TOOL_CALL_FAILED = "tool_call_failed"
TOOL_CALL_AUTO_TRIGGERED = "tool_call_auto_triggered"
TOOL_CALL_CANCELLED = "tool_call_cancelled"
TOOL_CALL_REQUESTED = "tool_call_requested"
TOOL_CALL_APPROVED = "tool_call_approved"
TOOL_CALL_REJECTED = "tool_call_rejected"
TOOL_CALL_TIMED_OUT = "tool_call_timed_out"
VALIDATOR_SUMMARY = "validator_summary"
VALIDATOR_FAILED = "validator_failed"


class ProgressEmitter:
    """Wraps an optional sink and stamps payloads with the conversation id."""

    def __init__(
        self, sink: ProgressSink | None, conversation_id: str
    ) -> None:
        self._sink = sink
        self.conversation_id = conversation_id

    def emit(self, event: str, **payload: Any) -> None:
        """Fire ``event`` if a sink is registered.

        Sink errors are logged and dropped.
        """
        if self._sink is None:
            return
        try:
            self._sink(
                event, {"conversation_id": self.conversation_id, **payload}
            )
        except Exception as exc:
            logger.warning(
                "progress sink error for %s: %s", event, exc, exc_info=True
            )
