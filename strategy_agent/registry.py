"""strategy_agent/registry.py

Tool capability registry.

Maps tool names to their invocation contract: a human label, a description,
a JSON argument schema, whether the call needs human approval, and the
execution callable.  The registry is populated at process start and shared
by every conversation; re-registering a name overwrites the previous entry
and logs a warning so tests can swap tools freely.
"""

from __future__ import annotations

# Standard Library
import dataclasses
import logging
import threading
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

ToolFunction = Callable[[dict[str, Any]], dict[str, Any]]


@dataclasses.dataclass(slots=True, frozen=True)
class ToolDefinition:
    """Invocation contract for one tool.

    Attributes:
        name: Unique registry key, also the function name shown to the planner.
        label: Human-readable name used in events and replies.
        description: What the tool does; shown to the planner and approvers.
        parameters: JSON schema of the tool arguments.
        execute: Callable taking the merged payload and returning a result
            dict, or ``{"status": "needs_clarification", "message": ...}``.
            Failures are raised.
        requires_approval: Whether a human must approve each call.
        category: Free-form grouping (``strategy``, ``analysis``, ``storage``).
    """

    name: str
    label: str
    description: str
    parameters: dict[str, Any]
    execute: ToolFunction
    requires_approval: bool = False
    category: str = "general"

    def schema(self) -> dict[str, Any]:
        """Return the OpenAI function-calling description of this tool."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


class ToolRegistry:
    """Process-wide name → :class:`ToolDefinition` table."""

    def __init__(self, tools: list[ToolDefinition] | None = None) -> None:
        self._tools: dict[str, ToolDefinition] = {}
        self._lock = threading.Lock()
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: ToolDefinition) -> None:
        """Add a tool, overwriting any existing tool with the same name.

        Args:
            tool: The tool definition to register.
        """
        with self._lock:
            if tool.name in self._tools:
                logger.warning(
                    "Tool '%s' already registered, overwriting", tool.name
                )
            self._tools[tool.name] = tool
        logger.info("Registered tool: %s", tool.name)

    def get(self, name: str) -> ToolDefinition | None:
        return self._tools.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def list(self) -> list[ToolDefinition]:
        return list(self._tools.values())

    def names(self) -> list[str]:
        return list(self._tools)

    def by_category(self, category: str) -> list[ToolDefinition]:
        return [
            tool
            for tool in self._tools.values()
            if tool.category == category
        ]

    def requires_approval(self, name: str) -> bool:
        """Whether calls to ``name`` need approval.

        Unknown names default to ``True`` so nothing unregistered slips
        through without a human.
        """
        tool = self.get(name)
        return tool.requires_approval if tool is not None else True

    def tool_schemas(self) -> list[dict[str, Any]]:
        """All tools in the format the planner expects."""
        return [tool.schema() for tool in self._tools.values()]
