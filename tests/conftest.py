"""tests/conftest.py

Pytest configuration and shared fixtures for the strategy-agent test suite.
"""

from __future__ import annotations

# Standard Library
import copy
import json
import threading
from collections.abc import Callable, Iterator
from typing import Any

# Third-Party Libraries
import pytest

# Local Modules
from strategy_agent.approval import ApprovalGate
from strategy_agent.config import OrchestratorSettings
from strategy_agent.controller import OrchestrationController
from strategy_agent.models import (
    PlannerResponse,
    PlannerToolCall,
    SamplingConfig,
)
from strategy_agent.prerequisites import PrerequisiteInjector
from strategy_agent.registry import ToolRegistry
from strategy_agent.tools import DEFAULT_TOOLS
from strategy_agent.validator import PostActionValidator


class ScriptedPlanner:
    """Planner double that replays a fixed list of responses.

    Items may be :class:`PlannerResponse` objects or exceptions to raise.
    Once the script runs out, ``default`` is returned (or the last item
    repeats when no default is given).  Every call's messages are recorded.
    """

    def __init__(
        self,
        script: list[PlannerResponse | Exception],
        default: PlannerResponse | None = None,
    ) -> None:
        self.script = list(script)
        self.default = default
        self.calls: list[dict[str, Any]] = []
        self._lock = threading.Lock()

    def complete(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        sampling: SamplingConfig,
    ) -> PlannerResponse:
        with self._lock:
            index = len(self.calls)
            self.calls.append(
                {
                    "messages": copy.deepcopy(messages),
                    "tools": tools,
                    "sampling": sampling,
                }
            )
        if index < len(self.script):
            item = self.script[index]
        elif self.default is not None:
            item = self.default
        else:
            item = self.script[-1]
        if isinstance(item, Exception):
            raise item
        return item


def text_response(text: str, finish_reason: str = "stop") -> PlannerResponse:
    return PlannerResponse(
        text=text, tool_calls=[], finish_reason=finish_reason
    )


def tool_response(
    *calls: tuple[str, Any], text: str | None = None
) -> PlannerResponse:
    """Planner response requesting ``(name, arguments)`` pairs."""
    tool_calls = [
        PlannerToolCall(
            id=f"call_{i}_{name}",
            name=name,
            raw_arguments=json.dumps(args) if isinstance(args, dict) else args,
        )
        for i, (name, args) in enumerate(calls)
    ]
    return PlannerResponse(
        text=text, tool_calls=tool_calls, finish_reason="tool_calls"
    )


class EventRecorder:
    """Progress sink that keeps every event."""

    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    def __call__(self, event: str, payload: dict[str, Any]) -> None:
        self.events.append((event, payload))

    def names(self) -> list[str]:
        return [name for name, _ in self.events]

    def of(self, name: str) -> list[dict[str, Any]]:
        return [payload for event, payload in self.events if event == name]


@pytest.fixture
def settings() -> OrchestratorSettings:
    """Settings isolated from the environment and any .env file."""
    return OrchestratorSettings(
        _env_file=None,
        planner_backend="openai",
        planner_base_url="http://planner.test/v1",
        planner_api_key="test-key",
        planner_model="test-model",
        planner_timeout_seconds=5.0,
        max_iterations=6,
        history_limit=20,
        supporting_data_ttl_seconds=900,
        validator_min_trades=3,
        approval_timeout_seconds=5.0,
    )


@pytest.fixture
def registry() -> ToolRegistry:
    """Fresh registry holding the default strategy tools."""
    return ToolRegistry(list(DEFAULT_TOOLS))


@pytest.fixture
def gate() -> ApprovalGate:
    return ApprovalGate(timeout_seconds=5.0, history_size=50)


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()


@pytest.fixture
def scripted() -> Callable[..., ScriptedPlanner]:
    """Factory for :class:`ScriptedPlanner` instances."""
    return ScriptedPlanner


@pytest.fixture
def responses() -> Any:
    """Planner response builders: ``text(...)`` and ``tools(...)``."""

    class _Responses:
        text = staticmethod(text_response)
        tools = staticmethod(tool_response)

    return _Responses


@pytest.fixture
def make_controller(
    settings: OrchestratorSettings,
    registry: ToolRegistry,
    gate: ApprovalGate,
) -> Iterator[Callable[..., OrchestrationController]]:
    """Build controllers sharing the fixture registry and gate."""
    built: list[OrchestrationController] = []

    def _make(
        planner: Any,
        *,
        simulate: Callable[..., dict[str, Any]] | None = None,
        clock: Callable[[], float] | None = None,
        **overrides: Any,
    ) -> OrchestrationController:
        run_settings = (
            settings.model_copy(update=overrides) if overrides else settings
        )
        kwargs: dict[str, Any] = {}
        if simulate is not None:
            kwargs["validator"] = PostActionValidator(
                min_trades=run_settings.validator_min_trades,
                simulate=simulate,
            )
        if clock is not None:
            kwargs["prerequisites"] = PrerequisiteInjector(
                registry,
                ttl_seconds=run_settings.supporting_data_ttl_seconds,
                clock=clock,
            )
        controller = OrchestrationController(
            settings=run_settings,
            registry=registry,
            planner=planner,
            gate=gate,
            **kwargs,
        )
        built.append(controller)
        return controller

    yield _make
    for controller in built:
        controller.close()
