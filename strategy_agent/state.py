"""strategy_agent/state.py

Per-run orchestration state and the tool-result reducers that update it.

Each tool name that produces an artifact has a reducer entry pairing a
pydantic model for the result shape with a merge function.  Results for
tool names without an entry are recorded in the executed-tool log but leave
the artifacts untouched.
"""

from __future__ import annotations

# Standard Library
import dataclasses
import logging
import time
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

# Third-Party Libraries
from pydantic import BaseModel, ConfigDict, ValidationError

logger = logging.getLogger(__name__)

MIN_STOP_LOSS: float = 0.02
MIN_TAKE_PROFIT: float = 0.04
DEFAULT_INITIAL_CASH: float = 10_000
DEFAULT_FEE: float = 0.001


@dataclasses.dataclass(slots=True)
class Artifacts:
    """Named outputs accumulated over a run.

    Attributes:
        plan: Structured strategy description (the DSL).
        generated_artifact: Executable form derived from the plan.
        validation_result: Quick-simulation report for the generated
            artifact.
        validation_performed: Set once the quick simulation has been
            attempted.
        persisted_handle: Storage reference returned by the save tool.
        supporting_data: Cached market analysis.
        supporting_data_fetched_at: Epoch seconds when ``supporting_data``
            was fetched.
        backtest: Latest full backtest result.
        backtest_history: One entry per full backtest run in this request.
    """

    plan: dict[str, Any] | None = None
    generated_artifact: dict[str, Any] | None = None
    validation_result: dict[str, Any] | None = None
    validation_performed: bool = False
    persisted_handle: dict[str, Any] | None = None
    supporting_data: dict[str, Any] | None = None
    supporting_data_fetched_at: float | None = None
    backtest: dict[str, Any] | None = None
    backtest_history: list[dict[str, Any]] = dataclasses.field(
        default_factory=list
    )


@dataclasses.dataclass(slots=True, frozen=True)
class ExecutedTool:
    name: str
    result: dict[str, Any]


@dataclasses.dataclass(slots=True)
class OrchestrationRun:
    """Mutable state for one request; discarded when the reply is built."""

    conversation_id: str
    user_id: str
    user_message: str
    history: tuple[dict[str, str], ...] = ()
    artifacts: Artifacts = dataclasses.field(default_factory=Artifacts)
    last_planner_message: str | None = None
    iterations: int = 0
    _executed: list[ExecutedTool] = dataclasses.field(default_factory=list)

    @property
    def executed_tools(self) -> tuple[ExecutedTool, ...]:
        return tuple(self._executed)

    def record_tool(self, name: str, result: dict[str, Any]) -> None:
        """Append a successful tool result to the executed-tool log."""
        self._executed.append(ExecutedTool(name, result))

    def context_payload(self) -> dict[str, Any]:
        """Run-scoped fields merged into every tool payload."""
        return {
            "user_id": self.user_id,
            "conversation_id": self.conversation_id,
            "user_message": self.user_message,
            "conversation_history": [dict(turn) for turn in self.history],
        }


# ---------------------------------------------------------------------------
# Plan normalisation
# ---------------------------------------------------------------------------


def _as_dict(value: Any, field: str) -> dict[str, Any]:
    if isinstance(value, dict):
        return dict(value)
    if not value:
        return {}
    logger.warning(
        "[state] plan %s is not an object (%r), using defaults",
        field,
        value,
    )
    return {}


def _at_least(value: Any, floor: float, field: str) -> float:
    if value is None:
        return floor
    try:
        number = float(value)
    except (TypeError, ValueError):
        logger.warning(
            "[state] plan %s %r is not a number, using %s",
            field,
            value,
            floor,
        )
        return floor
    return max(number, floor)


def normalize_plan(plan: Any) -> Any:
    """Fill defaults a plan needs before code generation or simulation.

    Accepts the common aliases (``strategyName``, ``asset``, ``interval``,
    ``entryConditions``, ``exitConditions``, ``riskManagement``) and enforces
    minimum stop-loss / take-profit levels and default capital and fees.
    Risk levels that cannot be read as numbers fall back to the minimums;
    ``risk`` or ``params`` values that are not objects are replaced.
    Non-dict input is returned unchanged.
    """
    if not isinstance(plan, dict):
        return plan

    normalized = dict(plan)
    normalized["strategy_name"] = (
        normalized.get("strategy_name")
        or normalized.get("strategyName")
        or f"Strategy_{int(time.time() * 1000)}"
    )
    normalized["symbol"] = (
        normalized.get("symbol") or normalized.get("asset") or "UNKNOWN/USDT"
    )
    normalized["timeframe"] = (
        normalized.get("timeframe") or normalized.get("interval") or "1h"
    )

    for key, alias in (
        ("entry", "entryConditions"),
        ("exit", "exitConditions"),
    ):
        value = normalized.get(key)
        if not isinstance(value, list):
            value = normalized.get(alias)
        normalized[key] = list(value) if isinstance(value, list) else []

    risk = _as_dict(
        normalized.get("risk") or normalized.get("riskManagement"), "risk"
    )
    risk["stop_loss"] = _at_least(
        risk.get("stop_loss"), MIN_STOP_LOSS, "stop_loss"
    )
    risk["take_profit"] = _at_least(
        risk.get("take_profit"), MIN_TAKE_PROFIT, "take_profit"
    )
    normalized["risk"] = risk

    params = _as_dict(normalized.get("params"), "params")
    params["initial_cash"] = params.get("initial_cash") or DEFAULT_INITIAL_CASH
    params["fee"] = params.get("fee") or DEFAULT_FEE
    normalized["params"] = params
    return normalized


# ---------------------------------------------------------------------------
# Result shapes
# ---------------------------------------------------------------------------


class _ToolResult(BaseModel):
    model_config = ConfigDict(extra="allow")

    status: str | None = None


class PlanResult(_ToolResult):
    dsl: dict[str, Any] | None = None


class CodeResult(_ToolResult):
    strategy: dict[str, Any] | None = None


class BacktestResult(_ToolResult):
    backtest: dict[str, Any] | None = None


class SaveResult(_ToolResult):
    saved_strategy: dict[str, Any] | None = None


class AnalysisResult(_ToolResult):
    analysis: dict[str, Any] | None = None
    candles: list[Any] | None = None
    patterns: list[Any] | None = None


# ---------------------------------------------------------------------------
# Reducers
# ---------------------------------------------------------------------------


def _apply_plan(artifacts: Artifacts, result: PlanResult, now: float) -> None:
    if result.dsl is None:
        return
    artifacts.plan = normalize_plan(result.dsl)
    artifacts.validation_result = None
    artifacts.validation_performed = False


def _apply_code(artifacts: Artifacts, result: CodeResult, now: float) -> None:
    if result.strategy is None:
        return
    artifacts.generated_artifact = result.strategy
    if artifacts.plan is not None:
        artifacts.plan = normalize_plan(artifacts.plan)


def _apply_backtest(
    artifacts: Artifacts, result: BacktestResult, now: float
) -> None:
    if result.backtest is None:
        return
    artifacts.backtest = result.backtest
    strategy_name = (artifacts.generated_artifact or {}).get("name") or (
        artifacts.plan or {}
    ).get("strategy_name")
    artifacts.backtest_history.append(
        {
            "timestamp": datetime.fromtimestamp(
                now, tz=timezone.utc
            ).isoformat(),
            "summary": result.backtest.get("summary"),
            "strategy": strategy_name,
        }
    )


def _apply_save(artifacts: Artifacts, result: SaveResult, now: float) -> None:
    if result.saved_strategy is not None:
        artifacts.persisted_handle = result.saved_strategy


def _apply_analysis(
    artifacts: Artifacts, result: AnalysisResult, now: float
) -> None:
    if result.analysis is None:
        return
    data = dict(result.analysis)
    if result.candles:
        data["candles"] = result.candles
    if result.patterns:
        data["patterns"] = result.patterns
    artifacts.supporting_data = data
    artifacts.supporting_data_fetched_at = now


@dataclasses.dataclass(slots=True, frozen=True)
class Reducer:
    result_model: type[_ToolResult]
    apply: Callable[[Artifacts, Any, float], None]


REDUCERS: dict[str, Reducer] = {
    "create_dsl": Reducer(PlanResult, _apply_plan),
    "generate_strategy_code": Reducer(CodeResult, _apply_code),
    "run_backtest": Reducer(BacktestResult, _apply_backtest),
    "save_strategy": Reducer(SaveResult, _apply_save),
    "analyze_market_data": Reducer(AnalysisResult, _apply_analysis),
}


def apply_result(
    artifacts: Artifacts,
    tool_name: str,
    result: dict[str, Any],
    now: float | None = None,
) -> bool:
    """Fold a tool result into ``artifacts``.

    Args:
        artifacts: Artifacts of the current run.
        tool_name: Tool that produced ``result``.
        result: Raw tool result.
        now: Epoch seconds used for timestamps; defaults to ``time.time()``.

    Returns:
        ``True`` if a reducer handled the result, ``False`` for unknown tools
        or results that do not match the expected shape.
    """
    reducer = REDUCERS.get(tool_name)
    if reducer is None:
        return False
    try:
        parsed = reducer.result_model.model_validate(result)
    except ValidationError as exc:
        logger.warning(
            "[state] unexpected %s result shape, not merged: %s",
            tool_name,
            exc,
        )
        return False
    reducer.apply(artifacts, parsed, time.time() if now is None else now)
    return True


# ---------------------------------------------------------------------------
# Supporting-data freshness
# ---------------------------------------------------------------------------


def is_supporting_data_fresh(
    artifacts: Artifacts,
    symbol: str,
    timeframe: str,
    ttl_seconds: float,
    now: float,
) -> bool:
    """Whether cached supporting data can be reused for a symbol/timeframe.

    Data whose age is equal to or greater than ``ttl_seconds`` is stale.
    """
    data = artifacts.supporting_data
    fetched_at = artifacts.supporting_data_fetched_at
    if not data or fetched_at is None:
        return False
    if str(data.get("symbol", "")).upper() != symbol.upper():
        return False
    if data.get("timeframe") != timeframe:
        return False
    return (now - fetched_at) < ttl_seconds
