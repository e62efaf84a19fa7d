"""strategy_agent/prerequisites.py

Automatic prerequisite execution.

Some tools work better with fresh supporting data: ``create_dsl`` designs a
plan around the current market read produced by ``analyze_market_data``.
Before such a tool runs, the injector derives a freshness key
(symbol + timeframe) from the call arguments and the run's artifacts.  When
the cached analysis is missing, keyed differently or at least TTL seconds
old, the prerequisite tool is executed synchronously and its result folded
into the run.  Failures are logged and the target tool proceeds anyway.
"""

from __future__ import annotations

# Standard Library
import logging
import time
from collections.abc import Callable
from typing import Any

# Local Modules
from strategy_agent import events
from strategy_agent.context import PlannerContext
from strategy_agent.errors import PrerequisiteFailure
from strategy_agent.events import ProgressEmitter
from strategy_agent.registry import ToolRegistry
from strategy_agent.state import (
    OrchestrationRun,
    apply_result,
    is_supporting_data_fresh,
)

logger = logging.getLogger(__name__)

DEFAULT_PREREQUISITES: dict[str, str] = {"create_dsl": "analyze_market_data"}

_PLACEHOLDER_SYMBOLS: frozenset[str] = frozenset({"UNKNOWN/USDT"})


def _first(*candidates: Any) -> str | None:
    for value in candidates:
        if value and str(value).upper() not in _PLACEHOLDER_SYMBOLS:
            return str(value)
    return None


def summarize_supporting_data(data: dict[str, Any]) -> str:
    """One-line market read for the planner."""
    summary = data.get("summary") or {}
    recommendation = summary.get("recommendation") or {}
    symbol, timeframe = data.get("symbol"), data.get("timeframe")
    head = f"Market analysis for {symbol} ({timeframe})"
    parts: list[str] = []
    if data.get("latest_price") is not None:
        parts.append(f"latest price {data['latest_price']}")
    if data.get("price_change_24h") is not None:
        parts.append(f"24h change {data['price_change_24h']}%")
    if summary.get("trend"):
        parts.append(f"trend {summary['trend']}")
    if recommendation.get("action"):
        parts.append(
            f"recommendation {recommendation['action']} "
            f"(confidence {recommendation.get('confidence', 'n/a')})"
        )
    return f"{head}: {', '.join(parts)}" if parts else head


class PrerequisiteInjector:
    """Runs designated prerequisite tools ahead of their dependants.

    Args:
        registry: Registry used to look up prerequisite tools by name.
        ttl_seconds: Age at which cached supporting data is stale.
        default_timeframe: Timeframe used when none can be derived.
        prerequisites: Target tool name -> prerequisite tool name.
        clock: Returns the current epoch seconds; injectable for tests.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        ttl_seconds: float = 900.0,
        default_timeframe: str = "1h",
        prerequisites: dict[str, str] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._registry = registry
        self.ttl_seconds = ttl_seconds
        self.default_timeframe = default_timeframe
        if prerequisites is None:
            prerequisites = DEFAULT_PREREQUISITES
        self._prerequisites = dict(prerequisites)
        self._clock = clock

    def prerequisite_for(self, tool_name: str) -> str | None:
        return self._prerequisites.get(tool_name)

    def derive_key(
        self, payload: dict[str, Any], run: OrchestrationRun
    ) -> tuple[str | None, str]:
        """Freshness key from call arguments first, then the run's state."""
        artifacts = run.artifacts
        generated = artifacts.generated_artifact or {}
        plan = artifacts.plan or {}
        cached = artifacts.supporting_data or {}
        symbol = _first(
            payload.get("symbol"),
            generated.get("asset"),
            plan.get("symbol"),
            cached.get("symbol"),
        )
        timeframe = (
            _first(
                payload.get("timeframe"),
                generated.get("timeframe"),
                plan.get("timeframe"),
                cached.get("timeframe"),
            )
            or self.default_timeframe
        )
        return symbol, timeframe

    def ensure(
        self,
        tool_name: str,
        payload: dict[str, Any],
        run: OrchestrationRun,
        context: PlannerContext,
        emitter: ProgressEmitter,
    ) -> dict[str, Any]:
        """Make supporting data fresh for ``tool_name``; enrich its payload.

        Returns:
            The payload to execute ``tool_name`` with.  It carries the
            supporting data as ``market_analysis`` when fresh data is
            available and the caller did not supply one.
        """
        prerequisite = self.prerequisite_for(tool_name)
        if prerequisite is None:
            return payload

        symbol, timeframe = self.derive_key(payload, run)
        if not symbol:
            logger.info(
                "[prerequisite] %s: no symbol to analyse, skipping %s",
                tool_name,
                prerequisite,
            )
            return payload

        now = self._clock()
        fresh = is_supporting_data_fresh(
            run.artifacts, symbol, timeframe, self.ttl_seconds, now
        )
        if fresh:
            logger.info(
                "[prerequisite] %s: cached %s for %s/%s is fresh, skipping",
                tool_name,
                prerequisite,
                symbol,
                timeframe,
            )
        else:
            try:
                self._refresh(
                    prerequisite,
                    tool_name,
                    symbol,
                    timeframe,
                    now,
                    run,
                    context,
                    emitter,
                )
            except PrerequisiteFailure as exc:
                logger.warning(
                    "[prerequisite] %s failed before %s, continuing "
                    "without it: %s",
                    prerequisite,
                    tool_name,
                    exc.message,
                )
                emitter.emit(
                    events.TOOL_CALL_FAILED,
                    tool=prerequisite,
                    trigger=tool_name,
                    auto=True,
                    message=exc.message,
                )
                return payload

        if payload.get("market_analysis"):
            return payload
        return {**payload, "market_analysis": run.artifacts.supporting_data}

    def _refresh(
        self,
        prerequisite: str,
        tool_name: str,
        symbol: str,
        timeframe: str,
        now: float,
        run: OrchestrationRun,
        context: PlannerContext,
        emitter: ProgressEmitter,
    ) -> None:
        tool = self._registry.get(prerequisite)
        if tool is None:
            raise PrerequisiteFailure(
                f"prerequisite tool {prerequisite} is not registered"
            )

        logger.info(
            "[prerequisite] refreshing %s for %s/%s before %s",
            prerequisite,
            symbol,
            timeframe,
            tool_name,
        )
        emitter.emit(
            events.TOOL_CALL_AUTO_TRIGGERED,
            tool=prerequisite,
            label=tool.label,
            trigger=tool_name,
            symbol=symbol,
            timeframe=timeframe,
        )
        where = {"tool": prerequisite}
        try:
            result = tool.execute(
                {
                    **run.context_payload(),
                    "symbol": symbol,
                    "timeframe": timeframe,
                }
            )
        except Exception as exc:
            raise PrerequisiteFailure(str(exc), where) from exc

        unusable = ("error", "needs_clarification")
        if not isinstance(result, dict) or result.get("status") in unusable:
            raise PrerequisiteFailure(
                f"{prerequisite} returned no usable result", where
            )

        apply_result(run.artifacts, prerequisite, result, now=now)
        if not is_supporting_data_fresh(
            run.artifacts, symbol, timeframe, self.ttl_seconds, now
        ):
            raise PrerequisiteFailure(
                f"{prerequisite} did not return data for "
                f"{symbol}/{timeframe}",
                where,
            )

        context.add_note(
            summarize_supporting_data(run.artifacts.supporting_data or {})
        )
        emitter.emit(
            events.TOOL_CALL_SUCCEEDED,
            tool=prerequisite,
            label=tool.label,
            auto=True,
            summary={"symbol": symbol, "timeframe": timeframe},
        )
