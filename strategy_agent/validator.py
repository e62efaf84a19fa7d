"""strategy_agent/validator.py

Quick post-generation sanity check.

After ``generate_strategy_code`` succeeds, a short low-fidelity simulation
runs once per run.  Its report is shown to the planner; when the simulation
produces fewer trades than the configured minimum, an advisory asks the
planner to revise the plan before going further.
"""

from __future__ import annotations

# Standard Library
import logging
from collections.abc import Callable
from typing import Any

# Local Modules
from strategy_agent import events
from strategy_agent.context import PlannerContext
from strategy_agent.errors import ValidatorFailure
from strategy_agent.events import ProgressEmitter
from strategy_agent.state import OrchestrationRun
from strategy_agent.tools import quick_backtest

logger = logging.getLogger(__name__)

Simulator = Callable[[dict[str, Any], dict[str, Any] | None], dict[str, Any]]

DEFAULT_TRIGGERS: frozenset[str] = frozenset({"generate_strategy_code"})


def format_report(report: dict[str, Any]) -> str:
    return (
        "Quick validation backtest: "
        f"trades={report.get('total_trades', 0)}, "
        f"win_rate={report.get('win_rate', 0)}, "
        f"total_return={report.get('total_return', 0)}, "
        f"max_drawdown={report.get('max_drawdown', 0)}"
    )


class PostActionValidator:
    """At-most-once quick simulation of the generated strategy.

    Args:
        min_trades: Trade count below which the planner is told to revise.
        simulate: ``simulate(plan, artifact) -> summary``; defaults to
            :func:`strategy_agent.tools.quick_backtest`.
        triggers: Tool names whose success runs the validator.
    """

    def __init__(
        self,
        min_trades: int = 3,
        simulate: Simulator = quick_backtest,
        triggers: frozenset[str] = DEFAULT_TRIGGERS,
    ) -> None:
        self.min_trades = min_trades
        self._simulate = simulate
        self._triggers = triggers

    def handles(self, tool_name: str) -> bool:
        return tool_name in self._triggers

    def maybe_validate(
        self,
        tool_name: str,
        run: OrchestrationRun,
        context: PlannerContext,
        emitter: ProgressEmitter,
    ) -> dict[str, Any] | None:
        """Run the check if ``tool_name`` triggers it and it has not run yet.

        Returns:
            The validation report, or ``None`` when skipped or failed.
        """
        artifacts = run.artifacts
        if not self.handles(tool_name) or artifacts.validation_performed:
            return None
        if artifacts.generated_artifact is None:
            return None

        artifacts.validation_performed = True
        try:
            report = self._run(artifacts.plan, artifacts.generated_artifact)
        except ValidatorFailure as exc:
            logger.warning(
                "[validator] quick backtest failed: %s",
                exc.message,
                exc_info=True,
            )
            emitter.emit(events.VALIDATOR_FAILED, message=exc.message)
            return None

        artifacts.validation_result = report
        trades = int(report.get("total_trades") or 0)
        logger.info(
            "[validator] quick backtest trades=%d min=%d",
            trades,
            self.min_trades,
        )
        context.add_note(format_report(report))
        below_minimum = trades < self.min_trades
        if below_minimum:
            context.add_note(
                f"The quick validation produced only {trades} trade(s), "
                f"fewer than the minimum of {self.min_trades}. Revise the "
                "strategy (loosen entry conditions or change the timeframe) "
                "with create_dsl before running a full backtest or saving it."
            )
        emitter.emit(
            events.VALIDATOR_SUMMARY,
            summary=report,
            below_minimum=below_minimum,
        )
        return report

    def _run(
        self, plan: dict[str, Any] | None, artifact: dict[str, Any]
    ) -> dict[str, Any]:
        target = dict(plan or {})
        try:
            report = self._simulate(target, artifact)
        except Exception as exc:
            raise ValidatorFailure(str(exc)) from exc
        if not isinstance(report, dict):
            kind = type(report).__name__
            raise ValidatorFailure(
                f"simulation returned {kind}, expected a dict"
            )
        return report
