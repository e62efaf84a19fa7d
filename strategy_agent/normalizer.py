"""strategy_agent/normalizer.py

Turns the terminal state of a run into a single :class:`Reply`.

Every reply echoes the run's artifacts and a condensed executed-tool list
in its metadata, whichever path ended the run.
"""

from __future__ import annotations

# Standard Library
import logging
import re
from typing import Any

# Local Modules
from strategy_agent.errors import (
    ApprovalRejected,
    ApprovalTimedOut,
    ApprovalWorkflowFailure,
    ClarificationRequested,
    OrchestrationError,
    PlannerUnavailable,
    RunCancelled,
    ToolExecutionFailure,
    UnknownTool,
)
from strategy_agent.models import ActionTag, Reply, Termination
from strategy_agent.state import Artifacts, OrchestrationRun

logger = logging.getLogger(__name__)

_THINKING_PATTERN: re.Pattern[str] = re.compile(
    r"<thinking>(.*?)</thinking>", re.IGNORECASE | re.DOTALL
)
_BLANK_LINES: re.Pattern[str] = re.compile(r"\n{3,}")

GENERIC_ACKNOWLEDGEMENT = (
    "Let me know how I can assist further with your trading ideas!"
)


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------


def parse_thinking(text: str) -> tuple[str, str | None]:
    """Split embedded ``<thinking>`` segments out of planner text.

    Args:
        text: Raw planner text.

    Returns:
        ``(content, thinking)`` where ``thinking`` joins every segment found,
        or is ``None`` when there were none.
    """
    segments = [
        s.strip() for s in _THINKING_PATTERN.findall(text or "") if s.strip()
    ]
    content = _THINKING_PATTERN.sub("", text or "")
    content = _BLANK_LINES.sub("\n\n", content).strip()
    return content, ("\n\n".join(segments) if segments else None)


def _fmt(value: Any, digits: int = 2) -> str:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return f"{value:.{digits}f}"
    return str(value)


# ---------------------------------------------------------------------------
# Tool result summaries
# ---------------------------------------------------------------------------


_BACKTEST_SUMMARY_KEYS: tuple[str, ...] = (
    "total_return",
    "sharpe_ratio",
    "win_rate",
    "max_drawdown",
    "total_trades",
    "final_equity",
    "initial_capital",
    "symbol",
    "timeframe",
)


def summarize_tool_result(
    tool_name: str, result: Any
) -> dict[str, Any] | None:
    """Compact, tool-specific view of a result for events and replies."""
    if not isinstance(result, dict):
        return None

    if tool_name == "create_dsl" and isinstance(result.get("dsl"), dict):
        dsl = result["dsl"]
        return {
            "strategy_name": dsl.get("strategy_name"),
            "symbol": dsl.get("symbol"),
            "timeframe": dsl.get("timeframe"),
        }
    strategy = result.get("strategy")
    if tool_name == "generate_strategy_code" and isinstance(strategy, dict):
        return {
            "strategy_name": strategy.get("name"),
            "timeframe": strategy.get("timeframe"),
        }
    backtest = result.get("backtest")
    summary = backtest.get("summary") if isinstance(backtest, dict) else None
    if tool_name == "run_backtest" and isinstance(summary, dict):
        return {key: summary.get(key) for key in _BACKTEST_SUMMARY_KEYS}
    saved = result.get("saved_strategy")
    if tool_name == "save_strategy" and isinstance(saved, dict):
        return {
            "strategy_id": saved.get("strategy_id"),
            "status": saved.get("status"),
        }
    analysis = result.get("analysis")
    if tool_name == "analyze_market_data" and isinstance(analysis, dict):
        overview = analysis.get("summary") or {}
        recommendation = overview.get("recommendation") or {}
        return {
            "symbol": analysis.get("symbol"),
            "timeframe": analysis.get("timeframe"),
            "latest_price": analysis.get("latest_price"),
            "trend": overview.get("trend"),
            "recommendation": recommendation.get("action"),
        }
    if result.get("status") == "needs_clarification" and result.get(
        "message"
    ):
        return {"message": result["message"]}
    return None


def observation_for_planner(
    tool_name: str, result: dict[str, Any]
) -> dict[str, Any]:
    """Content of the ``tool`` message the planner sees for a result."""
    return {
        "status": result.get("status") or "success",
        "summary": summarize_tool_result(tool_name, result),
        "raw": result,
    }


# ---------------------------------------------------------------------------
# Metadata
# ---------------------------------------------------------------------------


def build_metadata(run: OrchestrationRun) -> dict[str, Any]:
    """Artifact echo shared by every reply."""
    artifacts = run.artifacts
    return {
        "plan": artifacts.plan,
        "generated_artifact": artifacts.generated_artifact,
        "validation_result": artifacts.validation_result,
        "backtest": (artifacts.backtest or {}).get("summary"),
        "persisted_handle": artifacts.persisted_handle,
        "executed_tools": [
            {
                "name": entry.name,
                "summary": summarize_tool_result(entry.name, entry.result),
            }
            for entry in run.executed_tools
        ],
        "iterations": run.iterations,
    }


def build_fallback_summary(artifacts: Artifacts) -> str:
    """Best-effort text assembled from whatever the run produced."""
    lines: list[str] = []
    generated = artifacts.generated_artifact
    plan = artifacts.plan
    if generated:
        lines.append(
            f"Strategy **{generated.get('name')}** for "
            f"{generated.get('asset')} on {generated.get('timeframe')} "
            "is ready."
        )
    elif plan:
        lines.append(
            f"Strategy plan **{plan.get('strategy_name')}** for "
            f"{plan.get('symbol')} on {plan.get('timeframe')} is drafted."
        )

    backtest = (artifacts.backtest or {}).get("summary")
    if backtest:
        lines.append(
            f"Backtest: Return {_fmt(backtest.get('total_return'))}% | "
            f"Sharpe {_fmt(backtest.get('sharpe_ratio'))} | "
            f"Win Rate {_fmt(backtest.get('win_rate'), 1)}% | "
            f"Max DD {_fmt(backtest.get('max_drawdown'))}%"
        )
    elif artifacts.validation_result:
        check = artifacts.validation_result
        lines.append(
            f"Quick check: {check.get('total_trades', 0)} trades, "
            f"return {_fmt(check.get('total_return'))}%, "
            f"win rate {_fmt(check.get('win_rate'), 1)}%."
        )

    if artifacts.persisted_handle:
        strategy_id = artifacts.persisted_handle.get("strategy_id")
        lines.append(f"Saved as {strategy_id}.")
    if not lines:
        lines.append(GENERIC_ACKNOWLEDGEMENT)
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Reply builders
# ---------------------------------------------------------------------------


def _reply(
    run: OrchestrationRun,
    message: str,
    action: ActionTag,
    termination: Termination,
    thinking: str | None = None,
    **extra: Any,
) -> Reply:
    metadata = {
        "thinking": thinking,
        "has_thinking": thinking is not None,
        **build_metadata(run),
        **extra,
    }
    logger.info(
        "[normalizer] conversation=%s action=%s termination=%s",
        run.conversation_id,
        action,
        termination,
    )
    return Reply(
        message=message,
        action=action,
        termination=termination,
        metadata=metadata,
    )


def final_text_reply(run: OrchestrationRun, text: str) -> Reply:
    content, thinking = parse_thinking(text)
    if not content:
        return best_effort_reply(run, Termination.FINAL_TEXT)
    return _reply(
        run, content, ActionTag.AGENT_REPLY, Termination.FINAL_TEXT, thinking
    )


def best_effort_reply(
    run: OrchestrationRun, termination: Termination
) -> Reply:
    """Reply for runs that ended without a usable final answer.

    Uses the planner's last free text when there is one, otherwise a
    summary of the artifacts.
    """
    content, thinking = parse_thinking(run.last_planner_message or "")
    if not content:
        content = build_fallback_summary(run.artifacts)
    return _reply(run, content, ActionTag.AGENT_REPLY, termination, thinking)


def clarification_reply(
    run: OrchestrationRun, signal: ClarificationRequested
) -> Reply:
    return _reply(
        run,
        signal.message,
        ActionTag.CLARIFICATION_NEEDED,
        Termination.CLARIFICATION,
        tool=signal.tool_name,
    )


def rejection_reply(run: OrchestrationRun, exc: ApprovalRejected) -> Reply:
    timed_out = isinstance(exc, ApprovalTimedOut)
    if exc.feedback:
        message = exc.feedback
    elif timed_out:
        message = (
            f"The approval request for {exc.label} expired before anyone "
            "answered, so I didn't run it. Ask again whenever you're ready."
        )
    else:
        message = (
            f"Understood, I won't run {exc.label}. Let me know if you'd "
            "like to try something else."
        )
    return _reply(
        run,
        message,
        ActionTag.TOOL_CALL_REJECTED,
        Termination.REJECTION,
        tool=exc.tool_name,
        call_id=exc.call_id,
        approval_status="timed_out" if timed_out else "rejected",
    )


def cancelled_reply(run: OrchestrationRun, reason: str | None = None) -> Reply:
    return _reply(
        run,
        "The request was cancelled before it finished.",
        ActionTag.RUN_CANCELLED,
        Termination.CANCELLED,
        error=reason or "cancelled",
    )


def error_reply(run: OrchestrationRun, exc: Exception) -> Reply:
    """Class-specific reply for a terminal failure."""
    if isinstance(exc, RunCancelled):
        return cancelled_reply(run, exc.message)
    if isinstance(exc, UnknownTool):
        return _reply(
            run,
            f"I was asked to use an unknown tool ({exc.tool_name}). "
            "Could you restate what you need?",
            ActionTag.UNKNOWN_TOOL,
            Termination.ERROR,
            tool=exc.tool_name,
            error=exc.message,
        )
    if isinstance(exc, ApprovalWorkflowFailure):
        return _reply(
            run,
            f"I couldn't request approval to run {exc.tool_name}: "
            f"{exc.reason}",
            ActionTag.APPROVAL_ERROR,
            Termination.ERROR,
            tool=exc.tool_name,
            error=exc.reason,
        )
    if isinstance(exc, ToolExecutionFailure):
        return _reply(
            run,
            f"I hit an error while running {exc.label}: {exc.reason}",
            ActionTag.TOOL_CALL_ERROR,
            Termination.ERROR,
            tool=exc.tool_name,
            error=exc.reason,
        )
    if isinstance(exc, PlannerUnavailable):
        return _reply(
            run,
            "I'm sorry, I couldn't reach the planning service to work on "
            f"your request ({exc.message}). Please try again in a moment.",
            ActionTag.PLANNER_ERROR,
            Termination.ERROR,
            stage="planner",
            error=exc.message,
        )
    detail = exc.message if isinstance(exc, OrchestrationError) else str(exc)
    return _reply(
        run,
        "I encountered an error while processing your request. "
        "Please try again.",
        ActionTag.ORCHESTRATOR_ERROR,
        Termination.ERROR,
        error=detail,
    )
