"""tests/test_normalizer.py

Unit tests for reply construction (strategy_agent/normalizer.py).
"""

from __future__ import annotations

# Local Modules
from strategy_agent.errors import (
    ApprovalRejected,
    ApprovalTimedOut,
    ApprovalWorkflowFailure,
    ClarificationRequested,
    PlannerUnavailable,
    RunCancelled,
    ToolExecutionFailure,
    UnknownTool,
)
from strategy_agent.models import ActionTag, Termination
from strategy_agent.normalizer import (
    GENERIC_ACKNOWLEDGEMENT,
    best_effort_reply,
    build_fallback_summary,
    build_metadata,
    clarification_reply,
    error_reply,
    final_text_reply,
    observation_for_planner,
    parse_thinking,
    rejection_reply,
    summarize_tool_result,
)
from strategy_agent.state import Artifacts, OrchestrationRun


def _run() -> OrchestrationRun:
    return OrchestrationRun(
        conversation_id="c1", user_id="u1", user_message="m"
    )


class TestParseThinking:
    """Test suite for parse_thinking."""

    def test_extracts_segments(self) -> None:
        """Test thinking blocks are removed from the content and joined."""
        content, thinking = parse_thinking(
            "<thinking>first</thinking>Answer one.\n\n\n\n"
            "<THINKING> second </THINKING>Answer two."
        )
        assert content == "Answer one.\n\nAnswer two."
        assert thinking == "first\n\nsecond"

    def test_no_thinking(self) -> None:
        """Test plain text comes back unchanged with no thinking."""
        assert parse_thinking("  Hello  ") == ("Hello", None)

    def test_only_thinking(self) -> None:
        """Test text made only of thinking yields empty content."""
        assert parse_thinking("<thinking>hmm</thinking>") == ("", "hmm")


class TestSummaries:
    """Test suite for tool result summaries."""

    def test_backtest_summary_keys(self) -> None:
        """Test backtest summaries keep the headline metrics."""
        summary = summarize_tool_result(
            "run_backtest",
            {
                "backtest": {
                    "summary": {
                        "total_return": 5.0,
                        "total_trades": 12,
                        "equity_curve": [1, 2],
                    }
                }
            },
        )
        assert summary["total_return"] == 5.0
        assert summary["total_trades"] == 12
        assert "equity_curve" not in summary

    def test_plan_and_clarification(self) -> None:
        """Test plan summaries and clarification messages."""
        plan = summarize_tool_result(
            "create_dsl", {"dsl": {"strategy_name": "a", "symbol": "BTC/USDT"}}
        )
        assert plan == {
            "strategy_name": "a",
            "symbol": "BTC/USDT",
            "timeframe": None,
        }
        question = summarize_tool_result(
            "create_dsl",
            {"status": "needs_clarification", "message": "Which asset?"},
        )
        assert question == {"message": "Which asset?"}

    def test_unknown_shapes(self) -> None:
        """Test unrecognised results produce no summary."""
        assert summarize_tool_result("web_search", {"status": "ok"}) is None
        assert summarize_tool_result("create_dsl", "text") is None
        pending = {"backtest": "queued"}
        assert summarize_tool_result("run_backtest", pending) is None

    def test_observation_defaults_status(self) -> None:
        """Test the observation carries status, summary and raw result."""
        result = {"saved_strategy": {"strategy_id": "s1"}}
        observation = observation_for_planner("save_strategy", result)
        assert observation["status"] == "success"
        assert observation["summary"] == {"strategy_id": "s1", "status": None}
        assert observation["raw"] == {"saved_strategy": {"strategy_id": "s1"}}


class TestFallbackSummary:
    """Test suite for build_fallback_summary."""

    def test_empty_artifacts(self) -> None:
        """Test a run that produced nothing gets the generic line."""
        assert build_fallback_summary(Artifacts()) == GENERIC_ACKNOWLEDGEMENT

    def test_strategy_backtest_and_handle(self) -> None:
        """Test every produced artifact is mentioned."""
        text = build_fallback_summary(
            Artifacts(
                generated_artifact={
                    "name": "dip",
                    "asset": "BTC/USDT",
                    "timeframe": "1h",
                },
                backtest={
                    "summary": {
                        "total_return": 4.2,
                        "sharpe_ratio": 1.1,
                        "win_rate": 55.0,
                        "max_drawdown": -3.0,
                    }
                },
                persisted_handle={"strategy_id": "strategy_1"},
            )
        )
        assert "**dip** for BTC/USDT on 1h" in text
        assert "Return 4.20%" in text
        assert "Win Rate 55.0%" in text
        assert "Saved as strategy_1." in text

    def test_plan_and_quick_check(self) -> None:
        """Test a drafted plan and validation result are summarised."""
        text = build_fallback_summary(
            Artifacts(
                plan={
                    "strategy_name": "p",
                    "symbol": "ETH/USDT",
                    "timeframe": "4h",
                },
                validation_result={
                    "total_trades": 2,
                    "total_return": 0.5,
                    "win_rate": 50,
                },
            )
        )
        assert "plan **p** for ETH/USDT on 4h is drafted" in text
        assert "Quick check: 2 trades" in text


class TestReplies:
    """Test suite for the reply builders."""

    def test_final_text_reply(self) -> None:
        """Test final text is returned with thinking split into metadata."""
        reply = final_text_reply(
            _run(), "<thinking>plan</thinking>Here you go."
        )

        assert reply.message == "Here you go."
        assert reply.action is ActionTag.AGENT_REPLY
        assert reply.termination is Termination.FINAL_TEXT
        assert reply.metadata["thinking"] == "plan"
        assert reply.metadata["has_thinking"] is True

    def test_final_text_only_thinking_falls_back(self) -> None:
        """Test an answer with no visible text falls back to the summary."""
        reply = final_text_reply(_run(), "<thinking>just musing</thinking>")
        assert reply.message == GENERIC_ACKNOWLEDGEMENT
        assert reply.termination is Termination.FINAL_TEXT

    def test_best_effort_prefers_last_planner_text(self) -> None:
        """Test the last planner message wins over the artifact summary."""
        run = _run()
        run.last_planner_message = "Working on it."
        reply = best_effort_reply(run, Termination.ITERATIONS_EXHAUSTED)

        assert reply.message == "Working on it."
        assert reply.metadata["has_thinking"] is False
        assert reply.termination is Termination.ITERATIONS_EXHAUSTED

    def test_clarification_reply(self) -> None:
        """Test clarification replies relay the tool's question."""
        signal = ClarificationRequested("create_dsl", "Which asset?")
        reply = clarification_reply(_run(), signal)
        assert reply.message == "Which asset?"
        assert reply.action is ActionTag.CLARIFICATION_NEEDED
        assert reply.metadata["tool"] == "create_dsl"

    def test_rejection_with_feedback(self) -> None:
        """Test the approver's feedback becomes the reply text."""
        exc = ApprovalRejected("run_backtest", "Run Backtest", "not now", "t1")
        reply = rejection_reply(_run(), exc)
        assert reply.message == "not now"
        assert reply.action is ActionTag.TOOL_CALL_REJECTED
        assert reply.metadata["approval_status"] == "rejected"
        assert reply.metadata["call_id"] == "t1"

    def test_rejection_without_feedback(self) -> None:
        """Test a bare rejection names the tool."""
        exc = ApprovalRejected("run_backtest", "Run Backtest")
        reply = rejection_reply(_run(), exc)
        expected = "Understood, I won't run Run Backtest."
        assert reply.message.startswith(expected)

    def test_timeout_rejection(self) -> None:
        """Test timeouts share the rejection tag but say they expired."""
        exc = ApprovalTimedOut("save_strategy", "Save Strategy", call_id="t2")
        reply = rejection_reply(_run(), exc)
        assert reply.action is ActionTag.TOOL_CALL_REJECTED
        assert reply.termination is Termination.REJECTION
        assert reply.metadata["approval_status"] == "timed_out"
        assert "expired" in reply.message

    def test_error_replies_per_class(self) -> None:
        """Test each failure class maps to its own action tag."""
        cases = [
            (UnknownTool("foo"), ActionTag.UNKNOWN_TOOL),
            (
                ApprovalWorkflowFailure("run_backtest", "gate down"),
                ActionTag.APPROVAL_ERROR,
            ),
            (
                ToolExecutionFailure("run_backtest", "Run Backtest", "boom"),
                ActionTag.TOOL_CALL_ERROR,
            ),
            (PlannerUnavailable("HTTP 503"), ActionTag.PLANNER_ERROR),
            (RunCancelled("client gone"), ActionTag.RUN_CANCELLED),
            (ValueError("oops"), ActionTag.ORCHESTRATOR_ERROR),
        ]
        for exc, action in cases:
            reply = error_reply(_run(), exc)
            assert reply.action is action, exc
            assert reply.message

        assert "(foo)" in error_reply(_run(), UnknownTool("foo")).message
        planner = error_reply(_run(), PlannerUnavailable("x"))
        assert planner.metadata["stage"] == "planner"
        unexpected = error_reply(_run(), ValueError("oops"))
        assert unexpected.metadata["error"] == "oops"

    def test_metadata_echoes_artifacts(self) -> None:
        """Test every reply carries the run's artifacts and executed tools."""
        run = _run()
        run.iterations = 2
        run.artifacts.plan = {"symbol": "BTC/USDT"}
        run.artifacts.backtest = {"summary": {"total_trades": 4}}
        run.record_tool("create_dsl", {"dsl": {"strategy_name": "a"}})

        metadata = build_metadata(run)

        assert metadata["plan"] == {"symbol": "BTC/USDT"}
        assert metadata["backtest"] == {"total_trades": 4}
        assert metadata["executed_tools"][0]["name"] == "create_dsl"
        assert metadata["iterations"] == 2

        reply = error_reply(run, ValueError("x"))
        assert reply.metadata["plan"] == {"symbol": "BTC/USDT"}
        assert reply.to_dict()["metadata"]["action"] == "ORCHESTRATOR_ERROR"
