"""strategy_agent/controller.py

Plan / act / observe loop between the planner and the tool registry.

Pipeline per request:
  1. Load prior turns (request history or the history provider) and build
     the planner context around the system prompt.
  2. Up to ``max_iterations`` rounds:
       a. Ask the planner for the next step with every registered tool
          exposed.  A planner failure ends the run immediately.
       b. No tool calls + text: final answer.  No tool calls, no text and a
          ``stop`` finish: best-effort reply.  Otherwise try another round.
       c. Tool calls run one after another in the order requested:
          registry lookup, argument parsing, payload merge, approval gate,
          prerequisite injection, execution, reducer, post-action validator.
  3. Rounds exhausted: best-effort summary of the artifacts.

Terminal failures raise out of the round loop and are mapped to a reply by
:mod:`strategy_agent.normalizer`; non-fatal ones are logged where they occur.
"""

from __future__ import annotations

# Standard Library
import json
import logging
import warnings
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from typing import Any

# Local Modules
from strategy_agent import events, normalizer
from strategy_agent.abort import AbortSignal
from strategy_agent.approval import (
    ApprovalGate,
    ApprovalStatus,
    PendingApproval,
)
from strategy_agent.config import OrchestratorSettings, cfg
from strategy_agent.context import PlannerContext
from strategy_agent.errors import (
    ApprovalRejected,
    ApprovalTimedOut,
    ApprovalWorkflowFailure,
    ArgumentParseWarning,
    ClarificationRequested,
    OrchestrationError,
    PlannerUnavailable,
    RunCancelled,
    ToolExecutionFailure,
    UnknownTool,
)
from strategy_agent.events import ProgressEmitter, ProgressSink
from strategy_agent.history import HistoryProvider, format_history
from strategy_agent.models import (
    PlannerResponse,
    PlannerToolCall,
    Reply,
    RunRequest,
    SamplingConfig,
    Termination,
)
from strategy_agent.planner import Planner, build_planner
from strategy_agent.prerequisites import PrerequisiteInjector
from strategy_agent.prompts import build_system_prompt
from strategy_agent.registry import ToolDefinition, ToolRegistry
from strategy_agent.state import OrchestrationRun, apply_result
from strategy_agent.tools import get_default_registry
from strategy_agent.validator import PostActionValidator

logger = logging.getLogger(__name__)


def parse_arguments(
    raw: str | dict[str, Any] | None, tool_name: str
) -> dict[str, Any]:
    """Decode planner tool arguments, degrading to ``{}`` when malformed.

    Args:
        raw: JSON string, decoded dict or ``None``.
        tool_name: Tool the arguments belong to (for the warning).

    Returns:
        The argument dict.
    """
    if raw is None or raw == "":
        return {}
    if isinstance(raw, dict):
        return dict(raw)
    try:
        parsed = json.loads(raw)
    except (TypeError, json.JSONDecodeError) as exc:
        _warn_arguments(tool_name, f"could not parse arguments ({exc})")
        return {}
    if not isinstance(parsed, dict):
        kind = type(parsed).__name__
        _warn_arguments(tool_name, f"expected an object, got {kind}")
        return {}
    return parsed


def _warn_arguments(tool_name: str, detail: str) -> None:
    message = f"{tool_name}: {detail}; using empty arguments"
    logger.warning("[controller] %s", message)
    warnings.warn(message, ArgumentParseWarning, stacklevel=3)


class OrchestrationController:
    """Drives one run per :meth:`run` call.

    The controller itself is stateless between runs and safe to share across
    threads; each run owns its :class:`OrchestrationRun`.

    Args:
        settings: Runtime settings; defaults to the module-level ``cfg``.
        registry: Tool registry; defaults to the process-wide default tools.
        planner: Planner client; built from ``settings`` when omitted.
        gate: Approval gate shared with the decision channel.
        history_provider: Supplier of prior turns when a request carries
            none.
        prerequisites: Prerequisite injector.
        validator: Post-action validator.
    """

    def __init__(
        self,
        settings: OrchestratorSettings | None = None,
        registry: ToolRegistry | None = None,
        planner: Planner | None = None,
        gate: ApprovalGate | None = None,
        history_provider: HistoryProvider | None = None,
        prerequisites: PrerequisiteInjector | None = None,
        validator: PostActionValidator | None = None,
    ) -> None:
        self.settings = settings or cfg
        self.registry = (
            registry if registry is not None else get_default_registry()
        )
        self.planner = planner or build_planner(self.settings)
        self.gate = gate or ApprovalGate(
            timeout_seconds=self.settings.approval_timeout_seconds,
            history_size=self.settings.approval_history_size,
        )
        self.history_provider = history_provider
        self.prerequisites = prerequisites or PrerequisiteInjector(
            self.registry,
            ttl_seconds=self.settings.supporting_data_ttl_seconds,
            default_timeframe=self.settings.default_timeframe,
        )
        self.validator = validator or PostActionValidator(
            min_trades=self.settings.validator_min_trades
        )
        self.sampling = SamplingConfig(
            temperature=self.settings.planner_temperature,
            max_tokens=self.settings.planner_max_tokens,
        )
        self._planner_pool = ThreadPoolExecutor(
            max_workers=4, thread_name_prefix="planner"
        )

    def close(self) -> None:
        self._planner_pool.shutdown(wait=False, cancel_futures=True)

    # ------------------------------------------------------------------
    # Public entry point
    # ------------------------------------------------------------------

    def run(
        self,
        request: RunRequest,
        on_event: ProgressSink | None = None,
        abort: AbortSignal | None = None,
    ) -> Reply:
        """Process one user request to a single structured reply.

        Args:
            request: The incoming request.
            on_event: Optional progress sink ``(event, payload)``.
            abort: Run-level abort signal; triggering it cancels the planner
                wait or approval wait in progress and stops further rounds.

        Returns:
            The :class:`Reply`.  Failures are reported in the reply, never
            raised.
        """
        abort = abort or AbortSignal()
        emitter = ProgressEmitter(on_event, request.conversation_id)
        run = OrchestrationRun(
            conversation_id=request.conversation_id,
            user_id=request.user_id,
            user_message=request.message,
            history=tuple(self._load_history(request)),
        )
        logger.info("=== New run conversation=%s ===", run.conversation_id)
        logger.info("Prompt: %s", request.message)
        if run.history:
            logger.info("History turns: %d", len(run.history))

        try:
            reply = self._loop(run, emitter, abort)
        except ClarificationRequested as signal:
            logger.info(
                "[controller] %s needs clarification", signal.tool_name
            )
            reply = normalizer.clarification_reply(run, signal)
        except ApprovalRejected as exc:
            logger.info(
                "[controller] %s not approved: %s",
                exc.tool_name,
                exc.message,
            )
            reply = normalizer.rejection_reply(run, exc)
        except RunCancelled as exc:
            logger.info("[controller] run cancelled: %s", exc.message)
            reply = normalizer.cancelled_reply(run, exc.message)
        except OrchestrationError as exc:
            logger.error(
                "[controller] run failed (%s): %s",
                type(exc).__name__,
                exc.message,
            )
            reply = normalizer.error_reply(run, exc)
        except Exception as exc:
            logger.error(
                "[controller] unexpected error: %s", exc, exc_info=True
            )
            reply = normalizer.error_reply(run, exc)

        logger.info(
            "=== Run complete action=%s termination=%s ===",
            reply.action,
            reply.termination,
        )
        return reply

    # ------------------------------------------------------------------
    # Round loop
    # ------------------------------------------------------------------

    def _loop(
        self,
        run: OrchestrationRun,
        emitter: ProgressEmitter,
        abort: AbortSignal,
    ) -> Reply:
        system_prompt = build_system_prompt(
            self.registry.names(), min_trades=self.validator.min_trades
        )
        context = PlannerContext(
            system_prompt, run.history, run.user_message
        )
        max_iterations = self.settings.max_iterations

        for round_no in range(1, max_iterations + 1):
            self._check_abort(abort)
            run.iterations = round_no
            logger.info(
                "[controller] round %d/%d conversation=%s",
                round_no,
                max_iterations,
                run.conversation_id,
            )

            response = self._plan(context, abort)
            run.last_planner_message = response.text

            if response.tool_calls:
                context.add_assistant_turn(response.text, response.tool_calls)
                for call in response.tool_calls:
                    self._dispatch(call, run, context, emitter, abort)
                context.flush_notes()
                continue

            if response.text and response.text.strip():
                return normalizer.final_text_reply(run, response.text)

            if response.finish_reason == "stop":
                logger.info(
                    "[controller] planner stopped without text, summarising"
                )
                return normalizer.best_effort_reply(
                    run, Termination.PLANNER_STOPPED
                )

            logger.info(
                "[controller] empty planner response (finish_reason=%s), "
                "next round",
                response.finish_reason,
            )

        logger.warning(
            "[controller] exhausted %d rounds without a final answer",
            max_iterations,
        )
        return normalizer.best_effort_reply(
            run, Termination.ITERATIONS_EXHAUSTED
        )

    def _plan(
        self, context: PlannerContext, abort: AbortSignal
    ) -> PlannerResponse:
        """Call the planner on a worker thread, racing the abort signal."""
        limit = self.settings.planner_timeout_seconds
        future = self._planner_pool.submit(
            self.planner.complete,
            context.messages,
            self.registry.tool_schemas(),
            self.sampling,
        )
        wait(
            [future, abort.future],
            timeout=limit,
            return_when=FIRST_COMPLETED,
        )
        if abort.is_set:
            future.cancel()
            raise RunCancelled(abort.reason or "cancelled")
        if not future.done():
            future.cancel()
            raise PlannerUnavailable(
                f"planner did not answer within {limit:g}s"
            )
        try:
            return future.result()
        except PlannerUnavailable:
            raise
        except Exception as exc:
            logger.error("[controller] planner error: %s", exc, exc_info=True)
            raise PlannerUnavailable(str(exc)) from exc

    # ------------------------------------------------------------------
    # Tool dispatch
    # ------------------------------------------------------------------

    def _dispatch(
        self,
        call: PlannerToolCall,
        run: OrchestrationRun,
        context: PlannerContext,
        emitter: ProgressEmitter,
        abort: AbortSignal,
    ) -> None:
        self._check_abort(abort)
        tool = self.registry.get(call.name)
        if tool is None:
            logger.error(
                "[controller] planner requested unknown tool %r", call.name
            )
            emitter.emit(
                events.TOOL_CALL_FAILED,
                call_id=call.id,
                tool=call.name,
                message=f"Tool {call.name} is not available.",
            )
            raise UnknownTool(call.name)

        logger.info(
            "[controller] dispatch tool=%s call_id=%s", tool.name, call.id
        )
        args = parse_arguments(call.raw_arguments, tool.name)
        payload = {**args, **run.context_payload()}

        if tool.requires_approval:
            payload = self._request_approval(
                tool, call.id, payload, run, emitter, abort
            )
            self._check_abort(abort)

        payload = self.prerequisites.ensure(
            tool.name, payload, run, context, emitter
        )
        self._check_abort(abort)

        emitter.emit(
            events.TOOL_CALL_STARTED,
            call_id=call.id,
            tool=tool.name,
            label=tool.label,
            reason=tool.description,
        )
        result = self._execute(tool, call.id, payload, emitter)

        apply_result(run.artifacts, tool.name, result)
        run.record_tool(tool.name, result)
        self.validator.maybe_validate(tool.name, run, context, emitter)

        emitter.emit(
            events.TOOL_CALL_SUCCEEDED,
            call_id=call.id,
            tool=tool.name,
            label=tool.label,
            summary=normalizer.summarize_tool_result(tool.name, result),
        )
        context.add_tool_result(
            call, normalizer.observation_for_planner(tool.name, result)
        )

    def _execute(
        self,
        tool: ToolDefinition,
        call_id: str,
        payload: dict[str, Any],
        emitter: ProgressEmitter,
    ) -> dict[str, Any]:
        def _failed(reason: str) -> ToolExecutionFailure:
            emitter.emit(
                events.TOOL_CALL_FAILED,
                call_id=call_id,
                tool=tool.name,
                label=tool.label,
                message=reason,
            )
            return ToolExecutionFailure(tool.name, tool.label, reason)

        try:
            result = tool.execute(payload)
        except Exception as exc:
            logger.error(
                "[controller] tool %s failed: %s",
                tool.name,
                exc,
                exc_info=True,
            )
            raise _failed(str(exc)) from exc

        if not isinstance(result, dict):
            kind = type(result).__name__
            raise _failed(f"returned {kind} instead of a result object")

        status = result.get("status")
        if status == "needs_clarification":
            emitter.emit(
                events.TOOL_CALL_CANCELLED,
                call_id=call_id,
                tool=tool.name,
                status="needs_clarification",
            )
            message = str(
                result.get("message")
                or f"{tool.label} needs a bit more information."
            )
            raise ClarificationRequested(tool.name, message)
        if status == "error":
            reason = str(
                result.get("message")
                or result.get("error")
                or "the tool reported an error"
            )
            logger.error(
                "[controller] tool %s reported failure: %s", tool.name, reason
            )
            raise _failed(reason)
        return result

    def _request_approval(
        self,
        tool: ToolDefinition,
        tool_call_id: str,
        payload: dict[str, Any],
        run: OrchestrationRun,
        emitter: ProgressEmitter,
        abort: AbortSignal,
    ) -> dict[str, Any]:
        """Suspend on the approval gate; return the payload to execute."""
        approval = PendingApproval.new(
            conversation_id=run.conversation_id,
            user_id=run.user_id,
            tool_name=tool.name,
            tool_label=tool.label,
            reason=tool.description,
            params=payload,
            tool_call_id=tool_call_id,
        )
        emitter.emit(
            events.TOOL_CALL_REQUESTED,
            call_id=approval.call_id,
            tool=tool.name,
            label=tool.label,
            reason=tool.description,
            params=approval.to_dict()["params"],
        )
        try:
            decision = self.gate.submit(approval, abort=abort)
        except Exception as exc:
            logger.error(
                "[controller] approval workflow failed for %s: %s",
                tool.name,
                exc,
                exc_info=True,
            )
            raise ApprovalWorkflowFailure(
                tool.name, f"approval workflow failed: {exc}"
            ) from exc

        if decision.approved:
            emitter.emit(
                events.TOOL_CALL_APPROVED,
                call_id=approval.call_id,
                tool=tool.name,
                overrides=sorted(decision.overrides),
            )
            return {**payload, **decision.overrides, **run.context_payload()}

        if decision.status is ApprovalStatus.TIMED_OUT:
            if decision.reason == "cancelled" or abort.is_set:
                raise RunCancelled(abort.reason or "cancelled")
            emitter.emit(
                events.TOOL_CALL_TIMED_OUT,
                call_id=approval.call_id,
                tool=tool.name,
            )
            raise ApprovalTimedOut(
                tool.name, tool.label, decision.feedback, approval.call_id
            )

        emitter.emit(
            events.TOOL_CALL_REJECTED,
            call_id=approval.call_id,
            tool=tool.name,
            feedback=decision.feedback,
        )
        raise ApprovalRejected(
            tool.name, tool.label, decision.feedback, approval.call_id
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _load_history(self, request: RunRequest) -> list[dict[str, str]]:
        limit = self.settings.history_limit
        if request.history is not None:
            return format_history(request.history, limit)
        if self.history_provider is None:
            return []
        try:
            turns = self.history_provider.get_history(
                request.conversation_id, limit
            )
        except Exception as exc:
            logger.warning(
                "[controller] history provider failed, continuing without "
                "history: %s",
                exc,
                exc_info=True,
            )
            return []
        return format_history(turns, limit)

    @staticmethod
    def _check_abort(abort: AbortSignal) -> None:
        if abort.is_set:
            raise RunCancelled(abort.reason or "cancelled")
