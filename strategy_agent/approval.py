"""strategy_agent/approval.py

Human approval gate for tool calls.

Flow:
  1. The controller builds a :class:`PendingApproval` and calls
     :meth:`ApprovalGate.submit`.
  2. The gate stores the record, notifies subscribed listeners (HTTP layer,
     console prompt, ...) and blocks the calling thread on a one-shot future.
  3. An external actor calls :meth:`ApprovalGate.resolve` (or
     ``approve``/``reject``).  The first decision wins; later ones are
     dropped.
  4. If nothing arrives before the timeout, or the run is aborted, the
     record is resolved as ``TIMED_OUT``.

Only the waiting thread is suspended, so runs for other conversations keep
going while one waits for a human.
"""

from __future__ import annotations

# Standard Library
import dataclasses
import logging
import threading
import time
import uuid
from collections import Counter, OrderedDict
from collections.abc import Callable
from concurrent.futures import FIRST_COMPLETED, Future, wait
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any

# Local Modules
from strategy_agent.abort import AbortSignal
from strategy_agent.errors import ApprovalNotFound

logger = logging.getLogger(__name__)

_SECRET_MARKERS: tuple[str, ...] = ("password", "secret", "token", "api_key")


class ApprovalStatus(StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    TIMED_OUT = "timed_out"


@dataclasses.dataclass(slots=True, frozen=True)
class ApprovalDecision:
    """Outcome of an approval request.

    Attributes:
        status: Terminal status (never ``PENDING``).
        overrides: Parameter overrides merged into the tool payload on
            approval.
        feedback: Human-readable explanation, typically for rejections.
        reason: Why the gate resolved the request itself (``timeout`` or
            ``cancelled``); ``None`` for human decisions.
    """

    status: ApprovalStatus
    overrides: dict[str, Any] = dataclasses.field(default_factory=dict)
    feedback: str | None = None
    reason: str | None = None

    @property
    def approved(self) -> bool:
        return self.status is ApprovalStatus.APPROVED


@dataclasses.dataclass(slots=True)
class PendingApproval:
    """One tool call awaiting a human decision."""

    call_id: str
    conversation_id: str
    user_id: str
    tool_name: str
    tool_label: str
    reason: str
    params: dict[str, Any]
    tool_call_id: str | None = None
    created_at: float = dataclasses.field(default_factory=time.time)
    status: ApprovalStatus = ApprovalStatus.PENDING
    resolved_at: float | None = None
    decision: ApprovalDecision | None = None

    @classmethod
    def new(
        cls,
        *,
        conversation_id: str,
        user_id: str,
        tool_name: str,
        tool_label: str,
        reason: str,
        params: dict[str, Any],
        tool_call_id: str | None = None,
    ) -> PendingApproval:
        """Build a record with a fresh, globally unique call id."""
        call_id = f"tool_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"
        return cls(
            call_id=call_id,
            conversation_id=conversation_id,
            user_id=user_id,
            tool_name=tool_name,
            tool_label=tool_label,
            reason=reason,
            params=dict(params),
            tool_call_id=tool_call_id,
        )

    def to_dict(self) -> dict[str, Any]:
        """Public, display-safe view of the record."""
        return {
            "call_id": self.call_id,
            "conversation_id": self.conversation_id,
            "user_id": self.user_id,
            "tool_name": self.tool_name,
            "tool_label": self.tool_label,
            "reason": self.reason,
            "params": _sanitize_params(self.params),
            "tool_call_id": self.tool_call_id,
            "status": str(self.status),
            "created_at": _iso(self.created_at),
            "resolved_at": (
                _iso(self.resolved_at) if self.resolved_at else None
            ),
            "feedback": self.decision.feedback if self.decision else None,
        }


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def _sanitize_params(params: dict[str, Any]) -> dict[str, Any]:
    """Truncate large values and hide secrets for display."""
    sanitized: dict[str, Any] = {}
    for key, value in params.items():
        if any(marker in key.lower() for marker in _SECRET_MARKERS):
            sanitized[key] = "***hidden***"
        elif isinstance(value, str) and len(value) > 200:
            sanitized[key] = value[:200] + "..."
        elif isinstance(value, (list, dict)) and len(str(value)) > 500:
            kind = type(value).__name__
            sanitized[key] = f"<{kind} with {len(value)} items>"
        else:
            sanitized[key] = value
    return sanitized


ApprovalListener = Callable[[str, PendingApproval], None]


@dataclasses.dataclass(slots=True)
class _Entry:
    record: PendingApproval
    future: Future[ApprovalDecision]


class ApprovalGate:
    """Table of pending approvals keyed by call id.

    Args:
        timeout_seconds: Default wait before a request times out.
        history_size: Resolved records kept so late lookups and duplicate
            decisions still find them; at least 1.

    Raises:
        ValueError: If ``history_size`` is smaller than 1.
    """

    def __init__(
        self, timeout_seconds: float = 300.0, history_size: int = 500
    ) -> None:
        if history_size < 1:
            raise ValueError(
                f"history_size must be at least 1, got {history_size}"
            )
        self.timeout_seconds = timeout_seconds
        self._history_size = history_size
        self._pending: dict[str, _Entry] = {}
        self._resolved: OrderedDict[str, PendingApproval] = OrderedDict()
        self._outcomes: Counter[str] = Counter()
        self._listeners: list[ApprovalListener] = []
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Notification
    # ------------------------------------------------------------------

    def subscribe(self, listener: ApprovalListener) -> None:
        """Register ``listener(event, record)``.

        Events are ``requested`` and ``resolved``.
        """
        self._listeners.append(listener)

    def _publish(self, event: str, record: PendingApproval) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, record)
            except Exception as exc:
                logger.warning(
                    "[approval] listener error on %s for %s: %s",
                    event,
                    record.call_id,
                    exc,
                    exc_info=True,
                )

    # ------------------------------------------------------------------
    # Suspension
    # ------------------------------------------------------------------

    def submit(
        self,
        approval: PendingApproval,
        timeout: float | None = None,
        abort: AbortSignal | None = None,
    ) -> ApprovalDecision:
        """Register ``approval``, notify listeners and wait for the decision.

        Args:
            approval: Freshly built record in ``PENDING`` state.
            timeout: Seconds to wait; defaults to ``timeout_seconds``.
            abort: Run-level abort signal; aborting resolves the record as
                ``TIMED_OUT`` with reason ``cancelled``.

        Returns:
            The winning :class:`ApprovalDecision`.

        Raises:
            ValueError: If the call id is already pending or not
                ``PENDING``.
        """
        if approval.status is not ApprovalStatus.PENDING:
            raise ValueError(
                f"approval {approval.call_id} is already {approval.status}"
            )
        entry = _Entry(approval, Future())
        with self._lock:
            if approval.call_id in self._pending:
                raise ValueError(
                    f"approval {approval.call_id} is already pending"
                )
            self._pending[approval.call_id] = entry

        logger.info(
            "[approval] requested call_id=%s tool=%s conversation=%s",
            approval.call_id,
            approval.tool_name,
            approval.conversation_id,
        )
        self._publish("requested", approval)
        return self._await(entry, timeout, abort)

    def wait(
        self,
        call_id: str,
        timeout: float | None = None,
        abort: AbortSignal | None = None,
    ) -> ApprovalDecision:
        """Block until ``call_id`` is decided, times out or the run aborts.

        Raises:
            ApprovalNotFound: If ``call_id`` is neither pending nor among
                the remembered resolved records.
        """
        with self._lock:
            entry = self._pending.get(call_id)
            if entry is None:
                record = self._resolved.get(call_id)
                if record is None or record.decision is None:
                    raise ApprovalNotFound(call_id)
                return record.decision
        return self._await(entry, timeout, abort)

    def _await(
        self,
        entry: _Entry,
        timeout: float | None,
        abort: AbortSignal | None,
    ) -> ApprovalDecision:
        if not entry.future.done():
            waiters: list[Future[Any]] = [entry.future]
            if abort is not None:
                waiters.append(abort.future)
            limit = self.timeout_seconds if timeout is None else timeout
            wait(waiters, timeout=limit, return_when=FIRST_COMPLETED)

        if not entry.future.done():
            aborted = abort is not None and abort.is_set
            reason = "cancelled" if aborted else "timeout"
            # A human decision may still land first; the winner is returned.
            self._settle(
                entry.record.call_id,
                ApprovalDecision(ApprovalStatus.TIMED_OUT, reason=reason),
            )
        return entry.future.result()

    # ------------------------------------------------------------------
    # Resolution entry points
    # ------------------------------------------------------------------

    def resolve(self, call_id: str, decision: ApprovalDecision) -> bool:
        """Record a decision for ``call_id``.

        Args:
            call_id: The approval call id.
            decision: ``APPROVED`` or ``REJECTED`` (``TIMED_OUT`` is accepted
                for administrative expiry).

        Returns:
            ``True`` if this decision was applied, ``False`` if the call was
            already resolved (the earlier decision stands).

        Raises:
            ApprovalNotFound: If the gate has never seen ``call_id``.
            ValueError: If ``decision`` is ``PENDING``.
        """
        if decision.status is ApprovalStatus.PENDING:
            raise ValueError("a decision cannot be PENDING")
        return self._settle(call_id, decision)

    def approve(
        self, call_id: str, overrides: dict[str, Any] | None = None
    ) -> bool:
        decision = ApprovalDecision(
            ApprovalStatus.APPROVED, overrides=dict(overrides or {})
        )
        return self.resolve(call_id, decision)

    def reject(self, call_id: str, feedback: str | None = None) -> bool:
        decision = ApprovalDecision(ApprovalStatus.REJECTED, feedback=feedback)
        return self.resolve(call_id, decision)

    def _settle(self, call_id: str, decision: ApprovalDecision) -> bool:
        with self._lock:
            entry = self._pending.pop(call_id, None)
            if entry is None:
                if call_id in self._resolved:
                    logger.info(
                        "[approval] dropped late %s decision for call_id=%s",
                        decision.status,
                        call_id,
                    )
                    return False
                raise ApprovalNotFound(call_id)

            record = entry.record
            record.status = decision.status
            record.decision = decision
            record.resolved_at = time.time()
            self._remember(record)
            self._outcomes[str(decision.status)] += 1
            entry.future.set_result(decision)

        if decision.status is ApprovalStatus.TIMED_OUT:
            logger.warning(
                "[approval] timed out call_id=%s tool=%s reason=%s",
                call_id,
                record.tool_name,
                decision.reason,
            )
        else:
            logger.info(
                "[approval] %s call_id=%s tool=%s overrides=%s",
                decision.status,
                call_id,
                record.tool_name,
                bool(decision.overrides),
            )
        self._publish("resolved", record)
        return True

    def _remember(self, record: PendingApproval) -> None:
        self._resolved[record.call_id] = record
        while len(self._resolved) > self._history_size:
            self._resolved.popitem(last=False)

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def get(self, call_id: str) -> PendingApproval | None:
        with self._lock:
            entry = self._pending.get(call_id)
            if entry is not None:
                return entry.record
            return self._resolved.get(call_id)

    def list_pending(
        self, conversation_id: str | None = None
    ) -> list[PendingApproval]:
        with self._lock:
            records = [entry.record for entry in self._pending.values()]
        if conversation_id is None:
            return records
        return [r for r in records if r.conversation_id == conversation_id]

    def stats(self) -> dict[str, Any]:
        """Pending counts by conversation and tool, plus outcome totals."""
        with self._lock:
            records = [entry.record for entry in self._pending.values()]
            outcomes = dict(self._outcomes)
        oldest = min(records, key=lambda r: r.created_at, default=None)
        return {
            "total_pending": len(records),
            "by_conversation": dict(
                Counter(r.conversation_id for r in records)
            ),
            "by_tool": dict(Counter(r.tool_name for r in records)),
            "oldest_pending": oldest.call_id if oldest else None,
            "outcomes": outcomes,
        }
