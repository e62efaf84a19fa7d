"""strategy_agent/api.py

FastAPI HTTP interface for the orchestration controller.

Endpoints:
  GET  /health                        - liveness check
  POST /run                           - blocking run, reply + progress events
  POST /run/stream                    - Server-Sent Events stream of the run
  GET  /tool-calls                    - pending approval requests
  GET  /tool-calls/stats              - approval gate statistics
  GET  /tool-calls/{call_id}          - one approval record
  POST /tool-calls/{call_id}/approve  - approve, optionally with overrides
  POST /tool-calls/{call_id}/reject   - reject, optionally with feedback

Every run executes on its own thread.  A run may wait on the approval gate
for up to ``APPROVAL_TIMEOUT_SECONDS``, and waiting runs must not hold back
runs for other conversations.
"""

from __future__ import annotations

# Standard Library
import asyncio
import json
import logging
import queue
import threading
from collections.abc import AsyncGenerator, Callable
from typing import Any

# Third-Party Libraries
import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

# Local Modules
from strategy_agent.abort import AbortSignal
from strategy_agent.approval import ApprovalGate
from strategy_agent.config import cfg, configure_logging
from strategy_agent.controller import OrchestrationController
from strategy_agent.errors import ApprovalNotFound
from strategy_agent.history import InMemoryHistoryStore
from strategy_agent.models import Reply, RunRequest

logger = logging.getLogger(__name__)

_history_store = InMemoryHistoryStore(
    max_messages=cfg.history_limit * 2,
    max_conversations=cfg.history_max_conversations,
)
_controller: OrchestrationController | None = None
_controller_lock = threading.Lock()


def get_controller() -> OrchestrationController:
    """Process-wide controller, built on first request."""
    global _controller
    with _controller_lock:
        if _controller is None:
            _controller = OrchestrationController(
                settings=cfg, history_provider=_history_store
            )
        return _controller


def get_gate(
    controller: OrchestrationController = Depends(get_controller),
) -> ApprovalGate:
    return controller.gate


def get_history_store() -> InMemoryHistoryStore:
    return _history_store


# ---------------------------------------------------------------------------
# Run threads
# ---------------------------------------------------------------------------


def _settle(
    future: asyncio.Future[Reply],
    result: Reply | None,
    error: BaseException | None,
) -> None:
    if future.done():
        return
    if error is not None:
        future.set_exception(error)
    else:
        future.set_result(result)


async def _run_on_own_thread(target: Callable[[], Reply]) -> Reply:
    """Execute ``target`` on a dedicated daemon thread and await its reply."""
    loop = asyncio.get_running_loop()
    future: asyncio.Future[Reply] = loop.create_future()

    def _worker() -> None:
        try:
            reply = target()
        except Exception as exc:
            loop.call_soon_threadsafe(_settle, future, None, exc)
        else:
            loop.call_soon_threadsafe(_settle, future, reply, None)

    threading.Thread(
        target=_worker, name="orchestrator-run", daemon=True
    ).start()
    return await future


# ---------------------------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------------------------
app = FastAPI(
    title="Strategy Agent",
    version="0.1.0",
    description=(
        "Tool orchestration API. Submit a message, follow tool progress and "
        "approve or reject impactful tool calls."
    ),
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class RunBody(BaseModel):
    conversation_id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    message: str = Field(
        ..., min_length=1, description="The new user message."
    )
    history: list[dict[str, Any]] | None = Field(
        None,
        description="Prior turns. When omitted the server-side history is "
        "used.",
    )


class ProgressEvent(BaseModel):
    event: str
    payload: dict[str, Any]


class RunResponse(BaseModel):
    message: str
    metadata: dict[str, Any]
    events: list[ProgressEvent]


class ApproveBody(BaseModel):
    overrides: dict[str, Any] = Field(default_factory=dict)


class RejectBody(BaseModel):
    feedback: str | None = None


class DecisionResponse(BaseModel):
    call_id: str
    applied: bool
    status: str


def _to_request(body: RunBody) -> RunRequest:
    return RunRequest(
        conversation_id=body.conversation_id,
        user_id=body.user_id,
        message=body.message,
        history=body.history,
    )


def _remember(
    store: InMemoryHistoryStore, body: RunBody, reply: Reply
) -> None:
    if body.history is not None:
        return
    store.add_message(body.conversation_id, "user", body.message)
    store.add_message(body.conversation_id, "assistant", reply.message)


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@app.get("/health", tags=["meta"])
async def health() -> dict[str, str]:
    """Liveness check."""
    return {"status": "ok", "server": "strategy-agent"}


@app.post("/run", response_model=RunResponse, tags=["orchestrator"])
async def run(
    body: RunBody,
    controller: OrchestrationController = Depends(get_controller),
    store: InMemoryHistoryStore = Depends(get_history_store),
) -> RunResponse:
    """Run a request to completion and return the reply plus events.

    Blocks until the run ends, including any wait for a human approval.
    """
    collected: list[ProgressEvent] = []

    def _on_event(event: str, payload: dict[str, Any]) -> None:
        collected.append(ProgressEvent(event=event, payload=payload))

    reply = await _run_on_own_thread(
        lambda: controller.run(_to_request(body), on_event=_on_event)
    )
    _remember(store, body, reply)
    result = reply.to_dict()
    return RunResponse(
        message=result["message"],
        metadata=result["metadata"],
        events=collected,
    )


@app.post("/run/stream", tags=["orchestrator"])
async def run_stream(
    body: RunBody,
    request: Request,
    controller: OrchestrationController = Depends(get_controller),
    store: InMemoryHistoryStore = Depends(get_history_store),
) -> StreamingResponse:
    """Stream progress events as Server-Sent Events while the run executes.

    Each SSE event carries a JSON payload:

    - ``{"type": "event", "event": "<name>", ...payload}`` - progress event
    - ``{"type": "reply", "message": "...", "metadata": {...}}`` - the reply
    - ``{"type": "error", "content": "..."}`` - if the controller raised

    Disconnecting the client aborts the run; a pending approval for it is
    resolved as timed out.
    """
    msg_queue: queue.Queue[dict[str, Any] | None] = queue.Queue()
    abort = AbortSignal()

    def _on_event(event: str, payload: dict[str, Any]) -> None:
        msg_queue.put({"type": "event", "event": event, **payload})

    def _run_in_thread() -> None:
        try:
            reply = controller.run(
                _to_request(body), on_event=_on_event, abort=abort
            )
            _remember(store, body, reply)
            msg_queue.put({"type": "reply", **reply.to_dict()})
        except Exception as exc:
            logger.error("Streaming run error: %s", exc, exc_info=True)
            msg_queue.put({"type": "error", "content": str(exc)})
        finally:
            msg_queue.put(None)

    thread = threading.Thread(
        target=_run_in_thread, name="orchestrator-stream", daemon=True
    )
    thread.start()

    def _next_event() -> dict[str, Any] | None | bool:
        try:
            return msg_queue.get(timeout=0.5)
        except queue.Empty:
            return False

    async def _event_generator() -> AsyncGenerator[str, None]:
        loop = asyncio.get_running_loop()
        while True:
            event = await loop.run_in_executor(None, _next_event)
            if event is False:
                if await request.is_disconnected():
                    logger.info(
                        "[api] client disconnected, aborting run for %s",
                        body.conversation_id,
                    )
                    abort.trigger("client disconnected")
                    break
                continue
            if event is None:
                yield "event: done\ndata: {}\n\n"
                break
            data = json.dumps(event, ensure_ascii=False, default=str)
            yield f"data: {data}\n\n"

    return StreamingResponse(
        _event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        },
    )


@app.get("/tool-calls", tags=["approvals"])
async def list_tool_calls(
    conversation_id: str | None = None,
    gate: ApprovalGate = Depends(get_gate),
) -> list[dict[str, Any]]:
    """Pending approval requests, optionally for one conversation."""
    return [record.to_dict() for record in gate.list_pending(conversation_id)]


@app.get("/tool-calls/stats", tags=["approvals"])
async def tool_call_stats(
    gate: ApprovalGate = Depends(get_gate),
) -> dict[str, Any]:
    return gate.stats()


@app.get("/tool-calls/{call_id}", tags=["approvals"])
async def get_tool_call(
    call_id: str, gate: ApprovalGate = Depends(get_gate)
) -> dict[str, Any]:
    record = gate.get(call_id)
    if record is None:
        raise HTTPException(
            status_code=404, detail=f"Unknown tool call {call_id}"
        )
    return record.to_dict()


def _decision_response(
    gate: ApprovalGate, call_id: str, applied: bool
) -> DecisionResponse:
    record = gate.get(call_id)
    return DecisionResponse(
        call_id=call_id,
        applied=applied,
        status=str(record.status) if record else "unknown",
    )


@app.post(
    "/tool-calls/{call_id}/approve",
    response_model=DecisionResponse,
    tags=["approvals"],
)
async def approve_tool_call(
    call_id: str,
    body: ApproveBody | None = None,
    gate: ApprovalGate = Depends(get_gate),
) -> DecisionResponse:
    """Approve a pending tool call.

    ``applied`` is ``False`` when the call was already resolved; the earlier
    decision stands.
    """
    try:
        applied = gate.approve(call_id, (body or ApproveBody()).overrides)
    except ApprovalNotFound as exc:
        raise HTTPException(
            status_code=404, detail=f"Unknown tool call {call_id}"
        ) from exc
    return _decision_response(gate, call_id, applied)


@app.post(
    "/tool-calls/{call_id}/reject",
    response_model=DecisionResponse,
    tags=["approvals"],
)
async def reject_tool_call(
    call_id: str,
    body: RejectBody | None = None,
    gate: ApprovalGate = Depends(get_gate),
) -> DecisionResponse:
    """Reject a pending tool call; ``feedback`` becomes the run's reply."""
    try:
        applied = gate.reject(call_id, (body or RejectBody()).feedback)
    except ApprovalNotFound as exc:
        raise HTTPException(
            status_code=404, detail=f"Unknown tool call {call_id}"
        ) from exc
    return _decision_response(gate, call_id, applied)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def run_api() -> None:
    """Start the FastAPI server via uvicorn."""
    configure_logging()
    logger.info(
        "Starting strategy-agent API on %s:%d", cfg.api_host, cfg.api_port
    )
    uvicorn.run(
        "strategy_agent.api:app",
        host=cfg.api_host,
        port=cfg.api_port,
        log_level=cfg.log_level.lower(),
        reload=False,
    )


if __name__ == "__main__":
    run_api()
