"""strategy_agent/planner.py

Planner capability clients.

Two backends share one interface, ``complete(messages, tools, sampling)``:

  - :class:`OpenAICompatiblePlanner` posts to an OpenAI-compatible
    ``/chat/completions`` endpoint (OpenRouter, Ollama's ``/v1`` shim, ...)
    with ``httpx``.
  - :class:`OllamaPlanner` talks to a local Ollama daemon through the native
    ``ollama.Client``.

Any transport or protocol failure is reported as a single
:class:`~strategy_agent.errors.PlannerUnavailable`; partial output is never
returned.
"""

from __future__ import annotations

# Standard Library
import json
import logging
import time
import uuid
from typing import Any, Protocol

# Third-Party Libraries
import httpx
from ollama import Client, ResponseError

# Local Modules
from strategy_agent.config import OrchestratorSettings
from strategy_agent.errors import PlannerUnavailable
from strategy_agent.models import (
    PlannerResponse,
    PlannerToolCall,
    SamplingConfig,
)

logger = logging.getLogger(__name__)


class Planner(Protocol):
    def complete(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        sampling: SamplingConfig,
    ) -> PlannerResponse: ...


def _str_content(val: None | str | list[dict[str, Any]]) -> str:
    """Normalise a message content value to a plain string.

    Args:
        val: Raw content field; may be ``None``, a ``str``, or a list of
            content parts.

    Returns:
        A plain string.
    """
    if val is None:
        return ""
    if isinstance(val, str):
        return val
    if isinstance(val, list):
        parts: list[str] = []
        for item in val:
            if isinstance(item, dict):
                text = item.get("text") or item.get("content") or ""
                parts.append(str(text))
            else:
                parts.append(str(item))
        return " ".join(p for p in parts if p)
    return str(val)


def _fallback_call_id() -> str:
    return f"tool_call_{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}"


# ---------------------------------------------------------------------------
# OpenAI-compatible chat completions
# ---------------------------------------------------------------------------


class OpenAICompatiblePlanner:
    """Planner backed by an OpenAI-compatible chat-completions endpoint.

    Args:
        base_url: Endpoint base, e.g. ``https://openrouter.ai/api/v1``.
        model: Model tag.
        api_key: Bearer token; omitted from the request when empty.
        timeout: Request timeout in seconds.
        client: Pre-built ``httpx.Client``, e.g. one with a mock
            transport.
    """

    def __init__(
        self,
        base_url: str,
        model: str,
        api_key: str = "",
        timeout: float = 60.0,
        client: httpx.Client | None = None,
    ) -> None:
        self.completions_url = base_url.rstrip("/") + "/chat/completions"
        self.model = model
        self.timeout = timeout
        self._api_key = api_key
        self._client = client or httpx.Client(timeout=timeout)

    def close(self) -> None:
        self._client.close()

    def complete(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        sampling: SamplingConfig,
    ) -> PlannerResponse:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": sampling.temperature,
            "max_tokens": sampling.max_tokens,
            "stream": False,
        }
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = "auto"
        headers: dict[str, str] = {}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"

        logger.info(
            "[planner] model=%r url=%s messages=%d",
            self.model,
            self.completions_url,
            len(messages),
        )
        try:
            response = self._client.post(
                self.completions_url,
                json=payload,
                headers=headers,
                timeout=self.timeout,
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as exc:
            logger.error("[planner] HTTP error: %s", exc, exc_info=True)
            raise PlannerUnavailable(
                f"planner returned HTTP {exc.response.status_code}",
                {"url": self.completions_url},
            ) from exc
        except httpx.HTTPError as exc:
            logger.error("[planner] request failed: %s", exc, exc_info=True)
            raise PlannerUnavailable(
                f"planner request failed: {exc}",
                {"url": self.completions_url},
            ) from exc
        except json.JSONDecodeError as exc:
            raise PlannerUnavailable("planner returned invalid JSON") from exc

        return self._parse(data)

    @staticmethod
    def _parse(data: Any) -> PlannerResponse:
        choices = data.get("choices") if isinstance(data, dict) else None
        if not choices:
            raise PlannerUnavailable("planner returned no choices")
        choice = choices[0] or {}
        message = choice.get("message") or {}

        calls: list[PlannerToolCall] = []
        for raw in message.get("tool_calls") or []:
            function = raw.get("function") or {}
            name = function.get("name")
            if not name:
                logger.warning(
                    "[planner] dropping tool call without a name: %r", raw
                )
                continue
            calls.append(
                PlannerToolCall(
                    id=raw.get("id") or _fallback_call_id(),
                    name=name,
                    raw_arguments=function.get("arguments"),
                )
            )

        text = _str_content(message.get("content")).strip() or None
        response = PlannerResponse(
            text=text,
            tool_calls=calls,
            finish_reason=choice.get("finish_reason"),
        )
        logger.info(
            "[planner] finish_reason=%s tool_calls=%s text_chars=%d",
            response.finish_reason,
            [c.name for c in calls],
            len(text or ""),
        )
        return response


# ---------------------------------------------------------------------------
# Native Ollama
# ---------------------------------------------------------------------------


def _decode_arguments(arguments: Any) -> Any:
    if not isinstance(arguments, str):
        return arguments
    if not arguments.strip():
        return {}
    try:
        return json.loads(arguments)
    except json.JSONDecodeError:
        return {}


def _to_ollama_messages(
    messages: list[dict[str, Any]],
) -> list[dict[str, Any]]:
    """Ollama wants decoded tool-call arguments and no call ids."""
    converted: list[dict[str, Any]] = []
    for message in messages:
        entry: dict[str, Any] = {
            "role": message["role"],
            "content": _str_content(message.get("content")),
        }
        if message.get("tool_calls"):
            entry["tool_calls"] = []
            for call in message["tool_calls"]:
                function = call.get("function") or {}
                arguments = _decode_arguments(function.get("arguments"))
                entry["tool_calls"].append(
                    {
                        "function": {
                            "name": function.get("name"),
                            "arguments": arguments or {},
                        }
                    }
                )
        converted.append(entry)
    return converted


class OllamaPlanner:
    """Planner backed by a local Ollama daemon.

    Args:
        host: Ollama API endpoint, e.g. ``http://localhost:11434``.
        model: Model tag; must support tool calling.
        timeout: Request timeout in seconds.
        client: Pre-built ``ollama.Client``.
    """

    def __init__(
        self,
        host: str,
        model: str,
        timeout: float = 60.0,
        client: Client | None = None,
    ) -> None:
        self.host = host
        self.model = model
        self.client = client or Client(host=host, timeout=timeout)

    def complete(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        sampling: SamplingConfig,
    ) -> PlannerResponse:
        logger.info(
            "[planner] ollama model=%r host=%s messages=%d",
            self.model,
            self.host,
            len(messages),
        )
        try:
            response = self.client.chat(
                model=self.model,
                messages=_to_ollama_messages(messages),
                tools=tools or None,
                options={
                    "temperature": sampling.temperature,
                    "num_predict": sampling.max_tokens,
                },
            )
        except (ResponseError, httpx.HTTPError, ConnectionError) as exc:
            logger.error("[planner] ollama error: %s", exc, exc_info=True)
            raise PlannerUnavailable(
                f"ollama request failed: {exc}", {"host": self.host}
            ) from exc

        raw_msg = response["message"]
        # getattr covers real Ollama models; plain dicts fall through to .get
        tool_calls = getattr(raw_msg, "tool_calls", None) or (
            raw_msg.get("tool_calls") if isinstance(raw_msg, dict) else None
        ) or []
        content = getattr(raw_msg, "content", None) or (
            raw_msg.get("content", "") if isinstance(raw_msg, dict) else ""
        )

        calls: list[PlannerToolCall] = []
        for tc in tool_calls:
            function = tc["function"]
            arguments = function["arguments"]
            calls.append(
                PlannerToolCall(
                    id=_fallback_call_id(),
                    name=function["name"],
                    raw_arguments=dict(arguments) if arguments else None,
                )
            )

        done_reason = getattr(response, "done_reason", None) or (
            response.get("done_reason") if isinstance(response, dict) else None
        )
        return PlannerResponse(
            text=_str_content(content).strip() or None,
            tool_calls=calls,
            finish_reason=done_reason or ("tool_calls" if calls else "stop"),
        )


def build_planner(settings: OrchestratorSettings) -> Planner:
    """Construct the planner selected by ``settings.planner_backend``.

    Raises:
        ValueError: For an unknown backend name.
    """
    backend = settings.planner_backend.lower()
    if backend == "openai":
        return OpenAICompatiblePlanner(
            base_url=settings.planner_base_url,
            model=settings.planner_model,
            api_key=settings.planner_api_key,
            timeout=settings.planner_timeout_seconds,
        )
    if backend == "ollama":
        return OllamaPlanner(
            host=settings.planner_base_url,
            model=settings.planner_model,
            timeout=settings.planner_timeout_seconds,
        )
    raise ValueError(f"unknown planner backend: {settings.planner_backend!r}")
