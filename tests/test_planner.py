"""tests/test_planner.py

Unit tests for the planner clients (strategy_agent/planner.py).  HTTP calls
go through ``httpx.MockTransport``; the Ollama client is a mock.
"""

from __future__ import annotations

# Standard Library
import json
from typing import Any
from unittest.mock import MagicMock

# Third-Party Libraries
import httpx
import pytest
from ollama import ResponseError

# Local Modules
from strategy_agent.errors import PlannerUnavailable
from strategy_agent.models import SamplingConfig
from strategy_agent.planner import (
    OllamaPlanner,
    OpenAICompatiblePlanner,
    _str_content,
    _to_ollama_messages,
    build_planner,
)

MESSAGES = [
    {"role": "system", "content": "sys"},
    {"role": "user", "content": "hi"},
]
TOOLS = [
    {"type": "function", "function": {"name": "create_dsl", "parameters": {}}}
]


def _planner(
    handler: Any, api_key: str = "secret"
) -> OpenAICompatiblePlanner:
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return OpenAICompatiblePlanner(
        "http://planner.test/v1/", "test-model", api_key=api_key, client=client
    )


def _completion(
    message: dict[str, Any], finish_reason: str = "stop"
) -> dict[str, Any]:
    return {"choices": [{"message": message, "finish_reason": finish_reason}]}


def _replying(message: dict[str, Any], finish_reason: str = "stop") -> Any:
    body = _completion(message, finish_reason)
    return lambda request: httpx.Response(200, json=body)


def _call(
    call_id: str | None, name: str | None, arguments: Any
) -> dict[str, Any]:
    function: dict[str, Any] = {"arguments": arguments}
    if name is not None:
        function["name"] = name
    call: dict[str, Any] = {"type": "function", "function": function}
    if call_id is not None:
        call["id"] = call_id
    return call


class TestOpenAICompatiblePlanner:
    """Test suite for OpenAICompatiblePlanner."""

    def test_request_shape(self) -> None:
        """Test the request carries model, messages, sampling and auth."""
        captured: dict[str, Any] = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["url"] = str(request.url)
            captured["auth"] = request.headers.get("authorization")
            captured["body"] = json.loads(request.content)
            return httpx.Response(200, json=_completion({"content": "hello"}))

        sampling = SamplingConfig(temperature=0.2, max_tokens=50)
        response = _planner(handler).complete(MESSAGES, TOOLS, sampling)

        assert captured["url"] == "http://planner.test/v1/chat/completions"
        assert captured["auth"] == "Bearer secret"
        body = captured["body"]
        assert body["model"] == "test-model"
        assert body["messages"] == MESSAGES
        assert body["temperature"] == 0.2
        assert body["max_tokens"] == 50
        assert body["stream"] is False
        assert body["tools"] == TOOLS
        assert body["tool_choice"] == "auto"
        assert response.text == "hello"
        assert response.finish_reason == "stop"

    def test_no_tools_and_no_key(self) -> None:
        """Test tools and the auth header are omitted when not configured."""
        captured: dict[str, Any] = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["auth"] = request.headers.get("authorization")
            captured["body"] = json.loads(request.content)
            return httpx.Response(200, json=_completion({"content": "x"}))

        _planner(handler, api_key="").complete(MESSAGES, [], SamplingConfig())

        assert captured["auth"] is None
        assert "tools" not in captured["body"]
        assert "tool_choice" not in captured["body"]

    def test_parses_tool_calls(self) -> None:
        """Test tool calls keep their ids, names and raw argument strings."""
        message = {
            "content": None,
            "tool_calls": [
                _call("call_1", "create_dsl", '{"a": 1}'),
                _call(None, "run_backtest", "{}"),
                _call("call_3", None, "{}"),
            ],
        }
        planner = _planner(_replying(message, "tool_calls"))

        response = planner.complete(MESSAGES, TOOLS, SamplingConfig())

        assert response.text is None
        names = [c.name for c in response.tool_calls]
        assert names == ["create_dsl", "run_backtest"]
        assert response.tool_calls[0].id == "call_1"
        assert response.tool_calls[0].raw_arguments == '{"a": 1}'
        assert response.tool_calls[1].id.startswith("tool_call_")
        assert response.finish_reason == "tool_calls"

    def test_content_parts_are_joined(self) -> None:
        """Test list-style content is flattened to text."""
        message = {
            "content": [
                {"type": "text", "text": "part one"},
                {"type": "text", "text": "part two"},
            ]
        }
        planner = _planner(_replying(message))

        response = planner.complete(MESSAGES, TOOLS, SamplingConfig())

        assert response.text == "part one part two"

    @pytest.mark.parametrize(
        ("handler", "expected"),
        [
            (lambda r: httpx.Response(503, text="overloaded"), "HTTP 503"),
            (lambda r: httpx.Response(200, text="<html>"), "invalid JSON"),
            (
                lambda r: httpx.Response(200, json={"choices": []}),
                "no choices",
            ),
        ],
    )
    def test_failures_raise_planner_unavailable(
        self, handler: Any, expected: str
    ) -> None:
        """Test HTTP errors, bad JSON and empty choices are wrapped."""
        with pytest.raises(PlannerUnavailable, match=expected):
            _planner(handler).complete(MESSAGES, TOOLS, SamplingConfig())

    def test_transport_error(self) -> None:
        """Test connection failures raise PlannerUnavailable."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(PlannerUnavailable, match="request failed"):
            _planner(handler).complete(MESSAGES, TOOLS, SamplingConfig())


class TestOllamaPlanner:
    """Test suite for OllamaPlanner."""

    def test_chat_call_and_tool_calls(self) -> None:
        """Test options pass through and decoded arguments come back."""
        client = MagicMock()
        client.chat.return_value = {
            "message": {
                "content": "",
                "tool_calls": [
                    {
                        "function": {
                            "name": "create_dsl",
                            "arguments": {"description": "x"},
                        }
                    }
                ],
            },
            "done_reason": None,
        }
        planner = OllamaPlanner(
            "http://localhost:11434", "llama3.1", client=client
        )

        sampling = SamplingConfig(temperature=0.1, max_tokens=99)
        response = planner.complete(MESSAGES, TOOLS, sampling)

        kwargs = client.chat.call_args.kwargs
        assert kwargs["model"] == "llama3.1"
        assert kwargs["tools"] == TOOLS
        assert kwargs["options"] == {"temperature": 0.1, "num_predict": 99}
        assert response.tool_calls[0].name == "create_dsl"
        assert response.tool_calls[0].raw_arguments == {"description": "x"}
        assert response.finish_reason == "tool_calls"
        assert response.text is None

    def test_text_reply(self) -> None:
        """Test a plain text answer and an empty tool list."""
        client = MagicMock()
        client.chat.return_value = {
            "message": {"content": "Sure."},
            "done_reason": "stop",
        }
        planner = OllamaPlanner("h", "m", client=client)

        response = planner.complete(MESSAGES, [], SamplingConfig())

        assert client.chat.call_args.kwargs["tools"] is None
        assert response.text == "Sure."
        assert response.tool_calls == []
        assert response.finish_reason == "stop"

    def test_errors_raise_planner_unavailable(self) -> None:
        """Test Ollama response errors and connection errors are wrapped."""
        client = MagicMock()
        planner = OllamaPlanner("h", "m", client=client)

        client.chat.side_effect = ResponseError("model not found", 404)
        with pytest.raises(PlannerUnavailable):
            planner.complete(MESSAGES, TOOLS, SamplingConfig())

        client.chat.side_effect = ConnectionError("refused")
        with pytest.raises(PlannerUnavailable):
            planner.complete(MESSAGES, TOOLS, SamplingConfig())

    def test_message_conversion(self) -> None:
        """Test assistant tool-call arguments are decoded for Ollama."""
        converted = _to_ollama_messages(
            [
                {
                    "role": "assistant",
                    "content": "",
                    "tool_calls": [
                        _call("c1", "a", '{"x": 1}'),
                        _call("c2", "b", "not json"),
                    ],
                },
                {"role": "tool", "tool_call_id": "c1", "content": "{}"},
            ]
        )

        assert converted[0]["tool_calls"] == [
            {"function": {"name": "a", "arguments": {"x": 1}}},
            {"function": {"name": "b", "arguments": {}}},
        ]
        assert converted[1] == {"role": "tool", "content": "{}"}


class TestHelpers:
    """Test suite for planner helpers."""

    def test_str_content(self) -> None:
        """Test content normalisation for every supported shape."""
        assert _str_content(None) == ""
        assert _str_content("abc") == "abc"
        parts = [{"text": "a"}, {"content": "b"}, "c"]
        assert _str_content(parts) == "a b c"

    def test_build_planner(self, settings: Any) -> None:
        """Test the backend setting selects the client class."""

        def _with(backend: str) -> Any:
            return settings.model_copy(update={"planner_backend": backend})

        assert isinstance(build_planner(settings), OpenAICompatiblePlanner)
        assert isinstance(build_planner(_with("ollama")), OllamaPlanner)
        with pytest.raises(ValueError):
            build_planner(_with("carrier-pigeon"))
