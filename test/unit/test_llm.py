"""Unit tests for the LiteLLM chat client."""

from __future__ import annotations

import pytest

import llm as llm_module
from llm import AgentReply, LLMClient, LLMError, ToolCall, parse_reply


class _StubLiteLLM:
    def __init__(self, response=None, error: Exception | None = None) -> None:
        self.response = response
        self.error = error
        self.requests: list[dict] = []

    def completion(self, **kwargs):
        self.requests.append(kwargs)
        if self.error is not None:
            raise self.error
        return self.response


class RateLimitError(Exception):
    """Stand-in for the provider's throttling exception."""


def _response(content="", tool_calls=None) -> dict:
    return {"choices": [{"message": {"content": content, "tool_calls": tool_calls or []}}]}


def test_parse_reply_extracts_tool_calls() -> None:
    """Tool call arguments arrive as JSON strings and are decoded."""
    reply = parse_reply(
        _response(
            "On it.",
            [
                {
                    "id": "call_1",
                    "function": {"name": "send_email", "arguments": '{"to": "jane@example.com"}'},
                },
                {"id": "call_2", "function": {"name": "search_knowledge", "arguments": "not json"}},
                {"id": "call_3", "function": {"arguments": "{}"}},
            ],
        )
    )

    assert reply == AgentReply(
        content="On it.",
        tool_calls=(
            ToolCall(id="call_1", name="send_email", arguments={"to": "jane@example.com"}),
            ToolCall(id="call_2", name="search_knowledge", arguments={}),
        ),
    )


def test_parse_reply_without_choices_is_an_error() -> None:
    """An empty completion response raises an api error."""
    with pytest.raises(LLMError) as excinfo:
        parse_reply({"choices": []})
    assert excinfo.value.kind == "api_error"


def test_converse_passes_tools_with_auto_choice(monkeypatch) -> None:
    """Tool schemas are forwarded and the model chooses when to call them."""
    stub = _StubLiteLLM(_response("Hello!"))
    monkeypatch.setattr(llm_module, "_load_litellm_module", lambda: stub)
    tools = [{"type": "function", "function": {"name": "send_email"}}]

    reply = LLMClient(model="anthropic:claude-test").converse(
        "You help.", [], "", tools=tools, new_message="hi"
    )

    assert reply.content == "Hello!"
    request = stub.requests[0]
    assert request["model"] == "claude-test"
    assert request["tools"] == tools
    assert request["tool_choice"] == "auto"
    assert request["messages"][-1] == {"role": "user", "content": "hi"}


def test_converse_without_tools_omits_tool_choice(monkeypatch) -> None:
    """Plain chat turns send no tool parameters."""
    stub = _StubLiteLLM(_response("Hello!"))
    monkeypatch.setattr(llm_module, "_load_litellm_module", lambda: stub)

    LLMClient(model="gpt-4o-mini").converse("You help.", [], new_message="hi")

    assert "tools" not in stub.requests[0]
    assert "tool_choice" not in stub.requests[0]


@pytest.mark.parametrize(
    ("error", "kind", "message"),
    [
        (RateLimitError("slow down"), "rate_limited", "The service rate limit was reached, please retry shortly."),
        (TimeoutError("request timed out"), "timeout", "The request timed out. Please try again."),
        (RuntimeError("Invalid API key provided"), "no_api_key", None),
        (RuntimeError("upstream 502"), "api_error", "API Error: upstream 502"),
    ],
)
def test_completion_errors_are_mapped(monkeypatch, error, kind, message) -> None:
    """Provider failures surface as typed errors with user-facing text."""
    monkeypatch.setattr(llm_module, "_load_litellm_module", lambda: _StubLiteLLM(error=error))

    with pytest.raises(LLMError) as excinfo:
        LLMClient(model="gpt-4o-mini").complete_sync([{"role": "user", "content": "hi"}])

    assert excinfo.value.kind == kind
    if message is not None:
        assert excinfo.value.user_message() == message
    else:
        assert "LLM_API_KEY" in excinfo.value.user_message()
