"""LLM client using LiteLLM for model abstraction."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

import litellm

from config import settings
from knowledge.context_builder import compose_messages
from services.rate_gate import get_gate

logger = logging.getLogger(__name__)


class LLMError(Exception):
    """Raised when a completion request fails; ``kind`` drives the user message."""

    def __init__(self, kind: str, message: str = "") -> None:
        super().__init__(message or kind)
        self.kind = kind
        self.message = message

    def user_message(self) -> str:
        """Return the text shown in the chat surface."""
        if self.kind == "no_api_key":
            return "The language model API key is not configured. Please set LLM_API_KEY."
        if self.kind == "timeout":
            return "The request timed out. Please try again."
        if self.kind == "rate_limited":
            return "The service rate limit was reached, please retry shortly."
        return f"API Error: {self.message}"


@dataclass(frozen=True)
class ToolCall:
    """Tool invocation requested by the model."""

    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AgentReply:
    """Text and tool calls returned by one model turn."""

    content: str
    tool_calls: tuple[ToolCall, ...] = ()


def _load_litellm_module() -> Any:
    """Return the imported `litellm` module."""
    return litellm


def _field(obj: object, name: str, default: Any = None) -> Any:
    if isinstance(obj, Mapping):
        return obj.get(name, default)
    return getattr(obj, name, default)


def _parse_arguments(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, Mapping):
        return dict(raw)
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        logger.warning("Discarding unparseable tool arguments: %r", raw)
        return {}
    return parsed if isinstance(parsed, dict) else {}


def parse_reply(response: object) -> AgentReply:
    """Extract content and tool calls from a LiteLLM completion response."""
    choices = _field(response, "choices") or []
    if not choices:
        raise LLMError("api_error", "completion response has no choices")
    message = _field(choices[0], "message") or {}
    calls: List[ToolCall] = []
    for call in _field(message, "tool_calls") or []:
        function = _field(call, "function") or {}
        name = _field(function, "name")
        if not name:
            continue
        calls.append(
            ToolCall(
                id=str(_field(call, "id") or ""),
                name=str(name),
                arguments=_parse_arguments(_field(function, "arguments")),
            )
        )
    return AgentReply(content=_field(message, "content") or "", tool_calls=tuple(calls))


def _map_exception(exc: Exception) -> LLMError:
    name = type(exc).__name__.lower()
    text = str(exc)
    lowered = text.lower()
    if "authentication" in name or "api key" in lowered:
        return LLMError("no_api_key", text)
    if "ratelimit" in name or "rate limit" in lowered:
        return LLMError("rate_limited", text)
    if "timeout" in name or "timed out" in lowered:
        return LLMError("timeout", text)
    return LLMError("api_error", text or type(exc).__name__)


class LLMClient:
    """Wrapper around LiteLLM for consistent LLM access."""

    def __init__(self, model: Optional[str] = None):
        """Initialize the client with a default model if omitted."""
        self.model = self._normalize_model_name(model or settings.llm.model)

    def _normalize_model_name(self, model: str) -> str:
        """Normalize model name for LiteLLM compatibility.

        LiteLLM expects Anthropic models without the 'anthropic:' prefix.
        """
        if model.startswith("anthropic:"):
            return model[len("anthropic:") :]
        return model

    def _litellm_kwargs(self) -> Dict[str, Any]:
        """Build LiteLLM keyword arguments from settings."""
        extra: Dict[str, Any] = {}
        if settings.llm.base_url:
            extra["api_base"] = settings.llm.base_url
        if settings.llm.api_key:
            extra["api_key"] = settings.llm.api_key
        return extra

    def complete_sync(
        self,
        messages: List[Dict[str, Any]],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        **kwargs,
    ) -> object:
        """Synchronous completion request behind the shared LLM rate gate.

        Returns the raw LiteLLM response; failures raise ``LLMError``.
        """
        get_gate("llm").wait()
        try:
            return _load_litellm_module().completion(
                model=self.model,
                messages=messages,
                temperature=settings.llm.temperature if temperature is None else temperature,
                max_tokens=max_tokens or settings.llm.max_tokens,
                timeout=settings.llm.timeout,
                **self._litellm_kwargs(),
                **kwargs,
            )
        except Exception as exc:
            raise _map_exception(exc) from exc

    def converse(
        self,
        system_prompt: str,
        history: Sequence[Mapping[str, Any]],
        grounding_context: str = "",
        tools: Optional[Sequence[Mapping[str, Any]]] = None,
        new_message: Optional[str] = None,
    ) -> AgentReply:
        """Run one model turn and return its text and tool-call intents."""
        messages = compose_messages(system_prompt, grounding_context, history, new_message)
        kwargs: Dict[str, Any] = {}
        if tools:
            kwargs["tools"] = list(tools)
            kwargs["tool_choice"] = "auto"
        response = self.complete_sync(messages, **kwargs)
        reply = parse_reply(response)
        logger.info(
            "LLM turn finished: model=%s tool_calls=%s",
            self.model,
            len(reply.tool_calls),
        )
        return reply
