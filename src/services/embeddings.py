"""Embedding gateway backed by LiteLLM."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Mapping, Protocol, Sequence

import litellm

from config import settings
from services.rate_gate import IntervalGate, get_gate

logger = logging.getLogger(__name__)


class EmbeddingErrorKind(str, Enum):
    """Typed failure categories reported by the embedding gateway."""

    NO_API_KEY = "no_api_key"
    RATE_LIMITED = "rate_limited"
    TIMEOUT = "timeout"
    API_ERROR = "api_error"


class EmbeddingError(Exception):
    """Raised when the embedding model cannot produce a vector."""

    def __init__(self, kind: EmbeddingErrorKind, message: str = "") -> None:
        self.kind = EmbeddingErrorKind(kind)
        self.message = message or self.kind.value
        super().__init__(self.message)

    @property
    def retryable(self) -> bool:
        """Return True when a later attempt could succeed without operator action."""
        return self.kind != EmbeddingErrorKind.NO_API_KEY

    def describe(self) -> str:
        """Return the stored representation used for ``embedding_error``."""
        if self.kind == EmbeddingErrorKind.API_ERROR:
            return f"api_error: {self.message}"
        return self.kind.value


class EmbeddingGateway(Protocol):
    """Interface for turning text into fixed-length vectors."""

    @property
    def configured(self) -> bool:
        """Return True when the gateway has the credentials it needs."""
        ...

    def embed(self, text: str) -> list[float]:
        """Embed one text or raise EmbeddingError."""
        ...

    def embed_many(self, texts: Sequence[str]) -> list[list[float]]:
        """Embed several texts in one request or raise EmbeddingError."""
        ...


class LiteLlmEmbeddingGateway:
    """Embedding gateway calling ``litellm.embedding`` behind the shared rate gate."""

    def __init__(
        self,
        *,
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        max_input_chars: int | None = None,
        dimensions: int | None = None,
        gate: IntervalGate | None = None,
    ) -> None:
        config = settings.embeddings
        self.model = model or config.model
        self._api_key = api_key if api_key is not None else config.api_key
        self._base_url = base_url if base_url is not None else config.base_url
        self._timeout = float(timeout if timeout is not None else config.timeout)
        self._max_input_chars = int(max_input_chars or config.max_input_chars)
        self._dimensions = dimensions or config.dimensions
        self._gate = gate or get_gate("embeddings")

    @property
    def configured(self) -> bool:
        return bool(self._api_key) or bool(self._base_url)

    def embed(self, text: str) -> list[float]:
        return self.embed_many([text])[0]

    def embed_many(self, texts: Sequence[str]) -> list[list[float]]:
        if not self.configured:
            raise EmbeddingError(
                EmbeddingErrorKind.NO_API_KEY, "Embedding API key is not configured."
            )
        if not texts:
            return []
        inputs = [truncate_text(text, self._max_input_chars) for text in texts]
        self._gate.wait()
        try:
            response = _load_litellm_module().embedding(**self._request_kwargs(inputs))
        except Exception as exc:
            raise _map_exception(exc) from exc
        vectors = _extract_embedding_vectors(response)
        if len(vectors) != len(inputs):
            raise EmbeddingError(
                EmbeddingErrorKind.API_ERROR,
                f"expected {len(inputs)} embeddings, received {len(vectors)}",
            )
        return vectors

    def _request_kwargs(self, inputs: list[str]) -> dict[str, Any]:
        """Build one LiteLLM request kwargs mapping."""
        kwargs: dict[str, Any] = {
            "model": self.model,
            "input": inputs,
            "timeout": self._timeout,
        }
        if self._api_key:
            kwargs["api_key"] = self._api_key
        if self._base_url:
            kwargs["api_base"] = self._base_url
        if self._dimensions and self.model.startswith("text-embedding-3"):
            kwargs["dimensions"] = self._dimensions
        return kwargs


def truncate_text(text: str, max_chars: int) -> str:
    """Bound input length to the model limit without failing the request."""
    if len(text) <= max_chars:
        return text
    logger.debug("Truncating embedding input from %s to %s chars", len(text), max_chars)
    return text[:max_chars]


def _load_litellm_module() -> Any:
    """Return the imported `litellm` module."""
    return litellm


def _extract_embedding_vectors(response: object) -> list[list[float]]:
    """Extract embedding vectors from a LiteLLM embedding response."""
    rows = _response_field(response=response, field="data")
    if not isinstance(rows, list):
        raise EmbeddingError(EmbeddingErrorKind.API_ERROR, "embedding response missing data")
    vectors: list[list[float]] = []
    for row in rows:
        embedding = _response_field(response=row, field="embedding")
        if not isinstance(embedding, list):
            raise EmbeddingError(EmbeddingErrorKind.API_ERROR, "embedding values are missing")
        try:
            vectors.append([float(item) for item in embedding])
        except (TypeError, ValueError):
            raise EmbeddingError(
                EmbeddingErrorKind.API_ERROR, "embedding values are invalid"
            ) from None
    return vectors


def _response_field(*, response: object, field: str) -> object:
    """Read one field from a response mapping or object."""
    if isinstance(response, Mapping):
        value = response.get(field)
    else:
        value = getattr(response, field, None)
    if value is None:
        raise EmbeddingError(EmbeddingErrorKind.API_ERROR, f"response missing {field}")
    return value


def _map_exception(exc: Exception) -> EmbeddingError:
    """Map LiteLLM/provider failures into typed embedding errors."""
    if isinstance(exc, EmbeddingError):
        return exc
    name = exc.__class__.__name__.lower()
    text = str(exc).lower()
    if "authentication" in name:
        # A key is set but the provider rejected it; retry budget applies.
        return EmbeddingError(EmbeddingErrorKind.API_ERROR, f"authentication rejected: {exc}")
    if "ratelimit" in name or "rate limit" in text or "429" in text:
        return EmbeddingError(EmbeddingErrorKind.RATE_LIMITED, str(exc))
    if isinstance(exc, TimeoutError) or "timeout" in name or "timed out" in text:
        return EmbeddingError(EmbeddingErrorKind.TIMEOUT, str(exc))
    return EmbeddingError(EmbeddingErrorKind.API_ERROR, str(exc) or exc.__class__.__name__)


def build_embedding_gateway() -> LiteLlmEmbeddingGateway:
    """Build the production embedding gateway from settings."""
    return LiteLlmEmbeddingGateway()
