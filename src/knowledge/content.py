"""Text preparation for document embeddings."""

from __future__ import annotations

from typing import Any, Mapping

# Metadata keys worth folding into the embedded text so queries like
# "email from alice" can match on sender rather than body alone.
_EMBEDDED_METADATA_KEYS = (
    "from",
    "to",
    "subject",
    "name",
    "email",
    "company",
    "title",
    "date",
    "start_time",
    "location",
)


def _format_value(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        return ", ".join(str(item) for item in value)
    return str(value)


def prepare_content(content: str | None, metadata: Mapping[str, Any] | None = None) -> str:
    """Combine selected metadata and content into the text sent for embedding.

    Produces ``"[from: a@x.com, subject: Hi] body"``; returns the stripped
    content alone when no relevant metadata is present.
    """
    text = (content or "").strip()
    if not metadata:
        return text
    pairs = [
        f"{key}: {_format_value(metadata[key])}"
        for key in _EMBEDDED_METADATA_KEYS
        if metadata.get(key) not in (None, "", [], ())
    ]
    if not pairs:
        return text
    prefix = f"[{', '.join(pairs)}]"
    return f"{prefix} {text}" if text else prefix


def has_embeddable_content(content: str | None) -> bool:
    """Return True when the document body contains non-whitespace text."""
    return bool(content and content.strip())
