"""Condition matching for instruction triggers.

Instruction conditions are a mapping of dot-separated field paths to expected
values. An expected value is either a literal compared for equality or an
operator object such as ``{"operator": "contains", "value": "invoice"}``.
All conditions must hold for an instruction to fire; an empty mapping always
matches. Unknown operators never match.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Union

_MISSING = None


@dataclass(frozen=True)
class FieldPath:
    """Dot-separated path into an event payload."""

    parts: tuple[str, ...]

    @classmethod
    def parse(cls, path: str) -> FieldPath:
        return cls(tuple(part for part in str(path).split(".") if part))

    def resolve(self, payload: Any) -> Any:
        """Return the value at this path, or None when any segment is missing."""
        current = payload
        for part in self.parts:
            if isinstance(current, Mapping):
                if part not in current:
                    return _MISSING
                current = current[part]
            elif isinstance(current, (list, tuple)) and part.isdigit():
                index = int(part)
                if index >= len(current):
                    return _MISSING
                current = current[index]
            else:
                return _MISSING
        return current

    def __str__(self) -> str:
        return ".".join(self.parts)


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


@dataclass(frozen=True)
class Equals:
    """Exact equality against the resolved value."""

    value: Any

    def test(self, actual: Any) -> bool:
        return actual == self.value


@dataclass(frozen=True)
class Contains:
    """Case-insensitive substring match on the string form of the value."""

    value: Any

    def test(self, actual: Any) -> bool:
        return _as_text(self.value).casefold() in _as_text(actual).casefold()


@dataclass(frozen=True)
class StartsWith:
    """Case-insensitive prefix match on the string form of the value."""

    value: Any

    def test(self, actual: Any) -> bool:
        return _as_text(actual).casefold().startswith(_as_text(self.value).casefold())


@dataclass(frozen=True)
class UnknownOperator:
    """Operator the matcher does not understand; never matches."""

    operator: Any
    value: Any = None

    def test(self, actual: Any) -> bool:
        return False


Predicate = Union[Equals, Contains, StartsWith, UnknownOperator]

_OPERATORS = {
    "equals": Equals,
    "contains": Contains,
    "starts_with": StartsWith,
}


@dataclass(frozen=True)
class Condition:
    """One field path paired with the predicate its value must satisfy."""

    path: FieldPath
    predicate: Predicate

    def test(self, payload: Mapping[str, Any]) -> bool:
        return self.predicate.test(self.path.resolve(payload))


def parse_predicate(expected: Any) -> Predicate:
    """Turn a raw expected value into a predicate.

    Any mapping is read as an operator object; a mapping without a known
    ``operator`` becomes an UnknownOperator.
    """
    if isinstance(expected, Mapping):
        operator = expected.get("operator")
        factory = _OPERATORS.get(operator) if isinstance(operator, str) else None
        if factory is None:
            return UnknownOperator(operator=operator, value=expected.get("value"))
        return factory(expected.get("value"))
    return Equals(expected)


def parse_conditions(conditions: Mapping[str, Any] | None) -> list[Condition]:
    """Parse a stored conditions mapping into typed conditions."""
    if not conditions:
        return []
    return [
        Condition(path=FieldPath.parse(path), predicate=parse_predicate(expected))
        for path, expected in conditions.items()
    ]


def matches(conditions: Mapping[str, Any] | None, event: Mapping[str, Any] | None) -> bool:
    """Return True when every condition holds for the event payload."""
    parsed = parse_conditions(conditions)
    if not parsed:
        return True
    payload = event or {}
    return all(condition.test(payload) for condition in parsed)
