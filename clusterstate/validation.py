"""Declarative validation rules for repository input payloads.

A rule is a pure function ``(candidate) -> error message or None`` wrapped in
a :class:`Rule` that also records which field it inspects. A
:class:`Validator` is composed once per entity type and evaluated in order;
the first failing rule raises :class:`~clusterstate.errors.ValidationError`.

Example::

    validator = (
        Validator()
        .add_rule(required("id"))
        .add_rule(one_of("status", ["online", "offline"]))
        .add_rule(value_range("cpu_usage", 0, 1))
    )
    validator.validate({"id": "n1", "status": "online"})

Validating a partial update (``partial=True``) skips presence rules so that
a patch only needs to carry the fields it changes; every other rule already
ignores absent fields.
"""
from __future__ import annotations

import json
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from clusterstate.errors import ValidationError

Check = Callable[[Mapping[str, Any]], "str | None"]


@dataclass(frozen=True)
class Rule:
    check: Check
    field: str | None = None
    # Presence rules do not apply to partial updates
    presence: bool = False

    def __call__(self, candidate: Mapping[str, Any]) -> str | None:
        return self.check(candidate)


class Validator:
    """Ordered collection of rules evaluated against a payload."""

    def __init__(self, rules: Iterable[Rule] | None = None):
        self._rules: list[Rule] = list(rules or [])

    def add_rule(self, rule: Rule) -> Validator:
        self._rules.append(rule)
        return self

    @property
    def rules(self) -> list[Rule]:
        return list(self._rules)

    def first_error(
        self, candidate: Any, *, partial: bool = False
    ) -> tuple[str, str | None] | None:
        """Return ``(message, field)`` for the first failing rule, or None."""
        if not isinstance(candidate, Mapping):
            return "payload must be a mapping", None
        for rule in self._rules:
            if partial and rule.presence:
                continue
            message = rule(candidate)
            if message:
                return message, rule.field
        return None

    def validate(self, candidate: Any, *, partial: bool = False) -> None:
        error = self.first_error(candidate, partial=partial)
        if error is not None:
            message, field = error
            raise ValidationError(message, field=field)


def _present(candidate: Mapping[str, Any], field: str) -> bool:
    return candidate.get(field) is not None


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


# ---------------------------------------------------------------------------
# Common rules
# ---------------------------------------------------------------------------


def required(field: str) -> Rule:
    def check(candidate: Mapping[str, Any]) -> str | None:
        value = candidate.get(field)
        if value is None or value == "":
            return f"{field} is required"
        return None

    return Rule(check, field, presence=True)


def min_length(field: str, minimum: int) -> Rule:
    def check(candidate: Mapping[str, Any]) -> str | None:
        value = candidate.get(field)
        if value and len(value) < minimum:
            return f"{field} must be at least {minimum} characters"
        return None

    return Rule(check, field)


def max_length(field: str, maximum: int) -> Rule:
    def check(candidate: Mapping[str, Any]) -> str | None:
        value = candidate.get(field)
        if value and len(value) > maximum:
            return f"{field} must be no more than {maximum} characters"
        return None

    return Rule(check, field)


def value_range(field: str, minimum: float, maximum: float) -> Rule:
    def check(candidate: Mapping[str, Any]) -> str | None:
        value = candidate.get(field)
        if value is None:
            return None
        if not _is_number(value):
            return f"{field} must be a number"
        if value < minimum or value > maximum:
            return f"{field} must be between {minimum} and {maximum}"
        return None

    return Rule(check, field)


def one_of(field: str, allowed: Iterable[Any]) -> Rule:
    allowed = list(allowed)

    def check(candidate: Mapping[str, Any]) -> str | None:
        value = candidate.get(field)
        if value is not None and value not in allowed:
            return f"{field} must be one of: {', '.join(str(v) for v in allowed)}"
        return None

    return Rule(check, field)


def is_string(field: str) -> Rule:
    def check(candidate: Mapping[str, Any]) -> str | None:
        if _present(candidate, field) and not isinstance(candidate[field], str):
            return f"{field} must be a string"
        return None

    return Rule(check, field)


def is_integer(field: str) -> Rule:
    def check(candidate: Mapping[str, Any]) -> str | None:
        value = candidate.get(field)
        if value is not None and (not isinstance(value, int) or isinstance(value, bool)):
            return f"{field} must be an integer"
        return None

    return Rule(check, field)


def is_number(field: str) -> Rule:
    def check(candidate: Mapping[str, Any]) -> str | None:
        value = candidate.get(field)
        if value is not None and not _is_number(value):
            return f"{field} must be a number"
        return None

    return Rule(check, field)


def is_boolean(field: str) -> Rule:
    def check(candidate: Mapping[str, Any]) -> str | None:
        value = candidate.get(field)
        if value is not None and not isinstance(value, bool):
            return f"{field} must be a boolean"
        return None

    return Rule(check, field)


def is_datetime(field: str) -> Rule:
    def check(candidate: Mapping[str, Any]) -> str | None:
        value = candidate.get(field)
        if value is not None and not isinstance(value, datetime):
            return f"{field} must be a datetime"
        return None

    return Rule(check, field)


def positive(field: str, message: str | None = None) -> Rule:
    """Numeric field, when present, must be strictly greater than zero."""

    def check(candidate: Mapping[str, Any]) -> str | None:
        value = candidate.get(field)
        if value is not None and (not _is_number(value) or value <= 0):
            return message or f"{field} must be greater than 0"
        return None

    return Rule(check, field)


def non_negative(field: str, message: str | None = None) -> Rule:
    def check(candidate: Mapping[str, Any]) -> str | None:
        value = candidate.get(field)
        if value is not None and (not _is_number(value) or value < 0):
            return message or f"{field} cannot be negative"
        return None

    return Rule(check, field)


def starts_with(field: str, prefix: str) -> Rule:
    def check(candidate: Mapping[str, Any]) -> str | None:
        value = candidate.get(field)
        if value is not None and (not isinstance(value, str) or not value.startswith(prefix)):
            return f'{field} must start with "{prefix}"'
        return None

    return Rule(check, field)


def json_object(field: str) -> Rule:
    """Field must hold serialized JSON whose top level is an object."""

    def check(candidate: Mapping[str, Any]) -> str | None:
        value = candidate.get(field)
        if value is None:
            return None
        try:
            parsed = json.loads(value)
        except (TypeError, ValueError):
            return f"{field} must be valid JSON"
        if not isinstance(parsed, dict):
            return f"{field} must be a JSON object"
        return None

    return Rule(check, field)


def known_fields(allowed: Iterable[str]) -> Rule:
    """Reject keys that do not correspond to a persisted attribute."""
    allowed = frozenset(allowed)

    def check(candidate: Mapping[str, Any]) -> str | None:
        unknown = sorted(key for key in candidate if key not in allowed)
        if unknown:
            return f"Unknown field(s): {', '.join(unknown)}"
        return None

    return Rule(check)


def custom(check: Check, field: str | None = None) -> Rule:
    return Rule(check, field)
