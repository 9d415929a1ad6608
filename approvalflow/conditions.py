"""Condition expressions for CONDITIONAL steps.

Expressions have the form ``<field> == <literal>`` where the literal may be
single-quoted, double-quoted or bare. A dotted field such as ``clinic.id``
reads nested mappings. Only equality is supported; a blank expression
always holds.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from .exceptions import ConditionSyntaxError

EQUALS = "=="

_FIELD = re.compile(r"^[A-Za-z_]\w*(\.[A-Za-z_]\w*)*$")
_OTHER_OPERATORS = ("!=", "<=", ">=", "<", ">")


@dataclass(frozen=True)
class Condition:
    field: str
    operator: str
    literal: str

    def evaluate(self, context: Mapping[str, Any]) -> bool:
        if self.field in context:
            return _normalize(context[self.field]) == self.literal
        value: Any = context
        for key in self.field.split("."):
            if not isinstance(value, Mapping) or key not in value:
                return False
            value = value[key]
        return _normalize(value) == self.literal


def parse_condition(expression: Optional[str]) -> Optional[Condition]:
    """Parse ``expression``; ``None`` means the condition always holds."""
    if expression is None or not expression.strip():
        return None

    text = expression.strip()
    if text.count(EQUALS) != 1:
        raise ConditionSyntaxError(f"Expected exactly one '==' in condition: {expression!r}")

    left, right = (part.strip() for part in text.split(EQUALS))
    if not _FIELD.match(left):
        raise ConditionSyntaxError(f"Invalid field name in condition: {expression!r}")
    if right[:1] not in ("'", '"') and any(op in right for op in _OTHER_OPERATORS):
        raise ConditionSyntaxError(f"Only '==' comparisons are supported: {expression!r}")

    return Condition(field=left, operator=EQUALS, literal=_unquote(right, expression))


def evaluate_condition(expression: Optional[str], context: Mapping[str, Any]) -> bool:
    condition = parse_condition(expression)
    if condition is None:
        return True
    return condition.evaluate(context)


def _unquote(token: str, expression: str) -> str:
    if not token:
        raise ConditionSyntaxError(f"Missing literal in condition: {expression!r}")
    if token[0] in "'\"":
        if len(token) < 2 or token[-1] != token[0]:
            raise ConditionSyntaxError(f"Unterminated literal in condition: {expression!r}")
        return token[1:-1]
    if any(ch.isspace() for ch in token) or "'" in token or '"' in token:
        raise ConditionSyntaxError(f"Invalid literal in condition: {expression!r}")
    return token


def _normalize(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)
