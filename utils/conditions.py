"""
Equation conditions — the deterministic half of transition evaluation.

Grammar (operators are case-insensitive):

    {{var}} exists
    {{var}} not exists
    {{var}} OP value       OP ∈ == != > >= < <= CONTAINS, NOT CONTAINS

The right-hand literal may be quoted and may itself reference
{{variables}}. Anything that does not parse evaluates to False: a
malformed condition must never break a live call.
"""
from __future__ import annotations

import math
import re
from typing import Any, Mapping

import structlog

from utils.templating import stringify, substitute

logger = structlog.get_logger()

EXISTS_PATTERN = re.compile(r"^\{\{(\w+)\}\}\s+(exists|not\s+exists)$", re.IGNORECASE)
BINARY_PATTERN = re.compile(
    r"^\{\{(\w+)\}\}\s*(==|!=|>=|<=|>|<|NOT\s+CONTAINS|CONTAINS)\s*(.+)$",
    re.IGNORECASE,
)
NUMBER_PATTERN = re.compile(r"^[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?$")
INDEX_PATTERN = re.compile(r"\[(\d+)\]")

USER_INPUT_VAR = "user_input"


def to_number(value: Any) -> float:
    """Numeric coercion for comparisons.

    Missing and blank values count as 0, like a counter that was never set;
    text that is not a number is NaN, so every comparison with it is false.
    """
    if value is None:
        return 0.0
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return 0.0
        if NUMBER_PATTERN.match(text):
            return float(text)
    return math.nan


def _text(value: Any) -> str:
    return stringify(value).casefold()


OPERATORS: dict[str, Any] = {
    "==": lambda a, b: _text(a) == _text(b),
    "!=": lambda a, b: _text(a) != _text(b),
    ">": lambda a, b: to_number(a) > to_number(b),
    ">=": lambda a, b: to_number(a) >= to_number(b),
    "<": lambda a, b: to_number(a) < to_number(b),
    "<=": lambda a, b: to_number(a) <= to_number(b),
    "CONTAINS": lambda a, b: _text(b) in _text(a),
    "NOT CONTAINS": lambda a, b: _text(b) not in _text(a),
}


def is_present(value: Any) -> bool:
    """A variable exists when it is neither null nor the empty string."""
    if value is None:
        return False
    return not (isinstance(value, str) and value == "")


def get_nested_value(data: Any, path: str) -> Any:
    """
    Get a value using dot notation with optional array indexing,
    e.g. 'order.items[0].sku'. A leading '$.' is ignored. Missing → None.
    """
    path = re.sub(r"^\$\.?", "", path.strip())
    if not path:
        return data
    current = data
    for part in path.split("."):
        name = INDEX_PATTERN.sub("", part)
        if name:
            if isinstance(current, dict):
                current = current.get(name)
            elif isinstance(current, list) and name.isdigit():
                idx = int(name)
                current = current[idx] if idx < len(current) else None
            else:
                return None
        for idx in INDEX_PATTERN.findall(part):
            if isinstance(current, list) and int(idx) < len(current):
                current = current[int(idx)]
            else:
                return None
    return current


def _strip_quotes(literal: str) -> str:
    if len(literal) >= 2 and literal[0] == literal[-1] and literal[0] in ("'", '"'):
        return literal[1:-1]
    return literal


def evaluate_equation(condition: str, bindings: Mapping[str, Any], user_input: str = "") -> bool:
    """Evaluate one equation condition against the bindings and latest utterance."""
    try:
        scope = {**bindings, USER_INPUT_VAR: user_input}
        text = (condition or "").strip()

        exists_match = EXISTS_PATTERN.match(text)
        if exists_match:
            var_name, op = exists_match.group(1), exists_match.group(2).lower()
            present = is_present(scope.get(var_name))
            return present if op == "exists" else not present

        binary_match = BINARY_PATTERN.match(text)
        if binary_match:
            var_name = binary_match.group(1)
            operator = " ".join(binary_match.group(2).upper().split())
            compare = substitute(_strip_quotes(binary_match.group(3).strip()), scope)
            fn = OPERATORS.get(operator)
            if fn is None:
                return False
            return bool(fn(scope.get(var_name), compare))

        # A condition that renders to a bare boolean literal
        rendered = substitute(text, scope).strip().lower()
        return rendered == "true"
    except Exception as e:
        logger.warning("equation_evaluation_failed", condition=condition, error=str(e))
        return False
