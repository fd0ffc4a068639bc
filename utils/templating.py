"""
Variable substitution for authored text.

``{{name}}`` placeholders are replaced with the string form of the bound
value. Unknown or null variables become an empty string; substituted
values are never re-scanned.
"""
from __future__ import annotations

import json
import math
import re
from typing import Any, Mapping

PLACEHOLDER = re.compile(r"\{\{(\w+)\}\}")


def stringify(value: Any) -> str:
    """String form of a variable value, as the flow editor displays it."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        if math.isnan(value):
            return "NaN"
        if math.isinf(value):
            return "Infinity" if value > 0 else "-Infinity"
        if value.is_integer():
            return str(int(value))
        return repr(value)
    if isinstance(value, (dict, list)):
        try:
            return json.dumps(value, default=str)
        except (TypeError, ValueError):
            return str(value)
    return str(value)


def substitute(text: str, bindings: Mapping[str, Any]) -> str:
    """Replace every {{identifier}} in text with its bound value."""
    if not text:
        return ""
    return PLACEHOLDER.sub(lambda m: stringify(bindings.get(m.group(1))), text)


def referenced_variables(text: str) -> list[str]:
    """Names of all variables a template refers to, in order of appearance."""
    if not text:
        return []
    return PLACEHOLDER.findall(text)
