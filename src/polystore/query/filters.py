"""Filter operand helpers shared by the query translators."""

from __future__ import annotations

from typing import Any

OPERATORS = ("eq", "ne", "gt", "gte", "lt", "lte", "like", "ilike", "in", "is_null")


def split_operator(value: Any) -> tuple[str, Any]:
    """Split a filter value into (operator, operand).

    Plain values mean equality; ``{"op": ..., "value": ...}`` names an operator.
    """
    if isinstance(value, dict) and "op" in value:
        return str(value["op"]), value.get("value")
    return "eq", value
