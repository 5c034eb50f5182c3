"""Input parsing utilities for CLI commands."""

import json
from pathlib import Path
from typing import Any

from polystore.query.filters import OPERATORS


def parse_value(raw: str) -> Any:
    """Parse a command-line value as JSON, falling back to the raw string.

    Examples:
        "10" → 10, "true" → True, "Ada" → "Ada", '"10"' → "10"
    """
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def parse_where(conditions: list[str] | None) -> dict[str, Any]:
    """Parse ``--where`` conditions into a filter mapping.

    Format: field=value (equality) or field:op=value.

    Examples:
        "name=Ada" → {"name": "Ada"}
        "total:gt=100" → {"total": {"op": "gt", "value": 100}}
        "items.productName=Mouse" → {"items.productName": "Mouse"}

    Raises:
        ValueError: If a condition is malformed or names an unknown operator
    """
    filters: dict[str, Any] = {}
    for condition in conditions or []:
        if "=" not in condition:
            raise ValueError(
                f"Invalid condition: '{condition}'. Expected field=value or field:op=value"
            )
        target, raw = condition.split("=", 1)
        field, _, op = target.partition(":")
        if not field:
            raise ValueError(f"Invalid condition: '{condition}'. Missing field name")
        value = parse_value(raw)
        if not op:
            filters[field] = value
        elif op in OPERATORS:
            filters[field] = {"op": op, "value": value}
        else:
            raise ValueError(
                f"Invalid operator: '{op}'. Supported: {', '.join(OPERATORS)}"
            )
    return filters


def read_json_file(path: str) -> Any:
    """Read a JSON document from file.

    Raises:
        FileNotFoundError: If file doesn't exist
        json.JSONDecodeError: If file contains invalid JSON
    """
    file_path = Path(path)
    if not file_path.exists():
        raise FileNotFoundError(f"File not found: {path}")

    with file_path.open("r") as f:
        return json.load(f)


def read_jsonl_file(path: str) -> list[dict[str, Any]]:
    """Read JSON Lines (JSONL) file.

    Each line should contain a separate JSON object.

    Raises:
        FileNotFoundError: If file doesn't exist
        json.JSONDecodeError: If any line contains invalid JSON
    """
    file_path = Path(path)
    if not file_path.exists():
        raise FileNotFoundError(f"File not found: {path}")

    records = []
    with file_path.open("r") as f:
        for line_num, line in enumerate(f, 1):
            line = line.strip()
            if not line:
                continue
            try:
                records.append(json.loads(line))
            except json.JSONDecodeError as e:
                raise json.JSONDecodeError(
                    f"Invalid JSON on line {line_num}: {e.msg}",
                    e.doc,
                    e.pos,
                ) from e

    return records


def load_collections(path: str | None) -> list[dict[str, Any]]:
    """Load collection declarations from a schema file.

    The file holds either a list of collection specs or an object with a
    ``collections`` list.
    """
    if path is None:
        return []
    data = read_json_file(path)
    if isinstance(data, dict):
        data = data.get("collections", [])
    if not isinstance(data, list):
        raise ValueError(f"Schema file {path} must contain a list of collections")
    return data
