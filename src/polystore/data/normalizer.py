"""Result normalization.

Turns native results into canonical records:
- SQL rows: JSON text parsed (tagged datetimes revived), 0/1 booleans coerced,
  naive timestamps made UTC, child rows assembled back into lists
- Documents: ``_id`` renamed to ``id``, ObjectIds rendered as strings,
  BSON datetimes made UTC

Items of record lists carry every declared sub-field on every engine; unset
ones read back as None.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from datetime import datetime
from decimal import Decimal
from typing import Any

from bson import ObjectId

from polystore.core.compat import as_utc
from polystore.core.types import (
    CREATED_AT,
    ID_FIELD,
    UPDATED_AT,
    CollectionSpec,
    FieldSpec,
    FieldType,
)
from polystore.exceptions import SerializationError
from polystore.query.sql import load_json
from polystore.schema.registry import parse_datetime

_TRUE_STRINGS = {"true", "1"}
_FALSE_STRINGS = {"false", "0"}


def to_number(value: Any, integral: bool = False) -> int | float:
    """Convert a driver numeric (Decimal for SQL aggregates) to int or float."""
    if value is None:
        return 0
    if isinstance(value, Decimal):
        return int(value) if integral or value == value.to_integral_value() else float(value)
    if integral and isinstance(value, float) and value.is_integer():
        return int(value)
    return value


class ResultNormalizer:
    """Converts rows and documents into canonical records."""

    def __init__(self, spec: CollectionSpec) -> None:
        """Initialize normalizer.

        Args:
            spec: Collection the results belong to
        """
        self._spec = spec

    def from_row(
        self,
        row: Mapping[str, Any],
        children: Mapping[str, Sequence[Mapping[str, Any]]] | None = None,
    ) -> dict[str, Any]:
        """Convert a SQL row to a record.

        Args:
            row: Row mapping keyed by column name
            children: Child rows per record-list field (normalized layout only)

        Returns:
            Canonical record

        Raises:
            SerializationError: If a stored value cannot be converted
        """
        record: dict[str, Any] = {
            ID_FIELD: row["id"],
            CREATED_AT: self._timestamp(CREATED_AT, row["created_at"]),
            UPDATED_AT: self._timestamp(UPDATED_AT, row["updated_at"]),
        }
        for field in self._spec.fields:
            if children is not None and field.is_record_list:
                record[field.name] = [
                    self._item_from_row(field, child) for child in children.get(field.name, [])
                ]
            else:
                record[field.name] = self._convert(field, row.get(field.column_name), field.name)
        return record

    def from_document(self, document: Mapping[str, Any]) -> dict[str, Any]:
        """Convert a MongoDB document to a record.

        Declared fields come first (missing ones as None), then any undeclared
        fields the document carries.
        """
        record: dict[str, Any] = {
            ID_FIELD: _plain(document["_id"]),
            CREATED_AT: _plain(document.get(CREATED_AT)),
            UPDATED_AT: _plain(document.get(UPDATED_AT)),
        }
        for field in self._spec.fields:
            value = _plain(document.get(field.name))
            if field.type == FieldType.BOOL and value is not None:
                value = self._bool(field.name, value)
            elif field.items and isinstance(value, list):
                value = [self._complete_item(field, item) for item in value]
            record[field.name] = value
        for key, value in document.items():
            if key == "_id" or key in record:
                continue
            record[key] = _plain(value)
        return record

    # === Conversion helpers ===

    def _item_from_row(self, field: FieldSpec, row: Mapping[str, Any]) -> dict[str, Any]:
        return {
            sub.name: self._convert(sub, row.get(sub.column_name), f"{field.name}.{sub.name}")
            for sub in field.items
        }

    def _complete_item(self, field: FieldSpec, item: Any) -> Any:
        """Declared sub-fields first (unset ones as None), then any extra keys."""
        if not isinstance(item, dict):
            return item
        completed: dict[str, Any] = {sub.name: None for sub in field.items}
        completed.update(item)
        return completed

    def _convert(self, field: FieldSpec, value: Any, path: str) -> Any:
        if value is None:
            return None

        field_type = field.type
        if field_type == FieldType.BOOL:
            return self._bool(path, value)
        elif field_type == FieldType.DATETIME:
            return self._timestamp(path, value)
        elif field_type in (FieldType.INT, FieldType.REF):
            return int(value) if isinstance(value, (Decimal, float)) else value
        elif field_type == FieldType.FLOAT:
            return float(value)
        elif field_type in (FieldType.OBJECT, FieldType.LIST):
            parsed = self._json(path, value)
            if field.items and isinstance(parsed, list):
                return [self._revive_item(field, item, path) for item in parsed]
            return parsed
        return value

    def _revive_item(self, field: FieldSpec, item: Any, path: str) -> Any:
        """Restore declared sub-field types of an item parsed from JSON text."""
        if not isinstance(item, dict):
            return item
        revived = self._complete_item(field, item)
        for sub in field.items:
            value = revived[sub.name]
            if sub.type == FieldType.DATETIME and value is not None:
                revived[sub.name] = self._timestamp(f"{path}.{sub.name}", value)
        return revived

    def _json(self, path: str, value: Any) -> Any:
        if isinstance(value, (dict, list)):
            return value
        if isinstance(value, bytes):
            value = value.decode("utf-8")
        try:
            return load_json(value)
        except (TypeError, ValueError) as e:
            raise SerializationError(self._spec.name, path, f"malformed JSON: {e}") from e

    def _bool(self, path: str, value: Any) -> bool:
        if isinstance(value, bool):
            return value
        if isinstance(value, int) and value in (0, 1):
            return bool(value)
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in _TRUE_STRINGS:
                return True
            if lowered in _FALSE_STRINGS:
                return False
        raise SerializationError(self._spec.name, path, f"cannot read {value!r} as a boolean")

    def _timestamp(self, path: str, value: Any) -> datetime | None:
        if value is None:
            return None
        try:
            return parse_datetime(value)
        except ValueError as e:
            raise SerializationError(self._spec.name, path, str(e)) from e


def _plain(value: Any) -> Any:
    """Recursively render ObjectIds as strings and datetimes as aware UTC."""
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_plain(v) for v in value]
    return value

