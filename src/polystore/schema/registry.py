"""Collection registry and record validation.

The registry is the single source of truth for which collections exist and
what their records look like. Validation runs here, before any native call.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import datetime
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from polystore.core.compat import as_utc
from polystore.core.types import SYSTEM_FIELDS, CollectionSpec, FieldSpec, FieldType
from polystore.exceptions import CollectionNotFoundError, SchemaError, ValidationError

logger = logging.getLogger(__name__)


def parse_datetime(value: Any) -> datetime:
    """Parse a datetime or ISO-8601 string into an aware UTC datetime.

    Raises:
        ValueError: If the value is neither
    """
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        return as_utc(datetime.fromisoformat(text))
    raise ValueError(f"expected datetime, got {type(value).__name__}")


def _default_reference(value: Any) -> Any:
    if isinstance(value, bool) or not isinstance(value, (int, str)):
        raise ValueError(f"expected identifier, got {type(value).__name__}")
    return value


class SchemaRegistry:
    """Holds declared collections and validates records against them."""

    def __init__(
        self,
        collections: Iterable[CollectionSpec | dict[str, Any]] = (),
        strict: bool = True,
        strict_items: bool = False,
        reference: Callable[[Any], Any] | None = None,
    ) -> None:
        """Initialize the registry.

        Args:
            collections: Collection specs (or dicts in spec format)
            strict: Reject undeclared collections and fields.
                Schema-flexible engines pass False: undeclared collections
                and fields are accepted and stored as given.
            strict_items: Reject undeclared sub-fields inside record lists.
                Engines that store each sub-field in its own column pass True.
            reference: Converts a relation value to the stored identifier,
                raising ValueError when the engine cannot store it.
        """
        self._strict = strict
        self._strict_items = strict_items
        self._reference = reference or _default_reference
        self._collections: dict[str, CollectionSpec] = {}
        for collection in collections:
            self.register(collection)

    @property
    def strict(self) -> bool:
        """Whether undeclared data is rejected."""
        return self._strict

    def register(self, collection: CollectionSpec | dict[str, Any]) -> CollectionSpec:
        """Declare a collection.

        Raises:
            SchemaError: If the declaration is invalid or the name is taken
        """
        try:
            spec = (
                collection
                if isinstance(collection, CollectionSpec)
                else CollectionSpec.model_validate(collection)
            )
        except PydanticValidationError as e:
            raise SchemaError(f"Invalid collection declaration: {e}") from e

        if spec.name in self._collections:
            raise SchemaError(f"Collection '{spec.name}' is already declared")
        self._collections[spec.name] = spec
        logger.debug(f"Registered collection '{spec.name}'")
        return spec

    def names(self) -> list[str]:
        """Declared collection names, sorted."""
        return sorted(self._collections)

    def collections(self) -> list[CollectionSpec]:
        """Declared collections in registration order."""
        return list(self._collections.values())

    def get(self, name: str) -> CollectionSpec:
        """Get a collection spec.

        Non-strict registries hand out an empty spec for undeclared names.

        Raises:
            CollectionNotFoundError: If strict and the collection is undeclared
        """
        spec = self._collections.get(name)
        if spec is not None:
            return spec
        if self._strict:
            raise CollectionNotFoundError(name, self.names())
        return CollectionSpec(name=name)

    # === Validation ===

    def validate_create(self, spec: CollectionSpec, record: dict[str, Any]) -> dict[str, Any]:
        """Validate a new record.

        Generated fields are dropped. Datetime strings are parsed and numeric
        values for float fields are widened.

        Returns:
            Cleaned record data

        Raises:
            ValidationError: Listing every problem found
        """
        if not isinstance(record, dict):
            raise ValidationError(
                f"Record for '{spec.name}' must be a mapping, got {type(record).__name__}"
            )

        errors: dict[str, str] = {}
        for field in spec.fields:
            if field.required and record.get(field.name) is None:
                errors[field.name] = "required"

        cleaned = self._check_values(spec, record, errors)
        if errors:
            raise ValidationError(f"Invalid record for '{spec.name}'", errors)
        return cleaned

    def validate_update(self, spec: CollectionSpec, partial: dict[str, Any]) -> dict[str, Any]:
        """Validate a partial record for an update.

        Returns:
            Cleaned partial data

        Raises:
            ValidationError: If a value has the wrong type or nulls a required field
        """
        if not isinstance(partial, dict):
            raise ValidationError(
                f"Update for '{spec.name}' must be a mapping, got {type(partial).__name__}"
            )

        errors: dict[str, str] = {}
        for name, value in partial.items():
            field = spec.field(name)
            if field is not None and field.required and value is None:
                errors[name] = "required"

        cleaned = self._check_values(spec, partial, errors)
        if errors:
            raise ValidationError(f"Invalid update for '{spec.name}'", errors)
        return cleaned

    def _check_values(
        self, spec: CollectionSpec, data: dict[str, Any], errors: dict[str, str]
    ) -> dict[str, Any]:
        cleaned: dict[str, Any] = {}
        for name, value in data.items():
            if name in SYSTEM_FIELDS:
                continue
            field = spec.field(name)
            if field is None:
                if self._strict:
                    errors[name] = "unknown field"
                else:
                    cleaned[name] = value
                continue
            if name in errors:
                continue
            try:
                cleaned[name] = self._check_value(field, value, name, errors)
            except ValueError as e:
                errors[name] = str(e)
        return cleaned

    def _check_value(
        self, field: FieldSpec, value: Any, path: str, errors: dict[str, str]
    ) -> Any:
        """Check a single value against its field type.

        Raises:
            ValueError: With a short description of the mismatch
        """
        if value is None:
            return None

        field_type = field.type
        if field_type in (FieldType.STRING, FieldType.TEXT):
            if not isinstance(value, str):
                raise ValueError(f"expected string, got {type(value).__name__}")
            return value
        elif field_type == FieldType.INT:
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueError(f"expected int, got {type(value).__name__}")
            return value
        elif field_type == FieldType.FLOAT:
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValueError(f"expected float, got {type(value).__name__}")
            return float(value)
        elif field_type == FieldType.BOOL:
            if not isinstance(value, bool):
                raise ValueError(f"expected bool, got {type(value).__name__}")
            return value
        elif field_type == FieldType.DATETIME:
            try:
                return parse_datetime(value)
            except ValueError as e:
                raise ValueError(f"invalid datetime: {e}") from e
        elif field_type == FieldType.REF:
            return self._reference(value)
        elif field_type == FieldType.OBJECT:
            if not isinstance(value, dict):
                raise ValueError(f"expected object, got {type(value).__name__}")
            return value
        else:
            if not isinstance(value, list):
                raise ValueError(f"expected list, got {type(value).__name__}")
            if field.items:
                return [
                    self._check_item(field, item, f"{path}[{i}]", errors)
                    for i, item in enumerate(value)
                ]
            return value

    def _check_item(
        self, field: FieldSpec, item: Any, path: str, errors: dict[str, str]
    ) -> Any:
        if not isinstance(item, dict):
            errors[path] = f"expected object, got {type(item).__name__}"
            return item

        cleaned: dict[str, Any] = {}
        for sub in field.items:
            if sub.required and item.get(sub.name) is None:
                errors[f"{path}.{sub.name}"] = "required"
        for key, value in item.items():
            sub = field.item(key)
            if sub is None:
                if self._strict_items:
                    errors[f"{path}.{key}"] = "unknown field"
                cleaned[key] = value
                continue
            try:
                cleaned[key] = self._check_value(sub, value, f"{path}.{key}", errors)
            except ValueError as e:
                errors[f"{path}.{key}"] = str(e)
        return cleaned
