"""Custom exceptions for polystore.

Every engine failure is translated into one of these so callers can assert on
the kind of failure without knowing which engine produced it:
- Messages say what went wrong and, where possible, how to fix it
- ``context`` carries machine-readable details for the caller
"""

from __future__ import annotations

from typing import Any


class PolystoreError(Exception):
    """Base exception for all polystore errors."""

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def to_dict(self) -> dict[str, Any]:
        """Return error as JSON-serializable dict."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "context": self.context,
        }


class ConnectionError(PolystoreError):
    """Engine unreachable, pool exhausted, or dialect unsupported."""

    pass


class CollectionNotFoundError(PolystoreError):
    """Collection is not declared in the schema."""

    def __init__(self, collection: str, available: list[str] | None = None) -> None:
        available = available or []
        if available:
            message = (
                f"Collection '{collection}' is not declared. "
                f"Declared collections: {', '.join(available)}"
            )
        else:
            message = f"Collection '{collection}' is not declared. No collections declared yet."
        super().__init__(message, {"collection": collection, "available_collections": available})
        self.collection = collection
        self.available = available


class ValidationError(PolystoreError):
    """Caller-supplied data failed validation before reaching the engine."""

    def __init__(self, message: str, field_errors: dict[str, str] | None = None) -> None:
        super().__init__(message, {"field_errors": field_errors or {}})
        self.field_errors = field_errors or {}


class NotFoundError(PolystoreError):
    """Record with given identifier does not exist."""

    def __init__(self, collection: str, record_id: Any) -> None:
        message = f"Record '{record_id}' not found in '{collection}'."
        super().__init__(message, {"collection": collection, "record_id": str(record_id)})
        self.collection = collection
        self.record_id = record_id


class ConstraintError(PolystoreError):
    """The engine rejected a write because of a declared constraint.

    Raised for foreign key and uniqueness violations.
    """

    def __init__(self, collection: str, reason: str) -> None:
        message = f"Write to '{collection}' violates a constraint: {reason}"
        super().__init__(message, {"collection": collection, "reason": reason})
        self.collection = collection
        self.reason = reason


class SerializationError(PolystoreError):
    """A stored value could not be converted to its canonical form."""

    def __init__(self, collection: str, field: str, reason: str) -> None:
        message = f"Cannot read field '{field}' of '{collection}': {reason}"
        super().__init__(message, {"collection": collection, "field": field, "reason": reason})
        self.collection = collection
        self.field = field
        self.reason = reason


class QueryError(PolystoreError):
    """Query could not be translated or the engine failed to execute it."""

    pass


class SchemaError(PolystoreError):
    """A collection declaration is inconsistent."""

    pass
