"""MongoDB query translation.

Builds filter documents, sort specs and aggregation pipelines from
engine-neutral query descriptions. Dotted paths are native in MongoDB and
match inside arrays of sub-documents.
"""

from __future__ import annotations

import re
from typing import Any

from bson import ObjectId
from pymongo import ASCENDING, DESCENDING

from polystore.core.types import (
    CREATED_AT,
    ID_FIELD,
    UPDATED_AT,
    CollectionSpec,
    FieldType,
    SortOrder,
)
from polystore.exceptions import QueryError, ValidationError
from polystore.query.filters import OPERATORS, split_operator
from polystore.schema.registry import parse_datetime

COMPARISONS = {"ne": "$ne", "gt": "$gt", "gte": "$gte", "lt": "$lt", "lte": "$lte"}


def to_object_id(value: Any) -> ObjectId | None:
    """Convert an identifier to an ObjectId, or None if it cannot be one."""
    if isinstance(value, ObjectId):
        return value
    if isinstance(value, str) and len(value) == 24 and ObjectId.is_valid(value):
        return ObjectId(value)
    return None


def like_to_regex(pattern: str) -> str:
    """Translate a SQL LIKE pattern into an anchored regular expression."""
    parts = []
    for char in pattern:
        if char == "%":
            parts.append(".*")
        elif char == "_":
            parts.append(".")
        else:
            parts.append(re.escape(char))
    return "^" + "".join(parts) + "$"


class DocumentQueryTranslator:
    """Translates filters, search, and sort into MongoDB query documents."""

    def __init__(self, spec: CollectionSpec, case_sensitive: bool = True) -> None:
        """Initialize translator.

        Args:
            spec: Collection being queried
            case_sensitive: Whether top-level textual equality distinguishes case
        """
        self._spec = spec
        self._case_sensitive = case_sensitive

    def key(self, name: str) -> str:
        """Document key of a logical field name."""
        return "_id" if name == ID_FIELD else name

    def match(
        self,
        filters: dict[str, Any] | None = None,
        q: str | None = None,
        fold_case: bool | None = None,
    ) -> dict[str, Any]:
        """Build the filter document for a read.

        Args:
            filters: Field name -> value or operator dict
            q: Free-text search term
            fold_case: Override the store's case policy for this call

        Returns:
            MongoDB filter document
        """
        fold = (not self._case_sensitive) if fold_case is None else fold_case
        conditions = [
            self._condition(name, *split_operator(raw), fold=fold)
            for name, raw in (filters or {}).items()
        ]
        search = self.search(q, self._spec.searchable_fields())
        if search is not None:
            conditions.append(search)

        if not conditions:
            return {}
        if len(conditions) == 1:
            return conditions[0]
        return {"$and": conditions}

    def search(self, q: str | None, fields: list[str]) -> dict[str, Any] | None:
        """Case-insensitive substring match OR-ed across searchable fields."""
        if not q or not fields:
            return None
        pattern = re.escape(q)
        return {"$or": [{self.key(f): {"$regex": pattern, "$options": "i"}} for f in fields]}

    def sort(self, sort: str | None, order: str = SortOrder.ASC) -> list[tuple[str, int]]:
        """Sort spec; ``_id`` breaks ties and is the default order."""
        direction = DESCENDING if order == SortOrder.DESC else ASCENDING
        if sort is None or sort == ID_FIELD:
            return [("_id", direction)]
        return [(self.key(sort), direction), ("_id", ASCENDING)]

    def pipeline(
        self,
        match: dict[str, Any],
        sort: list[tuple[str, int]],
        skip: int,
        limit: int,
        lookup: dict[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        """Aggregation pipeline for a page of results, with an optional $lookup."""
        stages: list[dict[str, Any]] = [
            {"$match": match},
            {"$sort": dict(sort)},
            {"$skip": skip},
            {"$limit": limit},
        ]
        if lookup is not None:
            stages.append({"$lookup": lookup})
        return stages

    def _condition(self, name: str, op: str, value: Any, fold: bool) -> dict[str, Any]:
        key = self.key(name)
        if "." in name and op != "eq":
            raise QueryError(
                f"Only equality is supported on nested paths, got '{op}'",
                {"field": name, "op": op},
            )
        value = self._coerce(name, op, value)

        if op == "eq":
            if fold and isinstance(value, str) and "." not in name:
                return {key: {"$regex": f"^{re.escape(value)}$", "$options": "i"}}
            return {key: value}
        elif op in COMPARISONS:
            return {key: {COMPARISONS[op]: value}}
        elif op == "like":
            return {key: {"$regex": like_to_regex(value)}}
        elif op == "ilike":
            return {key: {"$regex": like_to_regex(value), "$options": "i"}}
        elif op == "in":
            return {key: {"$in": value}}
        elif op == "is_null":
            return {key: None} if value else {key: {"$ne": None}}
        raise QueryError(
            f"Unsupported filter operator '{op}'. Supported: {', '.join(OPERATORS)}",
            {"field": name, "op": op},
        )

    def _coerce(self, name: str, op: str, value: Any) -> Any:
        if op == "in":
            if not isinstance(value, (list, tuple, set)):
                raise ValidationError(
                    f"Operator 'in' on '{name}' needs a list", {name: "expected list"}
                )
            return [self._coerce_scalar(name, v) for v in value]
        if op in ("like", "ilike") and not isinstance(value, str):
            raise ValidationError(
                f"Operator '{op}' on '{name}' needs a string pattern", {name: "expected string"}
            )
        if op == "is_null":
            return bool(value)
        return self._coerce_scalar(name, value)

    def _coerce_scalar(self, name: str, value: Any) -> Any:
        """Match the stored representation of identifiers and timestamps."""
        if value is None:
            return None
        field = self._spec.field(name)
        if name == ID_FIELD or (field is not None and field.type == FieldType.REF):
            oid = to_object_id(value)
            return oid if oid is not None else value
        if name in (CREATED_AT, UPDATED_AT) or (
            field is not None and field.type == FieldType.DATETIME
        ):
            try:
                return parse_datetime(value)
            except ValueError as e:
                raise ValidationError(f"Invalid datetime for '{name}'", {name: str(e)}) from e
        return value
