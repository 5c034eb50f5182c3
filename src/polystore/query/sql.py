"""SQL query translation.

Builds SQLAlchemy Core expressions from engine-neutral query descriptions.
Values are always bound parameters; column names come only from the declared
schema.
"""

from __future__ import annotations

import json
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import Table, cast, func, literal, or_, select
from sqlalchemy.dialects.postgresql import JSONB, JSONPATH

from polystore.core.compat import as_utc
from polystore.core.types import (
    CREATED_AT,
    ID_FIELD,
    UPDATED_AT,
    CollectionSpec,
    FieldSpec,
    FieldType,
    SortOrder,
    is_identifier,
)
from polystore.exceptions import QueryError, ValidationError
from polystore.query.filters import OPERATORS, split_operator
from polystore.schema.registry import parse_datetime
from polystore.schema.tables import PARENT_COLUMN, POSITION_COLUMN

SYSTEM_COLUMNS = {ID_FIELD: "id", CREATED_AT: "created_at", UPDATED_AT: "updated_at"}

# Binary collation keeps MySQL equality case-sensitive
MYSQL_BINARY_COLLATION = "utf8mb4_bin"

# Datetimes inside JSON text are stored as {"$date": "<ISO 8601, UTC>"}
DATE_TAG = "$date"


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return {DATE_TAG: as_utc(value).isoformat()}
    if isinstance(value, Decimal):
        return float(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _revive_tagged(obj: dict[str, Any]) -> Any:
    if len(obj) == 1 and isinstance(obj.get(DATE_TAG), str):
        return parse_datetime(obj[DATE_TAG])
    return obj


def dump_json(value: Any) -> str:
    """Serialize a nested value to JSON text for storage."""
    return json.dumps(value, ensure_ascii=False, default=_json_default)


def load_json(text: str) -> Any:
    """Parse JSON text written by :func:`dump_json`, reviving tagged datetimes.

    Raises:
        ValueError: If the text is not valid JSON or a tagged datetime is malformed
    """
    return json.loads(text, object_hook=_revive_tagged)


class SQLQueryTranslator:
    """Translates filters, search, and sort into SQLAlchemy expressions.

    One translator serves one collection. For the normalized layout it also
    knows the child tables holding record lists.
    """

    def __init__(
        self,
        spec: CollectionSpec,
        table: Table,
        dialect: str,
        case_sensitive: bool = True,
        children: dict[str, Table] | None = None,
    ) -> None:
        """Initialize translator.

        Args:
            spec: Collection being queried
            table: Its main table
            dialect: SQLAlchemy dialect name
            case_sensitive: Whether top-level textual equality distinguishes case
            children: Child tables per record-list field
        """
        self._spec = spec
        self._table = table
        self._dialect = dialect
        self._case_sensitive = case_sensitive
        self._children = children or {}

    @property
    def table(self) -> Table:
        return self._table

    # === Columns ===

    def column(self, name: str) -> Any:
        """Resolve a logical field name to its column.

        Raises:
            ValidationError: If the field is undeclared or lives in a child table
        """
        if name in SYSTEM_COLUMNS:
            return self._table.c[SYSTEM_COLUMNS[name]]
        field = self._spec.field(name)
        if field is None:
            raise ValidationError(
                f"Unknown field '{name}' on '{self._spec.name}'",
                {name: "unknown field"},
            )
        if field.name in self._children:
            raise ValidationError(
                f"Field '{name}' is stored as a list of rows and cannot be used here",
                {name: "not a column"},
            )
        return self._table.c[field.column_name]

    # === Predicates ===

    def where(self, filters: dict[str, Any], fold_case: bool | None = None) -> list[Any]:
        """Build the conditions for a filter mapping.

        Args:
            filters: Field name -> value or operator dict
            fold_case: Override the store's case policy for this call

        Returns:
            List of conditions to AND together
        """
        fold = (not self._case_sensitive) if fold_case is None else fold_case
        conditions = []
        for name, raw in filters.items():
            op, value = split_operator(raw)
            if "." in name:
                conditions.append(self._nested(name, op, value))
            else:
                conditions.append(self._condition(name, op, value, fold))
        return conditions

    def search(self, q: str | None, fields: list[str]) -> Any | None:
        """Case-insensitive substring match OR-ed across searchable fields.

        Wildcards in ``q`` are escaped; it is matched literally.
        """
        if not q or not fields:
            return None
        clauses = [self.column(name).icontains(q, autoescape=True) for name in fields]
        return or_(*clauses)

    def order_by(self, sort: str | None, order: str = SortOrder.ASC) -> list[Any]:
        """Sort clauses; the identifier breaks ties and is the default order."""
        id_column = self._table.c.id
        if sort is None or sort == ID_FIELD:
            return [id_column.desc() if order == SortOrder.DESC else id_column.asc()]
        column = self.column(sort)
        primary = column.desc() if order == SortOrder.DESC else column.asc()
        return [primary, id_column.asc()]

    def _condition(self, name: str, op: str, value: Any, fold: bool) -> Any:
        column = self.column(name)
        field = self._spec.field(name)
        value = self._coerce(name, field, op, value)
        textual = field is not None and field.is_text

        if op == "eq":
            if value is None:
                return column.is_(None)
            return self._equals(column, value, textual, fold)
        elif op == "ne":
            if value is None:
                return column.is_not(None)
            return column != value
        elif op == "gt":
            return column > value
        elif op == "gte":
            return column >= value
        elif op == "lt":
            return column < value
        elif op == "lte":
            return column <= value
        elif op == "like":
            if self._dialect == "mysql":
                return column.collate(MYSQL_BINARY_COLLATION).like(value)
            return column.like(value)
        elif op == "ilike":
            return column.ilike(value)
        elif op == "in":
            return column.in_(value)
        elif op == "is_null":
            return column.is_(None) if value else column.is_not(None)
        raise QueryError(
            f"Unsupported filter operator '{op}'. Supported: {', '.join(OPERATORS)}",
            {"field": name, "op": op},
        )

    def _equals(self, column: Any, value: Any, textual: bool, fold: bool) -> Any:
        if textual and isinstance(value, str):
            if fold:
                return func.lower(column) == value.lower()
            if self._dialect == "mysql":
                return column.collate(MYSQL_BINARY_COLLATION) == value
        return column == value

    def _coerce(self, name: str, field: FieldSpec | None, op: str, value: Any) -> Any:
        """Convert filter operands to the column's Python type."""
        if op == "in":
            if not isinstance(value, (list, tuple, set)):
                raise ValidationError(
                    f"Operator 'in' on '{name}' needs a list",
                    {name: "expected list"},
                )
            return [self._coerce_scalar(name, field, v) for v in value]
        if op in ("like", "ilike") and not isinstance(value, str):
            raise ValidationError(
                f"Operator '{op}' on '{name}' needs a string pattern",
                {name: "expected string"},
            )
        if op == "is_null":
            return bool(value)
        return self._coerce_scalar(name, field, value)

    def _coerce_scalar(self, name: str, field: FieldSpec | None, value: Any) -> Any:
        is_timestamp = name in (CREATED_AT, UPDATED_AT) or (
            field is not None and field.type == FieldType.DATETIME
        )
        if is_timestamp and value is not None:
            try:
                return parse_datetime(value)
            except ValueError as e:
                raise ValidationError(f"Invalid datetime for '{name}'", {name: str(e)}) from e
        return value

    # === Nested paths ===

    def _nested(self, path: str, op: str, value: Any) -> Any:
        """Equality on a sub-field inside a nested value (``items.productName``)."""
        head, _, sub = path.partition(".")
        field = self._spec.field(head)
        if field is None or not field.is_nested:
            raise ValidationError(
                f"Field '{head}' on '{self._spec.name}' is not a nested field",
                {path: "not nested"},
            )
        if op != "eq":
            raise QueryError(
                f"Only equality is supported on nested paths, got '{op}'",
                {"field": path, "op": op},
            )
        if not is_identifier(sub):
            raise ValidationError(f"Invalid nested key in '{path}'", {path: "invalid key"})

        child = self._children.get(head)
        if child is not None:
            return self._child_exists(field, child, path, sub, value)
        return self._json_contains(self._table.c[field.column_name], field, sub, value)

    def _child_exists(
        self, field: FieldSpec, child: Table, path: str, sub: str, value: Any
    ) -> Any:
        item = field.item(sub)
        if item is None:
            raise ValidationError(
                f"Unknown item field '{sub}' on '{field.name}'", {path: "unknown field"}
            )
        sub_column = child.c[item.column_name]
        value = self._coerce_scalar(path, item, value)
        match = sub_column.is_(None) if value is None else self._equals(
            sub_column, value, item.is_text, fold=False
        )
        return (
            select(child.c.id)
            .where(child.c[PARENT_COLUMN] == self._table.c.id, match)
            .correlate(self._table)
            .exists()
        )

    def _json_contains(self, column: Any, field: FieldSpec, sub: str, value: Any) -> Any:
        """Inspect JSON text structurally on each dialect."""
        item = field.item(sub)
        if item is not None:
            value = self._coerce_scalar(f"{field.name}.{sub}", item, value)
        # Tagged datetimes compare on their ISO text
        tagged = isinstance(value, datetime)
        if tagged:
            value = as_utc(value).isoformat()
        keys = f'."{sub}"."{DATE_TAG}"' if tagged else f'."{sub}"'
        json_path = f"${keys}"

        if self._dialect == "sqlite":
            if field.type == FieldType.OBJECT:
                return func.json_extract(column, json_path) == value
            elements = func.json_each(column).table_valued("value")
            return (
                select(literal(1))
                .select_from(elements)
                .where(func.json_extract(elements.c.value, json_path) == value)
                .correlate(self._table)
                .exists()
            )
        elif self._dialect == "postgresql":
            # $[*] also visits a lone object in lax mode
            return func.jsonb_path_exists(
                cast(column, JSONB),
                cast(f"$[*] ? (@{keys} == $v)", JSONPATH),
                cast(dump_json({"v": value}), JSONB),
            )
        elif self._dialect == "mysql":
            target = func.json_object(DATE_TAG, value) if tagged else value
            return func.json_contains(column, func.json_object(sub, target)) == 1
        raise QueryError(f"Nested filters are not supported on '{self._dialect}'")

    # === Writes ===

    def row_values(self, data: dict[str, Any]) -> tuple[dict[str, Any], dict[str, list[Any]]]:
        """Split validated data into column values and child-table lists.

        Returns:
            (column -> value, list field name -> items)
        """
        values: dict[str, Any] = {}
        lists: dict[str, list[Any]] = {}
        for name, value in data.items():
            field = self._spec.field(name)
            if field is None:
                continue
            if field.name in self._children:
                lists[field.name] = value or []
            elif field.is_nested and value is not None:
                values[field.column_name] = self._serialize(name, value)
            else:
                values[field.column_name] = value
        return values, lists

    def child_rows(self, field_name: str, parent_id: int, items: list[Any]) -> list[dict[str, Any]]:
        """Rows for the child table of a record list."""
        field = self._spec.field(field_name)
        if field is None or not field.items:
            raise QueryError(f"'{field_name}' is not a record list of '{self._spec.name}'")
        rows = []
        for position, item in enumerate(items):
            row: dict[str, Any] = {PARENT_COLUMN: parent_id, POSITION_COLUMN: position}
            for sub in field.items:
                value = item.get(sub.name)
                if sub.is_nested and value is not None:
                    value = self._serialize(f"{field_name}.{sub.name}", value)
                row[sub.column_name] = value
            rows.append(row)
        return rows

    def _serialize(self, path: str, value: Any) -> str:
        try:
            return dump_json(value)
        except (TypeError, ValueError) as e:
            raise ValidationError(
                f"Value of '{path}' cannot be stored as JSON", {path: str(e)}
            ) from e

