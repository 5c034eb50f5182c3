"""SQLAlchemy table definitions for the SQL engines.

Two layouts share one builder:
- JSON row: one table per collection, nested values in JSON text columns
- Normalized: as above, except list fields with declared items become a child
  table ``<table>_<column>`` (id, parent_id, position, item columns)

Both layouts declare foreign keys for relations.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Double,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
)
from sqlalchemy.dialects import mysql

from polystore.core.types import CollectionSpec, FieldSpec, FieldType, OnDeleteAction
from polystore.exceptions import SchemaError

logger = logging.getLogger(__name__)


def _timestamp_type() -> DateTime:
    # MySQL DATETIME drops fractional seconds unless fsp is given
    return DateTime(timezone=True).with_variant(mysql.DATETIME(fsp=6), "mysql")


# Mapping from polystore field types to SQLAlchemy column types
FIELD_TYPE_MAP = {
    "string": lambda: String(255),
    "text": lambda: Text(),
    "int": lambda: Integer(),
    "float": lambda: Double(),
    "bool": lambda: Boolean(),
    "datetime": _timestamp_type,
    "object": lambda: Text(),
    "list": lambda: Text(),
    "ref": lambda: Integer(),
}

SYSTEM_COLUMN_NAMES = ("id", "created_at", "updated_at")
PARENT_COLUMN = "parent_id"
POSITION_COLUMN = "position"


def _map_on_delete(action: str) -> str:
    """Map OnDeleteAction to SQL ON DELETE clause."""
    mapping = {
        OnDeleteAction.CASCADE: "CASCADE",
        OnDeleteAction.SET_NULL: "SET NULL",
        OnDeleteAction.RESTRICT: "RESTRICT",
    }
    return mapping.get(action, "RESTRICT")


def _system_columns() -> list[Column[Any]]:
    return [
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("created_at", _timestamp_type(), nullable=False),
        Column("updated_at", _timestamp_type(), nullable=False),
    ]


class SQLSchema:
    """Tables built for a set of collections, keyed by collection name."""

    def __init__(self) -> None:
        self.metadata = MetaData()
        self._tables: dict[str, Table] = {}
        self._children: dict[str, dict[str, Table]] = {}

    def table(self, collection: str) -> Table:
        """Get the main table of a collection."""
        return self._tables[collection]

    def children(self, collection: str) -> dict[str, Table]:
        """Get child tables of a collection, keyed by list field name."""
        return self._children.get(collection, {})

    def add(self, collection: str, table: Table, children: dict[str, Table]) -> None:
        self._tables[collection] = table
        if children:
            self._children[collection] = children


def build_tables(collections: list[CollectionSpec], normalized: bool = False) -> SQLSchema:
    """Build table definitions for declared collections.

    Args:
        collections: Declared collections
        normalized: Put record lists in child tables instead of JSON columns

    Returns:
        SQLSchema holding the tables and their shared MetaData

    Raises:
        SchemaError: If a relation targets an undeclared collection
    """
    by_name = {c.name: c for c in collections}
    schema = SQLSchema()

    for spec in collections:
        table_name = spec.table_name
        references: dict[str, ForeignKey] = {}
        for relation in spec.relations:
            target = by_name.get(relation.target)
            if target is None:
                raise SchemaError(
                    f"Relation '{relation.name}' on '{spec.name}' targets undeclared "
                    f"collection '{relation.target}'",
                    {"collection": spec.name, "target": relation.target},
                )
            references[relation.field] = ForeignKey(
                f"{target.table_name}.id", ondelete=_map_on_delete(relation.on_delete)
            )

        columns = _system_columns()
        indexes: list[Index] = []
        children: dict[str, Table] = {}
        for field in spec.fields:
            if field.column_name in SYSTEM_COLUMN_NAMES:
                raise SchemaError(
                    f"Field '{field.name}' on '{spec.name}' maps to reserved column "
                    f"'{field.column_name}'",
                    {"collection": spec.name, "field": field.name},
                )
            if normalized and field.is_record_list:
                children[field.name] = _child_table(schema.metadata, table_name, field)
                continue

            col_type = FIELD_TYPE_MAP[field.type]()
            args: list[Any] = [references[field.name]] if field.name in references else []
            columns.append(
                Column(field.column_name, col_type, *args, nullable=not field.required)
            )
            if field.unique:
                indexes.append(
                    Index(
                        f"ix_{table_name}_{field.column_name}_unique",
                        field.column_name,
                        unique=True,
                    )
                )
            elif field.indexed or field.name in references:
                indexes.append(Index(f"ix_{table_name}_{field.column_name}", field.column_name))

        table = Table(table_name, schema.metadata, *columns, *indexes)
        schema.add(spec.name, table, children)
        logger.debug(f"Built table '{table_name}' with {len(children)} child table(s)")

    return schema


def _child_table(metadata: MetaData, parent_table: str, field: FieldSpec) -> Table:
    """Build the child table holding the items of a record list."""
    table_name = f"{parent_table}_{field.column_name}"
    columns: list[Column[Any]] = [
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column(
            PARENT_COLUMN,
            Integer,
            ForeignKey(f"{parent_table}.id", ondelete="CASCADE"),
            nullable=False,
        ),
        Column(POSITION_COLUMN, Integer, nullable=False),
    ]
    reserved = {"id", PARENT_COLUMN, POSITION_COLUMN}
    for item in field.items:
        if item.column_name in reserved:
            raise SchemaError(
                f"Item field '{item.name}' of '{field.name}' maps to reserved column "
                f"'{item.column_name}'",
                {"field": field.name, "item": item.name},
            )
        col_type = FIELD_TYPE_MAP[item.type]()
        columns.append(Column(item.column_name, col_type, nullable=True))
    return Table(
        table_name,
        metadata,
        *columns,
        Index(f"ix_{table_name}_{PARENT_COLUMN}", PARENT_COLUMN),
    )
