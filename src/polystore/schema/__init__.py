"""Schema management for polystore."""

from polystore.schema.registry import SchemaRegistry, parse_datetime
from polystore.schema.tables import SQLSchema, build_tables

__all__ = [
    "SchemaRegistry",
    "SQLSchema",
    "build_tables",
    "parse_datetime",
]
