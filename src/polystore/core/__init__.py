"""Core components for polystore."""

from polystore.core.config import StoreConfig
from polystore.core.connection import DocumentConnection, SQLConnection
from polystore.core.store import DataStore, open_store
from polystore.core.types import (
    CollectionSpec,
    EngineKind,
    ExpandSpec,
    FieldSpec,
    FieldType,
    InsertResult,
    PageResult,
    Pagination,
    QueryDescriptor,
    RelationSpec,
)

__all__ = [
    "DataStore",
    "open_store",
    "StoreConfig",
    "SQLConnection",
    "DocumentConnection",
    "EngineKind",
    "FieldType",
    "FieldSpec",
    "RelationSpec",
    "CollectionSpec",
    "ExpandSpec",
    "QueryDescriptor",
    "Pagination",
    "PageResult",
    "InsertResult",
]
