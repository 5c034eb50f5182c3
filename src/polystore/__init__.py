"""polystore - one data-access interface over three storage engines.

Application code performs CRUD and advanced reads (filters, search, sort,
pagination, relation expansion) through DataStore without knowing whether a
JSON row store, MongoDB, or a normalized relational schema is behind it.

Example:
    from polystore import StoreConfig, open_store

    collections = [
        {"name": "users", "fields": [{"name": "name", "required": True}]},
        {
            "name": "orders",
            "fields": [
                {"name": "userId", "type": "ref", "required": True},
                {"name": "total", "type": "float"},
                {
                    "name": "items",
                    "type": "list",
                    "items": [
                        {"name": "productName", "required": True},
                        {"name": "quantity", "type": "int"},
                    ],
                },
            ],
            "relations": [{"name": "user", "field": "userId", "target": "users"}],
        },
    ]

    config = StoreConfig(engine="relational", url="sqlite:///shop.db")
    with open_store(config, collections, init=True) as store:
        user = store.create("users", {"name": "Ada"})
        store.create("orders", {"userId": user["id"], "items": [{"productName": "Mouse"}]})
        page = store.find_all_advanced(
            "orders", {"filter": {"items.productName": "Mouse"}, "expand": "user"}
        )
"""

from polystore.core.config import StoreConfig
from polystore.core.store import DataStore, open_store
from polystore.core.types import (
    CollectionSpec,
    EngineKind,
    ExpandSpec,
    FieldSpec,
    FieldType,
    InsertResult,
    OnDeleteAction,
    PageResult,
    Pagination,
    QueryDescriptor,
    RelationSpec,
    SortOrder,
)
from polystore.exceptions import (
    CollectionNotFoundError,
    ConnectionError,
    ConstraintError,
    NotFoundError,
    PolystoreError,
    QueryError,
    SchemaError,
    SerializationError,
    ValidationError,
)

__version__ = "0.1.0"

__all__ = [
    # Factory
    "open_store",
    "DataStore",
    "StoreConfig",
    # Types
    "EngineKind",
    "FieldType",
    "FieldSpec",
    "RelationSpec",
    "CollectionSpec",
    "OnDeleteAction",
    "SortOrder",
    "ExpandSpec",
    "QueryDescriptor",
    "Pagination",
    "PageResult",
    "InsertResult",
    # Exceptions
    "PolystoreError",
    "ConnectionError",
    "CollectionNotFoundError",
    "ValidationError",
    "NotFoundError",
    "ConstraintError",
    "SerializationError",
    "QueryError",
    "SchemaError",
]
