"""The DataStore contract and the factory that builds stores.

Callers depend only on DataStore. Which engine is behind it is decided by the
StoreConfig handed to ``open_store``; stores share no state with each other.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from polystore.core.config import StoreConfig
from polystore.core.connection import DocumentConnection, SQLConnection
from polystore.core.types import (
    CollectionSpec,
    EngineKind,
    InsertResult,
    PageResult,
    QueryDescriptor,
)

if TYPE_CHECKING:
    from pymongo import MongoClient

    from polystore.schema.registry import SchemaRegistry

logger = logging.getLogger(__name__)


@runtime_checkable
class DataStore(Protocol):
    """CRUD and advanced reads over one engine."""

    @property
    def kind(self) -> EngineKind: ...

    @property
    def registry(self) -> SchemaRegistry: ...

    def init(self) -> None: ...

    def ping(self) -> bool: ...

    def close(self) -> None: ...

    def create(self, collection: str, record: dict[str, Any]) -> dict[str, Any]: ...

    def insert_many(
        self, collection: str, records: Iterable[dict[str, Any]]
    ) -> list[InsertResult]: ...

    def find_by_id(self, collection: str, record_id: Any) -> dict[str, Any] | None: ...

    def find_one(
        self, collection: str, predicate: dict[str, Any] | None = None
    ) -> dict[str, Any] | None: ...

    def find_all(self, collection: str) -> list[dict[str, Any]]: ...

    def find_all_advanced(
        self, collection: str, query: QueryDescriptor | dict[str, Any] | None = None
    ) -> PageResult: ...

    def update(
        self, collection: str, record_id: Any, partial: dict[str, Any]
    ) -> dict[str, Any]: ...

    def delete(self, collection: str, record_id: Any) -> bool: ...

    def count(self, collection: str, filter: dict[str, Any] | None = None) -> int: ...

    def sum(
        self, collection: str, field: str, filter: dict[str, Any] | None = None
    ) -> int | float: ...

    def __enter__(self) -> DataStore: ...

    def __exit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None: ...


def open_store(
    config: StoreConfig | dict[str, Any],
    collections: Iterable[CollectionSpec | dict[str, Any]] = (),
    init: bool = False,
    mongo_client: MongoClient[Any] | None = None,
) -> DataStore:
    """Build the store selected by a configuration.

    Args:
        config: StoreConfig (or dict in its format)
        collections: Declared collections
        init: Create tables/indexes before returning
        mongo_client: Pre-built client for the document engine

    Returns:
        DataStore implementation for ``config.engine``

    Raises:
        SchemaError: If the declarations are inconsistent
        ConnectionError: If ``init`` is set and the engine is unreachable

    Example:
        config = StoreConfig(engine="relational", url="sqlite:///shop.db")
        with open_store(config, collections, init=True) as store:
            user = store.create("users", {"name": "Ada", "email": "ada@example.com"})
    """
    from polystore.data.document_store import DocumentStore
    from polystore.data.sql_store import SQLStore

    if not isinstance(config, StoreConfig):
        config = StoreConfig.model_validate(config)
    kind = EngineKind(config.engine)

    store: DataStore
    if kind == EngineKind.DOCUMENT:
        connection = DocumentConnection(config.url, database=config.database, client=mongo_client)
        store = DocumentStore(
            connection,
            collections,
            case_sensitive=config.case_sensitive,
            native_expand=config.native_expand,
        )
    else:
        store = SQLStore(
            SQLConnection(config.url, echo=config.echo, pool_size=config.pool_size),
            collections,
            kind=kind,
            case_sensitive=config.case_sensitive,
            native_expand=config.native_expand,
        )

    logger.info(f"Opened {kind} store")
    if init:
        store.init()
    return store
