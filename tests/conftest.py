"""Shared test fixtures for polystore."""

import os
from collections.abc import Callable, Generator
from pathlib import Path
from typing import Any

import mongomock
import pytest

from polystore import DataStore
from polystore.core.connection import DocumentConnection, SQLConnection
from polystore.data.document_store import DocumentStore
from polystore.data.sql_store import SQLStore

ENGINES = ["json_row", "document", "relational"]
SQL_ENGINES = ["json_row", "relational"]

# A small shop: users place orders made of line items
CATALOG: list[dict[str, Any]] = [
    {
        "name": "users",
        "fields": [
            {"name": "name", "type": "string", "required": True},
            {"name": "email", "type": "string", "unique": True},
            {"name": "active", "type": "bool"},
            {"name": "age", "type": "int"},
        ],
    },
    {
        "name": "products",
        "fields": [
            {"name": "name", "type": "string", "required": True, "searchable": True},
            {"name": "description", "type": "text", "searchable": True},
            {"name": "price", "type": "float"},
            {"name": "stock", "type": "int"},
            {"name": "tags", "type": "list"},
        ],
    },
    {
        "name": "orders",
        "fields": [
            {"name": "userId", "type": "ref", "required": True},
            {"name": "status", "type": "string"},
            {"name": "total", "type": "float"},
            {"name": "placedAt", "type": "datetime"},
            {"name": "shipping", "type": "object"},
            {
                "name": "items",
                "type": "list",
                "items": [
                    {"name": "productName", "type": "string", "required": True},
                    {"name": "quantity", "type": "int"},
                    {"name": "price", "type": "float"},
                    {"name": "discount", "type": "float"},
                ],
            },
        ],
        "relations": [{"name": "user", "field": "userId", "target": "users"}],
    },
]


def _psycopg_available() -> bool:
    """Check if psycopg is installed."""
    try:
        import psycopg  # noqa: F401

        return True
    except ImportError:
        return False


def _postgresql_connectable(url: str) -> bool:
    """Check if we can connect to PostgreSQL."""
    if not _psycopg_available():
        return False
    try:
        conn = SQLConnection(url)
        result = conn.ping()
        conn.close()
        return result
    except Exception:
        return False


@pytest.fixture
def postgresql_url() -> str:
    """Get PostgreSQL URL from environment or use default, skipping if unreachable."""
    url = os.environ.get("TEST_DATABASE_URL")
    if not url:
        # Default to local PostgreSQL
        url = "postgresql://localhost/polystore_test"

    if not _psycopg_available():
        pytest.skip("psycopg not installed")

    if not _postgresql_connectable(url):
        pytest.skip(f"Cannot connect to PostgreSQL at {url}")

    return url


@pytest.fixture
def store_factory(tmp_path: Path) -> Generator[Callable[..., DataStore], None, None]:
    """Build initialized stores over the catalog.

    SQL stores of the same kind share one SQLite file and document stores
    share one mongomock client, so two stores with different options see the
    same data.
    """
    mongo = mongomock.MongoClient()
    stores: list[DataStore] = []

    def factory(
        kind: str, case_sensitive: bool = True, native_expand: bool = True
    ) -> DataStore:
        store: DataStore
        if kind == "document":
            connection = DocumentConnection("mongodb://localhost/polystore_test", client=mongo)
            store = DocumentStore(
                connection, CATALOG, case_sensitive=case_sensitive, native_expand=native_expand
            )
        else:
            connection_url = f"sqlite:///{tmp_path / f'{kind}.db'}"
            store = SQLStore(
                SQLConnection(connection_url),
                CATALOG,
                kind=kind,
                case_sensitive=case_sensitive,
                native_expand=native_expand,
            )
        store.init()
        stores.append(store)
        return store

    yield factory
    for store in stores:
        store.close()


@pytest.fixture(params=ENGINES)
def store(request: pytest.FixtureRequest, store_factory: Callable[..., DataStore]) -> DataStore:
    """An initialized store for each engine."""
    return store_factory(request.param)


@pytest.fixture(params=SQL_ENGINES)
def sql_store(
    request: pytest.FixtureRequest, store_factory: Callable[..., DataStore]
) -> DataStore:
    """An initialized store for each SQL engine."""
    return store_factory(request.param)


@pytest.fixture
def document_store(store_factory: Callable[..., DataStore]) -> DataStore:
    """An initialized document store on mongomock."""
    return store_factory("document")


@pytest.fixture
def relational_store(store_factory: Callable[..., DataStore]) -> DataStore:
    """An initialized relational store on SQLite."""
    return store_factory("relational")


@pytest.fixture
def json_row_store(store_factory: Callable[..., DataStore]) -> DataStore:
    """An initialized JSON row store on SQLite."""
    return store_factory("json_row")


@pytest.fixture
def catalog() -> list[dict[str, Any]]:
    """Collection declarations of the test shop."""
    return CATALOG
