"""SQL-backed store for the JSON row and relational engines.

Both engines keep one table per collection with typed scalar columns and
foreign keys for declared relations. They differ in where record lists live:
- JSON row: serialized JSON text in the parent row
- Relational: child table rows written and read in the same transaction
"""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from typing import Any

from sqlalchemy import Connection, delete, func, insert, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from polystore.core.compat import utc_now
from polystore.core.connection import SQLConnection
from polystore.core.types import (
    CollectionSpec,
    EngineKind,
    FieldType,
    InsertResult,
    PageResult,
    Pagination,
    QueryDescriptor,
)
from polystore.data.expander import Expansion, RelationExpander, resolve_expansion
from polystore.data.normalizer import ResultNormalizer, to_number
from polystore.exceptions import (
    ConnectionError,
    ConstraintError,
    NotFoundError,
    QueryError,
    SerializationError,
    ValidationError,
)
from polystore.query.sql import SQLQueryTranslator
from polystore.schema.registry import SchemaRegistry
from polystore.schema.tables import PARENT_COLUMN, POSITION_COLUMN, SQLSchema, build_tables

logger = logging.getLogger(__name__)

# Label prefix for columns of the joined (expanded) table
EXPAND_PREFIX = "expanded__"

# Per-item failures that a batch retry isolates; connection failures propagate
ITEM_ERRORS = (ConstraintError, QueryError, SerializationError)


def coerce_id(value: Any) -> int | None:
    """Convert an identifier to the SQL primary key type, or None if it cannot be one."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        text = value.strip()
        if text.isascii() and text.isdigit():
            return int(text)
    return None


def _int_reference(value: Any) -> int:
    ref = coerce_id(value)
    if ref is None:
        raise ValueError(f"expected integer identifier, got {value!r}")
    return ref


class SQLStore:
    """DataStore over SQLAlchemy for SQLite, PostgreSQL and MySQL.

    Example:
        store = SQLStore(SQLConnection("sqlite:///shop.db"), collections)
        store.init()
        order = store.create("orders", {"userId": 1, "items": [...]})
        page = store.find_all_advanced("orders", {"expand": "user", "limit": 10})
    """

    def __init__(
        self,
        connection: SQLConnection,
        collections: Iterable[CollectionSpec | dict[str, Any]] = (),
        kind: EngineKind | str = EngineKind.JSON_ROW,
        case_sensitive: bool = True,
        native_expand: bool = True,
    ) -> None:
        """Initialize store.

        Args:
            connection: SQL connection manager (owned by the store)
            collections: Declared collections
            kind: EngineKind.JSON_ROW or EngineKind.RELATIONAL
            case_sensitive: Whether textual equality distinguishes case
            native_expand: Expand with a JOIN instead of follow-up reads

        Raises:
            SchemaError: If the declarations are inconsistent
        """
        kind = EngineKind(kind)
        if kind == EngineKind.DOCUMENT:
            raise ValueError("SQLStore serves the json_row and relational engines")

        self._connection = connection
        self._kind = kind
        self._normalized = kind == EngineKind.RELATIONAL
        self._registry = SchemaRegistry(
            collections,
            strict=True,
            strict_items=self._normalized,
            reference=_int_reference,
        )
        self._schema = build_tables(self._registry.collections(), normalized=self._normalized)
        self._case_sensitive = case_sensitive
        self._native_expand = native_expand
        self._expander = RelationExpander(self.find_by_id)

    @property
    def kind(self) -> EngineKind:
        """Engine backing this store."""
        return self._kind

    @property
    def registry(self) -> SchemaRegistry:
        """Declared collections."""
        return self._registry

    @property
    def schema(self) -> SQLSchema:
        """Table definitions."""
        return self._schema

    # === Lifecycle ===

    def init(self) -> None:
        """Create missing tables and indexes. Idempotent."""
        with self._session("*") as conn:
            self._schema.metadata.create_all(conn)
        logger.info(
            f"Initialized {len(self._schema.metadata.tables)} table(s) for {self._kind} store"
        )

    def ping(self) -> bool:
        """Check connectivity.

        Raises:
            ConnectionError: If the database is unreachable
        """
        return self._connection.ping()

    def close(self) -> None:
        """Release the connection pool. Safe to call repeatedly."""
        self._connection.close()

    def __enter__(self) -> SQLStore:
        """Context manager entry."""
        return self

    def __exit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        """Context manager exit."""
        self.close()

    # === Writes ===

    def create(self, collection: str, record: dict[str, Any]) -> dict[str, Any]:
        """Insert a record and return it as stored.

        Args:
            collection: Collection name
            record: Field values (generated fields are ignored)

        Returns:
            Stored record with id, createdAt and updatedAt

        Raises:
            ValidationError: If the record is invalid (no statement is issued)
            ConstraintError: If a foreign key or unique constraint rejects it
        """
        spec = self._registry.get(collection)
        translator = self._translator(spec)
        values, lists = translator.row_values(self._registry.validate_create(spec, record))

        with self._session(spec.name) as conn:
            record_id = self._insert(conn, spec, translator, values, lists)
            created = self._fetch(conn, spec, record_id)

        if created is None:
            raise QueryError(
                f"Record {record_id} was not readable after insert into '{spec.name}'"
            )
        logger.debug(f"Created record {record_id} in '{spec.name}'")
        return created

    def insert_many(
        self, collection: str, records: Iterable[dict[str, Any]]
    ) -> list[InsertResult]:
        """Insert records, reporting the outcome of each in input order.

        Valid records are inserted in one transaction. If that transaction
        fails, each record is retried in its own transaction so one bad
        record does not sink the others.
        """
        spec = self._registry.get(collection)
        translator = self._translator(spec)
        items = list(records)
        results: list[InsertResult | None] = [None] * len(items)

        valid: list[tuple[int, dict[str, Any], dict[str, list[Any]]]] = []
        for index, record in enumerate(items):
            try:
                values, lists = translator.row_values(
                    self._registry.validate_create(spec, record)
                )
            except ValidationError as e:
                results[index] = InsertResult(
                    index=index, error=e.message, error_type=type(e).__name__
                )
                continue
            valid.append((index, values, lists))

        if valid:
            try:
                with self._session(spec.name) as conn:
                    for index, values, lists in valid:
                        results[index] = self._insert_result(
                            conn, spec, translator, index, values, lists
                        )
            except ITEM_ERRORS as e:
                logger.warning(
                    f"Batch insert into '{spec.name}' failed ({e.message}); "
                    f"retrying {len(valid)} item(s) individually"
                )
                for index, values, lists in valid:
                    results[index] = self._insert_isolated(spec, translator, index, values, lists)

        done = [r for r in results if r is not None]
        logger.debug(
            f"Inserted {sum(1 for r in done if r.ok)}/{len(items)} record(s) into '{spec.name}'"
        )
        return done

    def update(
        self, collection: str, record_id: Any, partial: dict[str, Any]
    ) -> dict[str, Any]:
        """Merge fields into a record and return the full updated record.

        Record lists in child tables are replaced, not merged.

        Raises:
            ValidationError: If a value is invalid or nulls a required field
            NotFoundError: If no record has this identifier
        """
        spec = self._registry.get(collection)
        translator = self._translator(spec)
        values, lists = translator.row_values(self._registry.validate_update(spec, partial))
        rid = coerce_id(record_id)
        if rid is None:
            raise NotFoundError(spec.name, record_id)

        table = translator.table
        children = self._schema.children(spec.name)
        with self._session(spec.name) as conn:
            result = conn.execute(
                update(table).where(table.c.id == rid).values(**values, updated_at=utc_now())
            )
            if result.rowcount == 0:
                raise NotFoundError(spec.name, record_id)
            for name in lists:
                child = children[name]
                conn.execute(delete(child).where(child.c[PARENT_COLUMN] == rid))
            self._write_children(conn, spec, translator, rid, lists)
            updated = self._fetch(conn, spec, rid)

        if updated is None:
            raise NotFoundError(spec.name, record_id)
        logger.debug(f"Updated record {rid} in '{spec.name}'")
        return updated

    def delete(self, collection: str, record_id: Any) -> bool:
        """Delete a record. Idempotent.

        Returns:
            True if a record was removed

        Raises:
            ConstraintError: If other records still reference it (RESTRICT)
        """
        spec = self._registry.get(collection)
        rid = coerce_id(record_id)
        if rid is None:
            return False

        table = self._schema.table(spec.name)
        with self._session(spec.name) as conn:
            for child in self._schema.children(spec.name).values():
                conn.execute(delete(child).where(child.c[PARENT_COLUMN] == rid))
            result = conn.execute(delete(table).where(table.c.id == rid))
            deleted = result.rowcount > 0

        logger.debug(f"Delete of {rid} in '{spec.name}': {'removed' if deleted else 'absent'}")
        return deleted

    # === Reads ===

    def find_by_id(self, collection: str, record_id: Any) -> dict[str, Any] | None:
        """Get a record by identifier, or None (also for malformed identifiers)."""
        spec = self._registry.get(collection)
        rid = coerce_id(record_id)
        if rid is None:
            return None
        with self._session(spec.name) as conn:
            return self._fetch(conn, spec, rid)

    def find_one(
        self, collection: str, predicate: dict[str, Any] | None = None
    ) -> dict[str, Any] | None:
        """Get the first record (lowest identifier) matching a filter, or None."""
        spec = self._registry.get(collection)
        translator = self._translator(spec)
        table = translator.table
        stmt = (
            select(table)
            .where(*translator.where(predicate or {}))
            .order_by(table.c.id)
            .limit(1)
        )
        with self._session(spec.name) as conn:
            row = conn.execute(stmt).mappings().first()
            if row is None:
                return None
            return self._to_records(conn, spec, [row])[0]

    def find_all(self, collection: str) -> list[dict[str, Any]]:
        """Get every record of a collection. For small collections only."""
        spec = self._registry.get(collection)
        table = self._schema.table(spec.name)
        with self._session(spec.name) as conn:
            rows = conn.execute(select(table).order_by(table.c.id)).mappings().all()
            return self._to_records(conn, spec, rows)

    def find_all_advanced(
        self, collection: str, query: QueryDescriptor | dict[str, Any] | None = None
    ) -> PageResult:
        """Filter, search, sort, paginate and expand.

        Args:
            collection: Collection name
            query: QueryDescriptor or dict with the same keys

        Returns:
            PageResult with data and pagination
        """
        descriptor = QueryDescriptor.parse(query)
        spec = self._registry.get(collection)
        translator = self._translator(spec)
        table = translator.table

        conditions = translator.where(descriptor.filter)
        search = translator.search(descriptor.q, spec.searchable_fields())
        if search is not None:
            conditions.append(search)

        expansion = (
            resolve_expansion(self._registry, spec, descriptor.expand)
            if descriptor.expand
            else None
        )
        native = expansion is not None and self._native_expand

        stmt = self._joined(translator, expansion) if native else select(table)
        stmt = (
            stmt.where(*conditions)
            .order_by(*translator.order_by(descriptor.sort, descriptor.order))
            .offset(descriptor.offset)
            .limit(descriptor.limit)
        )

        with self._session(spec.name) as conn:
            rows = conn.execute(stmt).mappings().all()
            total = None
            if descriptor.with_total:
                total = conn.execute(
                    select(func.count()).select_from(table).where(*conditions)
                ).scalar_one()
            records = self._to_records(conn, spec, rows)
            if native and expansion is not None:
                self._attach_joined(conn, expansion, rows, records)

        if expansion is not None and not native:
            self._expander.expand(records, expansion)

        pages = math.ceil(total / descriptor.limit) if total is not None else None
        return PageResult(
            data=records,
            pagination=Pagination(
                page=descriptor.page, limit=descriptor.limit, total=total, pages=pages
            ),
        )

    def count(self, collection: str, filter: dict[str, Any] | None = None) -> int:
        """Count matching records on the server."""
        spec = self._registry.get(collection)
        translator = self._translator(spec)
        stmt = (
            select(func.count())
            .select_from(translator.table)
            .where(*translator.where(filter or {}))
        )
        with self._session(spec.name) as conn:
            return int(conn.execute(stmt).scalar_one())

    def sum(
        self, collection: str, field: str, filter: dict[str, Any] | None = None
    ) -> int | float:
        """Sum a numeric field over matching records on the server (0 when empty)."""
        spec = self._registry.get(collection)
        declared = spec.field(field)
        if declared is None or declared.type not in (FieldType.INT, FieldType.FLOAT):
            raise ValidationError(
                f"Cannot sum '{field}' on '{spec.name}': not a numeric field",
                {field: "not numeric"},
            )
        translator = self._translator(spec)
        stmt = (
            select(func.coalesce(func.sum(translator.column(field)), 0))
            .select_from(translator.table)
            .where(*translator.where(filter or {}))
        )
        with self._session(spec.name) as conn:
            value = conn.execute(stmt).scalar_one()
        return to_number(value, integral=declared.type == FieldType.INT)

    # === Internals ===

    def _translator(self, spec: CollectionSpec) -> SQLQueryTranslator:
        return SQLQueryTranslator(
            spec,
            self._schema.table(spec.name),
            self._connection.dialect,
            case_sensitive=self._case_sensitive,
            children=self._schema.children(spec.name),
        )

    @contextmanager
    def _session(self, collection: str) -> Iterator[Connection]:
        """Borrow a transactional connection and translate native failures."""
        try:
            with self._connection.acquire() as conn:
                yield conn
        except IntegrityError as e:
            logger.error(f"Constraint violation on '{collection}': {e.orig}")
            raise ConstraintError(collection, str(e.orig)) from e
        except SQLAlchemyError as e:
            if getattr(e, "connection_invalidated", False):
                logger.error(f"Connection lost during operation on '{collection}': {e}")
                raise ConnectionError(f"Lost database connection: {e}") from e
            logger.error(f"Query on '{collection}' failed: {e}")
            raise QueryError(
                f"Query on '{collection}' failed: {e}", {"collection": collection}
            ) from e

    def _insert(
        self,
        conn: Connection,
        spec: CollectionSpec,
        translator: SQLQueryTranslator,
        values: dict[str, Any],
        lists: dict[str, list[Any]],
    ) -> int:
        now = utc_now()
        result = conn.execute(
            insert(translator.table).values(**values, created_at=now, updated_at=now)
        )
        record_id = result.inserted_primary_key[0]
        self._write_children(conn, spec, translator, record_id, lists)
        return record_id

    def _insert_result(
        self,
        conn: Connection,
        spec: CollectionSpec,
        translator: SQLQueryTranslator,
        index: int,
        values: dict[str, Any],
        lists: dict[str, list[Any]],
    ) -> InsertResult:
        record_id = self._insert(conn, spec, translator, values, lists)
        return InsertResult(index=index, id=record_id, record=self._fetch(conn, spec, record_id))

    def _insert_isolated(
        self,
        spec: CollectionSpec,
        translator: SQLQueryTranslator,
        index: int,
        values: dict[str, Any],
        lists: dict[str, list[Any]],
    ) -> InsertResult:
        try:
            with self._session(spec.name) as conn:
                return self._insert_result(conn, spec, translator, index, values, lists)
        except ITEM_ERRORS as e:
            return InsertResult(index=index, error=e.message, error_type=type(e).__name__)

    def _write_children(
        self,
        conn: Connection,
        spec: CollectionSpec,
        translator: SQLQueryTranslator,
        parent_id: int,
        lists: dict[str, list[Any]],
    ) -> None:
        children = self._schema.children(spec.name)
        for name, items in lists.items():
            rows = translator.child_rows(name, parent_id, items)
            if rows:
                conn.execute(insert(children[name]), rows)

    def _fetch(
        self, conn: Connection, spec: CollectionSpec, record_id: int
    ) -> dict[str, Any] | None:
        table = self._schema.table(spec.name)
        row = conn.execute(select(table).where(table.c.id == record_id)).mappings().first()
        if row is None:
            return None
        return self._to_records(conn, spec, [row])[0]

    def _to_records(
        self, conn: Connection, spec: CollectionSpec, rows: list[Mapping[str, Any]]
    ) -> list[dict[str, Any]]:
        normalizer = ResultNormalizer(spec)
        children = self._load_children(conn, spec, [row["id"] for row in rows])
        if children is None:
            return [normalizer.from_row(row) for row in rows]
        return [normalizer.from_row(row, children[row["id"]]) for row in rows]

    def _load_children(
        self, conn: Connection, spec: CollectionSpec, ids: list[int]
    ) -> dict[int, dict[str, list[Mapping[str, Any]]]] | None:
        """Child rows per parent id and list field, in position order."""
        tables = self._schema.children(spec.name)
        if not tables:
            return None
        grouped: dict[int, dict[str, list[Mapping[str, Any]]]] = {i: {} for i in ids}
        if not ids:
            return grouped
        for name, child in tables.items():
            stmt = (
                select(child)
                .where(child.c[PARENT_COLUMN].in_(ids))
                .order_by(child.c[PARENT_COLUMN], child.c[POSITION_COLUMN])
            )
            for row in conn.execute(stmt).mappings():
                grouped[row[PARENT_COLUMN]].setdefault(name, []).append(row)
        return grouped

    def _joined(self, translator: SQLQueryTranslator, expansion: Expansion) -> Any:
        """SELECT of the main table LEFT OUTER JOINed to the related table."""
        table = translator.table
        related = self._schema.table(expansion.target.name).alias("expanded")
        foreign = translator.column(expansion.field)
        labelled = [c.label(f"{EXPAND_PREFIX}{c.name}") for c in related.c]
        return select(table, *labelled).select_from(
            table.outerjoin(related, foreign == related.c.id)
        )

    def _attach_joined(
        self,
        conn: Connection,
        expansion: Expansion,
        rows: list[Mapping[str, Any]],
        records: list[dict[str, Any]],
    ) -> None:
        """Set the expansion alias on each record from the joined columns."""
        joined = [
            {k[len(EXPAND_PREFIX):]: v for k, v in row.items() if k.startswith(EXPAND_PREFIX)}
            for row in rows
        ]
        present = [row for row in joined if row.get("id") is not None]
        related = {
            r["id"]: r for r in self._to_records(conn, expansion.target, present)
        }
        for record, row in zip(records, joined):
            record[expansion.alias] = (
                dict(related[row["id"]]) if row.get("id") is not None else None
            )
