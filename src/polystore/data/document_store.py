"""MongoDB-backed store for the document engine.

Documents keep logical field names and store nested values natively. The
engine declares no foreign keys: references to missing records are stored
as given. Undeclared collections and fields are accepted.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from typing import Any

from bson import ObjectId
from bson.errors import InvalidDocument
from pymongo import ASCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import BulkWriteError, ConnectionFailure, DuplicateKeyError, PyMongoError

from polystore.core.compat import utc_now
from polystore.core.connection import DocumentConnection
from polystore.core.types import (
    CREATED_AT,
    UPDATED_AT,
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
    ValidationError,
)
from polystore.query.document import DocumentQueryTranslator, to_object_id
from polystore.schema.registry import SchemaRegistry

logger = logging.getLogger(__name__)

# Temporary field receiving $lookup results before they are normalized
LOOKUP_FIELD = "__expanded"

DUPLICATE_KEY_CODE = 11000


def _document_reference(value: Any) -> Any:
    """Store 24-hex references as ObjectIds; other identifiers as given."""
    if isinstance(value, bool) or not isinstance(value, (str, int, ObjectId)):
        raise ValueError(f"expected identifier, got {type(value).__name__}")
    oid = to_object_id(value)
    return oid if oid is not None else value


class DocumentStore:
    """DataStore over pymongo.

    Example:
        store = DocumentStore(DocumentConnection("mongodb://localhost/shop"), collections)
        order = store.create("orders", {"userId": user["id"], "items": [...]})
        page = store.find_all_advanced("orders", {"filter": {"items.productName": "Mouse"}})
    """

    def __init__(
        self,
        connection: DocumentConnection,
        collections: Iterable[CollectionSpec | dict[str, Any]] = (),
        case_sensitive: bool = True,
        native_expand: bool = True,
    ) -> None:
        """Initialize store.

        Args:
            connection: Document connection manager (owned by the store)
            collections: Declared collections
            case_sensitive: Whether textual equality distinguishes case
            native_expand: Expand with $lookup instead of follow-up reads
        """
        self._connection = connection
        self._registry = SchemaRegistry(
            collections, strict=False, strict_items=False, reference=_document_reference
        )
        self._case_sensitive = case_sensitive
        self._native_expand = native_expand
        self._expander = RelationExpander(self.find_by_id)

    @property
    def kind(self) -> EngineKind:
        """Engine backing this store."""
        return EngineKind.DOCUMENT

    @property
    def registry(self) -> SchemaRegistry:
        """Declared collections."""
        return self._registry

    # === Lifecycle ===

    def init(self) -> None:
        """Create indexes for unique and indexed fields. Idempotent."""
        created = 0
        with self._session("*") as db:
            for spec in self._registry.collections():
                for field in spec.fields:
                    if field.unique or field.indexed:
                        db[spec.table_name].create_index(
                            [(field.name, ASCENDING)], unique=field.unique
                        )
                        created += 1
        logger.info(f"Initialized {created} index(es) for document store")

    def ping(self) -> bool:
        """Check connectivity.

        Raises:
            ConnectionError: If MongoDB is unreachable
        """
        return self._connection.ping()

    def close(self) -> None:
        """Close the client. Safe to call repeatedly."""
        self._connection.close()

    def __enter__(self) -> DocumentStore:
        """Context manager entry."""
        return self

    def __exit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        """Context manager exit."""
        self.close()

    # === Writes ===

    def create(self, collection: str, record: dict[str, Any]) -> dict[str, Any]:
        """Insert a document and return it as stored.

        Raises:
            ValidationError: If the record is invalid (nothing is sent)
            ConstraintError: If a unique index rejects it
        """
        spec = self._registry.get(collection)
        document = self._new_document(self._registry.validate_create(spec, record))

        with self._session(spec.name) as db:
            inserted_id = db[spec.table_name].insert_one(document).inserted_id
            stored = db[spec.table_name].find_one({"_id": inserted_id})

        if stored is None:
            raise QueryError(
                f"Record {inserted_id} was not readable after insert into '{spec.name}'"
            )
        logger.debug(f"Created record {inserted_id} in '{spec.name}'")
        return ResultNormalizer(spec).from_document(stored)

    def insert_many(
        self, collection: str, records: Iterable[dict[str, Any]]
    ) -> list[InsertResult]:
        """Insert documents with one unordered bulk write.

        Per-item failures are read from the bulk write error; the remaining
        documents are still inserted.
        """
        spec = self._registry.get(collection)
        items = list(records)
        results: list[InsertResult | None] = [None] * len(items)

        valid: list[tuple[int, dict[str, Any]]] = []
        for index, record in enumerate(items):
            try:
                document = self._new_document(self._registry.validate_create(spec, record))
            except ValidationError as e:
                results[index] = InsertResult(
                    index=index, error=e.message, error_type=type(e).__name__
                )
                continue
            # Assign ids up front so outcomes can be matched after a partial failure
            document["_id"] = ObjectId()
            valid.append((index, document))

        if valid:
            documents = [document for _, document in valid]
            failures: dict[int, dict[str, Any]] = {}
            with self._session(spec.name) as db:
                coll = db[spec.table_name]
                try:
                    coll.insert_many(documents, ordered=False)
                except BulkWriteError as e:
                    failures = {err["index"]: err for err in e.details.get("writeErrors", [])}
                    logger.warning(
                        f"Bulk insert into '{spec.name}' had {len(failures)} failure(s)"
                    )
                ids = [document["_id"] for document in documents]
                stored = {doc["_id"]: doc for doc in coll.find({"_id": {"$in": ids}})}

            normalizer = ResultNormalizer(spec)
            for position, (index, document) in enumerate(valid):
                found = stored.get(document["_id"])
                if found is not None:
                    results[index] = InsertResult(
                        index=index,
                        id=str(document["_id"]),
                        record=normalizer.from_document(found),
                    )
                    continue
                error = failures.get(position, {})
                is_duplicate = error.get("code") == DUPLICATE_KEY_CODE
                results[index] = InsertResult(
                    index=index,
                    error=error.get("errmsg", "document was not stored"),
                    error_type=ConstraintError.__name__ if is_duplicate else QueryError.__name__,
                )

        done = [r for r in results if r is not None]
        logger.debug(
            f"Inserted {sum(1 for r in done if r.ok)}/{len(items)} record(s) into '{spec.name}'"
        )
        return done

    def update(
        self, collection: str, record_id: Any, partial: dict[str, Any]
    ) -> dict[str, Any]:
        """Merge fields into a document and return the full updated record.

        Raises:
            ValidationError: If a value is invalid or nulls a required field
            NotFoundError: If no document has this identifier
        """
        spec = self._registry.get(collection)
        changes = self._registry.validate_update(spec, partial)
        oid = to_object_id(record_id)
        if oid is None:
            raise NotFoundError(spec.name, record_id)

        changes[UPDATED_AT] = utc_now()
        with self._session(spec.name) as db:
            updated = db[spec.table_name].find_one_and_update(
                {"_id": oid}, {"$set": changes}, return_document=ReturnDocument.AFTER
            )
        if updated is None:
            raise NotFoundError(spec.name, record_id)

        logger.debug(f"Updated record {oid} in '{spec.name}'")
        return ResultNormalizer(spec).from_document(updated)

    def delete(self, collection: str, record_id: Any) -> bool:
        """Delete a document. Idempotent.

        Returns:
            True if a document was removed
        """
        spec = self._registry.get(collection)
        oid = to_object_id(record_id)
        if oid is None:
            return False
        with self._session(spec.name) as db:
            deleted = db[spec.table_name].delete_one({"_id": oid}).deleted_count > 0
        logger.debug(f"Delete of {oid} in '{spec.name}': {'removed' if deleted else 'absent'}")
        return deleted

    # === Reads ===

    def find_by_id(self, collection: str, record_id: Any) -> dict[str, Any] | None:
        """Get a record by identifier, or None (also for malformed identifiers)."""
        spec = self._registry.get(collection)
        oid = to_object_id(record_id)
        if oid is None:
            return None
        with self._session(spec.name) as db:
            document = db[spec.table_name].find_one({"_id": oid})
        return ResultNormalizer(spec).from_document(document) if document else None

    def find_one(
        self, collection: str, predicate: dict[str, Any] | None = None
    ) -> dict[str, Any] | None:
        """Get the first record (lowest identifier) matching a filter, or None."""
        spec = self._registry.get(collection)
        match = self._translator(spec).match(predicate)
        with self._session(spec.name) as db:
            document = db[spec.table_name].find_one(match, sort=[("_id", ASCENDING)])
        return ResultNormalizer(spec).from_document(document) if document else None

    def find_all(self, collection: str) -> list[dict[str, Any]]:
        """Get every record of a collection. For small collections only."""
        spec = self._registry.get(collection)
        normalizer = ResultNormalizer(spec)
        with self._session(spec.name) as db:
            cursor = db[spec.table_name].find({}).sort("_id", ASCENDING)
            return [normalizer.from_document(document) for document in cursor]

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
        match = translator.match(descriptor.filter, descriptor.q)
        sort = translator.sort(descriptor.sort, descriptor.order)

        expansion = (
            resolve_expansion(self._registry, spec, descriptor.expand)
            if descriptor.expand
            else None
        )
        native = expansion is not None and self._native_expand
        normalizer = ResultNormalizer(spec)

        with self._session(spec.name) as db:
            coll = db[spec.table_name]
            if native and expansion is not None:
                pipeline = translator.pipeline(
                    match, sort, descriptor.offset, descriptor.limit, self._lookup(expansion)
                )
                records = [
                    self._with_lookup(normalizer, document, expansion)
                    for document in coll.aggregate(pipeline)
                ]
            else:
                cursor = (
                    coll.find(match)
                    .sort(sort)
                    .skip(descriptor.offset)
                    .limit(descriptor.limit)
                )
                records = [normalizer.from_document(document) for document in cursor]
            total = coll.count_documents(match) if descriptor.with_total else None

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
        """Count matching documents on the server."""
        spec = self._registry.get(collection)
        match = self._translator(spec).match(filter)
        with self._session(spec.name) as db:
            return db[spec.table_name].count_documents(match)

    def sum(
        self, collection: str, field: str, filter: dict[str, Any] | None = None
    ) -> int | float:
        """Sum a numeric field over matching documents on the server (0 when empty)."""
        spec = self._registry.get(collection)
        declared = spec.field(field)
        if declared is not None and declared.type not in (FieldType.INT, FieldType.FLOAT):
            raise ValidationError(
                f"Cannot sum '{field}' on '{spec.name}': not a numeric field",
                {field: "not numeric"},
            )
        pipeline = [
            {"$match": self._translator(spec).match(filter)},
            {"$group": {"_id": None, "total": {"$sum": f"${field}"}}},
        ]
        with self._session(spec.name) as db:
            groups = list(db[spec.table_name].aggregate(pipeline))
        value = groups[0]["total"] if groups else 0
        return to_number(value, integral=declared is not None and declared.type == FieldType.INT)

    # === Internals ===

    def _translator(self, spec: CollectionSpec) -> DocumentQueryTranslator:
        return DocumentQueryTranslator(spec, case_sensitive=self._case_sensitive)

    @contextmanager
    def _session(self, collection: str) -> Iterator[Database[Any]]:
        """Borrow the database handle and translate native failures."""
        try:
            with self._connection.acquire() as db:
                yield db
        except DuplicateKeyError as e:
            logger.error(f"Constraint violation on '{collection}': {e}")
            raise ConstraintError(collection, str(e)) from e
        except ConnectionFailure as e:
            logger.error(f"MongoDB unreachable during operation on '{collection}': {e}")
            raise ConnectionError(f"Could not reach MongoDB: {e}") from e
        except InvalidDocument as e:
            raise ValidationError(
                f"Record for '{collection}' cannot be stored: {e}", {"record": str(e)}
            ) from e
        except PyMongoError as e:
            logger.error(f"Operation on '{collection}' failed: {e}")
            raise QueryError(
                f"Operation on '{collection}' failed: {e}", {"collection": collection}
            ) from e

    def _new_document(self, data: dict[str, Any]) -> dict[str, Any]:
        # The engine assigns _id; a caller-supplied one is not a field
        document = {k: v for k, v in data.items() if k != "_id"}
        now = utc_now()
        document[CREATED_AT] = now
        document[UPDATED_AT] = now
        return document

    def _lookup(self, expansion: Expansion) -> dict[str, Any]:
        return {
            "from": expansion.target.table_name,
            "localField": expansion.field,
            "foreignField": "_id",
            "as": LOOKUP_FIELD,
        }

    def _with_lookup(
        self, normalizer: ResultNormalizer, document: dict[str, Any], expansion: Expansion
    ) -> dict[str, Any]:
        joined = document.pop(LOOKUP_FIELD, None) or []
        record = normalizer.from_document(document)
        record[expansion.alias] = (
            ResultNormalizer(expansion.target).from_document(joined[0]) if joined else None
        )
        return record
