"""Core types and specifications for polystore.

Specs are the input format for declaring collections; callers may pass them
as plain dicts. Result types are JSON-serializable via ``model_dump()``.
"""

from __future__ import annotations

import re
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError

from polystore.core.compat import StrEnum
from polystore.exceptions import ValidationError

# Generated fields present on every record, under these canonical names
ID_FIELD = "id"
CREATED_AT = "createdAt"
UPDATED_AT = "updatedAt"
SYSTEM_FIELDS = (ID_FIELD, CREATED_AT, UPDATED_AT)

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def to_snake_case(name: str) -> str:
    """Convert camelCase/PascalCase to snake_case.

    Args:
        name: Logical name (e.g., "deliveryFee")

    Returns:
        Storage name (e.g., "delivery_fee")
    """
    result = []
    for i, char in enumerate(name):
        if char.isupper() and i > 0 and not name[i - 1].isupper():
            result.append("_")
        result.append(char.lower())
    safe_name = "".join(result).replace(" ", "_").replace("-", "_")
    while "__" in safe_name:
        safe_name = safe_name.replace("__", "_")
    return safe_name


def is_identifier(name: str) -> bool:
    """Check that a name is safe to use as a column or JSON key."""
    return bool(_IDENTIFIER.match(name))


class FieldType(StrEnum):
    """Supported field types in polystore."""

    STRING = "string"
    TEXT = "text"
    INT = "int"
    FLOAT = "float"
    BOOL = "bool"
    DATETIME = "datetime"
    OBJECT = "object"  # nested record
    LIST = "list"  # ordered sequence, of records when items are declared
    REF = "ref"  # identifier of a record in another collection

    @classmethod
    def values(cls) -> list[str]:
        """Return all valid field type values."""
        return [t.value for t in cls]


class EngineKind(StrEnum):
    """Storage engines a store can be backed by."""

    JSON_ROW = "json_row"  # SQL rows, nested values as JSON text columns
    DOCUMENT = "document"  # MongoDB documents, nested values stored natively
    RELATIONAL = "relational"  # normalized SQL, record lists in child tables

    @classmethod
    def values(cls) -> list[str]:
        """Return all valid engine values."""
        return [e.value for e in cls]


class OnDeleteAction(StrEnum):
    """Referential actions when a referenced record is deleted."""

    RESTRICT = "RESTRICT"
    CASCADE = "CASCADE"
    SET_NULL = "SET_NULL"


class SortOrder(StrEnum):
    """Sort direction."""

    ASC = "asc"
    DESC = "desc"


class FieldSpec(BaseModel):
    """Specification for a field of a collection."""

    name: str = Field(..., description="Logical field name (camelCase, as callers see it)")
    type: FieldType = Field(default=FieldType.STRING, description="Field data type")
    required: bool = Field(default=False, description="Whether field is required")
    unique: bool = Field(default=False, description="Whether values must be unique")
    indexed: bool = Field(default=False, description="Whether to index this field")
    searchable: bool = Field(default=False, description="Whether free-text search covers it")
    column: str | None = Field(
        default=None, description="Storage column (defaults to the snake_case name)"
    )
    items: list[FieldSpec] = Field(
        default_factory=list, description="Sub-record fields of a list field"
    )
    description: str | None = Field(default=None, description="Human-readable description")

    model_config = ConfigDict(use_enum_values=True)

    @model_validator(mode="after")
    def _check_names(self) -> FieldSpec:
        if not is_identifier(self.name):
            raise ValueError(f"Field name '{self.name}' must be an identifier")
        if self.column is not None and not is_identifier(self.column):
            raise ValueError(f"Column name '{self.column}' must be an identifier")
        if self.items and self.type != FieldType.LIST:
            raise ValueError(f"Field '{self.name}' declares items but is not a list")
        return self

    @property
    def column_name(self) -> str:
        """Storage column name."""
        return self.column or to_snake_case(self.name)

    @property
    def is_nested(self) -> bool:
        """Whether values are nested structures."""
        return self.type in (FieldType.OBJECT, FieldType.LIST)

    @property
    def is_record_list(self) -> bool:
        """Whether this is a list of records with declared sub-fields."""
        return self.type == FieldType.LIST and bool(self.items)

    @property
    def is_text(self) -> bool:
        """Whether values are strings."""
        return self.type in (FieldType.STRING, FieldType.TEXT)

    def item(self, name: str) -> FieldSpec | None:
        """Get a declared sub-field by name."""
        for sub in self.items:
            if sub.name == name:
                return sub
        return None


class RelationSpec(BaseModel):
    """Specification for a many-to-one relation (e.g., orders.userId -> users)."""

    name: str = Field(..., description="Expansion alias (e.g., 'user' on orders)")
    field: str = Field(..., description="Foreign field holding the target id (e.g., 'userId')")
    target: str = Field(..., description="Target collection (e.g., 'users')")
    on_delete: OnDeleteAction = Field(
        default=OnDeleteAction.RESTRICT, description="Action when the target is deleted"
    )

    model_config = ConfigDict(use_enum_values=True)


class CollectionSpec(BaseModel):
    """Specification for a collection of records."""

    name: str = Field(..., description="Collection name (e.g., 'orders')")
    fields: list[FieldSpec] = Field(default_factory=list, description="Declared fields")
    relations: list[RelationSpec] = Field(default_factory=list, description="Declared relations")
    search_fields: list[str] = Field(
        default_factory=list, description="Fields matched by free-text search"
    )
    table: str | None = Field(default=None, description="Storage table/collection name")
    description: str | None = Field(default=None, description="Human-readable description")

    @model_validator(mode="after")
    def _check_consistency(self) -> CollectionSpec:
        names = [f.name for f in self.fields]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"Duplicate fields on '{self.name}': {', '.join(duplicates)}")
        reserved = sorted(set(names) & set(SYSTEM_FIELDS))
        if reserved:
            raise ValueError(f"Fields {', '.join(reserved)} are generated and cannot be declared")
        for relation in self.relations:
            field = self.field(relation.field)
            if field is None:
                raise ValueError(
                    f"Relation '{relation.name}' uses undeclared field '{relation.field}'"
                )
            if field.type != FieldType.REF:
                raise ValueError(
                    f"Relation field '{relation.field}' must be declared with type 'ref'"
                )
        for name in self.search_fields:
            if name not in names:
                raise ValueError(f"Search field '{name}' is not declared on '{self.name}'")
        if self.table is not None and not is_identifier(self.table):
            raise ValueError(f"Table name '{self.table}' must be an identifier")
        return self

    @property
    def table_name(self) -> str:
        """Storage table (or MongoDB collection) name."""
        return self.table or to_snake_case(self.name)

    @property
    def field_names(self) -> list[str]:
        """Declared field names in declaration order."""
        return [f.name for f in self.fields]

    def field(self, name: str) -> FieldSpec | None:
        """Get a declared field by name."""
        for spec in self.fields:
            if spec.name == name:
                return spec
        return None

    def relation(self, name: str) -> RelationSpec | None:
        """Find a relation by alias or by foreign field name."""
        for relation in self.relations:
            if relation.name == name:
                return relation
        for relation in self.relations:
            if relation.field == name:
                return relation
        return None

    def searchable_fields(self) -> list[str]:
        """Fields covered by free-text search.

        Explicit ``search_fields`` win, then fields flagged ``searchable``,
        then whichever of ``name``/``description`` are declared.
        """
        if self.search_fields:
            return list(self.search_fields)
        flagged = [f.name for f in self.fields if f.searchable]
        if flagged:
            return flagged
        return [n for n in ("name", "description") if self.field(n) is not None]


class ExpandSpec(BaseModel):
    """Ad-hoc expansion: populate ``as`` from ``collection`` by ``field``."""

    field: str
    collection: str
    as_: str | None = Field(default=None, alias="as")

    model_config = ConfigDict(populate_by_name=True)

    @property
    def alias(self) -> str:
        """Name of the field that receives the related record."""
        return self.as_ or self.field


class QueryDescriptor(BaseModel):
    """Engine-neutral description of a read.

    ``filter`` maps field names to a value (equality) or to an operator dict
    such as ``{"op": "gt", "value": 10}``. Dotted names (``items.productName``)
    match inside nested values.
    """

    filter: dict[str, Any] = Field(default_factory=dict)
    q: str | None = None
    sort: str | None = None
    order: SortOrder = SortOrder.ASC
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=20, ge=1)
    expand: str | ExpandSpec | None = None
    with_total: bool = True

    model_config = ConfigDict(extra="forbid", use_enum_values=True)

    @property
    def offset(self) -> int:
        """Rows skipped before the requested page."""
        return (self.page - 1) * self.limit

    @classmethod
    def parse(cls, options: QueryDescriptor | dict[str, Any] | None) -> QueryDescriptor:
        """Build a descriptor from caller options.

        Raises:
            ValidationError: If an option is unknown or out of range
        """
        if options is None:
            return cls()
        if isinstance(options, cls):
            return options
        try:
            return cls.model_validate(options)
        except PydanticValidationError as e:
            field_errors = {
                ".".join(str(p) for p in err["loc"]) or "query": err["msg"] for err in e.errors()
            }
            raise ValidationError("Invalid query options", field_errors) from e


class Pagination(BaseModel):
    """Pagination block of a page result."""

    page: int
    limit: int
    total: int | None = None
    pages: int | None = None


class PageResult(BaseModel):
    """Result from ``find_all_advanced``."""

    data: list[dict[str, Any]]
    pagination: Pagination


class InsertResult(BaseModel):
    """Per-item outcome of ``insert_many``."""

    index: int
    id: Any = None
    record: dict[str, Any] | None = None
    error: str | None = None
    error_type: str | None = None

    @property
    def ok(self) -> bool:
        """Whether the item was stored and carries an identifier."""
        return self.error is None and self.id is not None
