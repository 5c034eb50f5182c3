"""Data operations for polystore."""

from polystore.data.document_store import DocumentStore
from polystore.data.expander import Expansion, RelationExpander, resolve_expansion
from polystore.data.normalizer import ResultNormalizer
from polystore.data.sql_store import SQLStore

__all__ = [
    "DocumentStore",
    "SQLStore",
    "ResultNormalizer",
    "RelationExpander",
    "Expansion",
    "resolve_expansion",
]
