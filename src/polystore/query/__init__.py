"""Query translation for polystore."""

from polystore.query.document import DocumentQueryTranslator
from polystore.query.filters import OPERATORS, split_operator
from polystore.query.sql import SQLQueryTranslator, dump_json

__all__ = [
    "DocumentQueryTranslator",
    "SQLQueryTranslator",
    "OPERATORS",
    "dump_json",
    "split_operator",
]
