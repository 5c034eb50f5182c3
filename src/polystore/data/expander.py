"""Relation expansion.

Stores expand natively (LEFT OUTER JOIN / $lookup) when they can. The
RelationExpander is the fallback: one ``find_by_id`` per distinct foreign
identifier on the page.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from polystore.core.types import CollectionSpec, ExpandSpec
from polystore.exceptions import ValidationError
from polystore.schema.registry import SchemaRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Expansion:
    """A resolved expansion request."""

    alias: str  # field receiving the related record
    field: str  # foreign field holding the related identifier
    target: CollectionSpec


def resolve_expansion(
    registry: SchemaRegistry,
    spec: CollectionSpec,
    expand: str | ExpandSpec,
) -> Expansion:
    """Resolve an ``expand`` option against the declared relations.

    A string names a relation by alias or by foreign field. An ExpandSpec names
    the field and target collection explicitly.

    Raises:
        ValidationError: If the string matches no declared relation
        CollectionNotFoundError: If the target collection is undeclared
    """
    if isinstance(expand, ExpandSpec):
        return Expansion(
            alias=expand.alias,
            field=expand.field,
            target=registry.get(expand.collection),
        )

    relation = spec.relation(expand)
    if relation is None:
        declared = [r.name for r in spec.relations]
        raise ValidationError(
            f"Unknown relation '{expand}' on '{spec.name}'",
            {"expand": f"declared relations: {', '.join(declared) or 'none'}"},
        )
    return Expansion(
        alias=relation.name,
        field=relation.field,
        target=registry.get(relation.target),
    )


class RelationExpander:
    """Expands relations with per-record follow-up lookups."""

    def __init__(self, find_by_id: Callable[[str, Any], dict[str, Any] | None]) -> None:
        """Initialize expander.

        Args:
            find_by_id: Lookup of a record by (collection, identifier)
        """
        self._find_by_id = find_by_id

    def expand(
        self, records: list[dict[str, Any]], expansion: Expansion
    ) -> list[dict[str, Any]]:
        """Populate ``expansion.alias`` on each record, in place.

        Each distinct identifier is fetched once per call.
        """
        cache: dict[Any, dict[str, Any] | None] = {}
        for record in records:
            ref = record.get(expansion.field)
            if ref is None:
                record[expansion.alias] = None
                continue
            key = (type(ref).__name__, str(ref))
            if key not in cache:
                cache[key] = self._find_by_id(expansion.target.name, ref)
            related = cache[key]
            record[expansion.alias] = dict(related) if related is not None else None
        logger.debug(
            f"Expanded '{expansion.alias}' on {len(records)} record(s) "
            f"with {len(cache)} lookup(s)"
        )
        return records
