"""
Denormalization propagator.

After a document changes, every embedded copy of it must be rewritten.
propagate_update() reads the current document, hydrates and flattens it,
asks the reference graph where the collection is embedded, and issues one
multi-document update per embedding location, all in one transaction.

Filters follow the embedding path: each `$` segment becomes an
`$elemMatch` on the array before it, so

    "photos.$"  ->  {"photos": {"$elemMatch": {"_id": id}}}
    "a.$.b.$.c" ->  {"a": {"$elemMatch": {"b": {"$elemMatch": {"c._id": id}}}}}

Update paths replace each `$` with a filtered positional identifier
(`$[e0]`, `$[e1]`, ...) whose array filter matches the rest of the path,
so every matching element of every matching document is patched.

Invariants:
    - Masked embeddings only receive their masked fields
    - Full embeddings receive every field except `_id`
    - An empty mask issues no update
    - Any failure aborts an owned transaction and is re-raised
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional

from .errors import DocumentNotFound
from .graph import ReferenceGraph, ReferenceLocation
from .reference import get_raw_document
from .schema.walker import ARRAY_SEGMENT, ID_FIELD
from .store.base import Filter, StoreSession, transaction

if TYPE_CHECKING:
    from .database import Database

logger = logging.getLogger(__name__)


@dataclass
class FieldUpdate:
    """A `$set` update with its array filters."""

    set_fields: Dict[str, Any] = field(default_factory=dict)
    array_filters: Dict[str, Filter] = field(default_factory=dict)


def build_filter(path: str, document_id: Any) -> Filter:
    """Filter matching documents that embed `document_id` at `path`."""
    return _match_id(f"{path}.{ID_FIELD}".split("."), document_id)


def _match_id(parts: List[str], document_id: Any) -> Filter:
    if ARRAY_SEGMENT not in parts:
        return {".".join(parts): document_id}
    index = parts.index(ARRAY_SEGMENT)
    prefix = ".".join(parts[:index])
    condition = {"$elemMatch": _match_id(parts[index + 1:], document_id)}
    if not prefix:
        # Array directly inside an array: the condition applies to the element itself
        return condition
    return {prefix: condition}


def build_update(
    location: ReferenceLocation,
    document: Mapping[str, Any],
    document_id: Any,
) -> FieldUpdate:
    """Update writing the embedded fields at `location` from `document`."""
    parts = location.path.split(".")
    target: List[str] = []
    update = FieldUpdate()
    for index, part in enumerate(parts):
        if part != ARRAY_SEGMENT:
            target.append(part)
            continue
        name = f"e{len(update.array_filters)}"
        target.append(f"$[{name}]")
        update.array_filters[name] = _match_id(parts[index + 1:] + [ID_FIELD], document_id)

    if location.mask is not None:
        names = list(location.mask)
    else:
        names = [k for k in document if k != ID_FIELD]

    prefix = ".".join(target)
    for name in names:
        update.set_fields[f"{prefix}.{name}"] = document.get(name)
    return update


class ReferencePropagator:
    """Rewrites embedded copies of changed documents."""

    def __init__(self, database: Database) -> None:
        self.database = database

    async def propagate_update(
        self,
        model_name: str,
        document_id: Any,
        session: Optional[StoreSession] = None,
    ) -> int:
        """Patch every embedded copy of one document.

        Args:
            model_name: Collection of the changed document
            document_id: Its id
            session: Existing session to join, otherwise a transaction is
                opened and committed here

        Returns:
            Number of documents modified

        Raises:
            DocumentNotFound: If the document does not exist
            UnknownCollectionError: If a model name is not registered
        """
        database = self.database
        store = database.store
        definition = database.get_definition(model_name)

        async with transaction(store, session) as active:
            current = await store.find_one(
                definition.collection, {ID_FIELD: document_id}, session=active
            )
            if current is None:
                raise DocumentNotFound(definition.collection, document_id)

            hydrated = await database.hydrate(model_name, current, session=active)
            document = get_raw_document(hydrated)
            index = ReferenceGraph(database.definitions).index_references_to(model_name)

            modified = 0
            for source_name, locations in index.items():
                source = database.get_definition(source_name)
                for location in locations:
                    update = build_update(location, document, document_id)
                    if not update.set_fields:
                        continue
                    modified += await store.update_many(
                        source.collection,
                        build_filter(location.path, document_id),
                        update.set_fields,
                        update.array_filters or None,
                        session=active,
                    )

        logger.info(
            "Propagated update",
            extra={
                "model_name": model_name,
                "doc_id": str(document_id),
                "sources": list(index),
                "modified": modified,
            },
        )
        return modified
