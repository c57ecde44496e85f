"""
Document references.

A DocumentReference is the parsed value of a reference field: the id of a
document in another collection, the field mask the embedding guarantees,
and a cache of field values already known. It is immutable; merged()
returns a new reference.

parse_reference() is the parse rule of reference schema nodes. It accepts:
- a DocumentReference of the same model
- a bare identifier
- an object carrying `_id` (typically an embedded copy loaded from storage,
  or a full document being written)

Masked references always leave parsing with every masked field cached,
loading the missing ones through one coalesced LazyDocument read. Unmasked
references from a bare id are deferred: nothing is read until resolved.

Invariants:
    - `_id` is always present in the cache
    - get_existing() never performs I/O
    - get_raw_document() replaces every reference with its flattened cache
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict, Mapping, Optional, Sequence, Tuple

from .errors import DocumentNotFound, ValidationFailure
from .lazy import LazyDocument
from .schema.nodes import ObjectNode, ReferenceNode
from .schema.validate import parse_async
from .schema.walker import ID_FIELD

if TYPE_CHECKING:
    from .definition import CollectionDefinition
    from .store.base import StoreSession

logger = logging.getLogger(__name__)


class DocumentReference:
    """Reference to a document of another collection.

    Attributes:
        id: Referenced document id
        definition: Target collection definition
        mask: Guaranteed field names, or None for a full reference
    """

    __slots__ = ("_id", "_definition", "_existing", "_mask")

    def __init__(
        self,
        id: Any,
        definition: CollectionDefinition,
        existing: Optional[Mapping[str, Any]] = None,
        mask: Optional[Sequence[str]] = None,
    ) -> None:
        cache = {ID_FIELD: id}
        cache.update({k: v for k, v in (existing or {}).items() if k != ID_FIELD})
        self._id = id
        self._definition = definition
        self._existing: Dict[str, Any] = cache
        self._mask: Optional[Tuple[str, ...]] = (
            None if mask is None else tuple(k for k in mask if k != ID_FIELD)
        )

    @property
    def id(self) -> Any:
        return self._id

    @property
    def definition(self) -> CollectionDefinition:
        return self._definition

    @property
    def mask(self) -> Optional[Tuple[str, ...]]:
        return self._mask

    def get_existing(self) -> Dict[str, Any]:
        """Copy of the known field values. Never reads storage."""
        return dict(self._existing)

    def merged(self, values: Mapping[str, Any]) -> DocumentReference:
        """New reference with `values` added to the cache."""
        return DocumentReference(self._id, self._definition, {**self._existing, **values}, self._mask)

    def resolve(self, session: Optional[StoreSession] = None) -> LazyDocument:
        """Lazy view of the referenced document, seeded with the cache."""
        return LazyDocument(self._definition, self._id, self._existing, session)

    async def resolve_full(self, session: Optional[StoreSession] = None) -> Dict[str, Any]:
        """Load and hydrate the whole referenced document.

        Full references read the document by id. Masked references read only
        the fields missing from the cache and merge them in.

        Raises:
            DocumentNotFound: If the document does not exist
            DefinitionNotRegisteredError: If the target has no database
        """
        database = self._definition.database
        collection = self._definition.collection
        projection = None
        if self._mask is not None:
            projection = {k: 0 for k in self._existing if k != ID_FIELD} or None

        document = await database.store.find_one(
            collection, {ID_FIELD: self._id}, projection, session=session
        )
        if document is None:
            raise DocumentNotFound(collection, self._id)

        if self._mask is not None:
            document = {**document, **get_raw_document(self._existing)}
        return await database.hydrate(self._definition.model_name, document, session=session)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, DocumentReference):
            return NotImplemented
        return (
            self._definition.model_name == other._definition.model_name
            and self._id == other._id
            and self._mask == other._mask
            and self._existing == other._existing
        )

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        mask = "full" if self._mask is None else list(self._mask)
        return f"DocumentReference({self._definition.model_name!r}, {self._id!r}, mask={mask})"


def get_raw_document(value: Any) -> Any:
    """Flatten a parsed value into storable form.

    References become their (recursively flattened) cache, dicts and lists
    are walked, scalars pass through.
    """
    if isinstance(value, DocumentReference):
        return get_raw_document(value.get_existing())
    if isinstance(value, Mapping):
        return {k: get_raw_document(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [get_raw_document(v) for v in value]
    return value


def _nested(failure: ValidationFailure, path: str) -> ValidationFailure:
    if not path:
        return failure
    return ValidationFailure.from_issues(
        [(f"{path}.{p}" if p else path, msg) for p, msg in failure.issues]
    )


async def parse_reference(
    node: ReferenceNode,
    value: Any,
    path: str,
    session: Optional[StoreSession] = None,
) -> DocumentReference:
    """Parse the value of a reference field.

    Reads needed to validate or complete the cache join `session`.

    Raises:
        ValidationFailure: If the value is not a reference to the target
        DocumentNotFound: If masked fields must be loaded and the target is gone
    """
    definition = node.definition
    mask = node.mask

    if isinstance(value, DocumentReference):
        if value.definition.model_name != definition.model_name:
            raise ValidationFailure.from_issues(
                [(path, f"Expected reference to {definition.model_name}, "
                        f"received {value.definition.model_name}")]
            )
        if mask is None:
            return DocumentReference(value.id, definition, value.get_existing(), None)
        cache = {k: v for k, v in value.get_existing().items() if k in mask}
        return await _complete(definition, value.id, cache, mask, session)

    if isinstance(value, Mapping):
        if ID_FIELD not in value:
            raise ValidationFailure.from_issues(
                [(path, f"Expected {definition.model_name} reference with {ID_FIELD}")]
            )
        doc_id = await _parse_id(definition, value[ID_FIELD], path)
        data = {
            k: v for k, v in value.items()
            if k != ID_FIELD and (mask is None or k in mask)
        }
        cache = await _validate_cache(definition, doc_id, data, value, path, session)
        if mask is None:
            return DocumentReference(doc_id, definition, cache, None)
        return await _complete(definition, doc_id, cache, mask, session)

    doc_id = await _parse_id(definition, value, path)
    if mask is None:
        return DocumentReference(doc_id, definition, None, None)
    return await _complete(definition, doc_id, {}, mask, session)


async def _parse_id(definition: CollectionDefinition, value: Any, path: str) -> Any:
    try:
        return await parse_async(definition.id_schema, value)
    except ValidationFailure as e:
        raise _nested(e, path) from e


async def _validate_cache(
    definition: CollectionDefinition,
    doc_id: Any,
    data: Dict[str, Any],
    source: Mapping[str, Any],
    path: str,
    session: Optional[StoreSession],
) -> Dict[str, Any]:
    lazy: Optional[LazyDocument] = None

    async def discriminator(name: str) -> Any:
        nonlocal lazy
        if name in source:
            return source[name]
        if lazy is None:
            lazy = LazyDocument(definition, doc_id, session=session)
        return await lazy.get(name, validate=False)

    try:
        shape = await definition.get_field_shape(discriminator)
        picked = ObjectNode({k: v for k, v in shape.items() if k in data})
        return await parse_async(picked, data, session)
    except ValidationFailure as e:
        raise _nested(e, path) from e


async def _complete(
    definition: CollectionDefinition,
    doc_id: Any,
    cache: Dict[str, Any],
    mask: Tuple[str, ...],
    session: Optional[StoreSession],
) -> DocumentReference:
    missing = [k for k in mask if k not in cache]
    if missing:
        logger.debug(
            "Loading masked reference fields",
            extra={"collection": definition.collection, "doc_id": str(doc_id), "fields": missing},
        )
        lazy = LazyDocument(definition, doc_id, cache, session)
        cache = {**cache, **await lazy.collect(*missing)}
    return DocumentReference(doc_id, definition, cache, mask)
