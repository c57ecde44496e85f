"""
Database orchestrator.

Ties definitions, validation, flattening, storage and propagation together:

    create/replace/update:
        validate (async, reference fields may read) -> flatten -> write
        update also re-propagates the changed document to its embeddings

Every write runs in one transaction: the caller's session when given,
otherwise one opened, committed and released here. Validation runs inside
that transaction, so reference reads see earlier writes of the same
session, and always completes before the first write.

Invariants:
    - A definition is registered with exactly one Database
    - Model names are unique per Database
    - Storage errors propagate unchanged; owned sessions are always ended

How to change safely:
    - Keep writes inside `transaction()` so rollback stays symmetric
    - New read paths should hydrate through parse_async like hydrate()
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union

from .config import DenormDbSettings
from .definition import CollectionDefinition, PartialDefinition, new_id
from .errors import DenormDbError, DocumentNotFound, UnknownCollectionError
from .graph import ReferenceGraph, ReferenceLocation
from .lazy import LazyDocument
from .propagate import ReferencePropagator
from .reference import get_raw_document
from .schema.nodes import SchemaNode
from .schema.validate import parse_async
from .schema.walker import ID_FIELD
from .store.base import DocumentStore, Filter, StoreSession, create_store, transaction

logger = logging.getLogger(__name__)

DocumentInput = Union[Mapping[str, Any], Callable[[], Any]]
UpdateInput = Union[Mapping[str, Any], Callable[[Dict[str, Any]], Any]]


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class Database:
    """Collection registry and write coordinator.

    Example:
        >>> db = define_database(InMemoryDocumentStore())
        >>> db.add_definitions(Photo, User)
        >>> await db.connect()
        >>> photo = await db.create("Photo", {"url": "a.png"})
        >>> user = await db.create("User", {"photo": photo["_id"]})
        >>> await db.update("Photo", photo["_id"], {"url": "b.png"})
    """

    def __init__(self, store: DocumentStore, update_references: bool = True) -> None:
        """Create a database.

        Args:
            store: Storage backend
            update_references: Default for update(update_references=...)
        """
        self.store = store
        self.default_update_references = update_references
        self._definitions: Dict[str, CollectionDefinition] = {}
        self._partials: Dict[str, PartialDefinition] = {}
        self.propagator = ReferencePropagator(self)

    @classmethod
    def from_settings(cls, settings: Optional[DenormDbSettings] = None) -> Database:
        """Build a database and its store from settings (environment by default)."""
        settings = settings or DenormDbSettings()
        return cls(create_store(settings), update_references=settings.update_references)

    async def connect(self) -> None:
        await self.store.connect()

    async def close(self) -> None:
        await self.store.close()

    # Registration

    def add_definition(self, definition: CollectionDefinition) -> CollectionDefinition:
        """Register a collection definition.

        Raises:
            DefinitionNotRegisteredError: If owned by another database
            DenormDbError: If another definition uses the same model name
        """
        existing = self._definitions.get(definition.model_name)
        if existing is not None and existing is not definition:
            raise DenormDbError(
                f"Collection {definition.model_name} already defined",
                code="DUPLICATE_DEFINITION",
                details={"name": definition.model_name},
            )
        definition.bind(self)
        self._definitions[definition.model_name] = definition
        logger.debug("Registered collection", extra={"model_name": definition.model_name})
        return definition

    def add_definitions(self, *definitions: CollectionDefinition) -> None:
        for definition in definitions:
            self.add_definition(definition)

    def add_partial(self, partial: PartialDefinition) -> PartialDefinition:
        """Register a partial definition.

        Raises:
            DefinitionNotRegisteredError: If owned by another database
            DenormDbError: If another partial uses the same name
        """
        existing = self._partials.get(partial.name)
        if existing is not None and existing is not partial:
            raise DenormDbError(
                f"Partial {partial.name} already defined",
                code="DUPLICATE_DEFINITION",
                details={"name": partial.name},
            )
        partial.bind(self)
        self._partials[partial.name] = partial
        return partial

    def add_partials(self, *partials: PartialDefinition) -> None:
        for partial in partials:
            self.add_partial(partial)

    @property
    def definition_names(self) -> List[str]:
        return list(self._definitions)

    @property
    def partial_names(self) -> List[str]:
        return list(self._partials)

    @property
    def definitions(self) -> List[CollectionDefinition]:
        return list(self._definitions.values())

    def get_definition(self, name: str) -> CollectionDefinition:
        """Registered definition by model name.

        Raises:
            UnknownCollectionError: If not registered
        """
        try:
            return self._definitions[name]
        except KeyError:
            raise UnknownCollectionError(name) from None

    def get_partial(self, name: str) -> PartialDefinition:
        try:
            return self._partials[name]
        except KeyError:
            raise UnknownCollectionError(name) from None

    # Writes

    async def create(
        self,
        name: str,
        data: Mapping[str, Any],
        session: Optional[StoreSession] = None,
    ) -> Dict[str, Any]:
        """Validate and insert a document. A missing `_id` is generated.

        Returns:
            The validated document (reference fields as DocumentReference)

        Raises:
            ValidationFailure: If data does not conform (nothing is written)
            DuplicateDocumentError: If the `_id` is taken
        """
        definition = self.get_definition(name)
        data = dict(data)
        data.setdefault(ID_FIELD, new_id())

        async with transaction(self.store, session) as active:
            parsed = await parse_async(definition.schema, data, active)
            raw = get_raw_document(parsed)
            await self.store.insert_one(definition.collection, raw, session=active)

        logger.debug("Created document", extra={"model_name": name, "doc_id": str(raw[ID_FIELD])})
        return parsed

    async def replace(
        self,
        name: str,
        data: Mapping[str, Any],
        session: Optional[StoreSession] = None,
    ) -> Dict[str, Any]:
        """Validate and replace the stored document with the same `_id`.

        Raises:
            ValidationFailure: If data does not conform (nothing is written)
            DocumentNotFound: If no document has that `_id`
        """
        definition = self.get_definition(name)

        async with transaction(self.store, session) as active:
            parsed = await parse_async(definition.schema, data, active)
            raw = get_raw_document(parsed)
            matched = await self.store.replace_one(
                definition.collection, {ID_FIELD: raw[ID_FIELD]}, raw, session=active
            )
            if not matched:
                raise DocumentNotFound(definition.collection, raw[ID_FIELD])
        return parsed

    async def update(
        self,
        name: str,
        id: Any,
        data: UpdateInput,
        update_references: Optional[bool] = None,
        session: Optional[StoreSession] = None,
    ) -> Dict[str, Any]:
        """Update a document and propagate it to every embedding.

        Args:
            name: Model name
            id: Document id
            data: Shallow patch, or a (sync or async) function receiving the
                current raw document and returning the new one
            update_references: Propagate to embedded copies; defaults to
                the database setting (on)
            session: Existing session to join

        Returns:
            The validated new document

        Raises:
            DocumentNotFound: If the document does not exist
            ValidationFailure: If the result does not conform (nothing is written)
        """
        definition = self.get_definition(name)
        if update_references is None:
            update_references = self.default_update_references

        async with transaction(self.store, session) as active:
            current = await self.store.find_one(
                definition.collection, {ID_FIELD: id}, session=active
            )
            if current is None:
                raise DocumentNotFound(definition.collection, id)

            if callable(data):
                updated = await _maybe_await(data(current))
            else:
                updated = {**current, **data}
            updated = {**updated, ID_FIELD: current[ID_FIELD]}

            parsed = await parse_async(definition.schema, updated, active)
            raw = get_raw_document(parsed)
            await self.store.replace_one(
                definition.collection, {ID_FIELD: current[ID_FIELD]}, raw, session=active
            )
            if update_references:
                await self.propagator.propagate_update(name, current[ID_FIELD], session=active)

        return parsed

    # Reads

    async def find_one(
        self,
        name: str,
        filter: Filter,
        session: Optional[StoreSession] = None,
    ) -> Optional[Dict[str, Any]]:
        """First matching document, hydrated, or None."""
        definition = self.get_definition(name)
        raw = await self.store.find_one(definition.collection, filter, session=session)
        if raw is None:
            return None
        return await self.hydrate(name, raw, session=session)

    def find_one_lazy(
        self, name: str, id: Any, session: Optional[StoreSession] = None
    ) -> LazyDocument:
        """Lazy view of one document. Nothing is read until a field is requested."""
        return LazyDocument(self.get_definition(name), id, session=session)

    async def hydrate(
        self,
        name: str,
        document: DocumentInput,
        session: Optional[StoreSession] = None,
    ) -> Dict[str, Any]:
        """Parse a raw document (or a function producing one) through its schema.

        Reference fields that must be completed read through `session`.
        """
        definition = self.get_definition(name)
        if callable(document):
            document = await _maybe_await(document())
        return await parse_async(definition.schema, document, session)

    async def hydrate_many(
        self,
        name: str,
        documents: Union[Iterable[Mapping[str, Any]], Callable[[], Any]],
        session: Optional[StoreSession] = None,
    ) -> List[Dict[str, Any]]:
        """hydrate() for several documents, concurrently, order preserved."""
        if callable(documents):
            documents = await _maybe_await(documents())
        return list(
            await asyncio.gather(*(self.hydrate(name, d, session=session) for d in documents))
        )

    def get_raw_document(self, value: Any) -> Any:
        return get_raw_document(value)

    # References

    def get_references(self, name: str) -> Dict[str, List[ReferenceLocation]]:
        """Where documents of `name` are embedded, by source model name.

        Raises:
            UnknownCollectionError: If `name` is not registered
        """
        self.get_definition(name)
        return ReferenceGraph(self.definitions).index_references_to(name)

    async def update_references(
        self,
        name: str,
        id: Any,
        session: Optional[StoreSession] = None,
    ) -> int:
        """Re-propagate one document to its embeddings. Returns modified count."""
        return await self.propagator.propagate_update(name, id, session=session)


def define_collection(name: str, schema: SchemaNode) -> CollectionDefinition:
    """Create a collection definition (validates the schema root)."""
    return CollectionDefinition(name, schema)


def define_partial(name: str, schema: SchemaNode) -> PartialDefinition:
    return PartialDefinition(name, schema)


def define_database(
    store: DocumentStore,
    definitions: Iterable[CollectionDefinition] = (),
    partials: Iterable[PartialDefinition] = (),
    update_references: bool = True,
) -> Database:
    """Create a database and register definitions and partials with it."""
    database = Database(store, update_references=update_references)
    database.add_partials(*partials)
    database.add_definitions(*definitions)
    return database
