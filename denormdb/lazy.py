"""
Lazy document engine.

A LazyDocument is a live view over one stored document. Fields are loaded
on demand through `get(field)`, which returns a future. Requests for fields
that are not loaded yet are coalesced: the first one opens a batch and
schedules its flush as a new task, every request issued before the event
loop runs that task joins the batch, and the flush issues exactly one
projected read for all of them.

    idle --get(x)--> batching --flush--> settled-partial --get(y)--> batching

Loaded values are validated against the document's field shape, derived
once (discriminated unions are resolved by loading the discriminator
through this same document). The shape is picked down to every field known
so far and the accumulated raw values are parsed through it together, so
cross-field effects see the same document on every request.

Invariants:
    - At most one read is pending per document at a time
    - Each field is read from storage at most once per LazyDocument
    - A failed batch fails every request that joined it, and stays failed
    - `_id` is always known locally and never read

How to change safely:
    - Never await between opening a batch and registering its fields
    - get() registers object-root fields in the open batch before returning;
      only discriminated roots defer the load behind the shape
    - Keep flush taking the pending slot before its first await
"""

from __future__ import annotations

import asyncio
import difflib
import logging
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional

from .errors import DocumentNotFound, UnknownFieldError
from .schema.nodes import ObjectNode, SchemaNode
from .schema.validate import parse_async
from .schema.walker import ID_FIELD, static_field_shape

if TYPE_CHECKING:
    from .definition import CollectionDefinition
    from .store.base import StoreSession

logger = logging.getLogger(__name__)


class _Batch:
    __slots__ = ("fields",)

    def __init__(self) -> None:
        self.fields: List[str] = []


class LazyDocument:
    """On-demand, batching accessor for one document.

    Attributes:
        definition: Owning collection definition
        id: Document identifier

    Example:
        >>> doc = db.find_one_lazy("Photo", photo_id)
        >>> url, description = await asyncio.gather(
        ...     doc.get("url"), doc.get("description")
        ... )  # one read
    """

    def __init__(
        self,
        definition: CollectionDefinition,
        id: Any,
        existing: Optional[Mapping[str, Any]] = None,
        session: Optional[StoreSession] = None,
    ) -> None:
        """Create a lazy view.

        Args:
            definition: Owning collection definition
            id: Document identifier
            existing: Already validated field values, served without reads
            session: Store session every read joins
        """
        from .reference import get_raw_document

        self.definition = definition
        self.id = id
        self._session = session
        self._raw: Dict[str, Any] = {ID_FIELD: id}
        self._parsed: Dict[str, Any] = {ID_FIELD: id}
        for name, value in (existing or {}).items():
            if name == ID_FIELD:
                continue
            self._raw[name] = get_raw_document(value)
            self._parsed[name] = value
        self._loads: Dict[str, asyncio.Future] = {}
        self._validations: Dict[str, asyncio.Future] = {}
        self._pending: Optional[_Batch] = None
        self._shape: Optional[asyncio.Future] = None
        self._flushes: set[asyncio.Task] = set()

    def get(self, field: str, validate: bool = True) -> asyncio.Future:
        """Future for the value of `field`.

        Must be called with an event loop running. Futures are shared
        between callers, so cancelling one cancels it for everyone.

        Args:
            field: Field name
            validate: Parse the value through the schema (default), or
                return the raw stored value

        Returns:
            Future resolving to the value, None when the stored document
            lacks the field

        Raises (through the future):
            DocumentNotFound: If the document does not exist
            UnknownFieldError: If the schema has no such field
            ValidationFailure: If the stored value does not conform
        """
        loop = asyncio.get_running_loop()
        if field == ID_FIELD:
            done = loop.create_future()
            done.set_result(self.id)
            return done
        if not validate:
            return self._load(field)
        future = self._validations.get(field)
        if future is None:
            shape = static_field_shape(self.definition.schema)
            if shape is not None and field in shape and field not in self._parsed:
                self._load(field)
            future = loop.create_task(self._validate(field))
            self._validations[field] = future
        return future

    async def collect(self, *fields: str) -> Dict[str, Any]:
        """Load several validated fields at once (one read for all unknown ones)."""
        values = await asyncio.gather(*(self.get(name) for name in fields))
        return dict(zip(fields, values))

    @property
    def loaded_fields(self) -> List[str]:
        """Names whose raw values are known locally."""
        return list(self._raw)

    def _load(self, field: str) -> asyncio.Future:
        future = self._loads.get(field)
        if future is not None:
            return future

        loop = asyncio.get_running_loop()
        future = loop.create_future()
        self._loads[field] = future
        if field in self._raw:
            future.set_result(self._raw[field])
            return future

        if self._pending is None:
            self._pending = _Batch()
            task = loop.create_task(self._flush())
            self._flushes.add(task)
            task.add_done_callback(self._flushes.discard)
        self._pending.fields.append(field)
        return future

    async def _flush(self) -> None:
        batch, self._pending = self._pending, None
        assert batch is not None
        collection = self.definition.collection
        projection = {ID_FIELD: 0, **{name: 1 for name in batch.fields}}

        logger.debug(
            "Flushing lazy batch",
            extra={"collection": collection, "doc_id": str(self.id), "fields": batch.fields},
        )
        try:
            store = self.definition.database.store
            document = await store.find_one(
                collection, {ID_FIELD: self.id}, projection, session=self._session
            )
            if document is None:
                raise DocumentNotFound(collection, self.id)
        except Exception as e:
            for name in batch.fields:
                self._loads[name].set_exception(e)
            return

        for name in batch.fields:
            if name in document:
                self._raw[name] = document[name]
            self._loads[name].set_result(document.get(name))

    def _field_shape(self) -> asyncio.Future:
        if self._shape is None:
            self._shape = asyncio.get_running_loop().create_task(
                self.definition.get_field_shape(lambda name: self._load(name))
            )
        return self._shape

    async def _validate(self, field: str) -> Any:
        if field in self._parsed:
            return self._parsed[field]

        shape: Dict[str, SchemaNode] = await self._field_shape()
        if field not in shape:
            raise UnknownFieldError(
                field,
                self.definition.model_name,
                difflib.get_close_matches(field, list(shape), n=3),
            )

        await self._load(field)
        known = [name for name in shape if name in self._raw or name == field]
        data = {name: self._raw[name] for name in known if name in self._raw}
        parsed = await parse_async(
            ObjectNode({name: shape[name] for name in known}), data, self._session
        )
        for name in known:
            self._parsed.setdefault(name, parsed.get(name))
        return self._parsed[field]

    def __repr__(self) -> str:
        return f"LazyDocument({self.definition.model_name!r}, {self.id!r})"
