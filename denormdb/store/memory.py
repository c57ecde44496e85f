"""
In-memory document store implementation for testing.

This module provides a simple in-memory storage backend for:
- Unit tests
- Integration tests
- Local development without a database server

Invariants:
    - All data is lost on process exit
    - Documents are deep-copied on write and on read
    - No operation suspends, so each call is atomic on the event loop
    - A transaction keeps an undo journal; abort restores every touched
      document, commit discards the journal
    - Uncommitted writes are visible to other readers (no isolation)

How to change safely:
    - Keep interface compatible with the DocumentStore protocol
    - Put query semantics in query.py so the SQLite backend stays in step
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .base import (
    Document,
    DuplicateDocumentError,
    Filter,
    Projection,
    StoreConnectionError,
    StoreError,
    StoreSession,
    TransactionError,
)
from .query import apply_projection, apply_set, matches

logger = logging.getLogger(__name__)


@dataclass
class ReadRecord:
    """One read issued against the store (testing helper)."""

    collection: str
    filter: Dict[str, Any]
    projection: Optional[Dict[str, int]]
    many: bool = False
    session: Optional[StoreSession] = None


@dataclass
class InMemorySession:
    """Session over an InMemoryDocumentStore.

    Attributes:
        store: Owning store
        journal: (collection, _id) -> document before the first write in the
            current transaction, or None if it did not exist
    """

    store: InMemoryDocumentStore
    journal: Dict[Tuple[str, Any], Optional[Document]] = field(default_factory=dict)
    _in_transaction: bool = False
    _ended: bool = False

    @property
    def in_transaction(self) -> bool:
        return self._in_transaction

    def start_transaction(self) -> None:
        if self._ended:
            raise TransactionError("Session has ended")
        if self._in_transaction:
            raise TransactionError("Transaction already in progress")
        self._in_transaction = True
        self.journal.clear()

    async def commit_transaction(self) -> None:
        if not self._in_transaction:
            raise TransactionError("No transaction started")
        logger.debug("Committing in-memory transaction", extra={"writes": len(self.journal)})
        self.journal.clear()
        self._in_transaction = False

    async def abort_transaction(self) -> None:
        if not self._in_transaction:
            raise TransactionError("No transaction started")
        for (collection, doc_id), previous in self.journal.items():
            docs = self.store._collection(collection)
            if previous is None:
                docs.pop(doc_id, None)
            else:
                docs[doc_id] = previous
        logger.debug("Aborted in-memory transaction", extra={"writes": len(self.journal)})
        self.journal.clear()
        self._in_transaction = False

    async def end_session(self) -> None:
        if self._in_transaction:
            await self.abort_transaction()
        self._ended = True

    def remember(self, collection: str, doc_id: Any, previous: Optional[Document]) -> None:
        key = (collection, doc_id)
        if self._in_transaction and key not in self.journal:
            self.journal[key] = copy.deepcopy(previous)


class InMemoryDocumentStore:
    """In-memory implementation of DocumentStore for testing.

    Attributes:
        reads: Every find/find_one issued, in order (testing helper)

    Example:
        >>> store = InMemoryDocumentStore()
        >>> await store.connect()
        >>> await store.insert_one("Photo", {"_id": pid, "url": "a.png"})
        >>> store.read_count("Photo")
        0
    """

    def __init__(self) -> None:
        self._collections: Dict[str, Dict[Any, Document]] = {}
        self._connected = False
        self.reads: List[ReadRecord] = []

    @property
    def is_connected(self) -> bool:
        """Whether connected (always true after connect())."""
        return self._connected

    async def connect(self) -> None:
        """Connect (no-op for in-memory)."""
        self._connected = True
        logger.debug("InMemoryDocumentStore connected")

    async def close(self) -> None:
        """Close and clear all data."""
        self._connected = False
        self._collections.clear()
        self.reads.clear()
        logger.debug("InMemoryDocumentStore closed")

    def start_session(self) -> StoreSession:
        self._check_connected()
        return InMemorySession(self)

    def _check_connected(self) -> None:
        if not self._connected:
            raise StoreConnectionError("Not connected")

    def _collection(self, name: str) -> Dict[Any, Document]:
        return self._collections.setdefault(name, {})

    def _journal(self, session: Optional[StoreSession], collection: str, doc_id: Any) -> None:
        if isinstance(session, InMemorySession):
            session.remember(collection, doc_id, self._collection(collection).get(doc_id))

    async def find_one(
        self,
        collection: str,
        filter: Filter,
        projection: Optional[Projection] = None,
        session: Optional[StoreSession] = None,
    ) -> Optional[Document]:
        self._check_connected()
        self.reads.append(
            ReadRecord(collection, dict(filter), _copy_projection(projection), session=session)
        )
        for document in self._collection(collection).values():
            if matches(document, filter):
                return apply_projection(document, projection)
        return None

    async def find(
        self,
        collection: str,
        filter: Optional[Filter] = None,
        projection: Optional[Projection] = None,
        session: Optional[StoreSession] = None,
    ) -> List[Document]:
        self._check_connected()
        self.reads.append(
            ReadRecord(
                collection,
                dict(filter or {}),
                _copy_projection(projection),
                many=True,
                session=session,
            )
        )
        return [
            apply_projection(document, projection)
            for document in self._collection(collection).values()
            if matches(document, filter)
        ]

    async def insert_one(
        self,
        collection: str,
        document: Document,
        session: Optional[StoreSession] = None,
    ) -> Any:
        self._check_connected()
        if "_id" not in document:
            raise StoreError("Document must have _id")
        doc_id = document["_id"]
        docs = self._collection(collection)
        if doc_id in docs:
            raise DuplicateDocumentError(collection, doc_id)
        self._journal(session, collection, doc_id)
        docs[doc_id] = copy.deepcopy(document)
        logger.debug("Document inserted", extra={"collection": collection, "doc_id": str(doc_id)})
        return doc_id

    async def replace_one(
        self,
        collection: str,
        filter: Filter,
        document: Document,
        session: Optional[StoreSession] = None,
    ) -> int:
        self._check_connected()
        docs = self._collection(collection)
        for doc_id, current in docs.items():
            if matches(current, filter):
                if document.get("_id", doc_id) != doc_id:
                    raise StoreError("replace_one cannot change _id")
                self._journal(session, collection, doc_id)
                docs[doc_id] = {"_id": doc_id, **copy.deepcopy(document)}
                return 1
        return 0

    async def update_many(
        self,
        collection: str,
        filter: Filter,
        set_fields: Mapping[str, Any],
        array_filters: Optional[Mapping[str, Filter]] = None,
        session: Optional[StoreSession] = None,
    ) -> int:
        self._check_connected()
        modified = 0
        docs = self._collection(collection)
        for doc_id, current in docs.items():
            if not matches(current, filter):
                continue
            updated = copy.deepcopy(current)
            if apply_set(updated, set_fields, array_filters):
                self._journal(session, collection, doc_id)
                docs[doc_id] = updated
                modified += 1
        logger.debug(
            "update_many applied",
            extra={"collection": collection, "modified": modified, "fields": list(set_fields)},
        )
        return modified

    # Testing helpers

    def get_all_documents(self, collection: str) -> List[Document]:
        """Get copies of all documents in a collection (testing helper)."""
        return [copy.deepcopy(d) for d in self._collection(collection).values()]

    def read_count(self, collection: Optional[str] = None) -> int:
        """Number of reads issued, optionally for one collection (testing helper)."""
        if collection is None:
            return len(self.reads)
        return sum(1 for r in self.reads if r.collection == collection)

    def clear_reads(self) -> None:
        """Forget recorded reads (testing helper)."""
        self.reads.clear()


def _copy_projection(projection: Optional[Projection]) -> Optional[Dict[str, int]]:
    return dict(projection) if projection is not None else None
