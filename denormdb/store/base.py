"""
Base protocol and types for the document storage abstraction.

This module defines the DocumentStore protocol that all backends implement,
the StoreSession protocol for transactions, and common storage errors.

Invariants:
    - Documents are dicts keyed by field name and carry `_id`
    - Backends return copies; callers never alias stored state
    - Writes issued with a session in a transaction are all-or-nothing
    - Query, projection and update semantics come from query.py so every
      backend behaves the same

How to change safely:
    - Protocol changes require updating all implementations
    - Add new query operators in query.py, not in a backend
"""

from __future__ import annotations

import logging
from abc import abstractmethod
from contextlib import asynccontextmanager
from typing import (
    TYPE_CHECKING,
    Any,
    AsyncIterator,
    Dict,
    List,
    Mapping,
    Optional,
    Protocol,
    runtime_checkable,
)

from ..errors import DenormDbError

if TYPE_CHECKING:
    from ..config import DenormDbSettings

logger = logging.getLogger(__name__)

Document = Dict[str, Any]
Filter = Mapping[str, Any]
Projection = Mapping[str, int]


class StoreError(DenormDbError):
    """Base exception for storage operations."""

    def __init__(self, message: str, code: str = "STORE_ERROR") -> None:
        super().__init__(message, code=code)


class StoreConnectionError(StoreError):
    """Store is not connected."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="STORE_CONNECTION_ERROR")


class DuplicateDocumentError(StoreError):
    """A document with this `_id` already exists."""

    def __init__(self, collection: str, document_id: Any) -> None:
        super().__init__(
            f"Document {document_id} already exists in '{collection}'",
            code="DUPLICATE_DOCUMENT",
        )
        self.collection = collection
        self.document_id = document_id


class TransactionError(StoreError):
    """Transaction state machine misuse (e.g. commit without start)."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="TRANSACTION_ERROR")


@runtime_checkable
class StoreSession(Protocol):
    """A client session that can run one transaction at a time.

    Example:
        >>> session = store.start_session()
        >>> session.start_transaction()
        >>> try:
        ...     await store.insert_one("User", doc, session=session)
        ...     await session.commit_transaction()
        ... except Exception:
        ...     await session.abort_transaction()
        ...     raise
        ... finally:
        ...     await session.end_session()
    """

    @property
    @abstractmethod
    def in_transaction(self) -> bool:
        ...

    @abstractmethod
    def start_transaction(self) -> None:
        """Begin a transaction.

        Raises:
            TransactionError: If one is already running or the session ended
        """
        ...

    @abstractmethod
    async def commit_transaction(self) -> None:
        ...

    @abstractmethod
    async def abort_transaction(self) -> None:
        """Undo every write made in the transaction."""
        ...

    @abstractmethod
    async def end_session(self) -> None:
        """Release the session. Aborts a running transaction."""
        ...


@runtime_checkable
class DocumentStore(Protocol):
    """Protocol for document storage backends.

    Filter contract (see query.py):
        - {"a.b": v}: dotted path equality, arrays on the path match any element
        - {"a": {"$elemMatch": sub_filter}}: some element of array `a` matches
        - {"a": {"$in": [...]}}, {"a": {"$ne": v}}, {"a": {"$exists": bool}}

    Update contract:
        - set_fields maps dotted paths to values
        - a `$[name]` segment targets every array element matching
          array_filters[name], which is a filter applied to the element

    Example:
        >>> store = InMemoryDocumentStore()
        >>> await store.connect()
        >>> await store.insert_one("Photo", {"_id": pid, "url": "a.png"})
        >>> await store.find_one("Photo", {"_id": pid}, {"url": 1})
    """

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        ...

    @abstractmethod
    async def connect(self) -> None:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...

    @abstractmethod
    def start_session(self) -> StoreSession:
        ...

    @abstractmethod
    async def find_one(
        self,
        collection: str,
        filter: Filter,
        projection: Optional[Projection] = None,
        session: Optional[StoreSession] = None,
    ) -> Optional[Document]:
        """Return the first matching document, projected, or None."""
        ...

    @abstractmethod
    async def find(
        self,
        collection: str,
        filter: Optional[Filter] = None,
        projection: Optional[Projection] = None,
        session: Optional[StoreSession] = None,
    ) -> List[Document]:
        """Return every matching document in insertion order."""
        ...

    @abstractmethod
    async def insert_one(
        self,
        collection: str,
        document: Document,
        session: Optional[StoreSession] = None,
    ) -> Any:
        """Insert a document and return its `_id`.

        Raises:
            DuplicateDocumentError: If `_id` is taken
        """
        ...

    @abstractmethod
    async def replace_one(
        self,
        collection: str,
        filter: Filter,
        document: Document,
        session: Optional[StoreSession] = None,
    ) -> int:
        """Replace the first matching document. Returns the match count."""
        ...

    @abstractmethod
    async def update_many(
        self,
        collection: str,
        filter: Filter,
        set_fields: Mapping[str, Any],
        array_filters: Optional[Mapping[str, Filter]] = None,
        session: Optional[StoreSession] = None,
    ) -> int:
        """Set fields on every matching document. Returns the modified count."""
        ...


def create_store(settings: "DenormDbSettings") -> DocumentStore:
    """Factory function to create a store from settings.

    Args:
        settings: Library settings

    Returns:
        Appropriate DocumentStore implementation

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import StorageBackend
    from .memory import InMemoryDocumentStore
    from .sqlite import SQLiteDocumentStore

    if settings.storage_backend == StorageBackend.MEMORY:
        return InMemoryDocumentStore()
    elif settings.storage_backend == StorageBackend.SQLITE:
        return SQLiteDocumentStore(
            settings.sqlite_path,
            busy_timeout_ms=settings.sqlite_busy_timeout_ms,
            wal_mode=settings.sqlite_wal_mode,
        )
    else:
        raise ValueError(f"Unsupported storage backend: {settings.storage_backend}")


@asynccontextmanager
async def transaction(
    store: DocumentStore, session: Optional[StoreSession] = None
) -> AsyncIterator[StoreSession]:
    """Run a block inside a transaction.

    A caller-supplied session is yielded as-is and left for the caller to
    commit. Otherwise a new session is started, committed on success,
    aborted on any exception and always ended.
    """
    if session is not None:
        yield session
        return

    owned = store.start_session()
    owned.start_transaction()
    try:
        yield owned
        await owned.commit_transaction()
    except BaseException:
        if owned.in_transaction:
            logger.debug("Aborting transaction after error")
            await owned.abort_transaction()
        raise
    finally:
        await owned.end_session()
