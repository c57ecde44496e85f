"""
SQLite document store for denormdb.

Documents are stored as tagged JSON in a single table:

    documents:
        - collection TEXT
        - doc_key TEXT (encoded _id)
        - body TEXT (tagged JSON)
        - PRIMARY KEY (collection, doc_key)

Filters other than a plain `_id` lookup are evaluated in Python with the
shared semantics of query.py, scanning the collection in rowid order.

Invariants:
    - UUID, datetime and bytes values round-trip through tagged JSON
    - Outside a session every operation uses its own autocommit connection
    - A transaction owns one connection holding BEGIN IMMEDIATE until
      commit or rollback
    - All writes issued inside a running transaction must pass its session,
      otherwise they wait on the transaction's write lock

How to change safely:
    - Keep the tag names stable, they are persisted
    - Test with the same cases as the in-memory store
"""

from __future__ import annotations

import base64
import datetime
import json
import logging
import sqlite3
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any, List, Mapping, Optional

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

_UUID_TAG = "$uuid"
_DATE_TAG = "$date"
_BINARY_TAG = "$binary"


def encode_value(value: Any) -> Any:
    """Convert a document value into JSON-compatible tagged form."""
    if isinstance(value, uuid.UUID):
        return {_UUID_TAG: str(value)}
    if isinstance(value, datetime.datetime):
        return {_DATE_TAG: value.isoformat()}
    if isinstance(value, (bytes, bytearray)):
        return {_BINARY_TAG: base64.b64encode(bytes(value)).decode("ascii")}
    if isinstance(value, Mapping):
        return {str(k): encode_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [encode_value(v) for v in value]
    return value


def decode_value(value: Any) -> Any:
    """Inverse of encode_value."""
    if isinstance(value, dict):
        if len(value) == 1:
            (tag, raw), = value.items()
            if tag == _UUID_TAG:
                return uuid.UUID(raw)
            if tag == _DATE_TAG:
                return datetime.datetime.fromisoformat(raw)
            if tag == _BINARY_TAG:
                return base64.b64decode(raw)
        return {k: decode_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [decode_value(v) for v in value]
    return value


def _doc_key(doc_id: Any) -> str:
    return json.dumps(encode_value(doc_id), sort_keys=True)


class SQLiteSession:
    """Session bound to one SQLite connection per transaction."""

    def __init__(self, store: SQLiteDocumentStore) -> None:
        self.store = store
        self.conn: Optional[sqlite3.Connection] = None
        self._ended = False

    @property
    def in_transaction(self) -> bool:
        return self.conn is not None

    def start_transaction(self) -> None:
        if self._ended:
            raise TransactionError("Session has ended")
        if self.conn is not None:
            raise TransactionError("Transaction already in progress")
        self.conn = self.store._connect()
        self.conn.execute("BEGIN IMMEDIATE")

    async def commit_transaction(self) -> None:
        if self.conn is None:
            raise TransactionError("No transaction started")
        try:
            self.conn.execute("COMMIT")
        finally:
            self._release()

    async def abort_transaction(self) -> None:
        if self.conn is None:
            raise TransactionError("No transaction started")
        try:
            self.conn.execute("ROLLBACK")
        finally:
            self._release()

    async def end_session(self) -> None:
        if self.conn is not None:
            await self.abort_transaction()
        self._ended = True

    def _release(self) -> None:
        if self.conn is not None:
            self.conn.close()
            self.conn = None


class SQLiteDocumentStore:
    """SQLite-backed implementation of DocumentStore.

    Example:
        >>> store = SQLiteDocumentStore("/var/lib/denormdb/docs.sqlite3")
        >>> await store.connect()
        >>> await store.insert_one("Photo", {"_id": pid, "url": "a.png"})
    """

    def __init__(
        self,
        path: str,
        busy_timeout_ms: int = 5000,
        wal_mode: bool = True,
    ) -> None:
        """Initialize the store.

        Args:
            path: SQLite database file
            busy_timeout_ms: SQLite busy timeout
            wal_mode: Enable SQLite WAL journal mode
        """
        self.path = Path(path)
        self.busy_timeout_ms = busy_timeout_ms
        self.wal_mode = wal_mode
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            str(self.path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit by default, explicit transactions
        )
        conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
        if self.wal_mode:
            conn.execute("PRAGMA journal_mode = WAL")
        return conn

    @contextmanager
    def _get_connection(self, session: Optional[StoreSession]) -> Iterator[sqlite3.Connection]:
        """Yield the session's transaction connection, or a fresh one."""
        if not self._connected:
            raise StoreConnectionError("Not connected")
        if isinstance(session, SQLiteSession) and session.conn is not None:
            yield session.conn
            return
        conn = self._connect()
        try:
            yield conn
        finally:
            conn.close()

    async def connect(self) -> None:
        """Create the database file and schema if needed."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        conn = self._connect()
        try:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS documents (
                    collection TEXT NOT NULL,
                    doc_key TEXT NOT NULL,
                    body TEXT NOT NULL,
                    PRIMARY KEY (collection, doc_key)
                );
            """)
        finally:
            conn.close()
        self._connected = True
        logger.info(f"Opened SQLite document store: {self.path}")

    async def close(self) -> None:
        self._connected = False

    def start_session(self) -> StoreSession:
        if not self._connected:
            raise StoreConnectionError("Not connected")
        return SQLiteSession(self)

    def _scan(self, conn: sqlite3.Connection, collection: str, filter: Optional[Filter]) -> Iterator[Document]:
        if filter and set(filter) == {"_id"} and not isinstance(filter["_id"], Mapping):
            cursor = conn.execute(
                "SELECT body FROM documents WHERE collection = ? AND doc_key = ?",
                (collection, _doc_key(filter["_id"])),
            )
        else:
            cursor = conn.execute(
                "SELECT body FROM documents WHERE collection = ? ORDER BY rowid",
                (collection,),
            )
        for (body,) in cursor.fetchall():
            document = decode_value(json.loads(body))
            if matches(document, filter):
                yield document

    def _write(self, conn: sqlite3.Connection, collection: str, document: Document) -> None:
        conn.execute(
            "UPDATE documents SET body = ? WHERE collection = ? AND doc_key = ?",
            (json.dumps(encode_value(document)), collection, _doc_key(document["_id"])),
        )

    async def find_one(
        self,
        collection: str,
        filter: Filter,
        projection: Optional[Projection] = None,
        session: Optional[StoreSession] = None,
    ) -> Optional[Document]:
        with self._get_connection(session) as conn:
            for document in self._scan(conn, collection, filter):
                return apply_projection(document, projection)
        return None

    async def find(
        self,
        collection: str,
        filter: Optional[Filter] = None,
        projection: Optional[Projection] = None,
        session: Optional[StoreSession] = None,
    ) -> List[Document]:
        with self._get_connection(session) as conn:
            return [apply_projection(d, projection) for d in self._scan(conn, collection, filter)]

    async def insert_one(
        self,
        collection: str,
        document: Document,
        session: Optional[StoreSession] = None,
    ) -> Any:
        if "_id" not in document:
            raise StoreError("Document must have _id")
        with self._get_connection(session) as conn:
            try:
                conn.execute(
                    "INSERT INTO documents (collection, doc_key, body) VALUES (?, ?, ?)",
                    (collection, _doc_key(document["_id"]), json.dumps(encode_value(document))),
                )
            except sqlite3.IntegrityError as e:
                raise DuplicateDocumentError(collection, document["_id"]) from e
        return document["_id"]

    async def replace_one(
        self,
        collection: str,
        filter: Filter,
        document: Document,
        session: Optional[StoreSession] = None,
    ) -> int:
        with self._get_connection(session) as conn:
            for current in self._scan(conn, collection, filter):
                if document.get("_id", current["_id"]) != current["_id"]:
                    raise StoreError("replace_one cannot change _id")
                self._write(conn, collection, {"_id": current["_id"], **document})
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
        modified = 0
        with self._get_connection(session) as conn:
            for document in list(self._scan(conn, collection, filter)):
                if apply_set(document, set_fields, array_filters):
                    self._write(conn, collection, document)
                    modified += 1
        logger.debug(
            "update_many applied",
            extra={"collection": collection, "modified": modified, "fields": list(set_fields)},
        )
        return modified
