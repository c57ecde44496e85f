"""
Document storage abstraction for denormdb.

This module provides a pluggable storage backend interface supporting:
- SQLite (single file, local deployments)
- In-memory (for testing)

Both backends share the filter, projection and update semantics of
query.py, so behaviour does not depend on the backend.

Invariants:
    - Writes with a session in a transaction are all-or-nothing
    - Backends never return references to their internal state

How to change safely:
    - New backends must implement the DocumentStore protocol
    - Run the store test suite against every backend
"""

from .base import (
    Document,
    DocumentStore,
    DuplicateDocumentError,
    Filter,
    Projection,
    StoreConnectionError,
    StoreError,
    StoreSession,
    TransactionError,
    create_store,
    transaction,
)
from .memory import InMemoryDocumentStore, InMemorySession
from .sqlite import SQLiteDocumentStore, SQLiteSession

__all__ = [
    # Protocol and types
    "DocumentStore",
    "StoreSession",
    "Document",
    "Filter",
    "Projection",
    # Errors
    "StoreError",
    "StoreConnectionError",
    "DuplicateDocumentError",
    "TransactionError",
    # Helpers
    "create_store",
    "transaction",
    # Implementations
    "InMemoryDocumentStore",
    "InMemorySession",
    "SQLiteDocumentStore",
    "SQLiteSession",
]
