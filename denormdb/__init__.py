"""
denormdb - Denormalized references for schema-described document stores.

Documents routinely embed a copy of another document (a post embeds its
author's name). denormdb keeps those copies consistent:
- Collection definitions bind model names to schema trees
- Reference fields parse into DocumentReference values with a field mask
- LazyDocument loads fields on demand, one read per batch of requests
- Updates are propagated to every embedded copy in one transaction

Example:
    >>> from denormdb import define_collection, define_database
    >>> from denormdb.schema import obj, identifier, string, array, full_document, partial_document
    >>> from denormdb.store import InMemoryDocumentStore
    >>>
    >>> Photo = define_collection(
    ...     "Photo", obj({"_id": identifier(), "url": string()})
    ... )
    >>> User = define_collection(
    ...     "User", obj({"_id": identifier(), "photo": partial_document(Photo, "url")})
    ... )
    >>> db = define_database(InMemoryDocumentStore(), [Photo, User])
    >>> await db.connect()
    >>> photo = await db.create("Photo", {"url": "a.png"})
    >>> await db.create("User", {"photo": photo["_id"]})
    >>> await db.update("Photo", photo["_id"], {"url": "b.png"})

Invariants:
    - Collection schemas reach an object with `_id` before anything else
    - Definitions belong to exactly one Database
    - Validation completes before any write

Version: 0.1.0
"""

__version__ = "0.1.0"

from .config import DenormDbSettings, StorageBackend, setup_logging
from .database import Database, define_collection, define_database, define_partial
from .definition import CollectionDefinition, PartialDefinition, new_id
from .errors import (
    DefinitionNotRegisteredError,
    DenormDbError,
    DocumentNotFound,
    SchemaInvariantViolation,
    UnknownCollectionError,
    UnknownFieldError,
    ValidationFailure,
)
from .graph import ReferenceGraph, ReferenceLocation
from .lazy import LazyDocument
from .propagate import ReferencePropagator
from .reference import DocumentReference, get_raw_document

__all__ = [
    # Version
    "__version__",
    # Definitions
    "CollectionDefinition",
    "PartialDefinition",
    "define_collection",
    "define_partial",
    "new_id",
    # Database
    "Database",
    "define_database",
    # References
    "DocumentReference",
    "LazyDocument",
    "get_raw_document",
    "ReferenceGraph",
    "ReferenceLocation",
    "ReferencePropagator",
    # Configuration
    "DenormDbSettings",
    "StorageBackend",
    "setup_logging",
    # Errors
    "DenormDbError",
    "SchemaInvariantViolation",
    "ValidationFailure",
    "UnknownFieldError",
    "DocumentNotFound",
    "UnknownCollectionError",
    "DefinitionNotRegisteredError",
]
