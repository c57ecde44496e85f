"""
Error types for denormdb.

This module defines all exception types raised by the library:
- DenormDbError: Base exception
- SchemaInvariantViolation: Schema tree cannot back a collection
- ValidationFailure: Data does not conform to a schema
- UnknownFieldError: Field name not present in a document shape
- DocumentNotFound: A targeted or referenced document is missing
- UnknownCollectionError: Model name not registered on the database
- DefinitionNotRegisteredError: Definition used without an owning database

Storage-layer errors live in denormdb.store.base and also derive from
DenormDbError.

Invariants:
    - All errors inherit from DenormDbError
    - Errors include context for debugging
    - SchemaInvariantViolation is raised at construction time only
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence, Tuple

Issue = Tuple[str, str]


class DenormDbError(Exception):
    """Base exception for all denormdb errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "DENORMDB_ERROR"
        self.details = details or {}


class SchemaInvariantViolation(DenormDbError):
    """Schema tree violates a structural invariant.

    Raised when:
    - No object with an `_id` field is reachable from a collection root
    - A plain union, tuple or leaf appears before the first object
    - An open-ended map node is encountered by a walker
    """

    def __init__(self, message: str, model_name: Optional[str] = None) -> None:
        super().__init__(
            message,
            code="SCHEMA_INVARIANT",
            details={"model_name": model_name},
        )
        self.model_name = model_name


class ValidationFailure(DenormDbError):
    """Data does not conform to its schema.

    Attributes:
        issues: List of (path, message) pairs, path is dotted
    """

    def __init__(
        self,
        message: str,
        issues: Optional[Sequence[Issue]] = None,
    ) -> None:
        issues = list(issues or [])
        super().__init__(
            message,
            code="VALIDATION_ERROR",
            details={"issues": [{"path": p, "message": m} for p, m in issues]},
        )
        self.issues: List[Issue] = issues

    @classmethod
    def from_issues(cls, issues: Sequence[Issue]) -> ValidationFailure:
        """Build a failure whose message summarizes every issue."""
        summary = "; ".join(f"{path or '<root>'}: {msg}" for path, msg in issues)
        return cls(f"Validation failed: {summary}", issues)


class UnknownFieldError(ValidationFailure):
    """Unknown field requested from a document.

    Includes suggestions for similar field names.
    """

    def __init__(
        self,
        field_name: str,
        model_name: str,
        suggestions: Optional[List[str]] = None,
    ) -> None:
        suggestions = suggestions or []
        msg = f"Unknown field '{field_name}' in model '{model_name}'"
        if suggestions:
            msg += f". Did you mean: {', '.join(suggestions)}?"

        super().__init__(msg, [(field_name, "unknown field")])
        self.code = "UNKNOWN_FIELD"
        self.details.update(
            {
                "field_name": field_name,
                "model_name": model_name,
                "suggestions": suggestions,
            }
        )
        self.field_name = field_name
        self.model_name = model_name
        self.suggestions = suggestions


class DocumentNotFound(DenormDbError):
    """Document does not exist.

    Raised when:
    - A lazy document batch read returns nothing
    - An update or propagation targets a missing document
    """

    def __init__(self, collection: str, document_id: Any) -> None:
        super().__init__(
            f"Document {document_id} not found in '{collection}'",
            code="NOT_FOUND",
            details={"collection": collection, "document_id": str(document_id)},
        )
        self.collection = collection
        self.document_id = document_id


class UnknownCollectionError(DenormDbError):
    """Model name is not registered on the database."""

    def __init__(self, name: str) -> None:
        super().__init__(
            f"Collection {name} not found",
            code="UNKNOWN_COLLECTION",
            details={"name": name},
        )
        self.name = name


class DefinitionNotRegisteredError(DenormDbError):
    """Definition has no owning database, or already has a different one."""

    def __init__(self, message: str, name: Optional[str] = None) -> None:
        super().__init__(message, code="NOT_REGISTERED", details={"name": name})
        self.name = name
