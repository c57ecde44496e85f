"""
Collection and partial definitions.

A CollectionDefinition binds a model name to a schema tree. The root
invariant (an object carrying `_id`, possibly behind wrappers or a
discriminated union whose every branch qualifies) is checked when the
definition is constructed.

Definitions hold an explicit back-reference to the one Database they are
registered with. Anything that needs storage (lazy loading, resolving
references) goes through that back-reference.

Invariants:
    - A definition is registered with at most one database
    - `collection` equals `model_name`
    - The schema is never mutated after construction

How to change safely:
    - Keep construction free of I/O
    - Keep bind() the only way to set the owning database
"""

from __future__ import annotations

import logging
import uuid
from typing import TYPE_CHECKING, Any, Dict, Optional

from .errors import DefinitionNotRegisteredError
from .schema.nodes import SchemaNode
from .schema.validate import parse
from .schema.walker import ID_FIELD, DiscriminatorResolver, check_root, field_shape, id_field

if TYPE_CHECKING:
    from .database import Database

logger = logging.getLogger(__name__)


def new_id() -> uuid.UUID:
    """Generate a new document identifier."""
    return uuid.uuid4()


class _DatabaseBound:
    """Explicit owning-database back-reference."""

    name: str

    def __init__(self) -> None:
        self._database: Optional[Database] = None

    @property
    def is_registered(self) -> bool:
        return self._database is not None

    @property
    def database(self) -> Database:
        """Owning database.

        Raises:
            DefinitionNotRegisteredError: If not registered yet
        """
        if self._database is None:
            raise DefinitionNotRegisteredError(
                f"'{self.name}' is not registered with a database", self.name
            )
        return self._database

    def bind(self, database: Database) -> None:
        """Attach the owning database.

        Raises:
            DefinitionNotRegisteredError: If already owned by another database
        """
        if self._database is not None and self._database is not database:
            raise DefinitionNotRegisteredError(
                f"'{self.name}' is already registered with another database", self.name
            )
        self._database = database


class CollectionDefinition(_DatabaseBound):
    """A named collection and the schema of its documents.

    Attributes:
        model_name: Model name, also the storage collection name
        schema: Root schema node

    Example:
        >>> Photo = CollectionDefinition(
        ...     "Photo", obj({"_id": identifier(), "url": string()})
        ... )
        >>> Photo.new(url="a.png")
        {'_id': UUID('...'), 'url': 'a.png'}
    """

    def __init__(self, model_name: str, schema: SchemaNode) -> None:
        """Create a definition.

        Raises:
            SchemaInvariantViolation: If the root cannot back a collection
        """
        check_root(schema, model_name)
        super().__init__()
        self.model_name = model_name
        self.schema = schema

    @property
    def name(self) -> str:  # type: ignore[override]
        return self.model_name

    @property
    def collection(self) -> str:
        return self.model_name

    @property
    def id_schema(self) -> SchemaNode:
        return id_field(self.schema)

    async def get_field_shape(self, resolver: DiscriminatorResolver) -> Dict[str, SchemaNode]:
        """Field map of one concrete document.

        Args:
            resolver: Awaited with a discriminator field name, returns its value

        Raises:
            ValidationFailure: If a discriminator selects no branch
        """
        return await field_shape(self.schema, resolver)

    def new(self, **fields: Any) -> Dict[str, Any]:
        """Build a validated document without touching storage.

        A fresh `_id` is generated when none is given. Schemas with
        reference fields need Database.create instead.

        Raises:
            ValidationFailure: If the fields do not conform
        """
        data = dict(fields)
        data.setdefault(ID_FIELD, new_id())
        return parse(self.schema, data)

    def __repr__(self) -> str:
        return f"CollectionDefinition({self.model_name!r})"


class PartialDefinition(_DatabaseBound):
    """A named, reusable schema fragment.

    Partials have no collection of their own; they are embedded in
    collection schemas with `partial()`.
    """

    def __init__(self, name: str, schema: SchemaNode) -> None:
        super().__init__()
        self.name = name
        self.schema = schema

    def __repr__(self) -> str:
        return f"PartialDefinition({self.name!r})"
