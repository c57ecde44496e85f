"""
Schema node types for denormdb.

A collection schema is a tree of SchemaNode values. The set of node kinds is
closed (NodeKind); every walker and the validator dispatch on `node.kind` and
treat anything they do not expect as a hard failure.

Node kinds:
- ObjectNode: named fields, the only node that can carry `_id`
- ArrayNode: homogeneous list
- UnionNode / DiscriminatedUnionNode: alternatives
- WrapperNode: optional, nullable, branded, default and effect forms
- DeferredNode: lazily resolved subtree (cyclic schemas)
- ReferenceNode: embedding point for another collection's document
- LeafNode: scalar terminal
- MapNode / TupleNode: accepted by the validator, rejected by walkers
  (tuples are only walked after the first object)

Invariants:
    - Nodes are immutable after construction
    - Discriminated union options resolve to objects whose discriminator
      field is a literal leaf
    - Nodes compare and hash by identity

How to change safely:
    - Adding a NodeKind means updating walker.py and validate.py together
    - Keep WrapperKind transparent for traversal purposes
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, ClassVar, Mapping

from ..errors import SchemaInvariantViolation


class NodeKind(Enum):
    """Closed set of schema node kinds."""

    OBJECT = "object"
    ARRAY = "array"
    UNION = "union"
    DISCRIMINATED_UNION = "discriminated_union"
    WRAPPER = "wrapper"
    DEFERRED = "deferred"
    REFERENCE = "reference"
    LEAF = "leaf"
    MAP = "map"
    TUPLE = "tuple"


class LeafKind(Enum):
    """Scalar terminal types."""

    STRING = "string"
    INTEGER = "integer"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    BINARY = "binary"
    IDENTIFIER = "identifier"
    LITERAL = "literal"
    ENUM = "enum"
    ANY = "any"


class WrapperKind(Enum):
    """Pass-through wrappers. All are transparent to the walkers."""

    OPTIONAL = "optional"
    NULLABLE = "nullable"
    BRANDED = "branded"
    DEFAULT = "default"
    EFFECT = "effect"


@dataclass(frozen=True, eq=False)
class SchemaNode:
    """Base class for every schema node."""

    kind: ClassVar[NodeKind]


@dataclass(frozen=True, eq=False)
class ObjectNode(SchemaNode):
    """Object with named fields.

    Attributes:
        fields: Field name to node, in declaration order
        strict: Reject keys not declared in `fields` (default strips them)
    """

    kind: ClassVar[NodeKind] = NodeKind.OBJECT

    fields: Mapping[str, SchemaNode] = field(default_factory=dict)
    strict: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "fields", dict(self.fields))

    def pick(self, names: Any, strict: bool | None = None) -> ObjectNode:
        """Derive an object node keeping only `names`, in declaration order."""
        wanted = set(names)
        return ObjectNode(
            fields={k: v for k, v in self.fields.items() if k in wanted},
            strict=self.strict if strict is None else strict,
        )

    def __repr__(self) -> str:
        return f"ObjectNode({list(self.fields)})"


@dataclass(frozen=True, eq=False)
class ArrayNode(SchemaNode):
    kind: ClassVar[NodeKind] = NodeKind.ARRAY

    element: SchemaNode = None  # type: ignore[assignment]


@dataclass(frozen=True, eq=False)
class UnionNode(SchemaNode):
    """First option that parses wins."""

    kind: ClassVar[NodeKind] = NodeKind.UNION

    options: tuple[SchemaNode, ...] = ()


@dataclass(frozen=True, eq=False)
class DiscriminatedUnionNode(SchemaNode):
    """Union whose branch is selected by the literal value of one field.

    Attributes:
        discriminator: Field name holding the branch literal
        options: Branch nodes, each resolving to an ObjectNode
    """

    kind: ClassVar[NodeKind] = NodeKind.DISCRIMINATED_UNION

    discriminator: str = ""
    options: tuple[SchemaNode, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "options", tuple(self.options))
        if not self.discriminator:
            raise SchemaInvariantViolation("Discriminated union needs a discriminator field")
        seen: dict[Any, int] = {}
        for index, option in enumerate(self.options):
            for value in _literal_values(option, self.discriminator):
                if value in seen:
                    raise SchemaInvariantViolation(
                        f"Duplicate discriminator value {value!r} for '{self.discriminator}'"
                    )
                seen[value] = index

    @property
    def discriminator_values(self) -> list[Any]:
        values: list[Any] = []
        for option in self.options:
            values.extend(_literal_values(option, self.discriminator))
        return values

    def option_for(self, value: Any) -> SchemaNode | None:
        """Return the branch selected by a discriminator value, if any."""
        for option in self.options:
            if value in _literal_values(option, self.discriminator):
                return option
        return None


@dataclass(frozen=True, eq=False)
class WrapperNode(SchemaNode):
    """Transparent wrapper around another node.

    Attributes:
        inner: Wrapped node
        wrapper: Which wrapper form this is
        default: Value used for a missing input (DEFAULT)
        default_factory: Callable producing the default (DEFAULT)
        transform: Callable applied to the parsed value, may be async (EFFECT)
        brand: Brand label (BRANDED)
    """

    kind: ClassVar[NodeKind] = NodeKind.WRAPPER

    inner: SchemaNode = None  # type: ignore[assignment]
    wrapper: WrapperKind = WrapperKind.OPTIONAL
    default: Any = None
    default_factory: Callable[[], Any] | None = None
    transform: Callable[[Any], Any] | None = None
    brand: str | None = None

    def default_value(self) -> Any:
        if self.default_factory is not None:
            return self.default_factory()
        return self.default


@dataclass(frozen=True, eq=False)
class DeferredNode(SchemaNode):
    """Subtree resolved on demand, used for recursive schemas."""

    kind: ClassVar[NodeKind] = NodeKind.DEFERRED

    resolver: Callable[[], SchemaNode] = None  # type: ignore[assignment]

    def resolve(self) -> SchemaNode:
        return self.resolver()


@dataclass(frozen=True, eq=False)
class ReferenceNode(SchemaNode):
    """Embedding point for a document of another collection.

    Attributes:
        target: CollectionDefinition, or a zero-argument callable returning one
        mask: Embedded field names, None for a full embedding, () for id only
    """

    kind: ClassVar[NodeKind] = NodeKind.REFERENCE

    target: Any = None
    mask: tuple[str, ...] | None = None

    def __post_init__(self) -> None:
        if self.mask is not None:
            object.__setattr__(self, "mask", tuple(k for k in self.mask if k != "_id"))

    @property
    def definition(self) -> Any:
        """The target CollectionDefinition, resolving a thunk if needed."""
        target = self.target
        if not hasattr(target, "model_name") and callable(target):
            target = target()
        return target

    @property
    def mask_dict(self) -> dict[str, bool] | None:
        if self.mask is None:
            return None
        return {name: True for name in self.mask}


@dataclass(frozen=True, eq=False)
class LeafNode(SchemaNode):
    """Scalar terminal.

    Attributes:
        leaf: Scalar type
        values: Allowed values for LITERAL and ENUM leaves
    """

    kind: ClassVar[NodeKind] = NodeKind.LEAF

    leaf: LeafKind = LeafKind.ANY
    values: tuple[Any, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "values", tuple(self.values))
        if self.leaf in (LeafKind.LITERAL, LeafKind.ENUM) and not self.values:
            raise SchemaInvariantViolation(f"{self.leaf.value} leaf needs at least one value")


@dataclass(frozen=True, eq=False)
class MapNode(SchemaNode):
    """Open-ended string-keyed record."""

    kind: ClassVar[NodeKind] = NodeKind.MAP

    value: SchemaNode = None  # type: ignore[assignment]


@dataclass(frozen=True, eq=False)
class TupleNode(SchemaNode):
    """Fixed-length positional list."""

    kind: ClassVar[NodeKind] = NodeKind.TUPLE

    items: tuple[SchemaNode, ...] = ()


def unwrap(node: SchemaNode) -> SchemaNode:
    """Strip wrapper and deferred nodes."""
    while node.kind in (NodeKind.WRAPPER, NodeKind.DEFERRED):
        if node.kind == NodeKind.WRAPPER:
            node = node.inner  # type: ignore[attr-defined]
        else:
            node = node.resolve()  # type: ignore[attr-defined]
    return node


def _literal_values(option: SchemaNode, discriminator: str) -> tuple[Any, ...]:
    target = unwrap(option)
    if not isinstance(target, ObjectNode):
        raise SchemaInvariantViolation("Discriminated union options must be objects")
    field_node = target.fields.get(discriminator)
    if field_node is None:
        raise SchemaInvariantViolation(f"Discriminated union option lacks field '{discriminator}'")
    leaf = unwrap(field_node)
    if not isinstance(leaf, LeafNode) or leaf.leaf not in (LeafKind.LITERAL, LeafKind.ENUM):
        raise SchemaInvariantViolation(
            f"Discriminator field '{discriminator}' must be a literal or enum"
        )
    return leaf.values
