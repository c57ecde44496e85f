"""
Convenience constructors for schema nodes.

Example:
    >>> Photo = define_collection(
    ...     "Photo",
    ...     obj({"_id": identifier(), "url": string(), "description": optional(string())}),
    ... )
    >>> User = define_collection(
    ...     "User",
    ...     obj({"_id": identifier(), "photo": partial_document(Photo, "url")}),
    ... )
"""

from __future__ import annotations

from typing import Any, Callable, Mapping

from .nodes import (
    ArrayNode,
    DeferredNode,
    DiscriminatedUnionNode,
    LeafKind,
    LeafNode,
    MapNode,
    ObjectNode,
    ReferenceNode,
    SchemaNode,
    TupleNode,
    UnionNode,
    WrapperKind,
    WrapperNode,
)


def string() -> LeafNode:
    return LeafNode(LeafKind.STRING)


def integer() -> LeafNode:
    return LeafNode(LeafKind.INTEGER)


def number() -> LeafNode:
    return LeafNode(LeafKind.NUMBER)


def boolean() -> LeafNode:
    return LeafNode(LeafKind.BOOLEAN)


def date() -> LeafNode:
    return LeafNode(LeafKind.DATE)


def binary() -> LeafNode:
    return LeafNode(LeafKind.BINARY)


def identifier() -> LeafNode:
    return LeafNode(LeafKind.IDENTIFIER)


def any_value() -> LeafNode:
    return LeafNode(LeafKind.ANY)


def literal(value: Any) -> LeafNode:
    return LeafNode(LeafKind.LITERAL, (value,))


def enum(*values: Any) -> LeafNode:
    return LeafNode(LeafKind.ENUM, values)


def obj(fields: Mapping[str, SchemaNode], *, strict: bool = False) -> ObjectNode:
    return ObjectNode(fields=fields, strict=strict)


def array(element: SchemaNode) -> ArrayNode:
    return ArrayNode(element)


def union(*options: SchemaNode) -> UnionNode:
    return UnionNode(options)


def discriminated_union(discriminator: str, *options: SchemaNode) -> DiscriminatedUnionNode:
    return DiscriminatedUnionNode(discriminator, options)


def optional(inner: SchemaNode) -> WrapperNode:
    return WrapperNode(inner, WrapperKind.OPTIONAL)


def nullable(inner: SchemaNode) -> WrapperNode:
    return WrapperNode(inner, WrapperKind.NULLABLE)


def branded(inner: SchemaNode, brand: str) -> WrapperNode:
    return WrapperNode(inner, WrapperKind.BRANDED, brand=brand)


def with_default(
    inner: SchemaNode,
    default: Any = None,
    *,
    factory: Callable[[], Any] | None = None,
) -> WrapperNode:
    """Fill a missing value with `default` or the result of `factory()`."""
    return WrapperNode(inner, WrapperKind.DEFAULT, default=default, default_factory=factory)


def transform(inner: SchemaNode, fn: Callable[[Any], Any]) -> WrapperNode:
    """Apply `fn` to the parsed value. `fn` may be a coroutine function."""
    return WrapperNode(inner, WrapperKind.EFFECT, transform=fn)


def deferred(resolver: Callable[[], SchemaNode]) -> DeferredNode:
    return DeferredNode(resolver)


def record(value: SchemaNode) -> MapNode:
    return MapNode(value)


def tuple_of(*items: SchemaNode) -> TupleNode:
    return TupleNode(items)


def full_document(definition: Any) -> ReferenceNode:
    """Embed a full copy of another collection's document.

    Args:
        definition: CollectionDefinition, or a callable returning one
    """
    return ReferenceNode(definition, None)


def partial_document(definition: Any, *fields: str) -> ReferenceNode:
    """Embed `_id` plus the named fields of another collection's document."""
    return ReferenceNode(definition, tuple(fields))


def id_reference(definition: Any) -> ReferenceNode:
    """Embed only the `_id` of another collection's document."""
    return ReferenceNode(definition, ())


def partial(definition: Any) -> SchemaNode:
    """Schema node of a PartialDefinition, for embedding in other schemas."""
    return definition.schema
