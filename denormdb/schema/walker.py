"""
Schema node walkers.

Two walks share the same traversal rules over the closed node set:
- Structural: descends from a collection root to the first object.
  `check_root` validates the root invariant, `field_shape` returns the field
  map of one concrete document, resolving discriminated unions through a
  caller-supplied async accessor.
- Path-enumerating: `find_references` returns every reachable ReferenceNode
  with the dotted path leading to it (`$` marks "every element of the array
  here").

Invariants:
    - Wrapper and deferred nodes are transparent
    - Before the first object only discriminated unions may branch
    - Map nodes are never walked
    - Reference nodes are terminal; the target schema is not entered
    - Field order is declaration order, so results are deterministic

How to change safely:
    - Keep both walks in sync when adding a NodeKind
    - Never guess a shape for an unsupported node; raise instead
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from ..errors import SchemaInvariantViolation, ValidationFailure
from .nodes import (
    DiscriminatedUnionNode,
    NodeKind,
    ObjectNode,
    ReferenceNode,
    SchemaNode,
)

logger = logging.getLogger(__name__)

ID_FIELD = "_id"
ARRAY_SEGMENT = "$"

DiscriminatorResolver = Callable[[str], Awaitable[Any]]


@dataclass(frozen=True)
class ReferenceSite:
    """A reference marker found by the path-enumerating walk.

    Attributes:
        path: Path segments from the document root, `$` for array elements
        node: The reference marker
    """

    path: tuple[str, ...]
    node: ReferenceNode

    @property
    def dotted(self) -> str:
        return ".".join(self.path)


def _descend_to_object(node: SchemaNode, model_name: str | None = None) -> SchemaNode:
    """Strip pass-through nodes until an object or discriminated union.

    Raises:
        SchemaInvariantViolation: If any other node kind comes first
    """
    seen: set[int] = set()
    while True:
        kind = node.kind
        if kind == NodeKind.OBJECT or kind == NodeKind.DISCRIMINATED_UNION:
            return node
        elif kind == NodeKind.WRAPPER:
            node = node.inner  # type: ignore[attr-defined]
        elif kind == NodeKind.DEFERRED:
            if id(node) in seen:
                raise SchemaInvariantViolation("Deferred schema resolves to itself", model_name)
            seen.add(id(node))
            node = node.resolve()  # type: ignore[attr-defined]
        elif kind == NodeKind.UNION:
            raise SchemaInvariantViolation("Union not supported before first object", model_name)
        elif kind == NodeKind.TUPLE:
            raise SchemaInvariantViolation("Tuple not supported before first object", model_name)
        elif kind == NodeKind.MAP:
            raise SchemaInvariantViolation("Map not supported", model_name)
        elif kind in (NodeKind.ARRAY, NodeKind.REFERENCE, NodeKind.LEAF):
            raise SchemaInvariantViolation(
                f"Must reach an object first before using {kind.value} nodes", model_name
            )
        else:
            raise SchemaInvariantViolation(f"Unsupported schema node: {node!r}", model_name)


def check_root(node: SchemaNode, model_name: str | None = None) -> None:
    """Validate that a collection root reaches objects carrying `_id`.

    Args:
        node: Collection root node
        model_name: Used in error context only

    Raises:
        SchemaInvariantViolation: If the invariant does not hold
    """
    target = _descend_to_object(node, model_name)
    if isinstance(target, ObjectNode):
        if ID_FIELD not in target.fields:
            raise SchemaInvariantViolation(f"First schema must have {ID_FIELD} field", model_name)
        return
    assert isinstance(target, DiscriminatedUnionNode)
    for option in target.options:
        check_root(option, model_name)


async def field_shape(node: SchemaNode, resolver: DiscriminatorResolver) -> dict[str, SchemaNode]:
    """Return the field map that applies to one concrete document.

    Args:
        node: Collection root node
        resolver: Awaited with a discriminator field name, returns its value

    Returns:
        Field name to node, declaration order

    Raises:
        ValidationFailure: If a discriminator value selects no branch
    """
    target = _descend_to_object(node)
    if isinstance(target, ObjectNode):
        return dict(target.fields)
    assert isinstance(target, DiscriminatedUnionNode)
    value = await resolver(target.discriminator)
    option = target.option_for(value)
    if option is None:
        raise ValidationFailure.from_issues(
            [
                (
                    target.discriminator,
                    f"Invalid discriminator value {value!r}, "
                    f"expected one of {target.discriminator_values}",
                )
            ]
        )
    return await field_shape(option, resolver)


def static_field_shape(node: SchemaNode) -> dict[str, SchemaNode] | None:
    """Field map of a root that needs no discriminator, else None."""
    target = _descend_to_object(node)
    if isinstance(target, ObjectNode):
        return dict(target.fields)
    return None


def find_references(node: SchemaNode) -> list[ReferenceSite]:
    """Enumerate every reference marker reachable from `node`.

    Union options are walked at the same path. A deferred node that is
    already being walked is not entered again, so recursive schemas
    terminate after one level of self-nesting.

    Raises:
        SchemaInvariantViolation: On map nodes
    """
    found: list[ReferenceSite] = []
    _collect(node, (), found, set())
    return found


def _collect(
    node: SchemaNode,
    path: tuple[str, ...],
    found: list[ReferenceSite],
    active: set[int],
) -> None:
    kind = node.kind
    if kind == NodeKind.REFERENCE:
        found.append(ReferenceSite(path, node))  # type: ignore[arg-type]
    elif kind == NodeKind.OBJECT:
        for name, child in node.fields.items():  # type: ignore[attr-defined]
            _collect(child, path + (name,), found, active)
    elif kind == NodeKind.ARRAY:
        _collect(node.element, path + (ARRAY_SEGMENT,), found, active)  # type: ignore[attr-defined]
    elif kind == NodeKind.UNION or kind == NodeKind.DISCRIMINATED_UNION:
        for option in node.options:  # type: ignore[attr-defined]
            _collect(option, path, found, active)
    elif kind == NodeKind.WRAPPER:
        _collect(node.inner, path, found, active)  # type: ignore[attr-defined]
    elif kind == NodeKind.DEFERRED:
        if id(node) in active:
            logger.debug("Skipping re-entry of deferred schema", extra={"path": ".".join(path)})
            return
        active.add(id(node))
        try:
            _collect(node.resolve(), path, found, active)  # type: ignore[attr-defined]
        finally:
            active.discard(id(node))
    elif kind == NodeKind.TUPLE:
        for index, item in enumerate(node.items):  # type: ignore[attr-defined]
            _collect(item, path + (str(index),), found, active)
    elif kind == NodeKind.MAP:
        raise SchemaInvariantViolation(f"Map not supported at '{'.'.join(path)}'")
    elif kind == NodeKind.LEAF:
        return
    else:
        raise SchemaInvariantViolation(f"Unsupported schema node: {node!r}")


def id_field(node: SchemaNode) -> SchemaNode:
    """Schema node of the `_id` field of a collection root.

    Discriminated unions take the first branch; check_root guarantees every
    branch declares `_id`.
    """
    target = _descend_to_object(node)
    while isinstance(target, DiscriminatedUnionNode):
        target = _descend_to_object(target.options[0])
    return target.fields[ID_FIELD]  # type: ignore[attr-defined]
