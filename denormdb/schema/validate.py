"""
Schema validation for denormdb.

This module parses raw data against a schema node tree:
- parse(): synchronous, rejects reference nodes and async effects
- parse_async(): full parse, reference nodes may read storage
- pick(): derive an object schema restricted to some field names

Scalar leaves are validated and coerced with pydantic TypeAdapters.
Structure (objects, arrays, unions, wrappers) is handled here.

Invariants:
    - Parsing never mutates its input
    - Errors are collected per field and raised together as ValidationFailure
    - Missing keys are distinguished from None (MISSING sentinel)
    - Objects strip undeclared keys unless strict

How to change safely:
    - Keep sync and async behaviour identical apart from the async-only nodes
    - Keep issue paths dotted with numeric indices for list elements
"""

from __future__ import annotations

import datetime
import inspect
import uuid
from functools import lru_cache
from typing import Any, Coroutine, Iterable, List, Mapping

from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from ..errors import Issue, ValidationFailure
from .nodes import (
    LeafKind,
    LeafNode,
    NodeKind,
    ObjectNode,
    SchemaNode,
    WrapperKind,
    unwrap,
)


class _Missing:
    """Marker for an absent key."""

    _instance: _Missing | None = None

    def __new__(cls) -> _Missing:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()

_LEAF_TYPES: dict[LeafKind, Any] = {
    LeafKind.STRING: str,
    LeafKind.INTEGER: int,
    LeafKind.NUMBER: float,
    LeafKind.BOOLEAN: bool,
    LeafKind.DATE: datetime.datetime,
    LeafKind.BINARY: bytes,
    LeafKind.IDENTIFIER: uuid.UUID,
}


@lru_cache(maxsize=None)
def _adapter(leaf: LeafKind) -> TypeAdapter:
    return TypeAdapter(_LEAF_TYPES[leaf])


class _Context:
    __slots__ = ("is_async", "session")

    def __init__(self, is_async: bool, session: Any = None) -> None:
        self.is_async = is_async
        self.session = session


def _join(path: str, segment: Any) -> str:
    return f"{path}.{segment}" if path else str(segment)


def _fail(path: str, message: str) -> ValidationFailure:
    return ValidationFailure.from_issues([(path, message)])


def parse(node: SchemaNode, data: Any) -> Any:
    """Parse `data` synchronously.

    Raises:
        ValidationFailure: If data does not conform, or the schema needs
            async parsing (reference nodes, async effects)
    """
    return _run_sync(_parse(node, data, "", _Context(is_async=False)))


async def parse_async(node: SchemaNode, data: Any, session: Any = None) -> Any:
    """Parse `data`, resolving reference nodes.

    Args:
        node: Schema to parse against
        data: Raw input
        session: Store session that reference reads join

    Raises:
        ValidationFailure: If data does not conform
    """
    return await _parse(node, data, "", _Context(is_async=True, session=session))


def pick(node: SchemaNode, names: Iterable[str], strict: bool | None = None) -> ObjectNode:
    """Object schema keeping only `names`.

    Raises:
        ValidationFailure: If `node` does not resolve to an object
    """
    target = unwrap(node)
    if not isinstance(target, ObjectNode):
        raise _fail("", f"Cannot pick fields from {target.kind.value} schema")
    return target.pick(names, strict=strict)


def _run_sync(coro: Coroutine[Any, Any, Any]) -> Any:
    try:
        coro.send(None)
    except StopIteration as stop:
        return stop.value
    coro.close()
    raise _fail("", "Schema requires async parsing")


async def _parse(node: SchemaNode, value: Any, path: str, ctx: _Context) -> Any:
    kind = node.kind

    if kind == NodeKind.WRAPPER:
        return await _parse_wrapper(node, value, path, ctx)
    if kind == NodeKind.DEFERRED:
        return await _parse(node.resolve(), value, path, ctx)  # type: ignore[attr-defined]

    if value is MISSING:
        raise _fail(path, "Required")

    if kind == NodeKind.OBJECT:
        return await _parse_object(node, value, path, ctx)  # type: ignore[arg-type]

    elif kind == NodeKind.ARRAY:
        if not isinstance(value, (list, tuple)):
            raise _fail(path, f"Expected array, received {type(value).__name__}")
        return await _parse_items(
            [(node.element, item) for item in value], path, ctx  # type: ignore[attr-defined]
        )

    elif kind == NodeKind.TUPLE:
        items = node.items  # type: ignore[attr-defined]
        if not isinstance(value, (list, tuple)) or len(value) != len(items):
            raise _fail(path, f"Expected tuple of length {len(items)}")
        return await _parse_items(list(zip(items, value)), path, ctx)

    elif kind == NodeKind.MAP:
        if not isinstance(value, Mapping):
            raise _fail(path, f"Expected object, received {type(value).__name__}")
        result: dict[str, Any] = {}
        issues: List[Issue] = []
        for key, item in value.items():
            try:
                result[str(key)] = await _parse(node.value, item, _join(path, key), ctx)  # type: ignore[attr-defined]
            except ValidationFailure as e:
                issues.extend(e.issues)
        if issues:
            raise ValidationFailure.from_issues(issues)
        return result

    elif kind == NodeKind.UNION:
        issues = []
        for option in node.options:  # type: ignore[attr-defined]
            try:
                return await _parse(option, value, path, ctx)
            except ValidationFailure as e:
                issues.extend(e.issues)
        raise ValidationFailure.from_issues([(path, "No union option matched")] + issues)

    elif kind == NodeKind.DISCRIMINATED_UNION:
        if not isinstance(value, Mapping):
            raise _fail(path, f"Expected object, received {type(value).__name__}")
        discriminator = node.discriminator  # type: ignore[attr-defined]
        option = node.option_for(value.get(discriminator, MISSING))  # type: ignore[attr-defined]
        if option is None:
            raise _fail(
                _join(path, discriminator),
                f"Invalid discriminator value, expected one of "
                f"{node.discriminator_values}",  # type: ignore[attr-defined]
            )
        return await _parse(option, value, path, ctx)

    elif kind == NodeKind.REFERENCE:
        if not ctx.is_async:
            raise _fail(path, "Reference fields require async parsing")
        from ..reference import parse_reference

        return await parse_reference(node, value, path, ctx.session)  # type: ignore[arg-type]

    elif kind == NodeKind.LEAF:
        return _parse_leaf(node, value, path)  # type: ignore[arg-type]

    raise _fail(path, f"Unsupported schema node: {node!r}")


async def _parse_wrapper(node: Any, value: Any, path: str, ctx: _Context) -> Any:
    wrapper = node.wrapper
    if wrapper == WrapperKind.OPTIONAL:
        if value is MISSING or value is None:
            return value
    elif wrapper == WrapperKind.NULLABLE:
        if value is None:
            return None
    elif wrapper == WrapperKind.DEFAULT:
        if value is MISSING:
            value = node.default_value()
    elif wrapper == WrapperKind.EFFECT:
        parsed = await _parse(node.inner, value, path, ctx)
        result = node.transform(parsed)
        if inspect.isawaitable(result):
            if not ctx.is_async:
                if inspect.iscoroutine(result):
                    result.close()
                raise _fail(path, "Async transform requires async parsing")
            result = await result
        return result
    return await _parse(node.inner, value, path, ctx)


async def _parse_object(node: ObjectNode, value: Any, path: str, ctx: _Context) -> dict[str, Any]:
    if not isinstance(value, Mapping):
        raise _fail(path, f"Expected object, received {type(value).__name__}")

    result: dict[str, Any] = {}
    issues: List[Issue] = []
    for name, child in node.fields.items():
        try:
            parsed = await _parse(child, value.get(name, MISSING), _join(path, name), ctx)
        except ValidationFailure as e:
            issues.extend(e.issues)
            continue
        if parsed is not MISSING:
            result[name] = parsed

    if node.strict:
        for key in value:
            if key not in node.fields:
                issues.append((_join(path, key), "Unrecognized key"))

    if issues:
        raise ValidationFailure.from_issues(issues)
    return result


async def _parse_items(pairs: list[tuple[SchemaNode, Any]], path: str, ctx: _Context) -> list[Any]:
    result: list[Any] = []
    issues: List[Issue] = []
    for index, (child, item) in enumerate(pairs):
        try:
            result.append(await _parse(child, item, _join(path, index), ctx))
        except ValidationFailure as e:
            issues.extend(e.issues)
    if issues:
        raise ValidationFailure.from_issues(issues)
    return result


def _parse_leaf(node: LeafNode, value: Any, path: str) -> Any:
    leaf = node.leaf
    if leaf == LeafKind.ANY:
        return value
    if leaf == LeafKind.LITERAL or leaf == LeafKind.ENUM:
        if value not in node.values:
            raise _fail(path, f"Expected one of {list(node.values)}, received {value!r}")
        return value
    try:
        return _adapter(leaf).validate_python(value)
    except PydanticValidationError as e:
        raise ValidationFailure.from_issues([(path, err["msg"]) for err in e.errors()]) from e

