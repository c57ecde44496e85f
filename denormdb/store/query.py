"""
Filter, projection and update semantics shared by every storage backend.

Filters:
    - {"a.b": v}: some value reached along the dotted path equals v; arrays
      on the path are traversed element-wise and an array value matches
      when it contains v; None matches a missing path
    - operator conditions: $eq, $ne, $in, $exists, $elemMatch

Projections:
    - all-inclusion ({"a": 1}) or all-exclusion ({"a": 0}) on top-level keys
    - `_id` is included unless explicitly excluded

Updates:
    - set paths are dotted; `$[name]` targets every element of the array
      that matches array_filters[name], `$[]` targets every element
    - intermediate objects are created when missing
"""

from __future__ import annotations

import copy
from typing import Any, Iterator, Mapping, Optional

from .base import Document, Filter, Projection, StoreError

_MISSING = object()


def matches(document: Mapping[str, Any], filter: Optional[Filter]) -> bool:
    """Whether `document` satisfies every clause of `filter`."""
    if not filter:
        return True
    for path, condition in filter.items():
        candidates = list(_resolve(document, path.split(".")))
        if not _matches_condition(candidates, condition):
            return False
    return True


def _resolve(value: Any, parts: list[str]) -> Iterator[Any]:
    if not parts:
        yield value
        return
    head, rest = parts[0], parts[1:]
    if isinstance(value, Mapping):
        if head in value:
            yield from _resolve(value[head], rest)
    elif isinstance(value, list):
        if head.isdigit():
            index = int(head)
            if index < len(value):
                yield from _resolve(value[index], rest)
        for element in value:
            if isinstance(element, (Mapping, list)):
                yield from _resolve(element, parts)


def _is_operator_dict(condition: Any) -> bool:
    return (
        isinstance(condition, Mapping)
        and bool(condition)
        and all(isinstance(k, str) and k.startswith("$") for k in condition)
    )


def _equals(candidate: Any, expected: Any) -> bool:
    if candidate == expected:
        return True
    return isinstance(candidate, list) and expected in candidate


def _matches_condition(candidates: list[Any], condition: Any) -> bool:
    if not _is_operator_dict(condition):
        if not candidates:
            return condition is None
        return any(_equals(c, condition) for c in candidates)

    for op, operand in condition.items():
        if op == "$eq":
            ok = _matches_condition(candidates, operand)
        elif op == "$ne":
            ok = not _matches_condition(candidates, operand)
        elif op == "$in":
            ok = any(_matches_condition(candidates, item) for item in operand)
        elif op == "$exists":
            ok = bool(candidates) == bool(operand)
        elif op == "$elemMatch":
            ok = any(
                isinstance(c, list) and any(element_matches(e, operand) for e in c)
                for c in candidates
            )
        else:
            raise StoreError(f"Unsupported query operator: {op}")
        if not ok:
            return False
    return True


def element_matches(element: Any, filter: Filter) -> bool:
    """Match one array element against an $elemMatch or array filter."""
    if _is_operator_dict(filter):
        return _matches_condition([element], filter)
    return isinstance(element, Mapping) and matches(element, filter)


def apply_projection(document: Mapping[str, Any], projection: Optional[Projection]) -> Document:
    """Copy `document` restricted by `projection`.

    Raises:
        StoreError: If inclusion and exclusion are mixed
    """
    if not projection:
        return copy.deepcopy(dict(document))

    include_id = bool(projection.get("_id", 1))
    flags = {k: bool(v) for k, v in projection.items() if k != "_id"}
    if flags and len(set(flags.values())) > 1:
        raise StoreError("Projection cannot mix inclusion and exclusion")

    if flags and next(iter(flags.values())):
        result = {k: copy.deepcopy(document[k]) for k in flags if k in document}
        if include_id and "_id" in document:
            result = {"_id": document["_id"], **result}
        return result

    result = {k: copy.deepcopy(v) for k, v in document.items() if k not in flags}
    if not include_id:
        result.pop("_id", None)
    return result


def apply_set(
    document: Document,
    set_fields: Mapping[str, Any],
    array_filters: Optional[Mapping[str, Filter]] = None,
) -> bool:
    """Apply `$set` semantics in place.

    Returns:
        True if the document changed

    Raises:
        StoreError: If a path crosses a scalar or names an unknown array filter
    """
    before = copy.deepcopy(document)
    for path, value in set_fields.items():
        _set_path(document, path.split("."), value, array_filters or {}, path)
    return document != before


def _set_path(
    container: Any,
    parts: list[str],
    value: Any,
    array_filters: Mapping[str, Filter],
    full_path: str,
) -> None:
    head, rest = parts[0], parts[1:]

    if head.startswith("$[") and head.endswith("]"):
        if not isinstance(container, list):
            return
        name = head[2:-1]
        if name and name not in array_filters:
            raise StoreError(f"No array filter named '{name}' for path '{full_path}'")
        for index, element in enumerate(container):
            if name and not element_matches(element, array_filters[name]):
                continue
            if rest:
                _set_path(element, rest, value, array_filters, full_path)
            else:
                container[index] = copy.deepcopy(value)
        return

    if isinstance(container, list):
        if not head.isdigit() or int(head) >= len(container):
            raise StoreError(f"Cannot traverse array at '{head}' in '{full_path}'")
        index = int(head)
        if rest:
            _set_path(container[index], rest, value, array_filters, full_path)
        else:
            container[index] = copy.deepcopy(value)
        return

    if not isinstance(container, dict):
        raise StoreError(f"Cannot set '{full_path}': '{head}' is inside a scalar")

    if not rest:
        container[head] = copy.deepcopy(value)
        return
    child = container.get(head, _MISSING)
    if child is _MISSING or child is None:
        child = container[head] = {}
    _set_path(child, rest, value, array_filters, full_path)
