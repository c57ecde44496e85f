"""
Schema trees for denormdb.

- nodes: the closed set of schema node kinds
- builders: constructors used to declare schemas
- walker: structural and reference-enumerating traversals
- validate: parsing data against a schema
"""

from .builders import (
    any_value,
    array,
    binary,
    boolean,
    branded,
    date,
    deferred,
    discriminated_union,
    enum,
    full_document,
    id_reference,
    identifier,
    integer,
    literal,
    nullable,
    number,
    obj,
    optional,
    partial,
    partial_document,
    record,
    string,
    transform,
    tuple_of,
    union,
    with_default,
)
from .nodes import (
    ArrayNode,
    DeferredNode,
    DiscriminatedUnionNode,
    LeafKind,
    LeafNode,
    MapNode,
    NodeKind,
    ObjectNode,
    ReferenceNode,
    SchemaNode,
    TupleNode,
    UnionNode,
    WrapperKind,
    WrapperNode,
)
from .validate import MISSING, parse, parse_async, pick
from .walker import ReferenceSite, check_root, field_shape, find_references, static_field_shape

__all__ = [
    # Nodes
    "SchemaNode",
    "NodeKind",
    "LeafKind",
    "WrapperKind",
    "ObjectNode",
    "ArrayNode",
    "UnionNode",
    "DiscriminatedUnionNode",
    "WrapperNode",
    "DeferredNode",
    "ReferenceNode",
    "LeafNode",
    "MapNode",
    "TupleNode",
    # Builders
    "string",
    "integer",
    "number",
    "boolean",
    "date",
    "binary",
    "identifier",
    "any_value",
    "literal",
    "enum",
    "obj",
    "array",
    "union",
    "discriminated_union",
    "optional",
    "nullable",
    "branded",
    "with_default",
    "transform",
    "deferred",
    "record",
    "tuple_of",
    "full_document",
    "partial_document",
    "id_reference",
    "partial",
    # Walkers
    "ReferenceSite",
    "check_root",
    "field_shape",
    "find_references",
    "static_field_shape",
    # Validation
    "MISSING",
    "parse",
    "parse_async",
    "pick",
]
