"""
Reference graph indexer.

Answers "where is collection X embedded?" by walking every registered
collection schema with the path-enumerating walker. The index is computed
on demand and never cached, so it always reflects the current set of
definitions.

Invariants:
    - Output order follows definition registration order, then field
      declaration order
    - Definitions without matching references are left out
    - Calling index_references_to twice gives identical results
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional

from .schema.walker import find_references

if TYPE_CHECKING:
    from .definition import CollectionDefinition


@dataclass(frozen=True)
class ReferenceLocation:
    """One embedding of the target collection inside a source collection.

    Attributes:
        path: Dotted path to the embedded document, `$` for array elements
        mask: Embedded field names as {name: True}, None for a full copy
    """

    path: str
    mask: Optional[Dict[str, bool]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"path": self.path, "mask": None if self.mask is None else dict(self.mask)}


class ReferenceGraph:
    """Reference index over a set of collection definitions."""

    def __init__(self, definitions: Iterable[CollectionDefinition]) -> None:
        self.definitions = list(definitions)

    def index_references_to(self, target: str) -> Dict[str, List[ReferenceLocation]]:
        """Every place where documents of `target` are embedded.

        Args:
            target: Model name of the referenced collection

        Returns:
            Source model name to locations, in registration order

        Raises:
            SchemaInvariantViolation: If a source schema contains a map node
        """
        index: Dict[str, List[ReferenceLocation]] = {}
        for definition in self.definitions:
            locations = [
                ReferenceLocation(site.dotted, site.node.mask_dict)
                for site in find_references(definition.schema)
                if site.node.definition.model_name == target
            ]
            if locations:
                index[definition.model_name] = locations
        return index
