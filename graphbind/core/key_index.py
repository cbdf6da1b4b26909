"""
Key index: the only way records are addressed.

Two implementations cover the supported stores:
- ManualKeyIndex: entries in a named manual index (neo4j "node_index")
- PropertyKeyIndex: the key property itself, indexed by the engine
  as a key-property index (titan, rexster)

Invariants:
    - lookup() returns the vertex with the lowest id among duplicates
    - range() is lexicographic on the key, start inclusive
    - A record is visible to lookup() once register() ran in the same
      transaction or batch
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from .binding import BindingSpec


class KeyIndex(ABC):
    """Maps record keys to vertices."""

    def __init__(self, key_field: str) -> None:
        self.key_field = key_field

    @abstractmethod
    def lookup(self, graph: Any, key: str) -> Any | None:
        """Vertex indexed under key, or None."""

    @abstractmethod
    def register(self, graph: Any, vertex: Any, key: str) -> None:
        """Make vertex reachable under key."""

    @abstractmethod
    def unregister(self, graph: Any, vertex: Any, key: str) -> None:
        """Remove the key entry of vertex."""

    @abstractmethod
    def range(self, graph: Any, start_key: str, count: int) -> list[Any]:
        """Up to count vertices with key >= start_key, in key order."""

    @abstractmethod
    def stage(self, batch: Any, ref: str, key: str) -> None:
        """Add the registration of a batch-created vertex to the batch."""

    def refresh(self, graph: Any, vertex: Any, key: str) -> None:
        self.unregister(graph, vertex, key)
        self.register(graph, vertex, key)


class ManualKeyIndex(KeyIndex):
    """Key entries kept in a named manual index."""

    def __init__(self, name: str, key_field: str) -> None:
        super().__init__(key_field)
        self.name = name

    def lookup(self, graph: Any, key: str) -> Any | None:
        hits = graph.index(self.name).get(self.key_field, key)
        return hits[0] if hits else None

    def register(self, graph: Any, vertex: Any, key: str) -> None:
        graph.index(self.name).add(vertex, self.key_field, key)

    def unregister(self, graph: Any, vertex: Any, key: str) -> None:
        graph.index(self.name).remove(vertex, self.key_field)

    def range(self, graph: Any, start_key: str, count: int) -> list[Any]:
        return graph.index(self.name).range(self.key_field, start_key, count)

    def stage(self, batch: Any, ref: str, key: str) -> None:
        batch.index_add(self.name, ref, self.key_field, key)


class PropertyKeyIndex(KeyIndex):
    """Key stored as a vertex property under an engine key-property index."""

    def lookup(self, graph: Any, key: str) -> Any | None:
        hits = graph.get_vertices(self.key_field, key)
        return hits[0] if hits else None

    def register(self, graph: Any, vertex: Any, key: str) -> None:
        vertex.set_property(self.key_field, key)

    def unregister(self, graph: Any, vertex: Any, key: str) -> None:
        vertex.remove_property(self.key_field)

    def range(self, graph: Any, start_key: str, count: int) -> list[Any]:
        return graph.vertices_in_range(self.key_field, start_key, count)

    def stage(self, batch: Any, ref: str, key: str) -> None:
        batch.set_property(ref, self.key_field, key)


def make_key_index(binding: BindingSpec) -> KeyIndex:
    if binding.index_name is not None:
        return ManualKeyIndex(binding.index_name, binding.key_field)
    return PropertyKeyIndex(binding.key_field)
