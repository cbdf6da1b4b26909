"""
Transaction boundaries and mutation strategies.

Every mutation of a record runs inside one TransactionBoundary, or in
REMOTE_BATCH mode as one batch request, so a failed operation leaves no
partial record behind.

Strategies:
- TransactionalMutations (EMBEDDED, REMOTE): insert, update and delete
  each in one boundary
- BatchMutations (REMOTE_BATCH): insert as one atomic batch request,
  update and delete as in TransactionalMutations

Invariants:
    - Boundary states move IDLE -> BEGUN -> COMMITTED | ABORTED, never back
    - The engine transaction is finished on every path out of a boundary
    - Update writes the fields, then refreshes the key index entry
    - Delete unregisters the key, then removes the vertex
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from enum import Enum
from typing import Any

from ..config import StoreMode
from ..engine.graph_store import STORE_ERRORS, TransactionError
from ..errors import RecordNotFoundError
from .accessor import RecordAccessor, from_field_value
from .key_index import KeyIndex

logger = logging.getLogger(__name__)


class BoundaryState(Enum):
    IDLE = "idle"
    BEGUN = "begun"
    COMMITTED = "committed"
    ABORTED = "aborted"


class TransactionBoundary:
    """One engine transaction around a unit of work.

    Use as a context manager: commits on clean exit, aborts when the block
    raises. The exception is never suppressed.

    Example:
        >>> with TransactionBoundary(graph):
        ...     vertex = graph.create_vertex({"_id": "user1"})
    """

    def __init__(self, graph: Any) -> None:
        self._graph = graph
        self._tx: Any = None
        self._state = BoundaryState.IDLE

    @property
    def state(self) -> BoundaryState:
        return self._state

    def begin(self) -> None:
        if self._state is not BoundaryState.IDLE:
            raise TransactionError(f"Cannot begin a boundary in state {self._state.value}")
        self._tx = self._graph.begin_tx()
        self._state = BoundaryState.BEGUN

    def commit(self) -> None:
        if self._state is not BoundaryState.BEGUN:
            raise TransactionError(f"Cannot commit a boundary in state {self._state.value}")
        try:
            self._tx.commit()
        except BaseException:
            # A failed commit leaves nothing applied
            self._state = BoundaryState.ABORTED
            self._tx.rollback()
            raise
        self._state = BoundaryState.COMMITTED

    def abort(self) -> None:
        if self._state is not BoundaryState.BEGUN:
            return
        self._state = BoundaryState.ABORTED
        self._tx.rollback()

    def __enter__(self) -> TransactionBoundary:
        self.begin()
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        if exc_type is None:
            self.commit()
            return
        try:
            self.abort()
        except STORE_ERRORS:
            logger.warning("Rollback failed after error", exc_info=True)


class TransactionalMutations:
    """Insert, update and delete, each in its own transaction boundary."""

    def __init__(self, key_index: KeyIndex, accessor: RecordAccessor) -> None:
        self.key_index = key_index
        self.accessor = accessor

    def _find(self, graph: Any, key: str) -> Any:
        vertex = self.key_index.lookup(graph, key)
        if vertex is None:
            raise RecordNotFoundError(key)
        return vertex

    def insert(self, graph: Any, key: str, values: Mapping[str, Any]) -> None:
        with TransactionBoundary(graph):
            vertex = graph.create_vertex({self.key_index.key_field: key})
            self.accessor.write(vertex, values)
            self.key_index.register(graph, vertex, key)

    def update(self, graph: Any, key: str, values: Mapping[str, Any]) -> None:
        with TransactionBoundary(graph):
            vertex = self._find(graph, key)
            self.accessor.write(vertex, values)
            self.key_index.refresh(graph, vertex, key)

    def delete(self, graph: Any, key: str) -> None:
        with TransactionBoundary(graph):
            vertex = self._find(graph, key)
            self.key_index.unregister(graph, vertex, key)
            graph.remove_vertex(vertex)


class BatchMutations(TransactionalMutations):
    """Insert submitted as a single atomic batch request."""

    def insert(self, graph: Any, key: str, values: Mapping[str, Any]) -> None:
        batch = graph.batch()
        ref = batch.create_vertex({self.key_index.key_field: key})
        for name, value in values.items():
            batch.set_property(ref, name, from_field_value(name, value))
        self.key_index.stage(batch, ref, key)
        batch.submit()


def mutation_strategy(
    mode: StoreMode,
    key_index: KeyIndex,
    accessor: RecordAccessor,
) -> TransactionalMutations:
    if mode is StoreMode.REMOTE_BATCH:
        return BatchMutations(key_index, accessor)
    return TransactionalMutations(key_index, accessor)
