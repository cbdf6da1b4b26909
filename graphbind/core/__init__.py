"""
Core layer of graphbind.

This module implements the record access machinery shared by every binding:
- BindingSpec: per-store constants
- StoreConnector: connection lifecycle, including the shared embedded graph
- KeyIndex: key -> vertex addressing (manual index or key property)
- RecordAccessor: field reads and writes on a vertex
- TransactionBoundary and mutation strategies

Invariants:
    - Records are addressed only through the key index
    - Mutations run inside a transaction boundary or a single batch request
    - The mode is chosen once per client, as a mutation strategy
"""

from .accessor import RecordAccessor, from_field_value, to_field_value
from .binding import BindingSpec
from .connector import (
    ConnectionHandle,
    StoreConnector,
    open_instances,
    reset_shared_graphs,
)
from .key_index import KeyIndex, ManualKeyIndex, PropertyKeyIndex, make_key_index
from .transactions import (
    BatchMutations,
    BoundaryState,
    TransactionalMutations,
    TransactionBoundary,
    mutation_strategy,
)

__all__ = [
    "BindingSpec",
    # Connections
    "ConnectionHandle",
    "StoreConnector",
    "open_instances",
    "reset_shared_graphs",
    # Addressing
    "KeyIndex",
    "ManualKeyIndex",
    "PropertyKeyIndex",
    "make_key_index",
    # Fields
    "RecordAccessor",
    "to_field_value",
    "from_field_value",
    # Transactions
    "TransactionBoundary",
    "BoundaryState",
    "TransactionalMutations",
    "BatchMutations",
    "mutation_strategy",
]
