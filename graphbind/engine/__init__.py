"""
Graph engine for graphbind.

This module provides the stores the bindings call into:
- GraphStore: embedded property-graph engine on SQLite (EMBEDDED mode)
- RestGraph: HTTP client for the remote engine (REMOTE, REMOTE_BATCH modes)
- create_app: FastAPI application serving a GraphStore remotely

Invariants:
    - GraphStore and RestGraph expose the same vertex, index and
      transaction API, so the core layer does not depend on the mode
    - Engine failures are GraphStoreError subclasses in both engines
"""

from .graph_store import (
    STORE_ERRORS,
    GraphStore,
    GraphStoreError,
    IndexExistsError,
    PropertyNotFoundError,
    RemoteStoreError,
    StoreBusyError,
    StoreClosedError,
    Transaction,
    TransactionError,
    Vertex,
    VertexIndex,
    VertexNotFoundError,
)
from .rest_graph import BatchRequest, RestGraph, RestIndex, RestTransaction, RestVertex

__all__ = [
    # Embedded engine
    "GraphStore",
    "Vertex",
    "VertexIndex",
    "Transaction",
    # Remote engine client
    "RestGraph",
    "RestVertex",
    "RestIndex",
    "RestTransaction",
    "BatchRequest",
    # Errors
    "GraphStoreError",
    "StoreClosedError",
    "VertexNotFoundError",
    "PropertyNotFoundError",
    "IndexExistsError",
    "TransactionError",
    "RemoteStoreError",
    "StoreBusyError",
    "STORE_ERRORS",
]
