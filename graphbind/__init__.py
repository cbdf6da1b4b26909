"""
graphbind - benchmark bindings for graph stores.

This package adapts graph stores to the record-oriented CRUD+scan contract
of a benchmark harness (init, cleanup, insert, read, update, delete, scan):
- Records are vertices addressed through a key index
- Stores are reached EMBEDDED, REMOTE (one HTTP call per step) or
  REMOTE_BATCH (one atomic batch request per insert)
- Bindings: neo4j, titan, rexster

Architecture:
    ┌─────────────┐     ┌─────────────┐     ┌──────────────────┐
    │  Harness    │────▶│ GraphClient │────▶│ Mutation strategy│
    │  (threads)  │     │  (facade)   │     │ Key index/fields │
    └─────────────┘     └─────────────┘     └────────┬─────────┘
                                                     │
                              ┌──────────────────────┴───────────┐
                              ▼                                  ▼
                    ┌──────────────────┐               ┌──────────────────┐
                    │ GraphStore       │◀── HTTP ──────│ RestGraph        │
                    │ (SQLite, shared) │   (FastAPI)   │ (httpx)          │
                    └──────────────────┘               └──────────────────┘

Invariants:
    - One embedded store per location per process, reference counted
    - Every mutation runs in one transaction or one batch request
    - Operations return a Status; only init() raises

How to change safely:
    - New bindings are BindingSpec constants in bindings.py
    - Keep GraphStore and RestGraph API-compatible
"""

from ._version import __version__
from .bindings import BINDINGS, NEO4J, REXSTER, TITAN, create_client, get_binding
from .client import GraphClient
from .config import ScanPolicy, StoreConfig, StoreMode
from .errors import (
    ConfigurationError,
    FieldNotFoundError,
    GraphBindError,
    InitializationError,
    MutationError,
    NotInitializedError,
    RecordNotFoundError,
    UnsupportedOperationError,
)
from .status import Status

__all__ = [
    "__version__",
    # Client
    "GraphClient",
    "Status",
    "create_client",
    # Bindings
    "BINDINGS",
    "NEO4J",
    "TITAN",
    "REXSTER",
    "get_binding",
    # Configuration
    "StoreConfig",
    "StoreMode",
    "ScanPolicy",
    # Errors
    "GraphBindError",
    "ConfigurationError",
    "InitializationError",
    "NotInitializedError",
    "RecordNotFoundError",
    "FieldNotFoundError",
    "MutationError",
    "UnsupportedOperationError",
]
