"""
CRUD+scan facade over a graph store.

GraphClient is what the benchmark harness drives, one instance per worker
thread. Every operation returns a Status; failures are logged and converted,
never raised. Only init() raises, when the store cannot be connected.

Example:
    >>> from graphbind import create_client
    >>> db = create_client("neo4j", {"neo4j.url": "/tmp/ycsb"})
    >>> db.init()
    <Status.OK: 0>
    >>> db.insert("user1", {"field0": b"value"})
    <Status.OK: 0>
    >>> result = {}
    >>> db.read("user1", ["field0"], result)
    <Status.OK: 0>
    >>> result
    {'field0': b'value'}
    >>> db.cleanup()
    <Status.OK: 0>

Invariants:
    - Before init() (or after a failed one) every operation returns
      NOT_INITIALIZED
    - read, update and delete of a missing key return NOT_FOUND
    - cleanup() always returns OK
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any

from .config import ScanPolicy, StoreConfig, StoreMode
from .core.accessor import RecordAccessor
from .core.binding import BindingSpec
from .core.connector import ConnectionHandle, StoreConnector
from .core.key_index import make_key_index
from .core.transactions import TransactionalMutations, mutation_strategy
from .engine.graph_store import STORE_ERRORS
from .errors import (
    ConfigurationError,
    GraphBindError,
    InitializationError,
    NotInitializedError,
    RecordNotFoundError,
    UnsupportedOperationError,
)
from .status import Status

logger = logging.getLogger(__name__)

# Failures converted to a Status by the operations
OPERATION_ERRORS = (GraphBindError, *STORE_ERRORS)


class GraphClient:
    """Record-oriented client for one binding.

    Attributes:
        binding: Binding constants
        properties: Harness properties the client was created with
        config: Resolved configuration (None until init())
    """

    def __init__(
        self,
        binding: BindingSpec,
        properties: Mapping[str, str] | None = None,
        *,
        connector: StoreConnector | None = None,
    ) -> None:
        self.binding = binding
        self.properties = dict(properties or {})
        self.config: StoreConfig | None = None
        self._connector = connector or StoreConnector(binding)
        self._key_index = make_key_index(binding)
        self._handle: ConnectionHandle | None = None
        self._accessor: RecordAccessor | None = None
        self._mutations: TransactionalMutations | None = None

    @property
    def initialized(self) -> bool:
        return self._handle is not None

    # --- Lifecycle ---

    def init(self) -> Status:
        """Resolve the configuration and connect to the store.

        Raises:
            InitializationError: If the configuration is invalid or the
                store cannot be opened; the client stays uninitialized
        """
        if self._handle is not None:
            return Status.OK
        try:
            config = StoreConfig.from_properties(self.binding, self.properties)
        except ConfigurationError as e:
            raise InitializationError(str(e), binding=self.binding.name) from e
        config.log_config()

        self._handle = self._connector.acquire(config)
        self.config = config
        self._accessor = RecordAccessor(
            self.binding.key_field,
            read_all_by_default=config.mode is StoreMode.EMBEDDED,
        )
        self._mutations = mutation_strategy(config.mode, self._key_index, self._accessor)
        logger.info(
            "Client initialized",
            extra={"binding": self.binding.name, "mode": config.mode.value},
        )
        return Status.OK

    def cleanup(self) -> Status:
        """Release the connection. Failures are logged, never reported."""
        handle, self._handle = self._handle, None
        if handle is None:
            return Status.OK
        try:
            self._connector.release(handle)
        except Exception:
            logger.warning(
                "Cleanup failed",
                extra={"binding": self.binding.name, "location": handle.location},
                exc_info=True,
            )
        return Status.OK

    def __enter__(self) -> GraphClient:
        self.init()
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        self.cleanup()

    # --- Operations ---

    def _require(self) -> Any:
        if self._handle is None:
            raise NotInitializedError(self.binding.name)
        return self._handle.graph

    def _failed(self, operation: str, key: str, exc: Exception) -> Status:
        if isinstance(exc, NotInitializedError):
            return Status.NOT_INITIALIZED
        if isinstance(exc, RecordNotFoundError):
            logger.debug(f"{operation}: key not found", extra={"key": key})
            return Status.NOT_FOUND
        if isinstance(exc, UnsupportedOperationError):
            logger.debug(str(exc), extra={"binding": self.binding.name})
            return Status.NOT_IMPLEMENTED
        logger.error(
            f"{operation} failed: {exc}",
            extra={"binding": self.binding.name, "key": key},
            exc_info=exc,
        )
        return Status.ERROR

    def _find(self, graph: Any, key: str) -> Any:
        vertex = self._key_index.lookup(graph, key)
        if vertex is None:
            raise RecordNotFoundError(key)
        return vertex

    def insert(self, key: str, values: Mapping[str, Any]) -> Status:
        """Create a record under key with the given fields."""
        try:
            graph = self._require()
            self._mutations.insert(graph, key, values)
        except OPERATION_ERRORS as e:
            return self._failed("insert", key, e)
        return Status.OK

    def read(
        self,
        key: str,
        fields: Iterable[str] | None = None,
        result: dict[str, bytes] | None = None,
    ) -> Status:
        """Read fields of the record under key into result.

        Args:
            key: Record key
            fields: Field names to read (None = the mode's default set)
            result: Dict receiving field name -> value; left untouched on failure
        """
        try:
            graph = self._require()
            values = self._accessor.read(self._find(graph, key), fields)
        except OPERATION_ERRORS as e:
            return self._failed("read", key, e)
        if result is not None:
            result.update(values)
        return Status.OK

    def update(self, key: str, values: Mapping[str, Any]) -> Status:
        """Overwrite fields of the record under key."""
        try:
            graph = self._require()
            self._mutations.update(graph, key, values)
        except OPERATION_ERRORS as e:
            return self._failed("update", key, e)
        return Status.OK

    def delete(self, key: str) -> Status:
        """Remove the record under key."""
        try:
            graph = self._require()
            self._mutations.delete(graph, key)
        except OPERATION_ERRORS as e:
            return self._failed("delete", key, e)
        return Status.OK

    def scan(
        self,
        start_key: str,
        record_count: int,
        fields: Iterable[str] | None = None,
        result: list[dict[str, bytes]] | None = None,
    ) -> Status:
        """Read up to record_count records with key >= start_key, in key order.

        Returns NOT_IMPLEMENTED when the binding's scan policy is unsupported.
        """
        if fields is not None:
            fields = list(fields)
        try:
            graph = self._require()
            if self.config.scan is ScanPolicy.UNSUPPORTED:
                raise UnsupportedOperationError("scan", self.binding.name)
            records = []
            if record_count > 0:
                for vertex in self._key_index.range(graph, start_key, record_count):
                    records.append(self._accessor.read(vertex, fields))
        except OPERATION_ERRORS as e:
            return self._failed("scan", start_key, e)
        if result is not None:
            result.extend(records)
        return Status.OK
