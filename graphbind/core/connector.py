"""
Backing store connector.

This module opens and closes the graph a client works against:
- EMBEDDED: one GraphStore per storage location, shared by every client
  in the process and reference counted
- REMOTE / REMOTE_BATCH: a RestGraph per client

Invariants:
    - At most one open embedded store per location in the process
    - The instance count equals the number of acquired, unreleased handles
    - The store is shut down when the last handle is released
    - Releasing a handle twice has no effect

How to change safely:
    - Only the check-and-mutate of the shared registry runs under the lock,
      plus the open/shutdown of the store it guards
    - Tests must call reset_shared_graphs() to isolate the registry
"""

from __future__ import annotations

import logging
import os
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from ..config import StoreConfig, StoreMode
from ..engine.graph_store import STORE_ERRORS, GraphStore, IndexExistsError
from ..engine.rest_graph import RestGraph
from ..errors import InitializationError
from .binding import BindingSpec

logger = logging.getLogger(__name__)


@dataclass
class ConnectionHandle:
    """An acquired connection to a backing store.

    Attributes:
        graph: GraphStore (embedded) or RestGraph (remote)
        mode: Mode the handle was acquired for
        location: Store directory or remote graph URL
        shared: Whether the graph is the process-wide embedded store
    """

    graph: Any
    mode: StoreMode
    location: str
    shared: bool
    released: bool = False


@dataclass
class _SharedGraph:
    graph: Any
    instances: int = 0


_shared_lock = threading.Lock()
_shared_graphs: dict[str, _SharedGraph] = {}


def open_instances(location: str) -> int:
    """Number of unreleased handles on the embedded store at a location."""
    with _shared_lock:
        shared = _shared_graphs.get(os.path.abspath(location))
        return shared.instances if shared else 0


def reset_shared_graphs() -> None:
    """Shut down every shared embedded store (for testing)."""
    with _shared_lock:
        graphs = [shared.graph for shared in _shared_graphs.values()]
        _shared_graphs.clear()
    for graph in graphs:
        graph.shutdown()


def _provision(binding: BindingSpec, graph: Any) -> None:
    if not binding.provision_key_index:
        return
    try:
        graph.create_key_index(binding.key_field)
    except IndexExistsError:
        logger.debug("Key index already exists", extra={"key": binding.key_field})


class StoreConnector:
    """Acquires and releases connections for one binding.

    Example:
        >>> connector = StoreConnector(NEO4J)
        >>> handle = connector.acquire(config)
        >>> handle.graph.count_vertices()
        0
        >>> connector.release(handle)
    """

    def __init__(
        self,
        binding: BindingSpec,
        embedded_factory: Callable[..., Any] | None = None,
        remote_factory: Callable[..., Any] | None = None,
    ) -> None:
        """Initialize the connector.

        Args:
            binding: Binding the connections are for
            embedded_factory: Opens an embedded store,
                called as factory(location, wal_mode=..., busy_timeout_ms=...)
            remote_factory: Creates a remote graph client,
                called as factory(url, timeout=...)
        """
        self.binding = binding
        self._embedded_factory = embedded_factory or GraphStore.open
        self._remote_factory = remote_factory or RestGraph

    def acquire(self, config: StoreConfig) -> ConnectionHandle:
        """Acquire a connection for the configured mode.

        Raises:
            InitializationError: If the store cannot be opened or reached
        """
        if config.mode is StoreMode.EMBEDDED:
            return self._acquire_embedded(config)
        return self._acquire_remote(config)

    def _acquire_embedded(self, config: StoreConfig) -> ConnectionHandle:
        location = os.path.abspath(config.url)
        with _shared_lock:
            shared = _shared_graphs.get(location)
            if shared is None:
                graph = None
                try:
                    graph = self._embedded_factory(
                        location,
                        wal_mode=config.wal_mode,
                        busy_timeout_ms=config.busy_timeout_ms,
                    )
                    _provision(self.binding, graph)
                except STORE_ERRORS as e:
                    if graph is not None:
                        graph.shutdown()
                    raise InitializationError(
                        f"Could not open embedded store: {e}",
                        binding=self.binding.name,
                        location=location,
                    ) from e
                shared = _SharedGraph(graph)
                _shared_graphs[location] = shared
                logger.info(
                    "Opened shared embedded store",
                    extra={"binding": self.binding.name, "location": location},
                )
            shared.instances += 1
            instances = shared.instances

        logger.debug(
            "Acquired embedded store",
            extra={"location": location, "instances": instances},
        )
        return ConnectionHandle(shared.graph, config.mode, location, shared=True)

    def _acquire_remote(self, config: StoreConfig) -> ConnectionHandle:
        url = self.binding.remote_url(config)
        graph = self._remote_factory(url, timeout=config.request_timeout)
        try:
            graph.count_vertices()
            _provision(self.binding, graph)
        except STORE_ERRORS as e:
            graph.shutdown()
            raise InitializationError(
                f"Could not reach remote store: {e}",
                binding=self.binding.name,
                location=url,
            ) from e

        logger.debug("Connected to remote store", extra={"url": url, "mode": config.mode.value})
        return ConnectionHandle(graph, config.mode, url, shared=False)

    def release(self, handle: ConnectionHandle) -> None:
        """Release a connection; the last embedded release shuts the store down."""
        if handle.released:
            return
        handle.released = True

        if not handle.shared:
            handle.graph.shutdown()
            return

        with _shared_lock:
            shared = _shared_graphs.get(handle.location)
            if shared is None or shared.graph is not handle.graph:
                return
            shared.instances -= 1
            if shared.instances > 0:
                logger.debug(
                    "Released embedded store",
                    extra={"location": handle.location, "instances": shared.instances},
                )
                return
            del _shared_graphs[handle.location]
            shared.graph.shutdown()

        logger.info("Closed shared embedded store", extra={"location": handle.location})
