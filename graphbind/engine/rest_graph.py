"""
HTTP client for the remote graph engine.

This module provides RestGraph, the connection handle used by the REMOTE and
REMOTE_BATCH modes. It mirrors the GraphStore API so the core layer can
treat both engines alike:
- RestGraph / RestVertex / RestIndex: one HTTP request per step
- RestTransaction: server-side transaction; while it is open every request
  of this RestGraph carries the X-Transaction-ID header
- BatchRequest: operation list built locally, submitted in one round trip

Example:
    >>> graph = RestGraph("http://localhost:7474/db/data")
    >>> batch = graph.batch()
    >>> v = batch.create_vertex({"_id": "user1"})
    >>> batch.index_add("node_index", v, "_id", "user1")
    >>> batch.submit()
    [{'id': 1}, {}]

Invariants:
    - A RestGraph is used by one thread at a time
    - At most one open transaction per RestGraph
    - Engine errors come back as the GraphStore exception types
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from .graph_store import (
    GraphStoreError,
    IndexExistsError,
    PropertyNotFoundError,
    PropertyValue,
    RemoteStoreError,
    StoreBusyError,
    StoreClosedError,
    TransactionError,
    VertexNotFoundError,
    check_value,
)
from .wire import (
    TRANSACTION_HEADER,
    decode_properties,
    decode_value,
    encode_properties,
    encode_value,
)

logger = logging.getLogger(__name__)

ERROR_TYPES: dict[str, type[GraphStoreError]] = {
    "VERTEX_NOT_FOUND": VertexNotFoundError,
    "PROPERTY_NOT_FOUND": PropertyNotFoundError,
    "INDEX_EXISTS": IndexExistsError,
    "TRANSACTION_ERROR": TransactionError,
    "STORE_CLOSED": StoreClosedError,
    "STORE_BUSY": StoreBusyError,
}


def _decoded(decode: Any, data: Any) -> Any:
    try:
        return decode(data)
    except (AttributeError, TypeError, ValueError) as e:
        raise RemoteStoreError(f"Malformed property value: {e}") from e


class RestVertex:
    """Handle to a vertex of a remote graph."""

    __slots__ = ("_graph", "id")

    def __init__(self, graph: RestGraph, vertex_id: int) -> None:
        self._graph = graph
        self.id = vertex_id

    def get_property(self, name: str) -> PropertyValue:
        value = self._graph._request(
            "GET", f"/vertices/{self.id}/property", params={"name": name}, expect="value"
        )
        return _decoded(decode_value, value)

    def set_property(self, name: str, value: PropertyValue) -> None:
        self._graph._request(
            "PUT",
            f"/vertices/{self.id}/property",
            json={"name": name, "value": encode_value(value)},
        )

    def remove_property(self, name: str) -> None:
        self._graph._request("DELETE", f"/vertices/{self.id}/property", params={"name": name})

    def properties(self) -> dict[str, PropertyValue]:
        properties = self._graph._request("GET", f"/vertices/{self.id}", expect="properties")
        return _decoded(decode_properties, properties)

    def property_keys(self) -> list[str]:
        return sorted(self.properties())

    def __eq__(self, other: object) -> bool:
        return isinstance(other, RestVertex) and other.id == self.id

    def __hash__(self) -> int:
        return hash(self.id)

    def __repr__(self) -> str:
        return f"RestVertex({self.id})"


class RestIndex:
    """Named manual index on a remote graph."""

    def __init__(self, graph: RestGraph, name: str) -> None:
        self._graph = graph
        self.name = name

    def add(self, vertex: RestVertex, key: str, value: str) -> None:
        self._graph._request(
            "POST",
            f"/indices/{self.name}/entries",
            json={"vertex": vertex.id, "key": key, "value": str(value)},
        )

    def remove(self, vertex: RestVertex, key: str | None = None, value: str | None = None) -> int:
        params: dict[str, Any] = {"vertex": vertex.id}
        if key is not None:
            params["key"] = key
        if value is not None:
            params["value"] = str(value)
        return self._graph._request(
            "DELETE", f"/indices/{self.name}/entries", params=params, expect="removed"
        )

    def get(self, key: str, value: str) -> list[RestVertex]:
        ids = self._graph._request(
            "GET",
            f"/indices/{self.name}/entries",
            params={"key": key, "value": str(value)},
            expect="vertices",
        )
        return self._graph._vertices(ids)

    def range(self, key: str, start: str, limit: int | None = None) -> list[RestVertex]:
        params: dict[str, Any] = {"key": key, "start": start}
        if limit is not None:
            params["limit"] = limit
        ids = self._graph._request(
            "GET", f"/indices/{self.name}/range", params=params, expect="vertices"
        )
        return self._graph._vertices(ids)


class RestTransaction:
    """Server-side transaction; commit() or rollback() ends it."""

    def __init__(self, graph: RestGraph, tx_id: str) -> None:
        self._graph = graph
        self.tx_id = tx_id
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def commit(self) -> None:
        if not self._active:
            raise TransactionError(f"Transaction {self.tx_id} already finished")
        try:
            self._graph._request("POST", f"/transactions/{self.tx_id}/commit", in_tx=False)
        finally:
            self._finish()

    def rollback(self) -> None:
        if not self._active:
            return
        try:
            self._graph._request("DELETE", f"/transactions/{self.tx_id}", in_tx=False)
        finally:
            self._finish()

    def _finish(self) -> None:
        self._active = False
        if self._graph._tx is self:
            self._graph._tx = None

    def __enter__(self) -> RestTransaction:
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        if exc_type is None:
            self.commit()
        else:
            self.rollback()


class BatchRequest:
    """Atomic operation list for POST /batch.

    Created vertices are referenced by alias ("$v0", "$v1", ...) in later
    operations of the same batch.
    """

    def __init__(self, graph: RestGraph) -> None:
        self._graph = graph
        self._operations: list[dict[str, Any]] = []
        self._aliases = 0

    @property
    def operations(self) -> list[dict[str, Any]]:
        return list(self._operations)

    def create_vertex(self, properties: dict[str, PropertyValue] | None = None) -> str:
        """Add a create_vertex operation.

        Returns:
            Alias reference for later operations
        """
        alias = f"v{self._aliases}"
        self._aliases += 1
        self._operations.append(
            {"create_vertex": {"properties": encode_properties(properties or {}), "as": alias}}
        )
        return f"${alias}"

    def set_property(self, vertex: str | int, name: str, value: PropertyValue) -> BatchRequest:
        self._operations.append(
            {"set_property": {"vertex": vertex, "name": name, "value": encode_value(value)}}
        )
        return self

    def index_add(self, index: str, vertex: str | int, key: str, value: str) -> BatchRequest:
        self._operations.append(
            {"index_add": {"index": index, "vertex": vertex, "key": key, "value": str(value)}}
        )
        return self

    def index_remove(
        self,
        index: str,
        vertex: str | int,
        key: str | None = None,
        value: str | None = None,
    ) -> BatchRequest:
        self._operations.append(
            {"index_remove": {"index": index, "vertex": vertex, "key": key, "value": value}}
        )
        return self

    def remove_vertex(self, vertex: str | int) -> BatchRequest:
        self._operations.append({"remove_vertex": {"vertex": vertex}})
        return self

    def submit(self) -> list[dict[str, Any]]:
        """Submit every operation in one request.

        Returns:
            Per-operation results ({"id": ...} for created vertices)

        Raises:
            GraphStoreError: If the batch failed (nothing was applied)
        """
        if not self._operations:
            return []
        return self._graph._request(
            "POST",
            "/batch",
            json={"operations": self._operations},
            in_tx=False,
            expect="results",
        )


class RestGraph:
    """Connection to a remote graph engine.

    Example:
        >>> graph = RestGraph("http://localhost:7474/db/data")
        >>> v = graph.create_vertex({"_id": "user1"})
        >>> graph.get_vertices("_id", "user1")
        [RestVertex(1)]
        >>> graph.shutdown()
    """

    def __init__(
        self,
        url: str,
        *,
        client: httpx.Client | None = None,
        timeout: float | None = None,
    ) -> None:
        """Initialize the connection.

        Args:
            url: Base URL of the graph API (e.g. http://host:7474/db/data)
            client: Optional preconfigured httpx client (closed on shutdown)
            timeout: Request timeout in seconds (None = wait indefinitely)
        """
        self.url = url.rstrip("/")
        self._client = client or httpx.Client(timeout=timeout)
        self._tx: RestTransaction | None = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _request(
        self,
        method: str,
        path: str,
        *,
        in_tx: bool = True,
        expect: str | None = None,
        **kwargs: Any,
    ) -> Any:
        """Send one request.

        Args:
            expect: Key of the response body to return instead of the body

        Raises:
            GraphStoreError: Mapped from the error code of a failed request
            RemoteStoreError: If the server is unreachable or the body is
                not what the engine sends
        """
        if self._closed:
            raise StoreClosedError(f"Remote graph connection is closed: {self.url}")
        headers = {}
        if in_tx and self._tx is not None:
            headers[TRANSACTION_HEADER] = self._tx.tx_id
        try:
            response = self._client.request(method, self.url + path, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            raise RemoteStoreError(f"{method} {self.url}{path} failed: {e}") from e

        if response.status_code >= 400:
            raise self._error(response)
        if response.status_code == 204 or not response.content:
            data: Any = {}
        else:
            try:
                data = response.json()
            except ValueError as e:
                raise RemoteStoreError(f"{method} {self.url}{path} returned a non-JSON body") from e
        if expect is None:
            return data
        if not isinstance(data, dict) or expect not in data:
            raise RemoteStoreError(f"{method} {self.url}{path} returned no '{expect}'")
        return data[expect]

    def _error(self, response: httpx.Response) -> GraphStoreError:
        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        message = body.get("error") or f"HTTP {response.status_code}"
        error_type = ERROR_TYPES.get(str(body.get("error_code", "")), RemoteStoreError)
        return error_type(message)

    def _vertices(self, ids: Any) -> list[RestVertex]:
        if not isinstance(ids, list) or not all(isinstance(i, int) for i in ids):
            raise RemoteStoreError(f"Malformed vertex list from {self.url}: {ids!r}")
        return [RestVertex(self, vertex_id) for vertex_id in ids]

    # --- Transactions ---

    def begin_tx(self) -> RestTransaction:
        """Begin a server-side transaction.

        Raises:
            TransactionError: If a transaction is already open
        """
        if self._tx is not None:
            raise TransactionError("A transaction is already active on this connection")
        tx_id = self._request("POST", "/transactions", in_tx=False, expect="tx")
        self._tx = RestTransaction(self, tx_id)
        return self._tx

    def batch(self) -> BatchRequest:
        return BatchRequest(self)

    # --- Vertices ---

    def create_vertex(self, properties: dict[str, PropertyValue] | None = None) -> RestVertex:
        for value in (properties or {}).values():
            check_value(value)
        vertex_id = self._request(
            "POST",
            "/vertices",
            json={"properties": encode_properties(properties or {})},
            expect="id",
        )
        return RestVertex(self, vertex_id)

    def get_vertex(self, vertex_id: int) -> RestVertex | None:
        try:
            self._request("GET", f"/vertices/{vertex_id}")
        except VertexNotFoundError:
            return None
        return RestVertex(self, vertex_id)

    def get_vertices(self, key: str, value: str) -> list[RestVertex]:
        ids = self._request(
            "GET", "/vertices", params={"key": key, "value": str(value)}, expect="vertices"
        )
        return self._vertices(ids)

    def vertices_in_range(self, key: str, start: str, limit: int | None = None) -> list[RestVertex]:
        params: dict[str, Any] = {"key": key, "start": start}
        if limit is not None:
            params["limit"] = limit
        return self._vertices(
            self._request("GET", "/vertices/range", params=params, expect="vertices")
        )

    def remove_vertex(self, vertex: RestVertex) -> None:
        self._request("DELETE", f"/vertices/{vertex.id}")

    def count_vertices(self) -> int:
        return self._request("GET", "/", in_tx=False, expect="vertices")

    # --- Indices ---

    def create_key_index(self, key: str) -> None:
        self._request("POST", "/key-indices", json={"key": key}, in_tx=False)

    def key_indices(self) -> list[str]:
        return self._request("GET", "/key-indices", in_tx=False, expect="key_indices")

    def index(self, name: str) -> RestIndex:
        return RestIndex(self, name)

    # --- Lifecycle ---

    def shutdown(self) -> None:
        """Roll back an open transaction and close the HTTP client."""
        if self._closed:
            return
        try:
            if self._tx is not None:
                self._tx.rollback()
        finally:
            self._closed = True
            self._client.close()
        logger.debug("Remote graph connection closed", extra={"url": self.url})
