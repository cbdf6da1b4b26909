"""
HTTP server exposing a GraphStore as the remote graph engine.

This module provides the REST API that RestGraph talks to in the REMOTE and
REMOTE_BATCH modes:
- Vertex, property and index endpoints mirroring the GraphStore API
- Server-side transactions addressed by the X-Transaction-ID header
- POST /batch executing an operation list atomically in one round trip

Invariants:
    - Requests carrying X-Transaction-ID run inside that transaction
    - Requests without it run in autocommit mode
    - A batch either applies every operation or none
    - One transaction or batch writes at a time; the writer gate is held
      from begin to commit/rollback, and waiters never hold a request worker
    - Errors are JSON objects: {"error": message, "error_code": code}

How to change safely:
    - Keep endpoints in sync with RestGraph
    - Register routes with literal segments before parameterized ones
      (/vertices/range before /vertices/{vertex_id})
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Iterator, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import contextmanager
from typing import Any

from fastapi import APIRouter, FastAPI, Header, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .._version import __version__
from .graph_store import (
    GraphStore,
    GraphStoreError,
    IndexExistsError,
    PropertyNotFoundError,
    StoreBusyError,
    StoreClosedError,
    Transaction,
    TransactionError,
    Vertex,
    VertexNotFoundError,
)
from .wire import (
    TRANSACTION_HEADER,
    decode_properties,
    decode_value,
    encode_properties,
    encode_value,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Graph"])


class InvalidRequestError(GraphStoreError):
    """Request body or value could not be decoded."""

    pass


class BatchError(GraphStoreError):
    """A batch operation failed; the whole batch was rolled back."""

    def __init__(self, position: int, cause: Exception) -> None:
        super().__init__(f"Batch operation {position} failed: {cause}")
        self.position = position
        self.cause = cause


# (exception type, HTTP status, error code), most specific first
ERROR_STATUS: list[tuple[type[GraphStoreError], int, str]] = [
    (VertexNotFoundError, 404, "VERTEX_NOT_FOUND"),
    (PropertyNotFoundError, 404, "PROPERTY_NOT_FOUND"),
    (IndexExistsError, 409, "INDEX_EXISTS"),
    (TransactionError, 409, "TRANSACTION_ERROR"),
    (BatchError, 400, "BATCH_FAILED"),
    (InvalidRequestError, 400, "INVALID_REQUEST"),
    (StoreBusyError, 503, "STORE_BUSY"),
    (StoreClosedError, 503, "STORE_CLOSED"),
    (GraphStoreError, 500, "STORE_ERROR"),
]


def error_status(exc: GraphStoreError) -> tuple[int, str]:
    for error_type, status, code in ERROR_STATUS:
        if isinstance(exc, error_type):
            return status, code
    return 500, "STORE_ERROR"


# =============================================================================
# Request Models
# =============================================================================


class CreateVertexRequest(BaseModel):
    """Create a vertex with initial properties."""
    properties: dict[str, Any] = Field(default_factory=dict)


class SetPropertyRequest(BaseModel):
    """Set one property value."""
    name: str
    value: Any


class KeyIndexRequest(BaseModel):
    """Provision a key-property index."""
    key: str


class IndexEntryRequest(BaseModel):
    """Add a manual index entry."""
    vertex: int
    key: str
    value: str


class BatchRequestBody(BaseModel):
    """Operations to execute atomically."""
    operations: list[dict[str, Any]] = Field(..., description="List of operations")


# =============================================================================
# Transactions
# =============================================================================


class TransactionRegistry:
    """Open server-side transactions by id."""

    def __init__(self) -> None:
        self._transactions: dict[str, Transaction] = {}
        self._lock = threading.Lock()

    def add(self, tx: Transaction) -> None:
        with self._lock:
            self._transactions[tx.tx_id] = tx

    def get(self, tx_id: str) -> Transaction:
        with self._lock:
            tx = self._transactions.get(tx_id)
        if tx is None:
            raise TransactionError(f"Unknown transaction: {tx_id}")
        return tx

    def pop(self, tx_id: str) -> Transaction:
        with self._lock:
            tx = self._transactions.pop(tx_id, None)
        if tx is None:
            raise TransactionError(f"Unknown transaction: {tx_id}")
        return tx

    def __len__(self) -> int:
        with self._lock:
            return len(self._transactions)


class WriterGate:
    """Admits one write transaction at a time.

    A server-side transaction holds the SQLite write lock across several
    requests. Writers waiting for it park on a dedicated executor instead of
    a request worker, so the holder always finds a worker for its next
    request.
    """

    def __init__(self, max_waiting: int = 256) -> None:
        """Initialize the gate.

        Args:
            max_waiting: Writers allowed to wait at once; more are rejected
                with StoreBusyError
        """
        self.max_waiting = max_waiting
        self._lock = threading.Lock()
        self._waiting = 0
        self._waiting_lock = threading.Lock()
        self._executor = ThreadPoolExecutor(
            max_workers=max(max_waiting, 1), thread_name_prefix="graphbind-writer"
        )

    @property
    def waiting(self) -> int:
        with self._waiting_lock:
            return self._waiting

    @property
    def held(self) -> bool:
        return self._lock.locked()

    async def acquire(self) -> None:
        """Wait for the gate without occupying a request worker.

        Raises:
            StoreBusyError: If max_waiting writers are already waiting
        """
        if self._lock.acquire(blocking=False):
            return
        with self._waiting_lock:
            if self._waiting >= self.max_waiting:
                raise StoreBusyError(f"Too many writers waiting ({self._waiting})")
            self._waiting += 1
        future = self._executor.submit(self._lock.acquire)
        try:
            await asyncio.wrap_future(future)
        except asyncio.CancelledError:
            # The waiter thread may still win the lock; hand it back
            future.add_done_callback(self._release_acquired)
            raise
        finally:
            with self._waiting_lock:
                self._waiting -= 1

    def _release_acquired(self, future: Future) -> None:
        if not future.cancelled() and future.exception() is None:
            self._lock.release()

    def release(self) -> None:
        self._lock.release()

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)


def _store(request: Request) -> GraphStore:
    return request.app.state.store


def _gate(request: Request) -> WriterGate:
    return request.app.state.writer_gate


@contextmanager
def _session(request: Request, tx_id: str | None) -> Iterator[GraphStore]:
    """Run the handler body inside the request's transaction, if any."""
    store = _store(request)
    if tx_id is None:
        yield store
        return
    tx = request.app.state.transactions.get(tx_id)
    with store.bound(tx):
        yield store


def _vertex(store: GraphStore, vertex_id: int) -> Vertex:
    vertex = store.get_vertex(vertex_id)
    if vertex is None:
        raise VertexNotFoundError(f"Vertex not found: {vertex_id}")
    return vertex


def _decode(value: Any) -> Any:
    try:
        return decode_value(value)
    except (TypeError, ValueError) as e:
        raise InvalidRequestError(str(e)) from e


def _ids(vertices: list[Vertex]) -> dict[str, list[int]]:
    return {"vertices": [v.id for v in vertices]}


# =============================================================================
# Routes
# =============================================================================


@router.get("/")
def graph_info(request: Request) -> dict[str, Any]:
    store = _store(request)
    return {
        "version": __version__,
        "vertices": store.count_vertices(),
        "key_indices": store.key_indices(),
    }


@router.post("/key-indices", status_code=201)
async def create_key_index(body: KeyIndexRequest, request: Request) -> dict[str, Any]:
    gate = _gate(request)
    await gate.acquire()
    try:
        await run_in_threadpool(_store(request).create_key_index, body.key)
    finally:
        gate.release()
    return {"key": body.key}


@router.get("/key-indices")
def list_key_indices(request: Request) -> dict[str, Any]:
    return {"key_indices": _store(request).key_indices()}


@router.post("/vertices", status_code=201)
def create_vertex(
    body: CreateVertexRequest,
    request: Request,
    x_transaction_id: str | None = Header(default=None),
) -> dict[str, Any]:
    try:
        properties = decode_properties(body.properties)
    except (TypeError, ValueError) as e:
        raise InvalidRequestError(str(e)) from e
    with _session(request, x_transaction_id) as store:
        vertex = store.create_vertex(properties)
    return {"id": vertex.id}


@router.get("/vertices")
def find_vertices(
    key: str,
    value: str,
    request: Request,
    x_transaction_id: str | None = Header(default=None),
) -> dict[str, Any]:
    with _session(request, x_transaction_id) as store:
        return _ids(store.get_vertices(key, value))


@router.get("/vertices/range")
def vertices_in_range(
    key: str,
    start: str,
    request: Request,
    limit: int | None = None,
    x_transaction_id: str | None = Header(default=None),
) -> dict[str, Any]:
    with _session(request, x_transaction_id) as store:
        return _ids(store.vertices_in_range(key, start, limit))


@router.get("/vertices/{vertex_id}")
def get_vertex(
    vertex_id: int,
    request: Request,
    x_transaction_id: str | None = Header(default=None),
) -> dict[str, Any]:
    with _session(request, x_transaction_id) as store:
        vertex = _vertex(store, vertex_id)
        return {"id": vertex.id, "properties": encode_properties(vertex.properties())}


@router.delete("/vertices/{vertex_id}", status_code=204)
def remove_vertex(
    vertex_id: int,
    request: Request,
    x_transaction_id: str | None = Header(default=None),
) -> None:
    with _session(request, x_transaction_id) as store:
        store.remove_vertex(Vertex(store, vertex_id))


@router.get("/vertices/{vertex_id}/property")
def get_property(
    vertex_id: int,
    name: str,
    request: Request,
    x_transaction_id: str | None = Header(default=None),
) -> dict[str, Any]:
    with _session(request, x_transaction_id) as store:
        value = _vertex(store, vertex_id).get_property(name)
    return {"value": encode_value(value)}


@router.put("/vertices/{vertex_id}/property", status_code=204)
def set_property(
    vertex_id: int,
    body: SetPropertyRequest,
    request: Request,
    x_transaction_id: str | None = Header(default=None),
) -> None:
    value = _decode(body.value)
    with _session(request, x_transaction_id) as store:
        Vertex(store, vertex_id).set_property(body.name, value)


@router.delete("/vertices/{vertex_id}/property", status_code=204)
def remove_property(
    vertex_id: int,
    name: str,
    request: Request,
    x_transaction_id: str | None = Header(default=None),
) -> None:
    with _session(request, x_transaction_id) as store:
        _vertex(store, vertex_id).remove_property(name)


@router.post("/indices/{index_name}/entries", status_code=201)
def add_index_entry(
    index_name: str,
    body: IndexEntryRequest,
    request: Request,
    x_transaction_id: str | None = Header(default=None),
) -> dict[str, Any]:
    with _session(request, x_transaction_id) as store:
        store.index(index_name).add(Vertex(store, body.vertex), body.key, body.value)
    return {"index": index_name, "vertex": body.vertex}


@router.delete("/indices/{index_name}/entries")
def remove_index_entries(
    index_name: str,
    vertex: int,
    request: Request,
    key: str | None = None,
    value: str | None = None,
    x_transaction_id: str | None = Header(default=None),
) -> dict[str, Any]:
    with _session(request, x_transaction_id) as store:
        removed = store.index(index_name).remove(Vertex(store, vertex), key, value)
    return {"removed": removed}


@router.get("/indices/{index_name}/entries")
def get_index_entries(
    index_name: str,
    key: str,
    value: str,
    request: Request,
    x_transaction_id: str | None = Header(default=None),
) -> dict[str, Any]:
    with _session(request, x_transaction_id) as store:
        return _ids(store.index(index_name).get(key, value))


@router.get("/indices/{index_name}/range")
def index_range(
    index_name: str,
    key: str,
    start: str,
    request: Request,
    limit: int | None = None,
    x_transaction_id: str | None = Header(default=None),
) -> dict[str, Any]:
    with _session(request, x_transaction_id) as store:
        return _ids(store.index(index_name).range(key, start, limit))


@router.post("/transactions", status_code=201)
async def begin_transaction(request: Request) -> dict[str, Any]:
    """Begin a transaction, waiting for the writer gate.

    The gate stays held until the transaction is committed or rolled back.
    """
    gate = _gate(request)
    await gate.acquire()
    try:
        tx = await run_in_threadpool(_store(request).begin_tx, bind=False)
    except BaseException:
        gate.release()
        raise
    request.app.state.transactions.add(tx)
    logger.debug("Began transaction", extra={"tx_id": tx.tx_id})
    return {"tx": tx.tx_id}


@router.post("/transactions/{tx_id}/commit")
def commit_transaction(tx_id: str, request: Request) -> dict[str, Any]:
    tx = request.app.state.transactions.pop(tx_id)
    try:
        tx.commit()
    finally:
        _gate(request).release()
    return {"tx": tx_id, "committed": True}


@router.delete("/transactions/{tx_id}")
def rollback_transaction(tx_id: str, request: Request) -> dict[str, Any]:
    tx = request.app.state.transactions.pop(tx_id)
    try:
        tx.rollback()
    finally:
        _gate(request).release()
    return {"tx": tx_id, "committed": False}


@router.post("/batch")
async def execute_batch(body: BatchRequestBody, request: Request) -> dict[str, Any]:
    """Execute an operation list atomically.

    Operations are single-key objects, e.g.
    ``{"create_vertex": {"properties": {...}, "as": "v"}}``; later operations
    reference created vertices as ``"$v"``.
    """
    gate = _gate(request)
    await gate.acquire()
    try:
        results = await run_in_threadpool(run_batch, _store(request), body.operations)
    finally:
        gate.release()
    return {"success": True, "results": results}


def run_batch(store: GraphStore, operations: Sequence[dict[str, Any]]) -> list[dict[str, Any]]:
    """Run batch operations in one transaction on the calling thread.

    Raises:
        BatchError: If any operation fails (nothing is applied)
    """
    aliases: dict[str, int] = {}
    results: list[dict[str, Any]] = []

    def resolve(ref: Any) -> Vertex:
        if isinstance(ref, str) and ref.startswith("$"):
            if ref[1:] not in aliases:
                raise InvalidRequestError(f"Unknown alias reference: {ref}")
            return Vertex(store, aliases[ref[1:]])
        return Vertex(store, int(ref))

    with store.begin_tx():
        for position, op in enumerate(operations):
            try:
                if len(op) != 1:
                    raise InvalidRequestError(f"Operation must have exactly one kind: {op}")
                ((kind, args),) = op.items()
                if kind == "create_vertex":
                    properties = decode_properties(args.get("properties") or {})
                    vertex = store.create_vertex(properties)
                    if args.get("as"):
                        aliases[args["as"]] = vertex.id
                    results.append({"id": vertex.id})
                    continue
                if kind == "set_property":
                    resolve(args["vertex"]).set_property(args["name"], decode_value(args["value"]))
                elif kind == "remove_property":
                    resolve(args["vertex"]).remove_property(args["name"])
                elif kind == "index_add":
                    store.index(args["index"]).add(
                        resolve(args["vertex"]), args["key"], args["value"]
                    )
                elif kind == "index_remove":
                    store.index(args["index"]).remove(
                        resolve(args["vertex"]), args.get("key"), args.get("value")
                    )
                elif kind == "remove_vertex":
                    store.remove_vertex(resolve(args["vertex"]))
                else:
                    raise InvalidRequestError(f"Unknown batch operation: {kind}")
                results.append({})
            except (GraphStoreError, AttributeError, KeyError, TypeError, ValueError) as e:
                raise BatchError(position, e) from e

    logger.debug("Executed batch", extra={"operations": len(operations)})
    return results


async def handle_store_error(request: Request, exc: GraphStoreError) -> JSONResponse:
    status, code = error_status(exc)
    if status >= 500:
        logger.error(f"Graph request failed: {exc}", exc_info=exc)
    body: dict[str, Any] = {"error": str(exc), "error_code": code}
    if isinstance(exc, BatchError):
        body["operation"] = exc.position
    return JSONResponse(body, status_code=status)


def create_app(
    store: GraphStore,
    mounts: Sequence[str] = ("/db/data",),
    max_waiting_writers: int = 256,
) -> FastAPI:
    """Create the HTTP application serving a store.

    Args:
        store: Open graph store to expose
        mounts: URL prefixes to serve the graph API under
            (e.g. "/db/data", "/graphs/ycsb")
        max_waiting_writers: Transactions and batches allowed to wait for
            the writer gate before new ones get 503 STORE_BUSY

    Returns:
        FastAPI application
    """
    app = FastAPI(
        title="graphbind remote engine",
        description="REST API over an embedded graph store",
        version=__version__,
    )
    app.state.store = store
    app.state.transactions = TransactionRegistry()
    app.state.writer_gate = WriterGate(max_waiting_writers)

    for prefix in mounts:
        app.include_router(router, prefix=prefix.rstrip("/"))

    app.add_exception_handler(GraphStoreError, handle_store_error)

    @app.get("/health")
    def health() -> dict[str, Any]:
        healthy = not store.closed
        return {"status": "healthy" if healthy else "closed", "service": "graphbind"}

    return app
