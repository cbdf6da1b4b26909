"""
Embedded property-graph engine on SQLite.

This module provides the graph store that the bindings call into in EMBEDDED
mode, and that the HTTP server exposes in the remote modes:
- Vertices with a property map
- Key-property indices (every value of a provisioned key is indexed)
- Named manual indices mapping (key, value) to vertices
- Explicit transactions bound to the calling thread

Invariants:
    - One SQLite file per store directory (graph.db)
    - Operations outside a transaction run in autocommit mode
    - A thread has at most one bound transaction at a time
    - Removing a vertex removes its properties and index entries

How to change safely:
    - Schema changes must keep existing graph.db files readable
    - Keep connections check_same_thread=False; transactions cross threads
      when the HTTP server binds them per request

Table schema:
    vertices:
        - vertex_id INTEGER PRIMARY KEY
        - created_at INTEGER (Unix ms)

    properties:
        - vertex_id INTEGER
        - name TEXT
        - value BLOB (TEXT, BLOB, INTEGER or REAL)
        - PRIMARY KEY (vertex_id, name)

    key_indices:
        - key TEXT PRIMARY KEY
        - created_at INTEGER

    index_entries:
        - index_name TEXT
        - key TEXT
        - value TEXT
        - vertex_id INTEGER
        - PRIMARY KEY (index_name, key, value, vertex_id)
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

DB_FILENAME = "graph.db"

PropertyValue = str | bytes | int | float


class GraphStoreError(Exception):
    """Base error for graph engine failures."""

    pass


class StoreClosedError(GraphStoreError):
    """Operation on a store that has been shut down."""

    pass


class VertexNotFoundError(GraphStoreError):
    """Vertex does not exist."""

    pass


class PropertyNotFoundError(GraphStoreError):
    """Vertex has no property with the requested name."""

    pass


class IndexExistsError(GraphStoreError):
    """Key index has already been created."""

    pass


class TransactionError(GraphStoreError):
    """Transaction misuse (nested, finished, or unknown)."""

    pass


class RemoteStoreError(GraphStoreError):
    """Remote engine unreachable or returned an unexpected response."""

    pass


class StoreBusyError(GraphStoreError):
    """Remote engine has too many writers waiting."""

    pass


# Everything an engine call may raise on failure
STORE_ERRORS = (GraphStoreError, sqlite3.Error)


def _now_ms() -> int:
    return int(time.time() * 1000)


def check_value(value: Any) -> PropertyValue:
    """Validate a property value before it is written.

    Raises:
        TypeError: If the value cannot be stored as a property
    """
    if isinstance(value, bool) or not isinstance(value, (str, bytes, int, float)):
        raise TypeError(f"Unsupported property value type: {type(value).__name__}")
    return value


class Vertex:
    """Handle to a vertex of a GraphStore.

    Handles are transient: they hold the store and the vertex id only, every
    property access goes to the database.
    """

    __slots__ = ("_store", "id")

    def __init__(self, store: GraphStore, vertex_id: int) -> None:
        self._store = store
        self.id = vertex_id

    def get_property(self, name: str) -> PropertyValue:
        return self._store._get_property(self.id, name)

    def set_property(self, name: str, value: PropertyValue) -> None:
        self._store._set_property(self.id, name, value)

    def remove_property(self, name: str) -> None:
        self._store._remove_property(self.id, name)

    def property_keys(self) -> list[str]:
        return self._store._property_keys(self.id)

    def properties(self) -> dict[str, PropertyValue]:
        return self._store._properties(self.id)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Vertex) and other.id == self.id

    def __hash__(self) -> int:
        return hash(self.id)

    def __repr__(self) -> str:
        return f"Vertex({self.id})"


class VertexIndex:
    """Named manual index mapping (key, value) pairs to vertices."""

    def __init__(self, store: GraphStore, name: str) -> None:
        self._store = store
        self.name = name

    def add(self, vertex: Vertex, key: str, value: str) -> None:
        """Add an entry for a vertex.

        Raises:
            VertexNotFoundError: If the vertex does not exist
        """
        conn = self._store._conn()
        try:
            conn.execute(
                """
                INSERT OR IGNORE INTO index_entries (index_name, key, value, vertex_id)
                VALUES (?, ?, ?, ?)
                """,
                (self.name, key, str(value), vertex.id),
            )
        except sqlite3.IntegrityError as e:
            raise VertexNotFoundError(f"Vertex not found: {vertex.id}") from e

    def remove(self, vertex: Vertex, key: str | None = None, value: str | None = None) -> int:
        """Remove entries for a vertex, optionally narrowed to a key and value.

        Returns:
            Number of entries removed
        """
        query = "DELETE FROM index_entries WHERE index_name = ? AND vertex_id = ?"
        params: list[Any] = [self.name, vertex.id]
        if key is not None:
            query += " AND key = ?"
            params.append(key)
        if value is not None:
            query += " AND value = ?"
            params.append(str(value))
        cursor = self._store._conn().execute(query, params)
        return cursor.rowcount

    def get(self, key: str, value: str) -> list[Vertex]:
        """Get vertices indexed under key=value, in ascending vertex id order."""
        cursor = self._store._conn().execute(
            """
            SELECT vertex_id FROM index_entries
            WHERE index_name = ? AND key = ? AND value = ?
            ORDER BY vertex_id
            """,
            (self.name, key, str(value)),
        )
        return [Vertex(self._store, row[0]) for row in cursor.fetchall()]

    def range(self, key: str, start: str, limit: int | None = None) -> list[Vertex]:
        """Get vertices whose value for key is >= start, in value order.

        Args:
            key: Index key
            start: Inclusive lower bound (lexicographic)
            limit: Maximum vertices to return (None = all)
        """
        query = """
            SELECT vertex_id FROM index_entries
            WHERE index_name = ? AND key = ? AND value >= ?
            ORDER BY value, vertex_id
        """
        params: list[Any] = [self.name, key, start]
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        cursor = self._store._conn().execute(query, params)
        return [Vertex(self._store, row[0]) for row in cursor.fetchall()]


class Transaction:
    """A write transaction on its own SQLite connection.

    Use as a context manager: commits on clean exit, rolls back when the
    block raises or when failure() was called.

    Example:
        >>> with store.begin_tx() as tx:
        ...     v = store.create_vertex({"_id": "user1"})
    """

    def __init__(self, store: GraphStore, connection: sqlite3.Connection) -> None:
        self._store = store
        self.connection = connection
        self.tx_id = uuid.uuid4().hex
        self._active = True
        self._rollback_only = False

    @property
    def active(self) -> bool:
        return self._active

    def failure(self) -> None:
        """Mark the transaction rollback-only."""
        self._rollback_only = True

    def commit(self) -> None:
        """Commit and release the connection.

        Raises:
            TransactionError: If the transaction already finished
        """
        if not self._active:
            raise TransactionError(f"Transaction {self.tx_id} already finished")
        if self._rollback_only:
            self.rollback()
            raise TransactionError(f"Transaction {self.tx_id} was marked rollback-only")
        try:
            self.connection.execute("COMMIT")
        except sqlite3.Error:
            self.rollback()
            raise
        self._store._finish_tx(self)

    def rollback(self) -> None:
        """Roll back and release the connection. No-op once finished."""
        if not self._active:
            return
        try:
            self.connection.execute("ROLLBACK")
        finally:
            self._store._finish_tx(self)

    def __enter__(self) -> Transaction:
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        if exc_type is None:
            self.commit()
        else:
            self.rollback()


class GraphStore:
    """Embedded SQLite property-graph store.

    Thread safety:
        Each thread gets its own autocommit connection, created lazily.
        Transactions open a dedicated connection and are bound to the
        calling thread until they finish. SQLite serializes writers
        (BEGIN IMMEDIATE + busy timeout); WAL mode keeps readers unblocked.

    Example:
        >>> store = GraphStore.open("/var/lib/graphbind")
        >>> v = store.create_vertex({"_id": "user1", "field0": b"value"})
        >>> store.get_vertices("_id", "user1")
        [Vertex(1)]
        >>> store.shutdown()
    """

    def __init__(
        self,
        location: str,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
    ) -> None:
        """Initialize the store (does not touch the filesystem, see open()).

        Args:
            location: Directory holding graph.db
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
        """
        self.location = str(location)
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self._db_path = Path(location) / DB_FILENAME
        self._local = threading.local()
        self._lock = threading.Lock()
        self._connections: dict[threading.Thread, sqlite3.Connection] = {}
        self._transactions: set[Transaction] = set()
        self._closed = False

    @classmethod
    def open(
        cls,
        location: str,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
    ) -> GraphStore:
        """Open (creating if needed) the store at a directory.

        Raises:
            GraphStoreError: If the directory or database cannot be opened
        """
        store = cls(location, wal_mode=wal_mode, busy_timeout_ms=busy_timeout_ms)
        try:
            store._db_path.parent.mkdir(parents=True, exist_ok=True)
            store._create_schema(store._conn())
        except (OSError, sqlite3.Error) as e:
            store.shutdown()
            raise GraphStoreError(f"Could not open graph store at {location}: {e}") from e
        logger.info("Opened graph store", extra={"location": store.location})
        return store

    @property
    def closed(self) -> bool:
        return self._closed

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            str(self._db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit by default, explicit transactions
            check_same_thread=False,
        )
        conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
        if self.wal_mode:
            conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA synchronous = NORMAL")
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _conn(self) -> sqlite3.Connection:
        """Connection for the current thread: its bound transaction, if any."""
        if self._closed:
            raise StoreClosedError(f"Graph store is shut down: {self.location}")
        tx = getattr(self._local, "tx", None)
        if tx is not None:
            return tx.connection
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = self._connect()
            self._local.conn = conn
            with self._lock:
                self._close_stale_connections()
                self._connections[threading.current_thread()] = conn
        return conn

    def _close_stale_connections(self) -> None:
        """Close autocommit connections of threads that have exited (lock held)."""
        for thread in [t for t in self._connections if not t.is_alive()]:
            self._connections.pop(thread).close()

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS vertices (
                vertex_id INTEGER PRIMARY KEY AUTOINCREMENT,
                created_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS properties (
                vertex_id INTEGER NOT NULL
                    REFERENCES vertices(vertex_id) ON DELETE CASCADE,
                name TEXT NOT NULL,
                value BLOB,
                PRIMARY KEY (vertex_id, name)
            );

            CREATE INDEX IF NOT EXISTS idx_properties_name_value
                ON properties(name, value);

            CREATE TABLE IF NOT EXISTS key_indices (
                key TEXT PRIMARY KEY,
                created_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS index_entries (
                index_name TEXT NOT NULL,
                key TEXT NOT NULL,
                value TEXT NOT NULL,
                vertex_id INTEGER NOT NULL
                    REFERENCES vertices(vertex_id) ON DELETE CASCADE,
                PRIMARY KEY (index_name, key, value, vertex_id)
            );

            CREATE INDEX IF NOT EXISTS idx_index_entries_vertex
                ON index_entries(vertex_id);
        """)

    # --- Transactions ---

    def begin_tx(self, bind: bool = True) -> Transaction:
        """Begin a write transaction.

        Args:
            bind: Bind the transaction to the calling thread so that every
                store operation on this thread runs inside it

        Raises:
            TransactionError: If the thread already has a bound transaction
        """
        if self._closed:
            raise StoreClosedError(f"Graph store is shut down: {self.location}")
        if bind and getattr(self._local, "tx", None) is not None:
            raise TransactionError("A transaction is already active on this thread")

        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error:
            conn.close()
            raise
        tx = Transaction(self, conn)
        with self._lock:
            self._transactions.add(tx)
        if bind:
            self._local.tx = tx
        return tx

    @contextmanager
    def bound(self, tx: Transaction) -> Iterator[Transaction]:
        """Temporarily bind an existing transaction to the calling thread."""
        if not tx.active:
            raise TransactionError(f"Transaction {tx.tx_id} already finished")
        previous = getattr(self._local, "tx", None)
        self._local.tx = tx
        try:
            yield tx
        finally:
            self._local.tx = previous

    def _finish_tx(self, tx: Transaction) -> None:
        tx._active = False
        if getattr(self._local, "tx", None) is tx:
            self._local.tx = None
        with self._lock:
            self._transactions.discard(tx)
        tx.connection.close()

    # --- Vertices ---

    def create_vertex(self, properties: dict[str, PropertyValue] | None = None) -> Vertex:
        """Create a vertex, optionally with initial properties."""
        for value in (properties or {}).values():
            check_value(value)
        conn = self._conn()
        cursor = conn.execute("INSERT INTO vertices (created_at) VALUES (?)", (_now_ms(),))
        vertex = Vertex(self, cursor.lastrowid)
        for name, value in (properties or {}).items():
            self._set_property(vertex.id, name, value)
        logger.debug("Created vertex", extra={"vertex_id": vertex.id})
        return vertex

    def get_vertex(self, vertex_id: int) -> Vertex | None:
        cursor = self._conn().execute(
            "SELECT vertex_id FROM vertices WHERE vertex_id = ?", (vertex_id,)
        )
        row = cursor.fetchone()
        return Vertex(self, row[0]) if row else None

    def get_vertices(self, key: str, value: PropertyValue) -> list[Vertex]:
        """Get vertices whose property key equals value, in vertex id order."""
        cursor = self._conn().execute(
            "SELECT vertex_id FROM properties WHERE name = ? AND value = ? ORDER BY vertex_id",
            (key, value),
        )
        return [Vertex(self, row[0]) for row in cursor.fetchall()]

    def vertices_in_range(self, key: str, start: str, limit: int | None = None) -> list[Vertex]:
        """Get vertices whose text property key is >= start, in value order."""
        query = """
            SELECT vertex_id FROM properties
            WHERE name = ? AND typeof(value) = 'text' AND value >= ?
            ORDER BY value, vertex_id
        """
        params: list[Any] = [key, start]
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        cursor = self._conn().execute(query, params)
        return [Vertex(self, row[0]) for row in cursor.fetchall()]

    def remove_vertex(self, vertex: Vertex) -> None:
        """Remove a vertex with its properties and index entries.

        Raises:
            VertexNotFoundError: If the vertex does not exist
        """
        cursor = self._conn().execute("DELETE FROM vertices WHERE vertex_id = ?", (vertex.id,))
        if cursor.rowcount == 0:
            raise VertexNotFoundError(f"Vertex not found: {vertex.id}")
        logger.debug("Removed vertex", extra={"vertex_id": vertex.id})

    def count_vertices(self) -> int:
        return self._conn().execute("SELECT COUNT(*) FROM vertices").fetchone()[0]

    # --- Properties ---

    def _get_property(self, vertex_id: int, name: str) -> PropertyValue:
        cursor = self._conn().execute(
            "SELECT value FROM properties WHERE vertex_id = ? AND name = ?",
            (vertex_id, name),
        )
        row = cursor.fetchone()
        if row is None:
            raise PropertyNotFoundError(f"Vertex {vertex_id} has no property '{name}'")
        return row[0]

    def _set_property(self, vertex_id: int, name: str, value: PropertyValue) -> None:
        check_value(value)
        try:
            self._conn().execute(
                """
                INSERT INTO properties (vertex_id, name, value) VALUES (?, ?, ?)
                ON CONFLICT(vertex_id, name) DO UPDATE SET value = excluded.value
                """,
                (vertex_id, name, value),
            )
        except sqlite3.IntegrityError as e:
            raise VertexNotFoundError(f"Vertex not found: {vertex_id}") from e

    def _remove_property(self, vertex_id: int, name: str) -> None:
        self._conn().execute(
            "DELETE FROM properties WHERE vertex_id = ? AND name = ?", (vertex_id, name)
        )

    def _property_keys(self, vertex_id: int) -> list[str]:
        cursor = self._conn().execute(
            "SELECT name FROM properties WHERE vertex_id = ? ORDER BY name", (vertex_id,)
        )
        return [row[0] for row in cursor.fetchall()]

    def _properties(self, vertex_id: int) -> dict[str, PropertyValue]:
        cursor = self._conn().execute(
            "SELECT name, value FROM properties WHERE vertex_id = ? ORDER BY name", (vertex_id,)
        )
        return {row[0]: row[1] for row in cursor.fetchall()}

    # --- Indices ---

    def create_key_index(self, key: str) -> None:
        """Provision a key-property index.

        Raises:
            IndexExistsError: If the key index already exists
        """
        try:
            self._conn().execute(
                "INSERT INTO key_indices (key, created_at) VALUES (?, ?)", (key, _now_ms())
            )
        except sqlite3.IntegrityError as e:
            raise IndexExistsError(f"Key index already exists: {key}") from e
        logger.info("Created key index", extra={"key": key, "location": self.location})

    def key_indices(self) -> list[str]:
        cursor = self._conn().execute("SELECT key FROM key_indices ORDER BY key")
        return [row[0] for row in cursor.fetchall()]

    def index(self, name: str) -> VertexIndex:
        return VertexIndex(self, name)

    # --- Lifecycle ---

    def shutdown(self) -> None:
        """Roll back open transactions and close every connection."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            transactions = list(self._transactions)
            connections = list(self._connections.values())
            self._transactions.clear()
            self._connections.clear()

        for tx in transactions:
            tx._active = False
            tx.connection.close()
        for conn in connections:
            conn.close()
        logger.info("Graph store shut down", extra={"location": self.location})
