"""
Integration tests for the remote graph engine.

Tests cover:
- REST endpoints and error bodies
- Server-side transactions
- Atomic batches with alias references
- RestGraph mapping responses back to engine types
- The writer gate serializing write transactions
"""

import asyncio
import threading
import time

import httpx
import pytest
from fastapi.testclient import TestClient

from graphbind.engine.graph_store import (
    IndexExistsError,
    PropertyNotFoundError,
    RemoteStoreError,
    StoreBusyError,
    StoreClosedError,
    TransactionError,
    VertexNotFoundError,
)
from graphbind.engine.http_server import BatchError, WriterGate, create_app, error_status
from graphbind.engine.rest_graph import RestGraph, RestVertex
from graphbind.engine.wire import TRANSACTION_HEADER

BASE = "/db/data"


class TestEndpoints:
    """Tests for the REST endpoints."""

    def test_health(self, http):
        """Health endpoint reports an open store."""
        response = http.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_graph_info(self, http):
        """Graph root reports counts and key indices."""
        http.post(f"{BASE}/vertices", json={"properties": {"_id": "user1"}})
        http.post(f"{BASE}/key-indices", json={"key": "_id"})

        body = http.get(f"{BASE}/").json()

        assert body["vertices"] == 1
        assert body["key_indices"] == ["_id"]

    def test_same_graph_under_every_mount(self, http):
        """All mounts serve the same store."""
        http.post(f"{BASE}/vertices", json={"properties": {"_id": "user1"}})

        assert http.get("/graphs/ycsb/").json()["vertices"] == 1

    def test_create_and_read_vertex(self, http):
        """Bytes travel base64-tagged; text travels plain."""
        response = http.post(
            f"{BASE}/vertices",
            json={"properties": {"_id": "user1", "field0": {"$bytes": "AP8="}}},
        )
        assert response.status_code == 201
        vertex_id = response.json()["id"]

        body = http.get(f"{BASE}/vertices/{vertex_id}").json()

        assert body["properties"] == {"_id": "user1", "field0": {"$bytes": "AP8="}}

    def test_find_by_property(self, http):
        """Vertices are found by key and value, in id order."""
        ids = [
            http.post(f"{BASE}/vertices", json={"properties": {"_id": "dup"}}).json()["id"]
            for _ in range(2)
        ]

        body = http.get(f"{BASE}/vertices", params={"key": "_id", "value": "dup"}).json()

        assert body["vertices"] == ids

    def test_property_endpoints(self, http):
        """Properties can be set, read and removed."""
        vertex_id = http.post(f"{BASE}/vertices", json={}).json()["id"]
        url = f"{BASE}/vertices/{vertex_id}/property"
        params = {"name": "field0"}

        assert http.put(url, json={"name": "field0", "value": "v"}).status_code == 204
        assert http.get(url, params=params).json() == {"value": "v"}
        assert http.delete(url, params=params).status_code == 204
        assert http.get(url, params=params).status_code == 404

    @pytest.mark.parametrize("name", ["a/b", "f%41", "sp ace?&x=1", "#frag"])
    def test_property_names_are_not_path_segments(self, http, name):
        """Any property name is stored under exactly that name."""
        vertex_id = http.post(f"{BASE}/vertices", json={}).json()["id"]
        url = f"{BASE}/vertices/{vertex_id}/property"

        assert http.put(url, json={"name": name, "value": "v"}).status_code == 204

        assert http.get(url, params={"name": name}).json() == {"value": "v"}
        body = http.get(f"{BASE}/vertices/{vertex_id}").json()
        assert body["properties"] == {name: "v"}

    def test_missing_vertex(self, http):
        """Unknown vertices answer 404 VERTEX_NOT_FOUND."""
        response = http.get(f"{BASE}/vertices/999")

        assert response.status_code == 404
        assert response.json()["error_code"] == "VERTEX_NOT_FOUND"
        assert http.delete(f"{BASE}/vertices/999").status_code == 404

    def test_duplicate_key_index(self, http):
        """Creating a key index twice answers 409 INDEX_EXISTS."""
        assert http.post(f"{BASE}/key-indices", json={"key": "_id"}).status_code == 201

        response = http.post(f"{BASE}/key-indices", json={"key": "_id"})

        assert response.status_code == 409
        assert response.json()["error_code"] == "INDEX_EXISTS"

    def test_malformed_value(self, http):
        """Undecodable values answer 400 INVALID_REQUEST."""
        vertex_id = http.post(f"{BASE}/vertices", json={}).json()["id"]

        response = http.put(
            f"{BASE}/vertices/{vertex_id}/property", json={"name": "f", "value": {"other": 1}}
        )

        assert response.status_code == 400
        assert response.json()["error_code"] == "INVALID_REQUEST"

    def test_index_entries_and_range(self, http):
        """Manual index entries support lookup, range and removal."""
        ids = {}
        for key in ["b", "a", "c"]:
            ids[key] = http.post(f"{BASE}/vertices", json={}).json()["id"]
            http.post(
                f"{BASE}/indices/node_index/entries",
                json={"vertex": ids[key], "key": "_id", "value": key},
            )

        found = http.get(
            f"{BASE}/indices/node_index/entries", params={"key": "_id", "value": "a"}
        ).json()
        ranged = http.get(
            f"{BASE}/indices/node_index/range", params={"key": "_id", "start": "b", "limit": 5}
        ).json()
        removed = http.delete(
            f"{BASE}/indices/node_index/entries", params={"vertex": ids["a"], "key": "_id"}
        ).json()

        assert found["vertices"] == [ids["a"]]
        assert ranged["vertices"] == [ids["b"], ids["c"]]
        assert removed == {"removed": 1}


class TestTransactions:
    """Tests for server-side transactions."""

    def test_commit(self, http):
        """Writes under a transaction are applied on commit."""
        tx_id = http.post(f"{BASE}/transactions").json()["tx"]
        headers = {TRANSACTION_HEADER: tx_id}
        http.post(f"{BASE}/vertices", json={"properties": {"_id": "u"}}, headers=headers)

        assert http.post(f"{BASE}/transactions/{tx_id}/commit").json()["committed"] is True
        assert http.get(f"{BASE}/").json()["vertices"] == 1

    def test_rollback(self, http):
        """Writes under a rolled back transaction disappear."""
        tx_id = http.post(f"{BASE}/transactions").json()["tx"]
        headers = {TRANSACTION_HEADER: tx_id}
        vertex_id = http.post(
            f"{BASE}/vertices", json={"properties": {"_id": "u"}}, headers=headers
        ).json()["id"]

        assert http.get(f"{BASE}/vertices/{vertex_id}", headers=headers).status_code == 200
        assert http.get(f"{BASE}/vertices/{vertex_id}").status_code == 404

        assert http.delete(f"{BASE}/transactions/{tx_id}").json()["committed"] is False
        assert http.get(f"{BASE}/").json()["vertices"] == 0

    def test_unknown_transaction(self, http):
        """Unknown transaction ids answer 409 TRANSACTION_ERROR."""
        response = http.post(f"{BASE}/transactions/nope/commit")

        assert response.status_code == 409
        assert response.json()["error_code"] == "TRANSACTION_ERROR"
        response = http.get(f"{BASE}/vertices/1", headers={TRANSACTION_HEADER: "nope"})
        assert response.status_code == 409


class TestBatch:
    """Tests for POST /batch."""

    def test_batch_with_aliases(self, http):
        """Later operations reference created vertices by alias."""
        response = http.post(
            f"{BASE}/batch",
            json={
                "operations": [
                    {"create_vertex": {"properties": {"_id": "user1"}, "as": "v"}},
                    {"set_property": {"vertex": "$v", "name": "field0", "value": "x"}},
                    {"index_add": {"index": "node_index", "vertex": "$v", "key": "_id",
                                   "value": "user1"}},
                ]
            },
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        vertex_id = body["results"][0]["id"]
        found = http.get(
            f"{BASE}/indices/node_index/entries", params={"key": "_id", "value": "user1"}
        ).json()
        assert found["vertices"] == [vertex_id]

    def test_failed_batch_applies_nothing(self, http):
        """A failing operation rolls back the whole batch."""
        response = http.post(
            f"{BASE}/batch",
            json={
                "operations": [
                    {"create_vertex": {"properties": {"_id": "user1"}, "as": "v"}},
                    {"set_property": {"vertex": "$missing", "name": "f", "value": "x"}},
                ]
            },
        )

        assert response.status_code == 400
        body = response.json()
        assert body["error_code"] == "BATCH_FAILED"
        assert body["operation"] == 1
        assert http.get(f"{BASE}/").json()["vertices"] == 0

    def test_unknown_operation(self, http):
        """Unknown operation kinds fail the batch."""
        response = http.post(f"{BASE}/batch", json={"operations": [{"explode": {}}]})

        assert response.status_code == 400
        assert response.json()["operation"] == 0


class TestErrorStatus:
    """Tests for error to status mapping."""

    def test_mapping(self):
        """Engine errors map to HTTP statuses and codes."""
        assert error_status(VertexNotFoundError("x")) == (404, "VERTEX_NOT_FOUND")
        assert error_status(PropertyNotFoundError("x")) == (404, "PROPERTY_NOT_FOUND")
        assert error_status(IndexExistsError("x")) == (409, "INDEX_EXISTS")
        assert error_status(StoreClosedError("x")) == (503, "STORE_CLOSED")
        assert error_status(StoreBusyError("x")) == (503, "STORE_BUSY")
        assert error_status(BatchError(2, ValueError("x"))) == (400, "BATCH_FAILED")


class TestRestGraph:
    """Tests for RestGraph against the application."""

    @pytest.fixture
    def graph(self, app):
        """Remote graph over the neo4j mount."""
        graph = RestGraph(f"http://testserver{BASE}", client=TestClient(app))
        yield graph
        graph.shutdown()

    def test_vertex_round_trip(self, graph):
        """Properties keep their types across the wire."""
        vertex = graph.create_vertex({"_id": "user1", "field0": b"\x00\x01"})

        assert graph.get_vertex(vertex.id) == vertex
        assert vertex.get_property("field0") == b"\x00\x01"
        assert vertex.properties() == {"_id": "user1", "field0": b"\x00\x01"}
        assert graph.get_vertices("_id", "user1") == [vertex]

    def test_errors_map_to_engine_types(self, graph):
        """Error codes come back as the engine exception types."""
        vertex = graph.create_vertex()

        with pytest.raises(PropertyNotFoundError):
            vertex.get_property("nope")
        with pytest.raises(VertexNotFoundError):
            graph.remove_vertex(type(vertex)(graph, 999))
        assert graph.get_vertex(999) is None

        graph.create_key_index("_id")
        with pytest.raises(IndexExistsError):
            graph.create_key_index("_id")

    def test_transaction_rollback(self, graph, server_store):
        """Requests inside a RestTransaction are rolled back together."""
        tx = graph.begin_tx()
        vertex = graph.create_vertex({"_id": "user1"})
        graph.index("node_index").add(vertex, "_id", "user1")

        with pytest.raises(TransactionError):
            graph.begin_tx()

        tx.rollback()

        assert not tx.active
        assert server_store.count_vertices() == 0
        assert graph.index("node_index").get("_id", "user1") == []

    def test_transaction_context_commits(self, graph, server_store):
        """A clean RestTransaction block commits."""
        with graph.begin_tx():
            graph.create_vertex({"_id": "user1"})

        assert server_store.count_vertices() == 1

    def test_batch_submit(self, graph):
        """A batch creates and indexes in one request."""
        batch = graph.batch()
        ref = batch.create_vertex({"_id": "user1"})
        batch.set_property(ref, "field0", b"v")
        batch.index_add("node_index", ref, "_id", "user1")

        results = batch.submit()

        (vertex,) = graph.index("node_index").get("_id", "user1")
        assert results[0] == {"id": vertex.id}
        assert vertex.get_property("field0") == b"v"
        assert graph.batch().submit() == []

    def test_closed_graph(self, graph):
        """A shut down RestGraph raises StoreClosedError."""
        graph.shutdown()

        assert graph.closed
        with pytest.raises(StoreClosedError):
            graph.count_vertices()

    @pytest.mark.parametrize("name", ["a/b", "f%41", "sp ace?&x=1"])
    def test_property_names_round_trip(self, graph, name):
        """Property names reach the server unchanged."""
        vertex = graph.create_vertex({"_id": "user1"})

        vertex.set_property(name, b"v")

        assert vertex.get_property(name) == b"v"
        assert vertex.properties() == {"_id": "user1", name: b"v"}
        vertex.remove_property(name)
        assert vertex.property_keys() == ["_id"]


def graph_answering(handler):
    """RestGraph whose server is replaced by handler."""
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return RestGraph("http://engine/db/data", client=client)


class TestUnexpectedResponses:
    """Tests for RestGraph against servers that are not the engine."""

    def test_non_json_body(self):
        """A non-JSON body raises RemoteStoreError."""
        graph = graph_answering(lambda request: httpx.Response(200, text="<html>hi</html>"))

        with pytest.raises(RemoteStoreError):
            graph.count_vertices()
        with pytest.raises(RemoteStoreError):
            graph.create_vertex({"_id": "user1"})

    def test_missing_keys(self):
        """A JSON body without the expected key raises RemoteStoreError."""
        graph = graph_answering(lambda request: httpx.Response(200, json={"status": "ok"}))

        with pytest.raises(RemoteStoreError):
            graph.count_vertices()
        with pytest.raises(RemoteStoreError):
            graph.get_vertices("_id", "user1")
        with pytest.raises(RemoteStoreError):
            graph.begin_tx()
        with pytest.raises(RemoteStoreError):
            graph.index("node_index").range("_id", "a", 5)

    def test_malformed_values(self):
        """Undecodable values and vertex lists raise RemoteStoreError."""
        body = {"value": {"odd": 1}, "properties": [1, 2], "vertices": ["x"]}
        graph = graph_answering(lambda request: httpx.Response(200, json=body))
        vertex = RestVertex(graph, 1)

        with pytest.raises(RemoteStoreError):
            vertex.get_property("field0")
        with pytest.raises(RemoteStoreError):
            vertex.properties()
        with pytest.raises(RemoteStoreError):
            graph.get_vertices("_id", "user1")

    def test_error_without_engine_body(self):
        """Errors without an engine error body raise RemoteStoreError."""
        graph = graph_answering(lambda request: httpx.Response(404, json=["not", "engine"]))

        with pytest.raises(RemoteStoreError, match="HTTP 404"):
            graph.count_vertices()

    def test_store_busy_maps_back(self):
        """503 STORE_BUSY comes back as StoreBusyError."""
        graph = graph_answering(
            lambda request: httpx.Response(
                503, json={"error": "Too many writers waiting", "error_code": "STORE_BUSY"}
            )
        )

        with pytest.raises(StoreBusyError):
            graph.begin_tx()


def wait_for_waiters(gate, count):
    """Block until count writers are queued on the gate."""
    deadline = time.monotonic() + 5
    while gate.waiting < count:
        assert time.monotonic() < deadline, "writer never queued"
        time.sleep(0.01)


def post_in_thread(app, path, results, **kwargs):
    """POST from another thread, appending the response to results."""

    def run():
        results.append(TestClient(app).post(path, **kwargs))

    thread = threading.Thread(target=run)
    thread.start()
    return thread


class TestWriterGate:
    """Tests for serialized write transactions."""

    def test_second_transaction_waits_for_commit(self, app, http):
        """A begin waits until the open transaction commits."""
        first = http.post(f"{BASE}/transactions").json()["tx"]
        results = []
        thread = post_in_thread(app, f"{BASE}/transactions", results)
        wait_for_waiters(app.state.writer_gate, 1)
        assert results == []

        http.post(f"{BASE}/transactions/{first}/commit")
        thread.join(timeout=5)

        assert results[0].status_code == 201
        http.delete(f"{BASE}/transactions/{results[0].json()['tx']}")
        assert not app.state.writer_gate.held

    def test_batch_waits_for_open_transaction(self, app, http, server_store):
        """A batch runs once the open transaction rolls back."""
        tx_id = http.post(f"{BASE}/transactions").json()["tx"]
        http.post(
            f"{BASE}/vertices",
            json={"properties": {"_id": "gone"}},
            headers={TRANSACTION_HEADER: tx_id},
        )
        results = []
        operations = [{"create_vertex": {"properties": {"_id": "kept"}}}]
        thread = post_in_thread(app, f"{BASE}/batch", results, json={"operations": operations})
        wait_for_waiters(app.state.writer_gate, 1)

        http.delete(f"{BASE}/transactions/{tx_id}")
        thread.join(timeout=5)

        assert results[0].status_code == 200
        (vertex,) = server_store.vertices_in_range("_id", "")
        assert vertex.get_property("_id") == "kept"

    def test_too_many_waiting_writers(self, server_store):
        """Writers beyond max_waiting_writers get 503 STORE_BUSY."""
        app = create_app(server_store, mounts=(BASE,), max_waiting_writers=1)
        http = TestClient(app)
        first = http.post(f"{BASE}/transactions").json()["tx"]
        results = []
        thread = post_in_thread(app, f"{BASE}/transactions", results)
        wait_for_waiters(app.state.writer_gate, 1)

        response = http.post(f"{BASE}/transactions")

        assert response.status_code == 503
        assert response.json()["error_code"] == "STORE_BUSY"

        http.delete(f"{BASE}/transactions/{first}")
        thread.join(timeout=5)
        http.delete(f"{BASE}/transactions/{results[0].json()['tx']}")
        app.state.writer_gate.shutdown()

    def test_failed_commit_releases_gate(self, app, http):
        """The gate is released even when the commit fails."""
        tx_id = http.post(f"{BASE}/transactions").json()["tx"]
        app.state.transactions.get(tx_id).failure()

        response = http.post(f"{BASE}/transactions/{tx_id}/commit")

        assert response.status_code == 409
        assert not app.state.writer_gate.held


class TestWriterGateUnit:
    """Tests for WriterGate without HTTP."""

    def test_acquire_and_release(self):
        """An idle gate is taken at once and freed by release()."""
        gate = WriterGate()

        asyncio.run(gate.acquire())
        assert gate.held
        gate.release()

        assert not gate.held
        gate.shutdown()

    def test_cancelled_waiter_hands_gate_back(self):
        """A waiter cancelled while queued never keeps the gate."""
        gate = WriterGate()

        async def cancel_waiter():
            await gate.acquire()
            waiter = asyncio.ensure_future(gate.acquire())
            while gate.waiting == 0:
                await asyncio.sleep(0.01)
            waiter.cancel()
            with pytest.raises(asyncio.CancelledError):
                await waiter
            gate.release()

        asyncio.run(cancel_waiter())

        asyncio.run(asyncio.wait_for(gate.acquire(), timeout=5))
        gate.release()
        gate.shutdown()
