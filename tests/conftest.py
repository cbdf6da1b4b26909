"""
Shared fixtures.

Remote modes run against the real FastAPI application: each RestGraph gets
its own fastapi TestClient, so closing one client never affects another.
"""

import os
import tempfile

import pytest
from fastapi.testclient import TestClient

from graphbind.core.connector import reset_shared_graphs
from graphbind.engine.graph_store import GraphStore
from graphbind.engine.http_server import create_app
from graphbind.engine.rest_graph import RestGraph

MOUNTS = ("/db/data", "/graphs/ycsb")


@pytest.fixture(autouse=True)
def isolated_shared_graphs():
    """Start and end every test without shared embedded stores."""
    reset_shared_graphs()
    yield
    reset_shared_graphs()


@pytest.fixture
def data_dir():
    """Create temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture
def store(data_dir):
    """Open an embedded store."""
    store = GraphStore.open(os.path.join(data_dir, "graph"))
    yield store
    store.shutdown()


@pytest.fixture
def server_store(data_dir):
    """Store served by the HTTP application."""
    store = GraphStore.open(os.path.join(data_dir, "server"))
    yield store
    store.shutdown()


@pytest.fixture
def app(server_store):
    """HTTP application serving server_store."""
    app = create_app(server_store, mounts=MOUNTS)
    yield app
    app.state.writer_gate.shutdown()


@pytest.fixture
def http(app):
    """Test client for raw HTTP requests."""
    return TestClient(app)


@pytest.fixture
def remote_factory(app):
    """Remote graph factory for StoreConnector."""

    def factory(url, timeout=None):
        return RestGraph(url, client=TestClient(app), timeout=timeout)

    return factory
