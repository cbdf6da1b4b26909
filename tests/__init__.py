"""
graphbind Test Suite.

This package contains:
- unit/: Unit tests (embedded SQLite engine, no HTTP)
- integration/: Integration tests (FastAPI engine through TestClient)
"""
