"""
Error types for graphbind.

This module defines the exceptions raised below the CRUD+scan facade:
- GraphBindError: Base exception
- ConfigurationError: Invalid binding properties
- InitializationError: Backing store could not be opened
- NotInitializedError: Operation on a client without a connection
- RecordNotFoundError: No entity is indexed under a key
- FieldNotFoundError: Entity has no such field
- MutationError: Field value could not be written
- UnsupportedOperationError: Binding does not support the operation

Engine failures (GraphStoreError and subclasses) are defined in
graphbind.engine.graph_store.

Invariants:
    - All errors inherit from GraphBindError
    - Errors carry a code for programmatic handling
    - The facade converts every error to a Status; only init() raises
"""

from __future__ import annotations

from typing import Any


class GraphBindError(Exception):
    """Base exception for all graphbind errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "GRAPHBIND_ERROR"
        self.details = details or {}


class ConfigurationError(GraphBindError):
    """Binding properties are invalid.

    Raised when:
    - Mode is unknown or not supported by the binding
    - Scan policy is unknown
    - URL is empty
    """

    def __init__(self, message: str, option: str | None = None) -> None:
        super().__init__(message, code="CONFIGURATION_ERROR", details={"option": option})
        self.option = option


class InitializationError(GraphBindError):
    """Backing store connection could not be acquired."""

    def __init__(self, message: str, binding: str, location: str | None = None) -> None:
        super().__init__(
            message,
            code="INITIALIZATION_ERROR",
            details={"binding": binding, "location": location},
        )
        self.binding = binding
        self.location = location


class NotInitializedError(GraphBindError):
    """Client has no connection (init() not called or failed)."""

    def __init__(self, binding: str) -> None:
        super().__init__(
            f"Client for binding '{binding}' is not initialized",
            code="NOT_INITIALIZED",
            details={"binding": binding},
        )
        self.binding = binding


class RecordNotFoundError(GraphBindError):
    """No entity is indexed under the key."""

    def __init__(self, key: str) -> None:
        super().__init__(f"No record with key '{key}'", code="NOT_FOUND", details={"key": key})
        self.key = key


class FieldNotFoundError(GraphBindError):
    """Entity has no field with the requested name."""

    def __init__(self, field_name: str, key: str | None = None) -> None:
        record = f"Record '{key}'" if key is not None else "Record"
        super().__init__(
            f"{record} has no field '{field_name}'",
            code="FIELD_NOT_FOUND",
            details={"key": key, "field": field_name},
        )
        self.key = key
        self.field_name = field_name


class MutationError(GraphBindError):
    """A field value could not be written.

    Raised when:
    - The value is not bytes-like or text
    - The engine rejected the write
    """

    def __init__(self, message: str, field_name: str | None = None) -> None:
        super().__init__(message, code="MUTATION_ERROR", details={"field": field_name})
        self.field_name = field_name


class UnsupportedOperationError(GraphBindError):
    """Operation is not supported by the binding."""

    def __init__(self, operation: str, binding: str) -> None:
        super().__init__(
            f"Binding '{binding}' does not support {operation}",
            code="NOT_IMPLEMENTED",
            details={"operation": operation, "binding": binding},
        )
        self.operation = operation
        self.binding = binding
