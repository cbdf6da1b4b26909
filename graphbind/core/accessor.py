"""
Record field access on vertices.

A record is a vertex: the key lives in the binding's key field, every other
property is a field. Field values are bytes; text passed in is stored as its
UTF-8 encoding.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

from ..engine.graph_store import PropertyNotFoundError
from ..errors import FieldNotFoundError, MutationError


def to_field_value(value: Any) -> bytes:
    """Convert a stored property value to a field value."""
    if isinstance(value, bytes):
        return value
    if isinstance(value, str):
        return value.encode("utf-8")
    return str(value).encode("utf-8")


def from_field_value(name: str, value: Any) -> bytes:
    """Convert a caller-supplied field value to the stored property value.

    Raises:
        MutationError: If the value is neither bytes-like nor text
    """
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    if isinstance(value, str):
        return value.encode("utf-8")
    raise MutationError(
        f"Field '{name}' has unsupported value type {type(value).__name__}", field_name=name
    )


class RecordAccessor:
    """Reads and writes the fields of a record vertex.

    Attributes:
        key_field: Property holding the record key (not a field)
        read_all_by_default: Whether read(vertex, None) returns every field
            (EMBEDDED) or none (REMOTE, REMOTE_BATCH)
    """

    def __init__(self, key_field: str, read_all_by_default: bool = True) -> None:
        self.key_field = key_field
        self.read_all_by_default = read_all_by_default

    def get_field(self, vertex: Any, name: str) -> bytes:
        """Read one field.

        Raises:
            FieldNotFoundError: If the vertex has no such field
        """
        try:
            return to_field_value(vertex.get_property(name))
        except PropertyNotFoundError:
            raise FieldNotFoundError(name)

    def set_field(self, vertex: Any, name: str, value: Any) -> None:
        vertex.set_property(name, from_field_value(name, value))

    def write(self, vertex: Any, values: Mapping[str, Any]) -> None:
        """Write fields in the caller's order; a repeated name keeps the last value."""
        for name, value in values.items():
            self.set_field(vertex, name, value)

    def field_names(self, vertex: Any) -> list[str]:
        return [name for name in vertex.property_keys() if name != self.key_field]

    def read(self, vertex: Any, fields: Iterable[str] | None) -> dict[str, bytes]:
        """Read the requested fields, or the default set when fields is None."""
        if fields is None:
            if not self.read_all_by_default:
                return {}
            return {
                name: to_field_value(value)
                for name, value in vertex.properties().items()
                if name != self.key_field
            }
        return {name: self.get_field(vertex, name) for name in fields}
