"""Result codes returned by every CRUD+scan operation."""

from __future__ import annotations

from enum import IntEnum


class Status(IntEnum):
    """Operation outcome reported to the benchmark harness."""

    OK = 0
    ERROR = 1
    NOT_FOUND = 2
    NOT_IMPLEMENTED = 3
    NOT_INITIALIZED = 4

    @property
    def ok(self) -> bool:
        return self is Status.OK
