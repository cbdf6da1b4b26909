"""JSON encoding of property values for the remote engine.

Text and numbers travel as plain JSON; byte strings travel as
``{"$bytes": "<base64>"}``.
"""

from __future__ import annotations

import base64
from typing import Any

from .graph_store import PropertyValue, check_value

BYTES_TAG = "$bytes"
TRANSACTION_HEADER = "X-Transaction-ID"


def encode_value(value: PropertyValue) -> Any:
    check_value(value)
    if isinstance(value, bytes):
        return {BYTES_TAG: base64.b64encode(value).decode("ascii")}
    return value


def decode_value(data: Any) -> PropertyValue:
    if isinstance(data, dict):
        if BYTES_TAG not in data:
            raise ValueError(f"Malformed property value: {data!r}")
        return base64.b64decode(data[BYTES_TAG])
    return check_value(data)


def encode_properties(properties: dict[str, PropertyValue]) -> dict[str, Any]:
    return {name: encode_value(value) for name, value in properties.items()}


def decode_properties(data: dict[str, Any]) -> dict[str, PropertyValue]:
    return {name: decode_value(value) for name, value in data.items()}
