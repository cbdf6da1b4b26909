"""
Bindings for the supported graph stores.

Invariants:
    - Binding names are also the property prefixes (neo4j.url, titan.mode)
    - neo4j addresses records through the manual index "node_index";
      titan and rexster through a provisioned key-property index
    - Only neo4j scans; titan and rexster report scan as not implemented
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from .client import GraphClient
from .config import ScanPolicy, StoreMode
from .core.binding import BindingSpec
from .errors import ConfigurationError

NEO4J = BindingSpec(
    name="neo4j",
    key_field="_id",
    index_name="node_index",
    modes=(StoreMode.EMBEDDED, StoreMode.REMOTE, StoreMode.REMOTE_BATCH),
    default_url="data/ycsb",
    scan=ScanPolicy.INDEX_RANGE,
    remote_path="/db/data",
    aliases={"REST": StoreMode.REMOTE, "BATCH": StoreMode.REMOTE_BATCH},
)

TITAN = BindingSpec(
    name="titan",
    key_field="_id",
    index_name=None,
    modes=(StoreMode.EMBEDDED, StoreMode.REMOTE),
    default_url="data/titan/ycsb",
    provision_key_index=True,
    remote_path="/graphs/{database}",
    aliases={"CASSANDRA": StoreMode.REMOTE},
)

REXSTER = BindingSpec(
    name="rexster",
    key_field="id_key",
    index_name=None,
    modes=(StoreMode.REMOTE,),
    default_url="http://127.0.0.1:8182",
    default_mode=StoreMode.REMOTE,
    provision_key_index=True,
    remote_path="/graphs/{database}",
)

BINDINGS: dict[str, BindingSpec] = {b.name: b for b in (NEO4J, TITAN, REXSTER)}


def get_binding(name: str) -> BindingSpec:
    """Look up a binding by name.

    Raises:
        ConfigurationError: If no binding has that name
    """
    try:
        return BINDINGS[name.lower()]
    except KeyError:
        raise ConfigurationError(
            f"Unknown binding '{name}'. Must be one of: {', '.join(BINDINGS)}",
            option="binding",
        )


def create_client(
    name: str,
    properties: Mapping[str, str] | None = None,
    **kwargs: Any,
) -> GraphClient:
    """Create an uninitialized client for a binding.

    Args:
        name: Binding name (neo4j, titan, rexster)
        properties: Harness properties
        **kwargs: Passed to GraphClient (e.g. connector)
    """
    return GraphClient(get_binding(name), properties, **kwargs)
