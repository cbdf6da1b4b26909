"""
Per-store constants of a binding.

A BindingSpec captures everything that differs between the supported
graph stores: the key field, how keys are indexed, the supported modes
and their aliases, default locations and whether scan is available.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

from ..config import ScanPolicy, StoreConfig, StoreMode


@dataclass(frozen=True)
class BindingSpec:
    """Constants of one graph store binding.

    Attributes:
        name: Binding name, also the property prefix
        key_field: Property holding the record key on each vertex
        index_name: Manual index name, or None for a key-property index
        modes: Supported modes
        default_url: URL used when <name>.url is not set
        default_mode: Mode used when <name>.mode is not set
        scan: Default scan policy
        provision_key_index: Create the key-property index when connecting
        remote_path: Path appended to the URL in remote modes
            ({database} is replaced by the configured database)
        default_database: Database used when <name>.database is not set
        aliases: Extra mode names accepted by this binding
    """

    name: str
    key_field: str
    index_name: str | None
    modes: tuple[StoreMode, ...]
    default_url: str
    default_mode: StoreMode = StoreMode.EMBEDDED
    scan: ScanPolicy = ScanPolicy.UNSUPPORTED
    provision_key_index: bool = False
    remote_path: str = "/db/data"
    default_database: str = "ycsb"
    aliases: Mapping[str, StoreMode] = field(default_factory=dict, hash=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "aliases", MappingProxyType(dict(self.aliases)))

    @property
    def manual_index(self) -> bool:
        return self.index_name is not None

    @property
    def remote_path_needs_database(self) -> bool:
        return "{database}" in self.remote_path

    def remote_url(self, config: StoreConfig) -> str:
        """Base URL of the graph API for a remote-mode config."""
        return config.url.rstrip("/") + self.remote_path.format(database=config.database)
