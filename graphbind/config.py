"""
Configuration management for graphbind clients.

Clients are configured by the benchmark harness through string properties
prefixed with the binding name (e.g. "neo4j.url", "titan.mode"). A property
that is not set falls back to the environment variable <BINDING>_<OPTION>
(e.g. NEO4J_URL), then to the binding default.

Invariants:
    - A StoreConfig is immutable once built
    - The mode is fixed for the lifetime of a client
    - from_properties() always returns a validated config

How to change safely:
    - Add new options with defaults that keep existing property files valid
    - Binding specific aliases belong to the binding, not to StoreMode
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from .errors import ConfigurationError

if TYPE_CHECKING:
    from .core.binding import BindingSpec

logger = logging.getLogger(__name__)


class StoreMode(Enum):
    """How a client reaches its backing store."""

    EMBEDDED = "EMBEDDED"
    REMOTE = "REMOTE"
    REMOTE_BATCH = "REMOTE_BATCH"

    @property
    def remote(self) -> bool:
        return self is not StoreMode.EMBEDDED

    @classmethod
    def parse(cls, value: str, aliases: Mapping[str, StoreMode] | None = None) -> StoreMode:
        """Parse a mode name, accepting binding aliases (e.g. REST, BATCH).

        Raises:
            ConfigurationError: If the name is not a known mode or alias
        """
        name = value.strip().upper()
        if aliases and name in aliases:
            return aliases[name]
        try:
            return cls(name)
        except ValueError:
            known = [m.value for m in cls] + sorted(aliases or {})
            raise ConfigurationError(
                f"Invalid mode '{value}'. Must be one of: {', '.join(known)}", option="mode"
            )


class ScanPolicy(Enum):
    """Whether scan runs an index range query or reports not implemented."""

    INDEX_RANGE = "index_range"
    UNSUPPORTED = "unsupported"

    @classmethod
    def parse(cls, value: str) -> ScanPolicy:
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise ConfigurationError(
                f"Invalid scan policy '{value}'. Must be one of: index_range, unsupported",
                option="scan",
            )


def _option(
    binding: str,
    properties: Mapping[str, str],
    option: str,
    default: str | None,
) -> str | None:
    value = properties.get(f"{binding}.{option}")
    if value is None:
        value = os.getenv(f"{binding.upper()}_{option.upper()}", default)
    return value


@dataclass(frozen=True)
class StoreConfig:
    """Backing store configuration of one client.

    Attributes:
        binding: Binding name (neo4j, titan, rexster)
        mode: EMBEDDED, REMOTE or REMOTE_BATCH
        url: Store directory (embedded) or base HTTP URL (remote)
        database: Remote graph name, used in /graphs/<database> paths
        scan: Scan policy
        busy_timeout_ms: Embedded SQLite busy timeout in milliseconds
        wal_mode: Embedded SQLite WAL mode enabled
        request_timeout: Remote request timeout in seconds (None = no timeout)
    """

    binding: str
    mode: StoreMode
    url: str
    database: str = "ycsb"
    scan: ScanPolicy = ScanPolicy.UNSUPPORTED
    busy_timeout_ms: int = 5000
    wal_mode: bool = True
    request_timeout: float | None = None

    @classmethod
    def from_properties(
        cls,
        binding: BindingSpec,
        properties: Mapping[str, str] | None = None,
    ) -> StoreConfig:
        """Load configuration from harness properties, then the environment.

        Raises:
            ConfigurationError: If a value cannot be parsed or is invalid
                for the binding
        """
        properties = properties or {}

        def get(option: str, default: str | None) -> str | None:
            return _option(binding.name, properties, option, default)

        mode = StoreMode.parse(get("mode", binding.default_mode.value), binding.aliases)
        scan = ScanPolicy.parse(get("scan", binding.scan.value))
        try:
            busy_timeout_ms = int(get("busy_timeout_ms", "5000"))
        except ValueError:
            raise ConfigurationError(
                f"{binding.name}.busy_timeout_ms must be an integer", option="busy_timeout_ms"
            )
        timeout = get("request_timeout", None)
        try:
            request_timeout = float(timeout) if timeout else None
        except ValueError:
            raise ConfigurationError(
                f"{binding.name}.request_timeout must be a number of seconds",
                option="request_timeout",
            )

        config = cls(
            binding=binding.name,
            mode=mode,
            url=get("url", binding.default_url) or "",
            database=get("database", binding.default_database) or "",
            scan=scan,
            busy_timeout_ms=busy_timeout_ms,
            wal_mode=(get("wal_mode", "true") or "").lower() == "true",
            request_timeout=request_timeout,
        )
        config.validate(binding)
        return config

    @classmethod
    def from_env(cls, binding: BindingSpec) -> StoreConfig:
        """Load configuration from environment variables only."""
        return cls.from_properties(binding, {})

    def validate(self, binding: BindingSpec) -> None:
        """Validate the configuration against what the binding supports.

        Raises:
            ConfigurationError: If the configuration is invalid
        """
        if self.mode not in binding.modes:
            supported = ", ".join(m.value for m in binding.modes)
            raise ConfigurationError(
                f"Binding '{binding.name}' does not support mode {self.mode.value}. "
                f"Supported: {supported}",
                option="mode",
            )
        if not self.url:
            raise ConfigurationError(f"{binding.name}.url must not be empty", option="url")
        if self.mode.remote and binding.remote_path_needs_database and not self.database:
            raise ConfigurationError(
                f"{binding.name}.database must not be empty", option="database"
            )
        if self.busy_timeout_ms < 0:
            raise ConfigurationError(
                f"{binding.name}.busy_timeout_ms must be >= 0", option="busy_timeout_ms"
            )
        if self.request_timeout is not None and self.request_timeout <= 0:
            raise ConfigurationError(
                f"{binding.name}.request_timeout must be > 0", option="request_timeout"
            )

    def log_config(self) -> None:
        """Log the configuration (without secrets)."""
        logger.info(
            "Store configuration loaded",
            extra={
                "binding": self.binding,
                "mode": self.mode.value,
                "url": self.url,
                "database": self.database,
                "scan": self.scan.value,
                "busy_timeout_ms": self.busy_timeout_ms,
                "wal_mode": self.wal_mode,
                "request_timeout": self.request_timeout,
            },
        )
