"""
Configuration for the remote graph engine server.
"""

from pydantic import Field
from pydantic_settings import BaseSettings


class ServerSettings(BaseSettings):
    """Remote engine server configuration."""

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=7474)

    # Store served by this process
    data_dir: str = Field(default="data/server")
    busy_timeout_ms: int = Field(default=5000)
    wal_mode: bool = Field(default=True)

    # URL prefixes the graph API is mounted under. "/db/data" serves neo4j
    # clients, "/graphs/<database>" serves titan and rexster clients.
    mounts: list[str] = Field(default=["/db/data", "/graphs/ycsb"])

    # Transactions and batches allowed to queue for the writer gate
    max_waiting_writers: int = Field(default=256, ge=1)

    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json", description="json or text")

    model_config = {"env_prefix": "GRAPHBIND_SERVER_"}
