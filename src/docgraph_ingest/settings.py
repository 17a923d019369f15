from __future__ import annotations

from typing import Any, Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class DocgraphSettings(BaseSettings):
    """Configuration for the document graph ingester.

    Environment variables are prefixed with DOCGRAPH_. `filters` is read as a
    JSON list, e.g. ``DOCGRAPH_FILTERS='[{"field": "act.data.creator", "value": "alice"}]'``.
    """

    model_config = SettingsConfigDict(env_prefix="DOCGRAPH_", extra="ignore")

    # --- Core ---
    log_level: str = Field(default="INFO", description="Python logging level")

    # --- Event feed (Hyperion stream) ---
    feed_url: str = "https://testnet.telos.caleos.io"
    contract: str = "docs.hypha"
    action: str = "created"
    account: str = "docs.hypha"
    start_from: str = Field(
        default="2020-08-15T00:00:00.000Z",
        description="ISO timestamp, block number, or 0 for the current tip",
    )
    read_until: str = Field(default="0", description="0 streams indefinitely")
    filters: list[dict[str, Any]] = Field(default_factory=list)
    reconnect_attempts: int = 5
    feed_queue_size: int = 64

    # --- Chain state query ---
    chain_url: str = "https://test.telos.kitchen"
    scope: str | None = Field(default=None, description="Defaults to the contract")
    fetch_edges: bool = True
    chain_timeout: float = Field(default=10.0, gt=0, description="Seconds per get_table_rows call")

    # --- Graph DB (Neo4j) ---
    neo4j_uri: str = "bolt://localhost:7687"
    neo4j_user: str | None = None
    neo4j_password: str | None = None
    neo4j_database: str = "neo4j"

    # --- Pipeline ---
    in_flight_window: int = Field(default=8, ge=1)
    resolve_max_attempts: int = Field(default=3, ge=1)
    write_max_attempts: int = Field(default=5, ge=1)
    backoff_initial: float = 0.5
    backoff_max: float = 10.0
    on_unresolved: Literal["drop", "fatal"] = "drop"
    on_resolve_error: Literal["retain", "drop"] = "retain"
    shutdown_timeout: float = 30.0


settings = DocgraphSettings()
