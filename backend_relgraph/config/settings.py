"""
Application settings.

Typed, immutable settings read from environment variables and the project
.env (pydantic-settings). Built once per process by get_settings() and passed
explicitly to the store, service, RPC client and scheduler.
"""

from __future__ import annotations

import json
from functools import lru_cache
from typing import Annotated, Any

from pydantic import AliasChoices, Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from backend_relgraph.config.env import DEFAULT_DB_PATH, ENV_PATH, get_database_url, load_relgraph_env

DEFAULT_INDEXER_INTERVAL_SEC = 15.0
# ERC-20 Transfer(address,address,uint256)
ERC20_TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"


class Settings(BaseSettings):
    """All service configuration. Defaults are safe for local development."""

    model_config = SettingsConfigDict(
        env_file=ENV_PATH,
        env_file_encoding="utf-8",
        env_ignore_empty=True,
        case_sensitive=False,
        extra="ignore",
        frozen=True,
        populate_by_name=True,
    )

    # Storage: DATABASE_URL, else SQLite at DB_PATH
    db_path: str = DEFAULT_DB_PATH
    database_url: str = Field(default="", validate_default=True)

    # Ingestion client
    eth_rpc_url: str = Field(default="", validation_alias=AliasChoices("ETH_RPC_URL", "INFURA_RPC_URL"))
    rpc_timeout_sec: float = Field(default=30.0, gt=0)
    rpc_max_retries: int = Field(default=3, ge=0)
    rpc_max_rate_limit_retries: int = Field(default=5, ge=0)
    rpc_backoff_base_sec: float = Field(default=1.0, ge=0)
    rpc_max_backoff_sec: float = Field(default=30.0, ge=0)

    # Indexer
    indexer_enabled: bool = True
    indexer_interval_sec: float = Field(default=DEFAULT_INDEXER_INTERVAL_SEC, gt=0)
    indexer_stage_offset_sec: float = Field(default=5.0, ge=0)
    indexer_block_batch: int = Field(default=100, ge=1)
    indexer_confirmations: int = Field(default=0, ge=0)
    indexer_start_block: int | None = Field(default=None, ge=0)
    indexer_token_addresses: Annotated[tuple[str, ...], NoDecode] = ()
    transfer_batch_size: int = Field(default=500, ge=1)
    relation_batch_size: int = Field(default=500, ge=1)
    token_prices: Annotated[dict[str, dict[str, Any]], NoDecode] = Field(
        default_factory=dict, validation_alias="TOKEN_PRICES_JSON"
    )

    # Derived layers
    recalc_interval_sec: float = Field(default=3600.0, gt=0)
    cleanup_interval_sec: float = Field(default=86400.0, gt=0)
    relation_retention_days: int = Field(default=90, ge=0)

    # API
    api_host: str = "0.0.0.0"
    api_port: int = Field(default=8001, gt=0, le=65535)
    pipeline_in_api: bool = True
    shutdown_drain_sec: float = Field(default=15.0, ge=0)
    log_level: str = "info"

    @field_validator("database_url", mode="after")
    @classmethod
    def _database_url_from_db_path(cls, v: str, info: ValidationInfo) -> str:
        return get_database_url(v, info.data.get("db_path"))

    @field_validator("eth_rpc_url", mode="after")
    @classmethod
    def _strip_url(cls, v: str) -> str:
        return v.strip()

    @field_validator("indexer_token_addresses", mode="before")
    @classmethod
    def _split_addresses(cls, v: Any) -> Any:
        if isinstance(v, str):
            v = v.split(",")
        return tuple(a.strip().lower() for a in v if a.strip())

    @field_validator("token_prices", mode="before")
    @classmethod
    def _parse_token_prices(cls, v: Any) -> dict[str, dict[str, Any]]:
        if isinstance(v, str):
            try:
                v = json.loads(v)
            except json.JSONDecodeError as e:
                raise ValueError(f"TOKEN_PRICES_JSON must be valid JSON: {e}") from e
        if not isinstance(v, dict):
            raise ValueError("TOKEN_PRICES_JSON must be an object keyed by token address")
        return {str(addr).lower(): dict(p) for addr, p in v.items() if isinstance(p, dict)}

    @property
    def indexer_active(self) -> bool:
        return self.indexer_enabled and bool(self.eth_rpc_url)

    def price_for(self, token_address: str) -> tuple[int, float] | None:
        """Return (decimals, usd_price) for a token, or None if unpriced."""
        entry = self.token_prices.get(token_address.lower())
        if not entry:
            return None
        return int(entry.get("decimals", 18)), float(entry.get("usd", 0.0))


def load_settings() -> Settings:
    """Build Settings from the environment (loads .env into os.environ first)."""
    load_relgraph_env()
    return Settings()


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return process-wide settings (built once)."""
    return load_settings()


def reset_settings_cache() -> None:
    """Drop cached settings so the next get_settings() re-reads the environment. Tests only."""
    get_settings.cache_clear()
