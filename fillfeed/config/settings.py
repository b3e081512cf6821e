"""Configuration management using Pydantic Settings with YAML overlay.

Loading priority: .env → config/settings.yaml → config/settings.{MODE}.yaml
"""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import AliasChoices, BaseModel, Field
from pydantic_settings import BaseSettings

_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
_CONFIG_DIR = _PROJECT_ROOT / "config"

# Manifest order book program on mainnet
MANIFEST_PROGRAM_ID = "MNFSTqtC93rEfYHB6hF82sKdZpUDFWkViLByLd1k1Ms"


class ConfigError(Exception):
    """Required configuration is missing or invalid."""


# --- Nested config models ---


class FeedSettings(BaseModel):
    """Poll loop parameters."""

    program_id: str = MANIFEST_PROGRAM_ID
    poll_interval_s: float = 10.0
    signature_commitment: str = "finalized"
    transaction_commitment: str = "confirmed"
    signature_page_limit: int = 1000  # getSignaturesForAddress max page
    dedup_max_size: int = 1000
    target_market: str = ""  # empty = every market
    request_timeout_s: float = 30.0


class MonitorConfig(BaseModel):
    """Liveness monitor thresholds."""

    stale_timeout_s: float = 300.0  # no successful poll for 5 min → restart
    check_interval_s: float = 60.0


class SupervisorConfig(BaseModel):
    """Restart loop behaviour."""

    restart_backoff_s: float = 5.0
    stop_timeout_s: float = 30.0


class ListenerConfig(BaseModel):
    """Websocket listener server."""

    host: str = "0.0.0.0"
    port: int = 1234
    queue_size: int = 1000  # per-listener backlog before messages are dropped


class MetricsConfig(BaseModel):
    """Prometheus scrape endpoint."""

    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = 9090


# --- Main config class ---


class FeedConfig(BaseSettings):
    """Main configuration for the fill feed."""

    # Runtime
    mode: str = Field(default="prod", alias="MODE")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Ledger RPC
    rpc_url: str = Field(
        default="", validation_alias=AliasChoices("RPC_URL", "NEXT_PUBLIC_RPC_URL")
    )

    # Nested config (loaded from YAML)
    feed: FeedSettings = FeedSettings()
    monitor: MonitorConfig = MonitorConfig()
    supervisor: SupervisorConfig = SupervisorConfig()
    listener: ListenerConfig = ListenerConfig()
    metrics: MetricsConfig = MetricsConfig()

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    def require_rpc_url(self) -> str:
        """Return the RPC URL or raise ConfigError if it is not set."""
        if not self.rpc_url:
            raise ConfigError("RPC_URL (or NEXT_PUBLIC_RPC_URL) is not set")
        return self.rpc_url


def _deep_merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    """Deep merge overlay into base dict. Overlay values win."""
    merged = base.copy()
    for key, value in overlay.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML file, returning empty dict if not found."""
    if not path.exists():
        return {}
    with open(path) as f:
        data = yaml.safe_load(f)
    return data if isinstance(data, dict) else {}


@lru_cache(maxsize=1)
def get_config() -> FeedConfig:
    """Load and return the singleton FeedConfig.

    Loading priority: .env → settings.yaml → settings.{MODE}.yaml
    """
    mode = os.getenv("MODE", "prod")

    base_yaml = _load_yaml(_CONFIG_DIR / "settings.yaml")
    mode_yaml = _load_yaml(_CONFIG_DIR / f"settings.{mode}.yaml")

    merged = _deep_merge(base_yaml, mode_yaml)

    # Env vars take priority via pydantic-settings
    return FeedConfig(**merged)
