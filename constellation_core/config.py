"""
TOML-based configuration for the Constellation signature server.

Loads settings from a TOML file and/or environment variables.
Environment variables take precedence over file values.

Usage:
    from constellation_core.config import load_config
    cfg = load_config("constellation.toml")
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

from constellation_core.transaction import TESTNET_PASSPHRASE


@dataclass
class ServerConfig:
    """HTTP listener settings."""
    host: str = "127.0.0.1"
    port: int = 4711


@dataclass
class APIConfig:
    """REST API hardening."""
    api_key: str = ""                 # require this key on POST/PUT/DELETE (empty = no auth)
    rate_limit_rpm: int = 120          # max requests per minute per IP (0 = unlimited)
    cors_origins: list[str] = field(default_factory=list)
    max_body_bytes: int = 262_144
    tls_cert: str = ""
    tls_key: str = ""


@dataclass
class LedgerConfig:
    """Where account snapshots come from and where signed transactions go."""
    backend: str = "horizon"          # "horizon" or "memory"
    horizon_url: str = "https://horizon-testnet.stellar.org"
    network_passphrase: str = TESTNET_PASSPHRASE
    timeout_seconds: float = 30.0
    accounts_file: str = ""           # memory backend: JSON list of account documents


@dataclass
class StorageConfig:
    path: str = "data/constellation.db"


@dataclass
class CoordinationConfig:
    """Pending-state lifetime and push-stream tuning."""
    pending_ttl_seconds: int = 7 * 24 * 3600   # 0 = keep forever
    sweep_interval_seconds: int = 300
    subscriber_queue_size: int = 256
    keepalive_seconds: float = 15.0


@dataclass
class LoggingConfig:
    level: str = "INFO"
    format: str = "human"   # "human" or "json"
    file: str | None = None
    access_log: bool = False


@dataclass
class ConstellationConfig:
    """Top-level configuration container."""
    server: ServerConfig = field(default_factory=ServerConfig)
    api: APIConfig = field(default_factory=APIConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    coordination: CoordinationConfig = field(default_factory=CoordinationConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _merge(dc: Any, raw: dict[str, Any]) -> None:
    """Merge a raw dict into a dataclass instance (in-place)."""
    for key, value in raw.items():
        key_under = key.replace("-", "_")
        if hasattr(dc, key_under):
            setattr(dc, key_under, value)


def _split(value: str) -> list[str]:
    return [v.strip() for v in value.split(",") if v.strip()]


def load_config(path: str | None = None) -> ConstellationConfig:
    """
    Load configuration from a TOML file, then overlay environment variables.

    Env-var mapping:
        CONSTELLATION_HOST           -> server.host
        CONSTELLATION_PORT           -> server.port
        CONSTELLATION_API_KEY        -> api.api_key
        CONSTELLATION_CORS_ORIGINS   -> api.cors_origins   (comma-separated)
        CONSTELLATION_LEDGER         -> ledger.backend
        CONSTELLATION_HORIZON_URL    -> ledger.horizon_url
        CONSTELLATION_NETWORK        -> ledger.network_passphrase
        CONSTELLATION_ACCOUNTS_FILE  -> ledger.accounts_file
        CONSTELLATION_DB_PATH        -> storage.path
        CONSTELLATION_PENDING_TTL    -> coordination.pending_ttl_seconds
        CONSTELLATION_LOG_LEVEL      -> logging.level
        CONSTELLATION_LOG_FMT        -> logging.format
    """
    cfg = ConstellationConfig()

    # ── TOML file ────────────────────────────────────────────────
    if path is not None:
        p = Path(path)
        if p.exists():
            with open(p, "rb") as f:
                data = tomllib.load(f)
            for section_name, section_dc in [
                ("server", cfg.server),
                ("api", cfg.api),
                ("ledger", cfg.ledger),
                ("storage", cfg.storage),
                ("coordination", cfg.coordination),
                ("logging", cfg.logging),
            ]:
                if section_name in data:
                    _merge(section_dc, data[section_name])

    # ── Environment variable overrides ───────────────────────────
    if v := os.environ.get("CONSTELLATION_HOST"):
        cfg.server.host = v
    if v := os.environ.get("CONSTELLATION_PORT"):
        cfg.server.port = int(v)
    if v := os.environ.get("CONSTELLATION_API_KEY"):
        cfg.api.api_key = v
    if v := os.environ.get("CONSTELLATION_CORS_ORIGINS"):
        cfg.api.cors_origins = _split(v)
    if v := os.environ.get("CONSTELLATION_LEDGER"):
        cfg.ledger.backend = v.lower()
    if v := os.environ.get("CONSTELLATION_HORIZON_URL"):
        cfg.ledger.horizon_url = v
    if v := os.environ.get("CONSTELLATION_NETWORK"):
        cfg.ledger.network_passphrase = v
    if v := os.environ.get("CONSTELLATION_ACCOUNTS_FILE"):
        cfg.ledger.accounts_file = v
    if v := os.environ.get("CONSTELLATION_DB_PATH"):
        cfg.storage.path = v
    if v := os.environ.get("CONSTELLATION_PENDING_TTL"):
        cfg.coordination.pending_ttl_seconds = int(v)
    if v := os.environ.get("CONSTELLATION_LOG_LEVEL"):
        cfg.logging.level = v.upper()
    if v := os.environ.get("CONSTELLATION_LOG_FMT"):
        cfg.logging.format = v

    return cfg
