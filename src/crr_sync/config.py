"""Configuration loading for crr-sync."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Union

import yaml


@dataclass
class ReplicaConfig:
    """Where a replica lives and who it is."""

    db_path: str = ":memory:"
    site_id: Optional[str] = None  # None = generate on first open
    journal_mode: Optional[str] = "wal"


@dataclass
class SyncConfig:
    """Configuration for change export and sync passes."""

    batch_size: int = 100
    incremental: bool = True  # resume from the version last pulled from a peer

    def __post_init__(self):
        if self.batch_size < 1:
            raise ValueError(f"sync.batch_size must be positive, got {self.batch_size}")


@dataclass
class LoggingConfig:
    """Root logging settings."""

    level: str = "INFO"


@dataclass
class Config:
    replica: ReplicaConfig = field(default_factory=ReplicaConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _get_env(key: str, default: Any = None) -> Any:
    """Get environment variable with CRR_ prefix."""
    return os.environ.get(f"CRR_{key}", default)


def _apply_env_overrides(config: Config) -> Config:
    """Apply environment variable overrides to config."""
    if db_path := _get_env("DB_PATH"):
        config.replica.db_path = db_path
    if site_id := _get_env("SITE_ID"):
        config.replica.site_id = site_id

    batch_size = _get_env("SYNC_BATCH_SIZE")
    incremental = _get_env("SYNC_INCREMENTAL")
    if batch_size or incremental:
        config.sync = SyncConfig(
            batch_size=int(batch_size) if batch_size else config.sync.batch_size,
            incremental=(
                incremental.lower() in ("true", "1", "yes")
                if incremental
                else config.sync.incremental
            ),
        )

    if level := _get_env("LOG_LEVEL"):
        config.logging.level = level

    return config


def load_config(config_path: Union[str, Path, None] = None) -> Config:
    """Load configuration from YAML file with environment variable overrides.

    Args:
        config_path: Path to YAML config file. If None or missing, defaults are used.

    Returns:
        Loaded Config object.
    """
    config = Config()

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                data = yaml.safe_load(f) or {}

            if "replica" in data:
                replica_data = data["replica"]
                config.replica = ReplicaConfig(
                    db_path=str(replica_data.get("db_path", config.replica.db_path)),
                    site_id=replica_data.get("site_id", config.replica.site_id),
                    journal_mode=replica_data.get(
                        "journal_mode", config.replica.journal_mode
                    ),
                )

            if "sync" in data:
                sync_data = data["sync"]
                config.sync = SyncConfig(
                    batch_size=sync_data.get("batch_size", config.sync.batch_size),
                    incremental=sync_data.get("incremental", config.sync.incremental),
                )

            if "logging" in data:
                config.logging = LoggingConfig(
                    level=data["logging"].get("level", config.logging.level)
                )

    config = _apply_env_overrides(config)

    return config


def setup_logging(config: Optional[LoggingConfig] = None) -> None:
    """Configure root logging for crr-sync.

    Args:
        config: Logging settings, usually Config.logging. Defaults to INFO.

    Raises:
        ValueError: If the level name is not a logging level.
    """
    level = (config or LoggingConfig()).level
    numeric = getattr(logging, str(level).upper(), None)
    if not isinstance(numeric, int):
        raise ValueError(f"Unknown log level: {level}")

    logging.basicConfig(
        level=numeric,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
