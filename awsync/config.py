"""Configuration loading for awsync."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


@dataclass
class ServerConfig:
    """The remote event-store server used as the default destination."""

    host: str = "localhost"
    port: int = 5600
    client_name: str = "aw-sync"
    timeout_seconds: float = 30.0
    max_retries: int = 3


@dataclass
class SyncConfig:
    """Options for a sync pass."""

    workers: int = 4
    bucket_timeout_seconds: float = 300.0


@dataclass
class StagingConfig:
    """The sync folder holding one staging datastore per host."""

    sync_directory: str = "~/ActivityWatchSync"
    pattern: str = "*.db"

    @property
    def path(self) -> Path:
        return Path(self.sync_directory).expanduser()


@dataclass
class Config:
    server: ServerConfig = field(default_factory=ServerConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    staging: StagingConfig = field(default_factory=StagingConfig)


def _get_env(key: str, default: Any = None) -> Any:
    """Get environment variable with AWSYNC_ prefix."""
    return os.environ.get(f"AWSYNC_{key}", default)


def _apply_env_overrides(config: Config) -> Config:
    """Apply environment variable overrides to config."""
    # Server overrides
    if host := _get_env("SERVER_HOST"):
        config.server.host = host
    if port := _get_env("SERVER_PORT"):
        config.server.port = int(port)
    if client_name := _get_env("CLIENT_NAME"):
        config.server.client_name = client_name

    # Sync overrides
    if workers := _get_env("SYNC_WORKERS"):
        config.sync.workers = int(workers)
    if timeout := _get_env("SYNC_BUCKET_TIMEOUT"):
        config.sync.bucket_timeout_seconds = float(timeout)

    # Staging overrides
    if sync_directory := _get_env("SYNC_DIRECTORY"):
        config.staging.sync_directory = sync_directory

    return config


def load_config(config_path: str | Path | None = None) -> Config:
    """Load configuration from YAML file with environment variable overrides.

    Args:
        config_path: Path to YAML config file. If None, uses default config.

    Returns:
        Loaded Config object.
    """
    config = Config()

    if config_path:
        path = Path(config_path).expanduser()
        if path.exists():
            with open(path) as f:
                data = yaml.safe_load(f) or {}

            if "server" in data:
                server_data = data["server"]
                config.server = ServerConfig(
                    host=server_data.get("host", config.server.host),
                    port=int(server_data.get("port", config.server.port)),
                    client_name=server_data.get(
                        "client_name", config.server.client_name
                    ),
                    timeout_seconds=float(server_data.get(
                        "timeout_seconds", config.server.timeout_seconds
                    )),
                    max_retries=int(server_data.get(
                        "max_retries", config.server.max_retries
                    )),
                )

            if "sync" in data:
                sync_data = data["sync"]
                config.sync = SyncConfig(
                    workers=int(sync_data.get("workers", config.sync.workers)),
                    bucket_timeout_seconds=float(sync_data.get(
                        "bucket_timeout_seconds", config.sync.bucket_timeout_seconds
                    )),
                )

            if "staging" in data:
                staging_data = data["staging"]
                config.staging = StagingConfig(
                    sync_directory=staging_data.get(
                        "sync_directory", config.staging.sync_directory
                    ),
                    pattern=staging_data.get("pattern", config.staging.pattern),
                )

    # Apply environment variable overrides
    config = _apply_env_overrides(config)

    if config.sync.workers < 1:
        raise ValueError(f"sync.workers must be at least 1, got {config.sync.workers}")

    return config
