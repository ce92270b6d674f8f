"""
Vault configuration

Settings come either from environment variables (optionally seeded from a
``.env`` file) or from a YAML file whose string values may reference
environment variables as ``${VAR_NAME}``.

Environment variables:
    VAULTBOX_CONFIG: Path to a YAML settings file (takes precedence)
    VAULT_DB_PATH: SQLite database path (default: vaultbox.db)
    VAULT_AUTO_LOCK_MINUTES: Inactivity before auto-lock (default: 15)
    VAULT_POLL_INTERVAL_SECONDS: Auto-lock poll interval (default: 60)
    VAULT_API_KEY: Bearer key required on every API call (unset disables the check)
    VAULT_CORS_ORIGINS: Comma separated allowed origins
    HOST / PORT: Bind address for the HTTP server
"""

import os
import re
from dataclasses import dataclass, field, fields
from datetime import timedelta
from typing import Mapping

import yaml
from dotenv import load_dotenv

DEFAULT_CORS_ORIGINS = ["http://localhost:5173"]

_ENV_KEYS = {
    "db_path": "VAULT_DB_PATH",
    "auto_lock_minutes": "VAULT_AUTO_LOCK_MINUTES",
    "poll_interval_seconds": "VAULT_POLL_INTERVAL_SECONDS",
    "api_key": "VAULT_API_KEY",
    "host": "HOST",
    "port": "PORT",
    "cors_origins": "VAULT_CORS_ORIGINS",
}


@dataclass
class VaultSettings:
    """Validated process settings for the vault service."""

    db_path: str = "vaultbox.db"
    auto_lock_minutes: float = 15
    poll_interval_seconds: float = 60
    api_key: str = ""
    host: str = "0.0.0.0"
    port: int = 3000
    cors_origins: list[str] = field(default_factory=lambda: list(DEFAULT_CORS_ORIGINS))

    def __post_init__(self):
        self.auto_lock_minutes = float(self.auto_lock_minutes)
        self.poll_interval_seconds = float(self.poll_interval_seconds)
        self.port = int(self.port)
        if isinstance(self.cors_origins, str):
            self.cors_origins = _split_origins(self.cors_origins)

        if self.auto_lock_minutes <= 0:
            raise ValueError(f"auto_lock_minutes must be positive, got {self.auto_lock_minutes}")
        if self.poll_interval_seconds <= 0:
            raise ValueError(
                f"poll_interval_seconds must be positive, got {self.poll_interval_seconds}"
            )
        if not 0 < self.port < 65536:
            raise ValueError(f"port out of range: {self.port}")

    @property
    def auto_lock_after(self) -> timedelta:
        return timedelta(minutes=self.auto_lock_minutes)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "VaultSettings":
        """
        Build settings from environment variables.

        Args:
            environ: Mapping to read from (defaults to ``os.environ``).
        """
        environ = os.environ if environ is None else environ
        values = {
            name: environ[env_key]
            for name, env_key in _ENV_KEYS.items()
            if environ.get(env_key)
        }
        return cls(**values)

    @classmethod
    def from_file(cls, path: str) -> "VaultSettings":
        """
        Load settings from a YAML file, expanding ``${VAR}`` references.

        Unknown keys are rejected so typos don't silently fall back to defaults.
        """
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"{path}: expected a mapping at the top level")

        data = _expand_env_vars(data)
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"{path}: unknown settings {sorted(unknown)}")
        return cls(**data)


def _split_origins(value: str) -> list[str]:
    return [origin.strip() for origin in value.split(",") if origin.strip()]


def _expand_env_vars(obj):
    """
    Recursively replace ``${VAR_NAME}`` in strings with ``os.environ["VAR_NAME"]``.

    Unknown variables are left as-is.
    """
    if isinstance(obj, str):
        return re.sub(
            r'\$\{(\w+)\}',
            lambda m: os.environ.get(m.group(1), m.group(0)),
            obj
        )
    elif isinstance(obj, dict):
        return {k: _expand_env_vars(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_expand_env_vars(v) for v in obj]
    return obj


def load_settings(config_path: str | None = None) -> VaultSettings:
    """Load settings from ``config_path``, ``$VAULTBOX_CONFIG``, or the environment."""
    load_dotenv(".env")
    path = config_path or os.environ.get("VAULTBOX_CONFIG")
    if path:
        return VaultSettings.from_file(path)
    return VaultSettings.from_env()
