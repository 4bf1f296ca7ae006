"""Configuration management for topickeys.

Server settings come from TOPICKEYS_* environment variables:
- TOPICKEYS_DB: SQLite path (":memory:" for a shared in-memory database)
- TOPICKEYS_ADMIN_TOKEN: token required by /admin routes
- TOPICKEYS_ENCRYPT_ENABLED: feature flag for encryption
- TOPICKEYS_ENCRYPT_GROUPS: comma separated groups allowed to enable it
- TOPICKEYS_CONSISTENCY_INTERVAL: seconds between reconciler runs (0 disables)
- TOPICKEYS_CONSISTENCY_WORKERS: threads used by the reconciler

Client settings live in ~/.config/topickeys/config.yaml:
- url: server base URL
- username: the acting user
- identity_dir: where the local identity store keeps its files
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

DEFAULT_SERVER_URL = "http://localhost:8000"


def _env_flag(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.lower() in ("1", "true", "yes")


def _env_list(name: str) -> tuple[str, ...]:
    value = os.environ.get(name, "")
    return tuple(part.strip() for part in value.split(",") if part.strip())


# --- Server settings ---


@dataclass(frozen=True)
class ServerSettings:
    """Server-side settings, read from the environment."""

    admin_token: str | None = None
    encrypt_enabled: bool = True
    encrypt_groups: tuple[str, ...] = ()
    consistency_interval: float = 3600.0
    consistency_workers: int = 1

    @classmethod
    def from_env(cls) -> "ServerSettings":
        return cls(
            admin_token=os.environ.get("TOPICKEYS_ADMIN_TOKEN") or None,
            encrypt_enabled=_env_flag("TOPICKEYS_ENCRYPT_ENABLED", default=True),
            encrypt_groups=_env_list("TOPICKEYS_ENCRYPT_GROUPS"),
            consistency_interval=float(os.environ.get("TOPICKEYS_CONSISTENCY_INTERVAL", "3600")),
            consistency_workers=max(1, int(os.environ.get("TOPICKEYS_CONSISTENCY_WORKERS", "1"))),
        )


# --- Client config ---


def get_config_dir() -> Path:
    """Get the configuration directory path."""
    config_home = os.environ.get("XDG_CONFIG_HOME", os.path.expanduser("~/.config"))
    return Path(config_home) / "topickeys"


def get_config_path() -> Path:
    """Get the client config file path."""
    return get_config_dir() / "config.yaml"


def default_identity_dir() -> Path:
    return get_config_dir() / "identity"


@dataclass
class ClientConfig:
    """Client CLI configuration."""

    url: str = DEFAULT_SERVER_URL
    username: str | None = None
    identity_dir: str = field(default_factory=lambda: str(default_identity_dir()))

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"url": self.url, "identity_dir": self.identity_dir}
        if self.username:
            data["username"] = self.username
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "ClientConfig":
        return cls(
            url=data.get("url", DEFAULT_SERVER_URL),
            username=data.get("username"),
            identity_dir=data.get("identity_dir") or str(default_identity_dir()),
        )

    def save(self) -> None:
        """Save config to file."""
        path = get_config_path()
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            yaml.safe_dump(self.to_dict(), f, default_flow_style=False, sort_keys=False)

    @classmethod
    def load(cls) -> "ClientConfig":
        """Load config from file, or return defaults."""
        path = get_config_path()
        if not path.exists():
            return cls()

        with open(path) as f:
            data = yaml.safe_load(f) or {}
        return cls.from_dict(data)

    @classmethod
    def exists(cls) -> bool:
        """Check if config file exists."""
        return get_config_path().exists()
