"""Tests for topickeys configuration management."""

import tempfile
from pathlib import Path

import pytest

from topickeys.config import DEFAULT_SERVER_URL, ClientConfig, ServerSettings


@pytest.fixture
def temp_config_dir(monkeypatch):
    """Use a temporary directory for config."""
    with tempfile.TemporaryDirectory() as tmpdir:
        monkeypatch.setenv("XDG_CONFIG_HOME", tmpdir)
        yield Path(tmpdir) / "topickeys"


class TestClientConfig:
    def test_default_values(self, temp_config_dir):
        config = ClientConfig()
        assert config.url == DEFAULT_SERVER_URL
        assert config.username is None
        assert config.identity_dir == str(temp_config_dir / "identity")

    def test_load_without_file(self, temp_config_dir):
        assert not ClientConfig.exists()
        assert ClientConfig.load() == ClientConfig()

    def test_save_and_load(self, temp_config_dir):
        ClientConfig(url="https://forum.example.com", username="alice", identity_dir="/tmp/keys").save()

        assert ClientConfig.exists()
        loaded = ClientConfig.load()
        assert loaded.url == "https://forum.example.com"
        assert loaded.username == "alice"
        assert loaded.identity_dir == "/tmp/keys"

    def test_username_omitted_when_unset(self, temp_config_dir):
        assert "username" not in ClientConfig().to_dict()


class TestServerSettings:
    def test_defaults(self, monkeypatch):
        for name in (
            "TOPICKEYS_ADMIN_TOKEN",
            "TOPICKEYS_ENCRYPT_ENABLED",
            "TOPICKEYS_ENCRYPT_GROUPS",
            "TOPICKEYS_CONSISTENCY_INTERVAL",
            "TOPICKEYS_CONSISTENCY_WORKERS",
        ):
            monkeypatch.delenv(name, raising=False)

        settings = ServerSettings.from_env()
        assert settings.admin_token is None
        assert settings.encrypt_enabled is True
        assert settings.encrypt_groups == ()
        assert settings.consistency_interval == 3600
        assert settings.consistency_workers == 1

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("TOPICKEYS_ENCRYPT_ENABLED", "no")
        monkeypatch.setenv("TOPICKEYS_ENCRYPT_GROUPS", "staff, admins,,")
        monkeypatch.setenv("TOPICKEYS_CONSISTENCY_INTERVAL", "30")
        monkeypatch.setenv("TOPICKEYS_CONSISTENCY_WORKERS", "0")

        settings = ServerSettings.from_env()
        assert settings.admin_token == "test-admin-token"
        assert settings.encrypt_enabled is False
        assert settings.encrypt_groups == ("staff", "admins")
        assert settings.consistency_interval == 30
        assert settings.consistency_workers == 1
