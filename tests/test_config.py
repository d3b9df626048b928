"""Tests for the persistent configuration."""

from __future__ import annotations

import json
import stat

import pytest

from labconnect.config import Config, default_config_path
from labconnect.exceptions import ConfigError


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    monkeypatch.delenv("GITLAB_TOKEN", raising=False)
    monkeypatch.delenv("GITLAB_HOST", raising=False)


@pytest.fixture
def config_path(tmp_path):
    return tmp_path / "labconnect" / "config.json"


class TestDefaultConfigPath:
    def test_xdg_config_home(self, monkeypatch, tmp_path):
        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path))
        assert default_config_path() == tmp_path / "labconnect" / "config.json"

    def test_home_fallback(self, monkeypatch, tmp_path):
        monkeypatch.delenv("XDG_CONFIG_HOME", raising=False)
        monkeypatch.setenv("HOME", str(tmp_path))
        expected = tmp_path / ".config" / "labconnect" / "config.json"
        assert default_config_path() == expected


class TestConfigValues:
    """Test host-scoped lookups and environment overrides."""

    def test_missing_file_is_empty(self, config_path):
        config = Config(config_path)
        assert config.path == config_path
        assert config.get("token") is None
        assert config.default_host() == "gitlab.com"

    def test_host_value_overrides_global(self, config_path):
        config = Config(config_path)
        config.set("api_protocol", "https")
        config.set("api_protocol", "http", "gitlab.example.com")
        assert config.get("api_protocol", "gitlab.example.com") == "http"
        assert config.get("api_protocol", "other.example.com") == "https"
        assert config.get("api_protocol") == "https"

    def test_env_overrides(self, config_path, monkeypatch):
        config = Config(config_path)
        config.set("token", "file-token", "gitlab.example.com")
        config.set("host", "gitlab.example.com")
        monkeypatch.setenv("GITLAB_TOKEN", "env-token")
        monkeypatch.setenv("GITLAB_HOST", "env.example.com")
        assert config.get("token", "gitlab.example.com") == "env-token"
        assert config.default_host() == "env.example.com"

    def test_sso_domains_list_and_string(self, config_path):
        config = Config(config_path)
        config.set("sso_domains", ["idp.example.com"], "a.example.com")
        config.set("sso_domains", "idp.example.com, sso.example.org,", "b.example.com")
        assert config.sso_domains("a.example.com") == ["idp.example.com"]
        assert config.sso_domains("b.example.com") == [
            "idp.example.com",
            "sso.example.org",
        ]
        assert config.sso_domains("c.example.com") == []

    def test_add_sso_domain(self, config_path):
        config = Config(config_path)
        assert config.add_sso_domain("gitlab.example.com", "idp.example.com") is True
        assert config.add_sso_domain("gitlab.example.com", "IDP.example.com") is False
        assert config.add_sso_domain("gitlab.example.com", "sso.example.org") is True
        assert config.sso_domains("gitlab.example.com") == [
            "idp.example.com",
            "sso.example.org",
        ]


class TestConfigFile:
    """Test reading and writing the JSON file."""

    def test_save_and_reload(self, config_path):
        config = Config(config_path)
        config.set("host", "gitlab.example.com")
        config.set("token", "secret", "gitlab.example.com")
        config.save()

        mode = stat.S_IMODE(config_path.stat().st_mode)
        assert mode == 0o600
        data = json.loads(config_path.read_text())
        assert data == {
            "host": "gitlab.example.com",
            "hosts": {"gitlab.example.com": {"token": "secret"}},
        }

        reloaded = Config(config_path)
        assert reloaded.get("token", "gitlab.example.com") == "secret"

    def test_invalid_json(self, config_path):
        config_path.parent.mkdir(parents=True)
        config_path.write_text("{not json")
        with pytest.raises(ConfigError, match="Failed to read config"):
            Config(config_path)

    def test_not_an_object(self, config_path):
        config_path.parent.mkdir(parents=True)
        config_path.write_text("[]")
        with pytest.raises(ConfigError, match="must contain a JSON object"):
            Config(config_path)

    def test_save_failure(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("")
        config = Config(blocker / "config.json")
        config.set("host", "gitlab.example.com")
        with pytest.raises(ConfigError, match="Failed to write config"):
            config.save()
