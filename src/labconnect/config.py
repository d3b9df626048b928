"""Persistent configuration for labconnect.

Settings live in a JSON file with a global section and one section per
host::

    {
        "host": "gitlab.example.com",
        "hosts": {
            "gitlab.example.com": {
                "token": "...",
                "api_protocol": "https",
                "cookie_file": "~/.config/labconnect/cookies.txt",
                "sso_domains": ["idp.example.com"]
            }
        }
    }
"""

from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from typing import Any

from labconnect.const import CONFIG_DIR_NAME, CONFIG_FILE_NAME, DEFAULT_HOST
from labconnect.exceptions import ConfigError

_LOGGER = logging.getLogger(__name__)

# Environment variables taking precedence over the file.
_ENV_OVERRIDES: dict[str, str] = {
    "token": "GITLAB_TOKEN",
    "host": "GITLAB_HOST",
}

SSO_DOMAINS_KEY = "sso_domains"


def default_config_path() -> Path:
    """Return the default config path per XDG Base Directory Specification.

    Uses ``$XDG_CONFIG_HOME/labconnect/config.json`` when the environment
    variable is set, otherwise falls back to
    ``~/.config/labconnect/config.json``.
    """
    xdg_config = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config:
        return Path(xdg_config) / CONFIG_DIR_NAME / CONFIG_FILE_NAME
    return Path.home() / ".config" / CONFIG_DIR_NAME / CONFIG_FILE_NAME


class Config:
    """Host-scoped key/value configuration backed by a JSON file."""

    def __init__(self, path: Path | None = None) -> None:
        self._path = (path or default_config_path()).expanduser()
        self._lock = threading.Lock()
        self._data: dict[str, Any] = self._load()

    @property
    def path(self) -> Path:
        """Return the path of the backing file."""
        return self._path

    def _load(self) -> dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigError(f"Failed to read config {self._path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigError(f"Config {self._path} must contain a JSON object")
        return data

    def default_host(self) -> str:
        """Return the host used when none is given on the command line."""
        return str(self.get("host") or DEFAULT_HOST)

    def get(self, key: str, host: str | None = None) -> Any:
        """Return *key* for *host*, falling back to the global section.

        Environment overrides win over both.
        """
        env_name = _ENV_OVERRIDES.get(key)
        if env_name and os.environ.get(env_name):
            return os.environ[env_name]
        with self._lock:
            if host is not None:
                section = self._data.get("hosts", {}).get(host, {})
                if key in section:
                    return section[key]
            return self._data.get(key)

    def set(self, key: str, value: Any, host: str | None = None) -> None:
        """Set *key* for *host*, or globally when *host* is None."""
        with self._lock:
            if host is None:
                self._data[key] = value
            else:
                hosts = self._data.setdefault("hosts", {})
                hosts.setdefault(host, {})[key] = value

    def sso_domains(self, host: str) -> list[str]:
        """Return the SSO domains pre-approved for *host*."""
        value = self.get(SSO_DOMAINS_KEY, host)
        if not value:
            return []
        if isinstance(value, str):
            return [d.strip() for d in value.split(",") if d.strip()]
        return [str(d) for d in value]

    def add_sso_domain(self, host: str, domain: str) -> bool:
        """Approve *domain* for *host*.

        Returns:
            False if the domain was already approved.
        """
        domains = self.sso_domains(host)
        if domain.lower() in (d.lower() for d in domains):
            return False
        self.set(SSO_DOMAINS_KEY, [*domains, domain], host)
        return True

    def save(self) -> None:
        """Write the configuration to disk with owner-only permissions.

        Raises:
            ConfigError: If the file cannot be written.
        """
        with self._lock:
            payload = json.dumps(self._data, indent=2, sort_keys=True)
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.write_text(payload + "\n", encoding="utf-8")
            self._path.chmod(0o600)
        except OSError as exc:
            raise ConfigError(f"Failed to write config {self._path}: {exc}") from exc
        _LOGGER.debug("Config saved to %s", self._path)
