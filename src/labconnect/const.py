"""Constants for the labconnect library."""

from __future__ import annotations

from labconnect import __version__

DEFAULT_HOST: str = "gitlab.com"

DEFAULT_PROTOCOL: str = "https"

API_PATH: str = "/api/v4"

USER_AGENT: str = f"labconnect/{__version__}"

# Matches the default limit of most HTTP clients.
MAX_REDIRECTS: int = 10

# Upper bound for the whole identity provider sub-exchange, in seconds.
SSO_TIMEOUT: float = 30.0

MUTATING_METHODS: frozenset[str] = frozenset({"POST", "PUT", "PATCH", "DELETE"})

# Statuses where default clients rewrite POST to GET.
METHOD_PRESERVING_STATUSES: frozenset[int] = frozenset({301, 302, 303})

REDIRECT_STATUSES: frozenset[int] = frozenset({301, 302, 303, 307, 308})

# Never copied from the original request into a replay.
REPLAY_EXCLUDED_HEADERS: frozenset[str] = frozenset({"cookie", "content-length"})

# Dropped when standard redirect following leaves the original host.
CREDENTIAL_HEADERS: frozenset[str] = frozenset({"authorization", "private-token"})

# Values redacted in debug logs.
SENSITIVE_HEADERS: frozenset[str] = frozenset(
    {"cookie", "set-cookie", "authorization", "private-token"}
)

CONFIG_DIR_NAME: str = "labconnect"

CONFIG_FILE_NAME: str = "config.json"
