"""Exception hierarchy for the labconnect library."""

from __future__ import annotations


class LabConnectError(Exception):
    """Base exception for all labconnect errors."""


class AuthenticationError(LabConnectError):
    """Raised when no usable credentials are available."""


class ApiError(LabConnectError):
    """Raised when the API returns a non-2xx response."""

    def __init__(self, status: int, message: str) -> None:
        self.status = status
        super().__init__(f"API error {status}: {message}")


class ConfigError(LabConnectError):
    """Raised when the configuration file cannot be read or written."""


class CookieFileError(LabConnectError):
    """Raised when a cookie file cannot be loaded."""


class TransportError(LabConnectError):
    """Raised when the HTTP transport cannot complete an exchange."""


class RedirectLimitError(TransportError):
    """Raised when a redirect chain exceeds the hop limit."""

    def __init__(self, limit: int, method: str, url: str) -> None:
        self.limit = limit
        self.method = method
        self.url = url
        super().__init__(f"stopped after {limit} redirects ({method} {url})")


class SSOError(TransportError):
    """Base exception for failures during an SSO hand-off."""


class InsecureRedirectError(SSOError):
    """Raised when an SSO redirect targets a non-HTTPS, non-loopback host."""


class ConsentError(SSOError):
    """Raised when an SSO domain is not approved by the user."""


class IdentityProviderError(SSOError):
    """Raised when the identity provider answers with a 4xx/5xx status."""

    def __init__(self, status: int, url: str) -> None:
        self.status = status
        self.url = url
        super().__init__(
            f"SSO authentication failed: IdP returned status {status} for {url}; "
            "cookies may be expired or invalid"
        )


class SSOFlowError(SSOError):
    """Raised when the identity provider cannot be reached."""


class SessionExpiredError(SSOError):
    """Raised when a replayed request is redirected to the IdP again."""
