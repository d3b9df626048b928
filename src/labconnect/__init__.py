"""Async client for GitLab-style platforms with transparent SSO redirect handling."""

from __future__ import annotations

__version__ = "0.1.0"

from labconnect.auth import AbstractAuth, TokenAuth
from labconnect.client import LabClient
from labconnect.config import Config
from labconnect.consent import ConsentPolicy, terminal_consent_prompt
from labconnect.cookies import CookieStore, load_cookie_file
from labconnect.exceptions import (
    ApiError,
    AuthenticationError,
    ConfigError,
    ConsentError,
    CookieFileError,
    IdentityProviderError,
    InsecureRedirectError,
    LabConnectError,
    RedirectLimitError,
    SessionExpiredError,
    SSOError,
    SSOFlowError,
    TransportError,
)
from labconnect.redirects import is_cross_host, needs_method_preservation
from labconnect.transport import SSOTransport

__all__ = [
    "__version__",
    # Auth
    "AbstractAuth",
    "TokenAuth",
    # Client
    "LabClient",
    "Config",
    # Transport
    "ConsentPolicy",
    "CookieStore",
    "SSOTransport",
    "is_cross_host",
    "load_cookie_file",
    "needs_method_preservation",
    "terminal_consent_prompt",
    # Exceptions
    "ApiError",
    "AuthenticationError",
    "ConfigError",
    "ConsentError",
    "CookieFileError",
    "IdentityProviderError",
    "InsecureRedirectError",
    "LabConnectError",
    "RedirectLimitError",
    "SSOError",
    "SSOFlowError",
    "SessionExpiredError",
    "TransportError",
]
