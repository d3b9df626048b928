"""Shared fixtures for labconnect tests."""

from __future__ import annotations

from pathlib import Path

import pytest
from aioresponses import aioresponses as aioresponses_mock

from labconnect.auth import TokenAuth
from labconnect.cookies import CookieStore

API_HOST = "gitlab.example.com"
IDP_HOST = "idp.example.com"

COOKIE_FILE_CONTENT = (
    "# Netscape HTTP Cookie File\n"
    "\n"
    f"{API_HOST}\tFALSE\t/\tTRUE\t0\t_gitlab_session\tstale-session\n"
    f"#HttpOnly_.{IDP_HOST}\tTRUE\t/\tTRUE\t0\tidp_session\tidp-secret\n"
)


@pytest.fixture
def token_auth() -> TokenAuth:
    """Return a TokenAuth instance with a static test token."""
    return TokenAuth("test-token-123")


@pytest.fixture
def mock_api():
    with aioresponses_mock() as m:
        yield m


@pytest.fixture
def cookie_file(tmp_path: Path) -> Path:
    """Write an owner-only Netscape cookie file and return its path."""
    path = tmp_path / "cookies.txt"
    path.write_text(COOKIE_FILE_CONTENT)
    path.chmod(0o600)
    return path


@pytest.fixture
async def cookie_store(cookie_file: Path) -> CookieStore:
    """Return a store loaded from the test cookie file."""
    return CookieStore.from_file(cookie_file)
