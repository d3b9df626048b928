"""Async API client for GitLab-style platforms."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any
from urllib.parse import quote

import aiohttp

from labconnect.auth import TokenAuth
from labconnect.consent import ConsentCallback, ConsentPolicy
from labconnect.const import API_PATH, DEFAULT_PROTOCOL, USER_AGENT
from labconnect.cookies import CookieStore
from labconnect.exceptions import ApiError, LabConnectError
from labconnect.transport import SSOTransport

if TYPE_CHECKING:
    from labconnect.auth import AbstractAuth
    from labconnect.config import Config

_LOGGER = logging.getLogger(__name__)


def _project_path(project: str | int) -> str:
    """Return the URL-encoded project id or ``namespace/name`` path."""
    return quote(str(project), safe="")


class LabClient:
    """Async client for the platform REST API.

    Use as an async context manager to manage the underlying aiohttp session::

        async with LabClient("gitlab.example.com", auth) as client:
            user = await client.get_current_user()

    When a cookie store is given, every request goes through
    :class:`SSOTransport` so SSO redirects and method-preserving redirects
    are handled transparently.  Without one, requests go straight to the
    session.
    """

    def __init__(
        self,
        host: str,
        auth: AbstractAuth,
        *,
        protocol: str = DEFAULT_PROTOCOL,
        cookie_store: CookieStore | None = None,
        consent: ConsentPolicy | None = None,
        session: aiohttp.ClientSession | None = None,
        user_agent: str = USER_AGENT,
    ) -> None:
        self._host = host
        self._auth = auth
        self._protocol = protocol
        self._cookie_store = cookie_store
        self._consent = consent
        self._external_session = session is not None
        self._session = session
        self._user_agent = user_agent
        self._transport: SSOTransport | None = None

    @classmethod
    def from_config(
        cls,
        config: Config,
        host: str | None = None,
        consent_callback: ConsentCallback | None = None,
    ) -> LabClient:
        """Build a client from the persistent configuration.

        Pre-approved SSO domains come from the host's ``sso_domains`` key;
        domains approved interactively are written back to it.

        Raises:
            CookieFileError: If the configured cookie file cannot be loaded.
        """
        host = host or config.default_host()
        protocol = str(config.get("api_protocol", host) or DEFAULT_PROTOCOL)
        auth = TokenAuth(str(config.get("token", host) or ""))

        cookie_store: CookieStore | None = None
        consent: ConsentPolicy | None = None
        cookie_file = config.get("cookie_file", host)
        if cookie_file:
            cookie_store = CookieStore.from_file(str(cookie_file))

            async def persist(domain: str) -> None:
                if config.add_sso_domain(host, domain):
                    await asyncio.to_thread(config.save)

            consent = ConsentPolicy(
                config.sso_domains(host),
                consent_callback=consent_callback,
                persist_callback=persist,
            )

        return cls(
            host,
            auth,
            protocol=protocol,
            cookie_store=cookie_store,
            consent=consent,
        )

    async def __aenter__(self) -> LabClient:
        """Enter the async context manager, creating a session if needed."""
        if self._session is None:
            # Cookies are managed by the transport, never by the session.
            jar: aiohttp.abc.AbstractCookieJar | None = None
            if self._cookie_store is not None:
                jar = aiohttp.DummyCookieJar()
            self._session = aiohttp.ClientSession(cookie_jar=jar)
        if self._cookie_store is not None:
            self._transport = SSOTransport(
                self._session, self._cookie_store, self._consent
            )
        return self

    async def __aexit__(self, *exc: object) -> None:
        """Exit the async context manager, closing the session if we own it."""
        if not self._external_session and self._session:
            await self._session.close()

    @property
    def base_url(self) -> str:
        """Return the REST API base URL."""
        return f"{self._protocol}://{self._host}{API_PATH}"

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        endpoint: str,
        json: dict[str, Any] | None = None,
    ) -> Any:
        """Make an authenticated HTTP request and return parsed JSON.

        Args:
            method: HTTP method (GET, POST, etc.).
            endpoint: Path relative to the API base, or a full URL.
            json: Optional JSON body.

        Returns:
            Parsed JSON response, or None for an empty body.

        Raises:
            RuntimeError: If the client is used outside a context manager
                without providing a session.
            ApiError: If the response status is not 2xx.
        """
        if self._session is None:
            msg = (
                "No aiohttp session available. "
                "Use the client as an async context manager or provide a session."
            )
            raise RuntimeError(msg)

        if endpoint.startswith(("http://", "https://")):
            url = endpoint
        else:
            url = f"{self.base_url}/{endpoint.lstrip('/')}"

        token = await self._auth.get_token()
        headers: dict[str, str] = {
            "PRIVATE-TOKEN": token,
            "Accept": "application/json",
            "User-Agent": self._user_agent,
        }

        if self._transport is not None:
            response = await self._transport.request(
                method, url, headers=headers, json=json
            )
        else:
            response = await self._session.request(
                method, url, headers=headers, json=json
            )

        async with response:
            _LOGGER.debug("%s %s -> %s", method, url, response.status)

            if response.status < 200 or response.status >= 300:
                text = await response.text()
                raise ApiError(response.status, text)

            body = await response.read()
            if not body.strip():
                return None
            return await response.json(content_type=None)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def api(
        self,
        method: str,
        endpoint: str,
        json: dict[str, Any] | None = None,
    ) -> Any:
        """Perform a raw API call and return the decoded JSON response."""
        return await self._request(method.upper(), endpoint, json=json)

    async def get_current_user(self) -> dict[str, Any]:
        """Fetch the authenticated user."""
        result: dict[str, Any] = await self._request("GET", "user")
        return result

    async def create_project(self, name: str, **attrs: Any) -> dict[str, Any]:
        """Create a project.

        Args:
            name: The project name.
            **attrs: Additional project attributes (``path``,
                ``namespace_id``, ``visibility``, ...).
        """
        payload: dict[str, Any] = {"name": name, **attrs}
        result: dict[str, Any] = await self._request("POST", "projects", json=payload)
        return result

    async def create_merge_request_note(
        self,
        project: str | int,
        mr_iid: int,
        body: str,
    ) -> dict[str, Any]:
        """Add a comment to a merge request and return the created note."""
        return await self._create_note(project, "merge_requests", mr_iid, body)

    async def create_issue_note(
        self,
        project: str | int,
        issue_iid: int,
        body: str,
    ) -> dict[str, Any]:
        """Add a comment to an issue and return the created note."""
        return await self._create_note(project, "issues", issue_iid, body)

    async def _create_note(
        self,
        project: str | int,
        kind: str,
        iid: int,
        body: str,
    ) -> dict[str, Any]:
        """Create a note, tolerating instances that do not echo it back.

        Some self-hosted instances answer the create call with an array of
        notes, or with no body at all.  The newest note is then fetched
        from the listing instead.

        Raises:
            ApiError: If either request fails.
            LabConnectError: If the note cannot be retrieved afterwards.
        """
        endpoint = f"projects/{_project_path(project)}/{kind}/{iid}/notes"
        result: Any = await self._request("POST", endpoint, json={"body": body})
        if isinstance(result, dict):
            return result

        _LOGGER.debug("Note endpoint returned %s, fetching latest note", type(result))
        latest: Any = await self._request(
            "GET", f"{endpoint}?order_by=created_at&sort=desc&per_page=1"
        )
        if not isinstance(latest, list) or not latest:
            raise LabConnectError("note was created but could not be retrieved")
        note: dict[str, Any] = latest[0]
        return note
