"""HTTP transport with transparent SSO hand-off and method-preserving redirects.

Every request goes out with ``allow_redirects=False`` and the transport
decides how to follow each redirect itself:

- Mutating requests (POST/PUT/PATCH/DELETE) answered by 301/302/303 on
  the same host are replayed at the new location with the original
  method, body and headers.  Default client behaviour would turn them
  into GETs.
- Mutating requests answered by 301/302/303 pointing at another host
  start an SSO hand-off: the identity provider gets a GET, its own
  redirect chain is followed until it points back at the original
  resource, and the original request is replayed with fresh cookies.
- Everything else (non-mutating methods, 307/308) is followed with
  standard client semantics.

The underlying session does no cookie handling of its own; cookies are
read from and written to the shared :class:`CookieStore` on every hop.
"""

from __future__ import annotations

import asyncio
import inspect
import json as jsonlib
import logging
from collections.abc import Mapping
from typing import Any
from urllib.parse import urlencode

import aiohttp
from multidict import CIMultiDict, CIMultiDictProxy
from yarl import URL

from labconnect.consent import ConsentPolicy
from labconnect.const import (
    CREDENTIAL_HEADERS,
    MAX_REDIRECTS,
    SENSITIVE_HEADERS,
    SSO_TIMEOUT,
)
from labconnect.cookies import CookieStore
from labconnect.exceptions import (
    IdentityProviderError,
    InsecureRedirectError,
    RedirectLimitError,
    SessionExpiredError,
    SSOFlowError,
    TransportError,
)
from labconnect.models import BufferedRequest, Phase, RedirectChain, authority
from labconnect.redirects import (
    is_cross_host,
    is_loopback,
    is_mutating_method,
    is_redirect,
    needs_method_preservation,
    normalize_host,
)

_LOGGER = logging.getLogger(__name__)

_FOLLOWABLE_SCHEMES = ("http", "https")


# ---------------------------------------------------------------------------
# Logging helpers
# ---------------------------------------------------------------------------


def _redact(headers: Mapping[str, str]) -> dict[str, str]:
    return {
        key: ("***" if key.lower() in SENSITIVE_HEADERS else value)
        for key, value in headers.items()
    }


def _log_request(
    method: str,
    url: URL,
    headers: Mapping[str, str],
    body: bytes | None,
) -> None:
    """Log an outgoing HTTP request at DEBUG level."""
    _LOGGER.debug(">>> %s %s", method, url)
    if headers:
        _LOGGER.debug(">>>   headers: %s", _redact(headers))
    if body:
        _LOGGER.debug(">>>   body: %d bytes", len(body))


def _log_response(response: aiohttp.ClientResponse) -> None:
    """Log an incoming HTTP response at DEBUG level."""
    _LOGGER.debug("<<< %s %s", response.status, response.url)
    _LOGGER.debug("<<<   headers: %s", _redact(response.headers))


# ---------------------------------------------------------------------------
# Request buffering
# ---------------------------------------------------------------------------


async def _read_body(data: Any) -> bytes | None:
    """Read a request body fully into memory.

    Raises:
        TransportError: If reading from a file-like body fails.
        TypeError: If the body type is not supported.
    """
    if data is None:
        return None
    if isinstance(data, (bytes, bytearray, memoryview)):
        return bytes(data)
    if isinstance(data, str):
        return data.encode("utf-8")
    if isinstance(data, Mapping):
        return urlencode(data, doseq=True).encode("ascii")

    try:
        if hasattr(data, "read"):
            chunk = data.read()
            if inspect.isawaitable(chunk):
                chunk = await chunk
            return chunk.encode("utf-8") if isinstance(chunk, str) else bytes(chunk)
        if hasattr(data, "__aiter__"):
            parts = [part async for part in data]
            return b"".join(
                p.encode("utf-8") if isinstance(p, str) else bytes(p) for p in parts
            )
    except (OSError, ValueError) as exc:
        raise TransportError(f"failed to read request body: {exc}") from exc

    msg = f"Unsupported request body type: {type(data).__name__}"
    raise TypeError(msg)


async def buffer_request(
    method: str,
    url: str | URL,
    headers: Mapping[str, str] | None = None,
    data: Any = None,
    json_body: Any = None,
) -> BufferedRequest:
    """Build the immutable replay template for one logical operation."""
    if data is not None and json_body is not None:
        msg = "data and json parameters can not be used at the same time"
        raise ValueError(msg)

    merged: CIMultiDict[str] = CIMultiDict(headers or {})
    if json_body is not None:
        body: bytes | None = jsonlib.dumps(json_body).encode("utf-8")
        merged.setdefault("Content-Type", "application/json")
    else:
        body = await _read_body(data)
        if isinstance(data, Mapping):
            merged.setdefault("Content-Type", "application/x-www-form-urlencoded")

    return BufferedRequest(
        method=method.upper(),
        url=url if isinstance(url, URL) else URL(url),
        headers=CIMultiDictProxy(merged),
        body=body,
    )


async def _drain(response: aiohttp.ClientResponse) -> None:
    """Read and release an intermediate response so its connection is reused."""
    try:
        await response.read()
    except aiohttp.ClientError as exc:
        _LOGGER.debug("Discarding unreadable body from %s: %s", response.url, exc)
    finally:
        response.release()


def _is_downgrade(original: URL, target: URL) -> bool:
    """Return True if a redirect moves from HTTPS to plain HTTP."""
    return original.scheme == "https" and target.scheme == "http"


def _drop_credentials(headers: CIMultiDict[str]) -> None:
    for name in CREDENTIAL_HEADERS:
        headers.popall(name, None)


def _same_resource(left: URL, right: URL) -> bool:
    """Return True if both URLs name the same host and path."""
    return (
        normalize_host(authority(left), left.scheme)
        == normalize_host(authority(right), right.scheme)
        and (left.path or "/") == (right.path or "/")
    )


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------


class SSOTransport:
    """Redirect-aware transport shared by every outgoing API call.

    The session is used as a "send one request, get one response"
    primitive.  It should be created with :class:`aiohttp.DummyCookieJar`;
    if it instead shares the cookie store's jar, aiohttp already applies
    cookies and the transport does not do it a second time.

    Args:
        session: The aiohttp session performing the network exchanges.
        cookie_store: Shared cookie store, owned by the caller.
        consent: Policy gating cross-host hand-offs.  Defaults to an
            empty allowlist without a consent callback.
        max_redirects: Hop limit for a redirect chain and for the
            identity provider sub-chain.
        sso_timeout: Seconds allowed for the whole identity provider
            sub-exchange.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        cookie_store: CookieStore,
        consent: ConsentPolicy | None = None,
        *,
        max_redirects: int = MAX_REDIRECTS,
        sso_timeout: float = SSO_TIMEOUT,
    ) -> None:
        self._session = session
        self._cookies = cookie_store
        self._consent = consent if consent is not None else ConsentPolicy()
        self._max_redirects = max_redirects
        self._sso_timeout = sso_timeout
        self._manual_cookies = session.cookie_jar is not cookie_store.jar

    @property
    def cookie_store(self) -> CookieStore:
        """Return the shared cookie store."""
        return self._cookies

    @property
    def consent(self) -> ConsentPolicy:
        """Return the consent policy."""
        return self._consent

    async def request(
        self,
        method: str,
        url: str | URL,
        *,
        headers: Mapping[str, str] | None = None,
        data: Any = None,
        json: Any = None,
    ) -> aiohttp.ClientResponse:
        """Perform a request, handling redirects and SSO hand-offs.

        The returned response is the first non-redirect response and has
        not been read; the caller must read or release it.

        Raises:
            TransportError: If the body cannot be buffered, the redirect
                limit is exceeded, or an SSO hand-off fails.
            aiohttp.ClientError: If the API host cannot be reached.
        """
        template = await buffer_request(method, url, headers, data, json)
        return await self._run(template)

    # ------------------------------------------------------------------
    # Redirect loop
    # ------------------------------------------------------------------

    async def _run(self, template: BufferedRequest) -> aiohttp.ClientResponse:
        chain = RedirectChain(
            original=template,
            url=template.url,
            method=template.method,
            body=template.body,
        )
        response = await self._exchange(
            chain.method, chain.url, template.initial_headers(), chain.body
        )

        while True:
            target = self._redirect_target(response, chain.url)
            if target is None:
                return response

            phase = self._classify(chain, response.status, target)
            status = response.status
            await _drain(response)

            if chain.hops >= self._max_redirects:
                raise RedirectLimitError(
                    self._max_redirects, template.method, str(template.url)
                )
            chain.hops += 1

            if phase is Phase.CROSS_HOST:
                if chain.sso_completed:
                    raise SessionExpiredError(
                        f"unexpected SSO redirect during retry of {template.method} "
                        f"{template.url} to {target.host}; the session may have "
                        "expired, re-authenticate and try again"
                    )
                await self._complete_sso(template, target)
                chain.sso_completed = True
                target = template.url
                headers = template.replay_headers()
                _LOGGER.debug("Retrying %s %s after SSO", template.method, target)
            elif phase is Phase.SAME_HOST:
                headers = template.replay_headers()
                if _is_downgrade(template.url, target):
                    _drop_credentials(headers)
                _LOGGER.debug(
                    "Following same-host redirect to %s preserving %s",
                    target,
                    template.method,
                )
            else:
                headers = self._standard_follow(chain, status, target)

            chain.url = target
            response = await self._exchange(chain.method, target, headers, chain.body)

    def _classify(self, chain: RedirectChain, status: int, target: URL) -> Phase:
        original = chain.original
        if not is_mutating_method(original.method) or not needs_method_preservation(
            status
        ):
            return Phase.FOLLOW
        if is_cross_host(original.authority, original.url.scheme, str(target)):
            return Phase.CROSS_HOST
        return Phase.SAME_HOST

    def _standard_follow(
        self, chain: RedirectChain, status: int, target: URL
    ) -> CIMultiDict[str]:
        """Apply default client redirect semantics to *chain*.

        Returns the headers for the next hop.
        """
        original = chain.original
        if status == 303 and chain.method not in ("GET", "HEAD"):
            chain.method = "GET"
            chain.body = None

        headers = original.replay_headers()
        if chain.body is None:
            headers.popall("Content-Type", None)
        if is_cross_host(
            original.authority, original.url.scheme, str(target)
        ) or _is_downgrade(original.url, target):
            _drop_credentials(headers)
        return headers

    @staticmethod
    def _redirect_target(response: aiohttp.ClientResponse, base: URL) -> URL | None:
        """Return the absolute redirect target of *response*, if any.

        Responses without a usable ``Location`` are terminal.
        """
        if not is_redirect(response.status):
            return None
        location = response.headers.get("Location")
        if not location:
            return None
        try:
            target = base.join(URL(location))
        except (ValueError, TypeError) as exc:
            _LOGGER.warning(
                "Ignoring unparseable redirect location %r: %s", location, exc
            )
            return None
        if target.scheme not in _FOLLOWABLE_SCHEMES or not target.host:
            _LOGGER.debug("Not following redirect to %s", target)
            return None
        return target

    # ------------------------------------------------------------------
    # SSO hand-off
    # ------------------------------------------------------------------

    async def _complete_sso(self, template: BufferedRequest, target: URL) -> None:
        """Run the identity provider hand-off for a cross-host redirect.

        Raises:
            InsecureRedirectError: If the target is not HTTPS or loopback.
            ConsentError: If the target domain is not approved.
            IdentityProviderError: If the IdP chain returns 4xx/5xx.
            SSOFlowError: If the IdP cannot be reached in time.
            RedirectLimitError: If the IdP chain is too long.
        """
        _LOGGER.debug(
            "Detected SSO redirect for %s %s to %s",
            template.method,
            template.url,
            target,
        )
        self._require_secure(target)
        await self._consent.ensure_allowed(target.host or "")

        try:
            async with asyncio.timeout(self._sso_timeout):
                await self._follow_identity_provider(template, target)
        except TimeoutError as exc:
            raise SSOFlowError(
                f"SSO flow request failed: no response from {target.host} "
                f"within {self._sso_timeout:g}s"
            ) from exc

    async def _follow_identity_provider(
        self, template: BufferedRequest, target: URL
    ) -> None:
        """GET the IdP and follow its redirects until it points back home."""
        url = target
        hops = 0
        while True:
            headers: CIMultiDict[str] = CIMultiDict()
            if "User-Agent" in template.headers:
                headers["User-Agent"] = template.headers["User-Agent"]

            try:
                response = await self._exchange("GET", url, headers, None)
            except aiohttp.ClientError as exc:
                raise SSOFlowError(
                    f"SSO flow request failed: GET {url}: {exc}"
                ) from exc

            try:
                if response.status >= 400:
                    raise IdentityProviderError(response.status, str(url))

                next_url = self._redirect_target(response, url)
                if next_url is None:
                    _LOGGER.debug("SSO flow completed at %s", url)
                    return
                if _same_resource(next_url, template.url):
                    _LOGGER.debug("IdP redirected back to %s, SSO complete", next_url)
                    return

                if hops >= self._max_redirects:
                    raise RedirectLimitError(self._max_redirects, "GET", str(target))
                hops += 1

                if is_cross_host(
                    template.authority, template.url.scheme, str(next_url)
                ):
                    self._require_secure(next_url)
                url = next_url
            finally:
                await _drain(response)

    @staticmethod
    def _require_secure(url: URL) -> None:
        """Refuse to hand cookies to a non-HTTPS, non-loopback host."""
        if url.scheme == "https" or is_loopback(url.host or ""):
            return
        raise InsecureRedirectError(
            "SSO redirect rejected: refusing non-HTTPS redirect to "
            f"{url.scheme}://{authority(url)} (HTTPS required for security)"
        )

    # ------------------------------------------------------------------
    # Single exchange
    # ------------------------------------------------------------------

    async def _exchange(
        self,
        method: str,
        url: URL,
        headers: CIMultiDict[str],
        body: bytes | None,
    ) -> aiohttp.ClientResponse:
        """Send exactly one request, attaching and capturing cookies."""
        if self._manual_cookies and "Cookie" not in headers:
            cookie_header = self._cookies.header_for(url)
            if cookie_header:
                headers["Cookie"] = cookie_header

        _log_request(method, url, headers, body)
        response = await self._session.request(
            method,
            url,
            headers=headers,
            data=body,
            allow_redirects=False,
        )
        _log_response(response)

        if self._manual_cookies:
            self._capture_cookies(url, response)
        return response

    def _capture_cookies(self, url: URL, response: aiohttp.ClientResponse) -> None:
        set_cookies = response.headers.getall("Set-Cookie", [])
        if not set_cookies:
            return
        location: URL | None = None
        raw_location = response.headers.get("Location")
        if raw_location and is_redirect(response.status):
            try:
                location = url.join(URL(raw_location))
            except ValueError:
                location = None
        stored = self._cookies.capture(url, set_cookies, location)
        _LOGGER.debug("Stored %d cookie(s) from %s", stored, url)
