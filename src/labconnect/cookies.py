"""Shared cookie store and Netscape cookie file loader.

The store wraps an :class:`aiohttp.CookieJar` and is shared by reference
between the main exchange path and the SSO sub-exchanges, so session
cookies set by an identity provider are visible to later API calls.
"""

from __future__ import annotations

import logging
import os
import stat
import threading
from collections.abc import Iterable
from dataclasses import dataclass
from email.utils import formatdate
from http.cookies import CookieError, Morsel, SimpleCookie
from pathlib import Path

import aiohttp
from yarl import URL

from labconnect.exceptions import CookieFileError

_LOGGER = logging.getLogger(__name__)

_HTTP_ONLY_PREFIX = "#HttpOnly_"


# ---------------------------------------------------------------------------
# Cookie file parsing
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FileCookie:
    """A single entry of a Netscape/Mozilla cookie file."""

    domain: str
    include_subdomains: bool
    path: str
    secure: bool
    expires: int
    name: str
    value: str
    http_only: bool = False

    @property
    def host(self) -> str:
        """Return the domain without its leading dot."""
        return self.domain.lstrip(".")

    @property
    def is_domain_cookie(self) -> bool:
        """Return True if the cookie also applies to subdomains."""
        return self.include_subdomains or self.domain.startswith(".")

    @property
    def url(self) -> URL:
        """Return a URL on the cookie's host, used to key it in the jar."""
        return URL.build(scheme="https", host=self.host, path=self.path or "/")

    def to_morsel(self) -> Morsel[str]:
        """Convert to a :class:`Morsel` suitable for ``CookieJar.update_cookies``."""
        morsel: Morsel[str] = Morsel()
        morsel.set(self.name, self.value, self.value)
        morsel["path"] = self.path or "/"
        if self.is_domain_cookie:
            morsel["domain"] = self.host
        if self.secure:
            morsel["secure"] = True
        if self.http_only:
            morsel["httponly"] = True
        # Zero means a session cookie.
        if self.expires:
            morsel["expires"] = formatdate(self.expires, usegmt=True)
        return morsel


def expand_path(path: str | os.PathLike[str]) -> Path:
    """Expand environment variables and ``~`` in *path*."""
    return Path(os.path.expanduser(os.path.expandvars(os.fspath(path))))


def parse_cookie_line(line: str) -> FileCookie:
    """Parse one line of a Netscape cookie file.

    Format (tab-separated)::

        domain  include_subdomains  path  secure  expires  name  value

    A ``#HttpOnly_`` domain prefix marks an HttpOnly cookie.  Tabs inside
    the value are preserved.

    Raises:
        ValueError: If the line is not a valid cookie entry.
    """
    line = line.rstrip("\r\n")
    http_only = False
    if line.startswith(_HTTP_ONLY_PREFIX):
        http_only = True
        line = line[len(_HTTP_ONLY_PREFIX) :]

    fields = line.split("\t")
    if len(fields) < 7:
        msg = f"invalid cookie line: expected 7 fields, got {len(fields)}"
        raise ValueError(msg)

    domain = fields[0].strip()
    if not domain.lstrip("."):
        msg = "invalid cookie line: empty domain"
        raise ValueError(msg)

    try:
        expires = int(fields[4])
    except ValueError as exc:
        msg = f"invalid expiration timestamp: {fields[4]!r}"
        raise ValueError(msg) from exc

    path = fields[2] or "/"
    if not path.startswith("/"):
        msg = f"invalid cookie path: {path!r}"
        raise ValueError(msg)

    name = fields[5]
    if not name:
        msg = "invalid cookie line: empty name"
        raise ValueError(msg)

    cookie = FileCookie(
        domain=domain,
        include_subdomains=fields[1].upper() == "TRUE",
        path=path,
        secure=fields[3].upper() == "TRUE",
        expires=expires,
        name=name,
        value="\t".join(fields[6:]),
        http_only=http_only,
    )
    # Reject names http.cookies cannot represent and hosts yarl rejects.
    try:
        cookie.to_morsel()
    except CookieError as exc:
        raise ValueError(f"invalid cookie name {name!r}: {exc}") from exc
    _ = cookie.url
    return cookie


def load_cookie_file(path: str | os.PathLike[str]) -> list[FileCookie]:
    """Load every valid cookie from a Netscape cookie file.

    Comment lines and malformed entries are skipped.

    Raises:
        CookieFileError: If the file cannot be read or has no valid entries.
    """
    expanded = expand_path(path)
    try:
        text = expanded.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise CookieFileError(f"failed to read cookie file {path}: {exc}") from exc

    cookies: list[FileCookie] = []
    for line_num, raw in enumerate(text.splitlines(), start=1):
        line = raw.strip()
        if not line:
            continue
        if line.startswith("#") and not line.startswith(_HTTP_ONLY_PREFIX):
            continue
        try:
            cookies.append(parse_cookie_line(raw.strip("\r\n ")))
        except ValueError as exc:
            _LOGGER.debug("Skipping cookie file line %d: %s", line_num, exc)

    if not cookies:
        raise CookieFileError(f"no valid cookies found in cookie file {path}")
    return cookies


def check_cookie_file_permissions(path: str | os.PathLike[str]) -> None:
    """Verify that the cookie file is not readable by group or others.

    Raises:
        CookieFileError: If the file cannot be inspected or is too open.
    """
    expanded = expand_path(path)
    try:
        mode = stat.S_IMODE(expanded.stat().st_mode)
    except OSError as exc:
        raise CookieFileError(f"failed to stat cookie file {path}: {exc}") from exc
    if mode & 0o077:
        raise CookieFileError(
            f"cookie file {path} has insecure permissions {mode:o}, "
            "should be 0600 or more restrictive"
        )


# ---------------------------------------------------------------------------
# Cookie store
# ---------------------------------------------------------------------------


def _domain_matches(hostname: str, domain: str) -> bool:
    hostname = hostname.lower()
    domain = domain.lstrip(".").lower()
    return hostname == domain or hostname.endswith("." + domain)


class CookieStore:
    """Thread-safe, domain-indexed cookie store shared across exchanges.

    All access to the underlying jar is serialized through a reentrant
    lock.  The store is always supplied from outside the transport.
    """

    def __init__(self, jar: aiohttp.CookieJar | None = None) -> None:
        self._jar = jar if jar is not None else aiohttp.CookieJar(unsafe=True)
        self._lock = threading.RLock()

    @classmethod
    def from_file(cls, path: str | os.PathLike[str]) -> CookieStore:
        """Build a store holding every cookie in a Netscape cookie file.

        Cookies for all domains are loaded, not only the API host, because
        an SSO redirect needs the identity provider's cookies too.

        Raises:
            CookieFileError: If the file cannot be loaded.
        """
        cookies = load_cookie_file(path)
        try:
            check_cookie_file_permissions(path)
        except CookieFileError as exc:
            _LOGGER.warning("%s", exc)

        store = cls()
        for cookie in cookies:
            store.set_cookies(cookie.url, [cookie.to_morsel()])
        _LOGGER.debug("Loaded %d cookie(s) from %s", len(cookies), path)
        return store

    @property
    def jar(self) -> aiohttp.CookieJar:
        """Return the wrapped aiohttp cookie jar."""
        return self._jar

    def __len__(self) -> int:
        with self._lock:
            return len(self._jar)

    def cookies_for(self, url: URL) -> list[Morsel[str]]:
        """Return every stored cookie that should be sent to *url*."""
        with self._lock:
            return list(self._jar.filter_cookies(url).values())

    def set_cookies(self, url: URL, cookies: Iterable[Morsel[str]]) -> None:
        """Store *cookies* as if they were set by a response from *url*."""
        with self._lock:
            self._jar.update_cookies([(m.key, m) for m in cookies], url)

    def header_for(self, url: URL) -> str:
        """Build an unquoted ``Cookie`` header value for *url*.

        ``http.cookies`` wraps values containing ``+``, ``/`` or ``=`` in
        double quotes; servers expect them as browsers send them.
        """
        return "; ".join(f"{m.key}={m.value}" for m in self.cookies_for(url))

    def capture(
        self,
        url: URL,
        set_cookie_headers: Iterable[str],
        location: URL | None = None,
    ) -> int:
        """Store cookies from ``Set-Cookie`` headers of a response to *url*.

        When the response redirects to another host and a cookie's Domain
        attribute names that host, the cookie is keyed to the redirect
        target instead.

        Returns:
            The number of cookies handed to the jar.
        """
        count = 0
        for header in set_cookie_headers:
            parsed: SimpleCookie = SimpleCookie()
            try:
                parsed.load(header)
            except CookieError as exc:
                _LOGGER.debug("Ignoring malformed Set-Cookie header: %s", exc)
                continue
            for morsel in parsed.values():
                self.set_cookies(self._storage_url(url, morsel, location), [morsel])
                count += 1
        return count

    @staticmethod
    def _storage_url(url: URL, morsel: Morsel[str], location: URL | None) -> URL:
        domain = morsel["domain"]
        if location is None or not domain or not location.host or not url.host:
            return url
        if _domain_matches(url.host, domain):
            return url
        if _domain_matches(location.host, domain):
            return location
        return url
