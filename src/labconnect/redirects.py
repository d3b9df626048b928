"""Redirect classification helpers.

Pure functions deciding whether a redirect needs method preservation and
whether its target leaves the original host.  Nothing here performs I/O.
"""

from __future__ import annotations

import ipaddress
import logging
from urllib.parse import urlsplit

from labconnect.const import (
    METHOD_PRESERVING_STATUSES,
    MUTATING_METHODS,
    REDIRECT_STATUSES,
)

_LOGGER = logging.getLogger(__name__)

_DEFAULT_PORTS: dict[str, int] = {"https": 443, "http": 80}


def needs_method_preservation(status: int) -> bool:
    """Return True for statuses where default clients rewrite POST to GET.

    Only 301, 302 and 303 qualify.  307 and 308 already preserve the
    method and body under standard client behaviour.
    """
    return status in METHOD_PRESERVING_STATUSES


def is_redirect(status: int) -> bool:
    """Return True if *status* is a redirect a client may follow."""
    return status in REDIRECT_STATUSES


def is_mutating_method(method: str) -> bool:
    """Return True for POST, PUT, PATCH and DELETE."""
    return method.upper() in MUTATING_METHODS


def _split_host_port(host: str) -> tuple[str, str | None]:
    """Split ``host[:port]`` into its parts, keeping IPv6 brackets intact."""
    if host.startswith("["):
        end = host.find("]")
        if end == -1:
            return host, None
        rest = host[end + 1 :]
        if rest.startswith(":"):
            return host[: end + 1], rest[1:]
        return host[: end + 1], None
    if host.count(":") == 1:
        name, port = host.split(":", 1)
        return name, port
    return host, None


def normalize_host(host: str, scheme: str) -> str:
    """Lower-case *host* and drop the default port for *scheme*.

    ``gitlab.example.com:443`` over https normalizes to
    ``gitlab.example.com``; non-default ports are kept.
    """
    name, port = _split_host_port(host)
    scheme = scheme.lower()
    if port is None or port == "":
        return name.lower()
    if port.isdigit() and int(port) == _DEFAULT_PORTS.get(scheme):
        return name.lower()
    return f"{name}:{port}".lower()


def is_cross_host(original_host: str, original_scheme: str, location: str) -> bool:
    """Return True if *location* points at a different host than the original.

    A relative location is same-host by definition.  An unparseable
    location is treated as same-host and logged.
    """
    if not location:
        return False
    try:
        target = urlsplit(location)
        netloc = target.netloc
    except ValueError as exc:
        _LOGGER.warning("Could not parse redirect location %r: %s", location, exc)
        return False

    if not netloc:
        return False

    # Userinfo is not part of the host comparison.
    host = netloc.rpartition("@")[2]
    scheme = target.scheme or original_scheme
    return normalize_host(host, scheme) != normalize_host(
        original_host, original_scheme
    )


def is_loopback(hostname: str) -> bool:
    """Return True for ``localhost`` and literal loopback addresses.

    Hostnames are not resolved, so a DNS name pointing at 127.0.0.1 is
    not considered loopback.
    """
    hostname = hostname.strip("[]").lower()
    if hostname == "localhost":
        return True
    try:
        return ipaddress.ip_address(hostname).is_loopback
    except ValueError:
        return False
