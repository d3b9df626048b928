"""Data models for the labconnect transport."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from multidict import CIMultiDict, CIMultiDictProxy
from yarl import URL

from labconnect.const import REPLAY_EXCLUDED_HEADERS


def authority(url: URL) -> str:
    """Return the ``host[:port]`` part of *url*, bracketing IPv6 literals."""
    host = url.raw_host or ""
    if ":" in host:
        host = f"[{host}]"
    if url.explicit_port is not None:
        return f"{host}:{url.explicit_port}"
    return host


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class Phase(Enum):
    """How the transport handles the next redirect hop."""

    FOLLOW = "follow"
    SAME_HOST = "same-host"
    CROSS_HOST = "cross-host"


# ---------------------------------------------------------------------------
# Dataclasses
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BufferedRequest:
    """Immutable replay template for one logical operation.

    The body is read into memory once, before the first network attempt,
    and the same bytes are sent on every replay.
    """

    method: str
    url: URL
    headers: CIMultiDictProxy[str]
    body: bytes | None = None

    def initial_headers(self) -> CIMultiDict[str]:
        """Return the headers for the first hop, as supplied by the caller."""
        headers = CIMultiDict(self.headers)
        headers.popall("Content-Length", None)
        return headers

    def replay_headers(self) -> CIMultiDict[str]:
        """Return the headers for a replay, without Cookie or Content-Length."""
        return CIMultiDict(
            (key, value)
            for key, value in self.headers.items()
            if key.lower() not in REPLAY_EXCLUDED_HEADERS
        )

    @property
    def authority(self) -> str:
        """Return ``host[:port]`` of the original request URL."""
        return authority(self.url)


@dataclass
class RedirectChain:
    """Transient state of one top-level call into the transport."""

    original: BufferedRequest
    url: URL
    method: str
    body: bytes | None
    hops: int = 0
    sso_completed: bool = False
