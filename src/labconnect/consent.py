"""Consent policy gating cross-host SSO hand-offs."""

from __future__ import annotations

import asyncio
import logging
import sys
import threading
from collections.abc import Awaitable, Callable, Iterable
from typing import TextIO

from labconnect.exceptions import ConsentError

_LOGGER = logging.getLogger(__name__)

ConsentCallback = Callable[[str], Awaitable[bool]]
PersistCallback = Callable[[str], Awaitable[None]]


def preapprove_hint(domain: str) -> str:
    """Return the command that pre-approves *domain* for SSO redirects."""
    return f"labconnect config set sso_domain {domain} --host <hostname>"


class ConsentPolicy:
    """Allowlist of SSO domains plus optional interactive consent.

    The allowlist is checked first; the consent callback is only invoked
    for domains that are not pre-approved.  Lookups read an immutable
    snapshot and never block; approvals swap in a new snapshot under a
    write lock.

    Args:
        allowed_domains: Hostnames approved for cross-host hand-off.
        consent_callback: Async callable asking the user whether a domain
            may be used.  It must raise ``ConsentError`` rather than block
            when it cannot ask.
        persist_callback: Async callable saving a fresh approval.  Its
            failures are logged and do not abort the request.
    """

    def __init__(
        self,
        allowed_domains: Iterable[str] = (),
        consent_callback: ConsentCallback | None = None,
        persist_callback: PersistCallback | None = None,
    ) -> None:
        self._allowed: frozenset[str] = frozenset(
            d.strip().lower() for d in allowed_domains if d.strip()
        )
        self._write_lock = threading.Lock()
        self._prompt_lock = asyncio.Lock()
        self._consent_callback = consent_callback
        self._persist_callback = persist_callback

    @property
    def allowed_domains(self) -> frozenset[str]:
        """Return a snapshot of the approved domains."""
        return self._allowed

    def is_allowed(self, domain: str) -> bool:
        """Return True if *domain* is approved for SSO redirects."""
        return domain.lower() in self._allowed

    def allow(self, domain: str) -> None:
        """Add *domain* to the allowlist for the lifetime of this policy."""
        with self._write_lock:
            self._allowed = self._allowed | {domain.lower()}

    async def ensure_allowed(self, domain: str) -> None:
        """Return if *domain* may receive an SSO hand-off, raise otherwise.

        Raises:
            ConsentError: If the domain is not approved and consent cannot
                be obtained or is declined.
        """
        if self.is_allowed(domain):
            return

        if self._consent_callback is None:
            raise ConsentError(
                f"SSO redirect to {domain} requires consent; "
                f"pre-approve it with: {preapprove_hint(domain)}"
            )

        async with self._prompt_lock:
            # Another task may have been approved while we waited.
            if self.is_allowed(domain):
                return

            try:
                approved = await self._consent_callback(domain)
            except OSError as exc:
                raise ConsentError(
                    f"failed to ask for SSO consent for {domain}: {exc}"
                ) from exc

            if not approved:
                raise ConsentError(
                    f"SSO redirect to {domain} was not approved: consent declined"
                )

            self.allow(domain)
            _LOGGER.debug("SSO domain %s approved by user", domain)
            await self._persist(domain)

    async def _persist(self, domain: str) -> None:
        if self._persist_callback is None:
            return
        try:
            await self._persist_callback(domain)
        except Exception as exc:  # noqa: BLE001
            _LOGGER.warning("Failed to save approved SSO domain %s: %s", domain, exc)


def terminal_consent_prompt(
    stdin: TextIO | None = None,
    stderr: TextIO | None = None,
) -> ConsentCallback:
    """Build a consent callback that asks on a terminal.

    The question is written to *stderr* (stdout may be redirected) and the
    answer read from *stdin*.  When *stdin* is not a TTY the callback fails
    immediately instead of waiting for input.
    """

    async def prompt(domain: str) -> bool:
        in_stream = stdin if stdin is not None else sys.stdin
        err_stream = stderr if stderr is not None else sys.stderr

        if not in_stream.isatty():
            raise ConsentError(
                f"SSO redirect to {domain} requires consent but stdin is not a "
                "terminal; run interactively or pre-approve it with: "
                f"{preapprove_hint(domain)}"
            )

        err_stream.write(f"SSO redirect to {domain} detected.\n")
        err_stream.write("Allow this redirect? [y/N]: ")
        err_stream.flush()

        try:
            answer: str = await asyncio.to_thread(in_stream.readline)
        except (OSError, ValueError) as exc:
            raise ConsentError(f"failed to read response: {exc}") from exc
        if not answer:
            raise ConsentError("failed to read response: end of input")

        return answer.strip().lower() in ("y", "yes")

    return prompt
