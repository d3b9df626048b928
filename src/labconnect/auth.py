"""Authentication providers for the labconnect library."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

from labconnect.exceptions import AuthenticationError


class AbstractAuth(Protocol):
    """Protocol for authentication providers."""

    async def get_token(self) -> str:
        """Return a valid access token."""
        ...


class TokenAuth:
    """Authentication provider using a pre-existing token or token factory.

    The token is sent as a personal access token.  Consumers that manage
    their own tokens can pass an async callable that is awaited on every
    request.
    """

    def __init__(self, token: str | Callable[[], Awaitable[str]]) -> None:
        self._token = token

    async def get_token(self) -> str:
        """Return a valid access token.

        Raises:
            AuthenticationError: If the token is empty.
        """
        if callable(self._token):
            token = await self._token()
        else:
            token = self._token
        if not token:
            raise AuthenticationError(
                "No API token configured; set GITLAB_TOKEN or run: "
                "labconnect config set token <token> --host <hostname>"
            )
        return token
