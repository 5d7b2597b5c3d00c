"""Controller that performs no background work."""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from credman.auth.base import AuthenticationController
from credman.exceptions import UnsupportedOperationError

if TYPE_CHECKING:
    from credman.providers.base import OAuth2IdentityProvider


class NoopAuthController(AuthenticationController):
    """Default controller: registration is a no-op and there is no device flow.

    The authorization code flow is reduced to building the authorization
    URL; presenting it and receiving the redirect is left to the caller.
    """

    def start_authorization_code_flow(
        self,
        provider: OAuth2IdentityProvider,
        redirect_url: Optional[str] = None,
        scopes: Optional[list[str]] = None,
    ) -> str:
        get_url = getattr(provider, "get_authentication_url", None)
        if get_url is None:
            raise UnsupportedOperationError(
                f"Identity provider '{provider.name}' cannot build authorization URLs"
            )
        return get_url(redirect_url, scopes or [])
