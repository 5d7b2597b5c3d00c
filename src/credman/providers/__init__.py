"""Identity providers: the contracts and the default httpx implementation.

Re-exports :class:`~credman.providers.base.IdentityProvider`,
:class:`~credman.providers.base.OAuth2IdentityProvider` and
:class:`~credman.providers.oauth2.DefaultOAuth2IdentityProvider`.
"""

from credman.providers.base import IdentityProvider, OAuth2IdentityProvider
from credman.providers.oauth2 import DefaultOAuth2IdentityProvider

__all__ = [
    "DefaultOAuth2IdentityProvider",
    "IdentityProvider",
    "OAuth2IdentityProvider",
]
