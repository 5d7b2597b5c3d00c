"""Identity provider contracts.

An identity provider is a named strategy for obtaining and maintaining
credentials. :class:`IdentityProvider` carries what every provider has in
common (a case-insensitive name, a type tag, free-form configuration and a
non-owning reference to the owning manager). :class:`OAuth2IdentityProvider`
adds the OAuth2 capability used by the authentication controllers.

Controllers and the manager never check concrete classes; they ask the
provider through :attr:`IdentityProvider.supports_oauth2`.

See Also:
    :class:`credman.providers.oauth2.DefaultOAuth2IdentityProvider` for the
    httpx-based implementation.
"""

from __future__ import annotations

import weakref
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Optional

from credman.models import (
    Credential,
    DeviceAuthorization,
    DeviceTokenResponse,
    OAuth2Credential,
)

if TYPE_CHECKING:
    from credman.auth.manager import CredentialManager


class IdentityProvider:
    """A named source of credentials.

    Args:
        name: Provider name. Lookups are case-insensitive.
        provider_type: Type tag such as ``"oauth2"``.
        configuration: Free-form string settings.
    """

    def __init__(
        self,
        name: str,
        provider_type: str,
        configuration: Optional[dict[str, str]] = None,
    ) -> None:
        self._name = name
        self._provider_type = provider_type
        self._configuration = dict(configuration or {})
        self._manager_ref: Optional[weakref.ReferenceType[CredentialManager]] = None

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self._name!r}, type={self._provider_type!r})"

    @property
    def name(self) -> str:
        return self._name

    @property
    def provider_type(self) -> str:
        return self._provider_type

    @property
    def configuration(self) -> dict[str, str]:
        return dict(self._configuration)

    @property
    def supports_oauth2(self) -> bool:
        """Whether this provider implements the OAuth2 operations."""
        return False

    @property
    def credential_manager(self) -> Optional[CredentialManager]:
        """The manager this provider is registered with, if it is still alive."""
        return self._manager_ref() if self._manager_ref is not None else None

    def bind_credential_manager(self, manager: CredentialManager) -> None:
        """Attach the non-owning back-reference. Called by the manager on registration."""
        self._manager_ref = weakref.ref(manager)

    def is_valid(self, credential: Credential) -> bool:
        return True

    def renew(self, credential: Credential) -> bool:
        return False


class OAuth2IdentityProvider(IdentityProvider, ABC):
    """Capability contract for OAuth2 identity providers.

    These are the operations the device-flow and refresh controllers rely
    on. Network failures surface as
    :class:`~credman.exceptions.TransportError` and malformed server
    responses as :class:`~credman.exceptions.ProtocolError`.
    """

    def __init__(
        self,
        name: str,
        provider_type: str = "oauth2",
        configuration: Optional[dict[str, str]] = None,
    ) -> None:
        super().__init__(name, provider_type, configuration)

    @property
    def supports_oauth2(self) -> bool:
        return True

    @abstractmethod
    def create_device_flow_request(self, scopes: list[str]) -> DeviceAuthorization:
        """Request device and user codes (:rfc:`8628` section 3.1)."""

    @abstractmethod
    def get_device_access_token(self, device_code: str) -> DeviceTokenResponse:
        """Poll the token endpoint once for the outcome of a device flow."""

    @abstractmethod
    def refresh_credential(self, credential: OAuth2Credential) -> Optional[OAuth2Credential]:
        """Exchange the credential's refresh token for a new access token.

        Returns:
            The refreshed credential, or ``None`` if the server refused.
        """

    @abstractmethod
    def get_additional_credential_information(
        self, credential: OAuth2Credential
    ) -> Optional[OAuth2Credential]:
        """Look up missing details (user id, name, scopes, expiry) for a token.

        Returns:
            An enriched copy, or ``None`` if nothing could be added.
        """

    @abstractmethod
    def get_app_access_token(self, scope: Optional[str] = None) -> OAuth2Credential:
        """Obtain an application token via the client credentials grant."""

    def is_valid(self, credential: Credential) -> bool:
        """An OAuth2 credential is valid while it has a known, future expiry."""
        if isinstance(credential, OAuth2Credential):
            if credential.issued_at is not None and credential.expires_in is not None:
                return not credential.is_expired()
        return False

    def renew(self, credential: Credential) -> bool:
        """Refresh *credential* in place; return ``True`` on success."""
        if isinstance(credential, OAuth2Credential):
            updated = self.refresh_credential(credential)
            if updated is not None:
                credential.update_credential(updated)
                return True
        return False
