"""Abstract base class for authentication controllers.

A controller decides what happens around a credential's lifecycle: how
interactive flows are started and what is done when a credential is
registered with the :class:`~credman.auth.manager.CredentialManager`.

The built-in controllers are:

- :class:`~credman.controllers.noop.NoopAuthController` -- does nothing on
  registration and hands back authorization URLs.
- :class:`~credman.controllers.device_flow.DeviceFlowController` -- runs the
  :rfc:`8628` polling loop in the background.
- :class:`~credman.controllers.refreshing.RefreshingOAuth2Controller` --
  wraps another controller and keeps OAuth2 tokens fresh.

To implement a new controller, subclass :class:`AuthenticationController`
and override the operations it supports. Anything not overridden raises
:class:`~credman.exceptions.UnsupportedOperationError`.

See Also:
    :mod:`credman.auth.manager` for how controllers are notified.
"""

from __future__ import annotations

import weakref
from abc import ABC
from typing import TYPE_CHECKING, Callable, Optional

from credman.exceptions import UnsupportedOperationError
from credman.models import Credential, DeviceAuthorization, DeviceTokenResponse

if TYPE_CHECKING:
    from credman.auth.manager import CredentialManager
    from credman.providers.base import OAuth2IdentityProvider

DeviceFlowCallback = Callable[[Optional[DeviceTokenResponse]], None]
"""Receives the outcome of a device flow, or ``None`` if it was cancelled."""


class AuthenticationController(ABC):
    """Base class for authentication controllers.

    The controller keeps a non-owning reference to the manager it serves,
    set once by the manager at construction time.
    """

    def __init__(self) -> None:
        self._manager_ref: Optional[weakref.ReferenceType[CredentialManager]] = None

    @property
    def credential_manager(self) -> Optional[CredentialManager]:
        """The owning manager, or ``None`` if unbound or already collected."""
        return self._manager_ref() if self._manager_ref is not None else None

    def bind_credential_manager(self, manager: CredentialManager) -> None:
        self._manager_ref = weakref.ref(manager)

    def start_authorization_code_flow(
        self,
        provider: OAuth2IdentityProvider,
        redirect_url: Optional[str] = None,
        scopes: Optional[list[str]] = None,
    ) -> str:
        """Begin an authorization code flow.

        Returns:
            The URL the user must visit.

        Raises:
            UnsupportedOperationError: Unless a subclass implements the flow.
        """
        raise UnsupportedOperationError(
            f"{type(self).__name__} does not support the authorization code flow"
        )

    def start_device_flow(
        self,
        provider: OAuth2IdentityProvider,
        scopes: list[str],
        callback: DeviceFlowCallback,
    ) -> DeviceAuthorization:
        """Begin a device authorization flow and poll for its outcome.

        Args:
            provider: OAuth2-capable provider to authenticate against.
            scopes: Requested scopes.
            callback: Invoked at most once with the outcome.

        Returns:
            The device authorization to show to the user.

        Raises:
            UnsupportedOperationError: Unless a subclass implements the flow.
        """
        raise UnsupportedOperationError(
            f"{type(self).__name__} does not support the device flow"
        )

    def on_credential_registered(self, credential: Credential) -> None:
        """Hook invoked after the manager stores a new credential."""

    def on_credential_removed(self, credential: Credential) -> None:
        """Hook invoked after the manager drops a credential."""

    def close(self) -> None:
        """Release background resources. Safe to call more than once."""
