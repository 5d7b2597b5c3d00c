"""Credential manager -- registry of identity providers and owner of credentials.

The :class:`CredentialManager` is the central coordinator of credman. It
maintains:

- a mapping from lowercase provider names to
  :class:`~credman.providers.base.IdentityProvider` instances, and
- the ordered list of stored :class:`~credman.models.Credential` objects,
  persisted through a :class:`~credman.auth.credential_store.StorageBackend`.

Every credential added through :meth:`CredentialManager.add_credential` is
handed to the active :class:`~credman.auth.base.AuthenticationController`,
which may start background work such as refresh cycles.

For most use cases, call :func:`create_credential_manager` to build a
manager, its storage, controllers and providers from a
:class:`~credman.models.ManagerConfig`.

See Also:
    :mod:`credman.controllers` -- the built-in controllers.
    :mod:`credman.providers` -- the identity provider contracts.
"""

from __future__ import annotations

import logging
import threading
from typing import Optional

from credman.auth.base import AuthenticationController
from credman.auth.credential_store import (
    FileStorageBackend,
    StorageBackend,
    TemporaryStorageBackend,
    find_by_user_id,
)
from credman.exceptions import (
    ConfigError,
    CredmanError,
    IdentityProviderNotFoundError,
    RegistrationConflictError,
)
from credman.models import Credential, ManagerConfig, OAuth2Credential
from credman.providers.base import IdentityProvider, OAuth2IdentityProvider

logger = logging.getLogger(__name__)

OAUTH2_PROVIDER_TYPE = "oauth2"


class CredentialManager:
    """Registry of identity providers and store of credentials.

    The in-memory credential list is loaded from *storage* on construction;
    call :meth:`save` to write it back.

    Args:
        storage: Persistence backend. Defaults to in-memory storage.
        controller: Authentication controller notified about new
            credentials. Defaults to a
            :class:`~credman.controllers.noop.NoopAuthController`.

    Example::

        from credman.auth import CredentialManager
        from credman.providers import DefaultOAuth2IdentityProvider

        manager = CredentialManager()
        manager.register_identity_provider(
            DefaultOAuth2IdentityProvider("twitch", client_id="abc", token_url="...")
        )
        manager.add_credential("twitch", OAuth2Credential(
            identity_provider="twitch", access_token="tok123"))
    """

    def __init__(
        self,
        storage: Optional[StorageBackend] = None,
        controller: Optional[AuthenticationController] = None,
    ) -> None:
        if controller is None:
            from credman.controllers.noop import NoopAuthController

            controller = NoopAuthController()
        self._storage = storage or TemporaryStorageBackend()
        self._controller = controller
        self._providers: dict[str, IdentityProvider] = {}
        self._providers_lock = threading.Lock()
        self._credentials: list[Credential] = []
        self._credentials_lock = threading.RLock()
        self._controller.bind_credential_manager(self)
        self.load()

    def __enter__(self) -> CredentialManager:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def storage(self) -> StorageBackend:
        return self._storage

    @property
    def controller(self) -> AuthenticationController:
        return self._controller

    # -- identity providers --

    def register_identity_provider(self, provider: IdentityProvider) -> None:
        """Register *provider* under its lowercase name.

        Re-registering a name is idempotent when the new provider is of the
        same class as the stored one (or a base class of it). A provider of a
        more specific class replaces the stored one.

        Args:
            provider: The provider instance to register.

        Raises:
            RegistrationConflictError: If the name is taken by a provider of
                an unrelated class.
        """
        key = provider.name.lower()
        with self._providers_lock:
            existing = self._providers.get(key)
            if existing is None:
                self._providers[key] = provider
            elif isinstance(existing, type(provider)):
                logger.debug(
                    "Identity provider '%s' is already registered as %s",
                    provider.name,
                    type(existing).__name__,
                )
                return
            elif isinstance(provider, type(existing)):
                self._providers[key] = provider
                logger.info(
                    "Replaced identity provider '%s' (%s -> %s)",
                    provider.name,
                    type(existing).__name__,
                    type(provider).__name__,
                )
            else:
                raise RegistrationConflictError(
                    f"Identity provider '{provider.name}' is already registered as "
                    f"{type(existing).__name__}, which is incompatible with "
                    f"{type(provider).__name__}"
                )
        provider.bind_credential_manager(self)

    def get_identity_providers(self) -> list[IdentityProvider]:
        with self._providers_lock:
            return list(self._providers.values())

    def get_identity_provider_by_name(self, name: str) -> Optional[IdentityProvider]:
        with self._providers_lock:
            return self._providers.get(name.lower())

    def get_oauth2_identity_provider_by_name(
        self, name: str
    ) -> Optional[OAuth2IdentityProvider]:
        """Return the provider named *name* if it supports OAuth2, else ``None``."""
        provider = self.get_identity_provider_by_name(name)
        if provider is not None and provider.supports_oauth2:
            return provider  # type: ignore[return-value]
        return None

    # -- credentials --

    def add_credential(self, provider_name: str, credential: Credential) -> Credential:
        """Store *credential* and notify the controller.

        OAuth2 credentials must belong to a registered OAuth2 provider. The
        provider gets a chance to enrich the credential first; if it returns
        a populated copy, that copy is stored instead of the original.

        Args:
            provider_name: Name of the issuing identity provider.
            credential: The credential to store.

        Returns:
            The credential that was actually stored.

        Raises:
            IdentityProviderNotFoundError: If no OAuth2 provider is
                registered under *provider_name*.
        """
        if isinstance(credential, OAuth2Credential):
            provider = self.get_oauth2_identity_provider_by_name(provider_name)
            if provider is None or provider.provider_type.lower() != OAUTH2_PROVIDER_TYPE:
                raise IdentityProviderNotFoundError(
                    f"Can't find a unique OAuth2 identity provider named "
                    f"'{provider_name}' for the credential"
                )
            try:
                enriched = provider.get_additional_credential_information(credential)
            except CredmanError as exc:
                logger.warning(
                    "Could not look up credential details from '%s': %s", provider_name, exc
                )
                enriched = None
            if enriched is not None:
                credential = enriched

        with self._credentials_lock:
            self._credentials.append(credential)
        self._controller.on_credential_registered(credential)
        return credential

    def remove_credential(self, credential: Credential) -> bool:
        """Remove *credential* (matched by identity); return ``True`` if it was stored."""
        with self._credentials_lock:
            for index, stored in enumerate(self._credentials):
                if stored is credential:
                    del self._credentials[index]
                    break
            else:
                return False
        self._controller.on_credential_removed(credential)
        return True

    def get_credentials(self) -> list[Credential]:
        """Return a snapshot of the stored credentials, in insertion order."""
        with self._credentials_lock:
            return list(self._credentials)

    def get_credential_by_user_id(self, user_id: str) -> Optional[Credential]:
        """Return the first credential owned by *user_id* (case-insensitive)."""
        with self._credentials_lock:
            return find_by_user_id(self._credentials, user_id)

    # -- persistence --

    def load(self) -> None:
        """Replace the in-memory credentials with those from storage."""
        credentials = self._storage.load_credentials()
        with self._credentials_lock:
            self._credentials = list(credentials)
        logger.debug("Loaded %d credential(s)", len(credentials))

    def save(self) -> None:
        """Persist the in-memory credentials to storage."""
        self._storage.save_credentials(self.get_credentials())

    def close(self) -> None:
        """Close the controller, stopping all background work."""
        self._controller.close()


def create_storage_backend(config: ManagerConfig) -> StorageBackend:
    """Build the storage backend selected by ``config.storage``.

    Raises:
        ConfigError: If the backend name is unknown.
    """
    from credman.config import get_credentials_path

    backend = config.storage.backend.lower()
    if backend == "memory":
        return TemporaryStorageBackend()
    if backend == "file":
        return FileStorageBackend(get_credentials_path(config))
    raise ConfigError(
        f"Unknown storage backend '{config.storage.backend}': must be 'file' or 'memory'"
    )


def create_controller(config: ManagerConfig) -> AuthenticationController:
    """Build the controller stack selected by *config*.

    The device-flow controller (or a no-op controller when the device flow
    is disabled) is wrapped by a refreshing controller when refresh is
    enabled. Both share one thread-pool scheduler, owned by the outermost
    controller.
    """
    from credman.controllers import (
        DeviceFlowController,
        NoopAuthController,
        RefreshingOAuth2Controller,
    )
    from credman.scheduler import ThreadPoolScheduler

    if not config.device_flow.enabled and not config.refresh.enabled:
        return NoopAuthController()

    scheduler = ThreadPoolScheduler(max_workers=config.scheduler.max_workers)
    controller: AuthenticationController
    if config.device_flow.enabled:
        controller = DeviceFlowController(
            scheduler,
            max_expires_in=config.device_flow.max_expires_in,
            owns_scheduler=not config.refresh.enabled,
        )
    else:
        controller = NoopAuthController()
    if config.refresh.enabled:
        controller = RefreshingOAuth2Controller(
            controller,
            scheduler,
            minimum_refresh_interval=config.refresh.minimum_refresh_interval,
            save_after_refresh=config.refresh.save_after_refresh,
            owns_scheduler=True,
        )
    return controller


def create_credential_manager(
    config: ManagerConfig,
    storage: Optional[StorageBackend] = None,
    controller: Optional[AuthenticationController] = None,
) -> CredentialManager:
    """Create a :class:`CredentialManager` with everything described by *config*.

    Each entry in ``config.providers`` becomes a registered provider: OAuth2
    entries as :class:`~credman.providers.oauth2.DefaultOAuth2IdentityProvider`
    (with secrets resolved), anything else as a plain
    :class:`~credman.providers.base.IdentityProvider`.

    Args:
        config: The effective configuration.
        storage: Overrides the configured storage backend.
        controller: Overrides the configured controller stack.

    Returns:
        A fully initialised :class:`CredentialManager`.

    Raises:
        ConfigError: If the storage backend or a provider is misconfigured.
        RegistrationConflictError: If two providers share a name.
    """
    from credman.providers.oauth2 import DefaultOAuth2IdentityProvider

    manager = CredentialManager(
        storage=storage or create_storage_backend(config),
        controller=controller or create_controller(config),
    )
    try:
        for provider_config in config.providers:
            provider: IdentityProvider
            if provider_config.type.lower() == OAUTH2_PROVIDER_TYPE:
                provider = DefaultOAuth2IdentityProvider.from_config(provider_config)
            else:
                extra = {k: str(v) for k, v in (provider_config.model_extra or {}).items()}
                provider = IdentityProvider(provider_config.name, provider_config.type, extra)
            manager.register_identity_provider(provider)
    except CredmanError:
        manager.close()
        raise
    return manager
