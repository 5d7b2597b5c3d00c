"""Credential management core for credman.

This package ties credentials to identity providers and persists them.

The main entry points are:

- :class:`CredentialManager` -- registry of identity providers and owner of
  the credential list.
- :func:`create_credential_manager` -- factory that builds a manager, its
  storage, controllers and providers from a
  :class:`~credman.models.ManagerConfig`.
- :class:`AuthenticationController` -- abstract base class for controllers
  that react to credential registration and run interactive flows.
- :class:`StorageBackend` -- persistence contract, with
  :class:`TemporaryStorageBackend` and :class:`FileStorageBackend`.

Typical usage::

    from credman.auth import create_credential_manager
    from credman.config import resolve_config

    with create_credential_manager(resolve_config()) as manager:
        credential = manager.get_credential_by_user_id("12345")
"""

from credman.auth.base import AuthenticationController, DeviceFlowCallback
from credman.auth.credential_store import (
    FileStorageBackend,
    StorageBackend,
    TemporaryStorageBackend,
)
from credman.auth.manager import CredentialManager, create_credential_manager

__all__ = [
    "AuthenticationController",
    "CredentialManager",
    "DeviceFlowCallback",
    "FileStorageBackend",
    "StorageBackend",
    "TemporaryStorageBackend",
    "create_credential_manager",
]
