"""Storage backends for the credential list.

The :class:`~credman.auth.manager.CredentialManager` keeps its credentials
in memory and delegates persistence to a :class:`StorageBackend`:

- :class:`TemporaryStorageBackend` -- keeps everything in memory; nothing
  survives the process.
- :class:`FileStorageBackend` -- a JSON list in a single file, by default
  ``~/.local/share/credman/credentials.json`` (XDG). Files are written
  atomically with ``0o600`` permissions so that tokens are never
  world-readable, even momentarily.

File format: a JSON array of snake_case objects. ``None`` values are
omitted on write, unknown keys are ignored on read, and an empty file reads
as an empty list.

See Also:
    :func:`credman.config.atomic_write` -- the atomic write primitive.
"""

from __future__ import annotations

import json
import logging
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional

from pydantic import ValidationError

from credman.config import atomic_write
from credman.exceptions import ConfigError
from credman.models import Credential, OAuth2Credential

logger = logging.getLogger(__name__)


def find_by_user_id(credentials: list[Credential], user_id: str) -> Optional[Credential]:
    """Return the first credential whose ``user_id`` matches case-insensitively."""
    wanted = user_id.lower()
    for credential in credentials:
        if credential.user_id is not None and credential.user_id.lower() == wanted:
            return credential
    return None


class StorageBackend(ABC):
    """Persistence contract for the manager's credential list."""

    @abstractmethod
    def load_credentials(self) -> list[Credential]:
        """Return all stored credentials, in stored order."""

    @abstractmethod
    def save_credentials(self, credentials: list[Credential]) -> None:
        """Replace the stored credentials with *credentials*."""

    @abstractmethod
    def get_credential_by_user_id(self, user_id: str) -> Optional[Credential]:
        """Return the first stored credential owned by *user_id* (case-insensitive)."""


class TemporaryStorageBackend(StorageBackend):
    """In-memory storage for tests and short-lived processes."""

    def __init__(self) -> None:
        self._credentials: list[Credential] = []
        self._lock = threading.Lock()

    def load_credentials(self) -> list[Credential]:
        with self._lock:
            return list(self._credentials)

    def save_credentials(self, credentials: list[Credential]) -> None:
        with self._lock:
            self._credentials = list(credentials)

    def get_credential_by_user_id(self, user_id: str) -> Optional[Credential]:
        with self._lock:
            return find_by_user_id(self._credentials, user_id)


class FileStorageBackend(StorageBackend):
    """Persist credentials as a JSON list in a single file.

    The file is read once on construction and again on every
    :meth:`load_credentials` call. Writes go through a temp file and
    ``os.replace``.

    Args:
        path: Location of the credentials file. Parent directories are
            created on first save.

    Raises:
        ConfigError: If the file exists but does not contain a valid
            credential list.

    Example::

        backend = FileStorageBackend(Path("~/.local/share/credman/credentials.json"))
        backend.save_credentials([credential])
        assert backend.load_credentials() == [credential]
    """

    def __init__(self, path: Path) -> None:
        self._path = Path(path).expanduser()
        self._lock = threading.Lock()
        self._credentials: list[Credential] = []
        self.load_credentials()

    @property
    def path(self) -> Path:
        return self._path

    def load_credentials(self) -> list[Credential]:
        credentials = self._read()
        with self._lock:
            self._credentials = credentials
            return list(credentials)

    def save_credentials(self, credentials: list[Credential]) -> None:
        data = [c.model_dump(mode="json", exclude_none=True) for c in credentials]
        atomic_write(self._path, json.dumps(data, indent=2) + "\n", mode=0o600)
        with self._lock:
            self._credentials = list(credentials)
        logger.debug("Saved %d credential(s) to %s", len(credentials), self._path)

    def get_credential_by_user_id(self, user_id: str) -> Optional[Credential]:
        with self._lock:
            return find_by_user_id(self._credentials, user_id)

    def _read(self) -> list[Credential]:
        if not self._path.is_file():
            return []
        try:
            text = self._path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ConfigError(f"Cannot read credentials file {self._path}: {exc}") from exc
        if not text.strip():
            return []
        try:
            data = json.loads(text)
            if not isinstance(data, list):
                raise ValueError("expected a JSON list of credentials")
            return [_credential_from_dict(item) for item in data]
        except (json.JSONDecodeError, ValidationError, ValueError) as exc:
            raise ConfigError(f"Invalid credentials file at {self._path}: {exc}") from exc


def _credential_from_dict(data: Any) -> Credential:
    if not isinstance(data, dict):
        raise ValueError(f"expected a JSON object, got {type(data).__name__}")
    if "access_token" in data:
        # Stored credentials keep their original issue time; an absent one stays absent
        return OAuth2Credential.model_validate({"issued_at": None, **data})
    return Credential.model_validate(data)
