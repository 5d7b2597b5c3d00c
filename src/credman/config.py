"""Configuration management with XDG paths, atomic writes, and precedence resolution.

This module handles all persistent configuration for credman:

* **Directory layout** -- XDG Base Directory compliant on Linux/BSD,
  ``~/.credman/`` on macOS and Windows. See :func:`get_config_dir` and
  :func:`get_data_dir`.
* **Manager config** -- A single :class:`~credman.models.ManagerConfig`
  JSON file describing identity providers, storage, device-flow, refresh
  and scheduler settings.
* **Precedence resolution** -- :func:`resolve_config` layers CLI flags and
  environment variables over the config file.
* **Secret resolution** -- :func:`resolve_credential` reads client ids and
  secrets from env vars, files, or interactive prompts.

All file writes go through :func:`atomic_write` so that a crash never
leaves a half-written config or credentials file behind.
"""

from __future__ import annotations

import getpass
import json
import os
import platform
import sys
import tempfile
from pathlib import Path
from typing import Optional

from credman.exceptions import ConfigError
from credman.models import ManagerConfig

_APP_NAME = "credman"
_CONFIG_FILENAME = "config.json"
_CREDENTIALS_FILENAME = "credentials.json"

CONFIG_ENV_VAR = "CREDMAN_CONFIG"
"""Overrides the location of the config file."""

CREDENTIALS_FILE_ENV_VAR = "CREDMAN_CREDENTIALS_FILE"
"""Overrides the location of the credentials file."""


# --- XDG path resolution ---


def _is_xdg_platform() -> bool:
    """Return True if the platform uses the XDG Base Directory layout (Linux/BSD)."""
    return platform.system() == "Linux" or platform.system().endswith("BSD")


def _xdg_base(env_var: str, default_segments: tuple[str, ...]) -> Path:
    env_value = os.environ.get(env_var, "")
    if env_value:
        return Path(env_value)
    return Path.home().joinpath(*default_segments)


def get_config_dir() -> Path:
    """Return the configuration directory, creating it if necessary.

    On Linux/BSD: ``$XDG_CONFIG_HOME/credman/`` (default ``~/.config/credman/``).
    On macOS/Windows: ``~/.credman/``.
    """
    if _is_xdg_platform():
        path = _xdg_base("XDG_CONFIG_HOME", (".config",)) / _APP_NAME
    else:
        path = Path.home() / f".{_APP_NAME}"
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_data_dir() -> Path:
    """Return the data directory (credentials, crash logs), creating it if necessary.

    On Linux/BSD: ``$XDG_DATA_HOME/credman/`` (default ``~/.local/share/credman/``).
    On macOS/Windows: ``~/.credman/data/``.
    """
    if _is_xdg_platform():
        path = _xdg_base("XDG_DATA_HOME", (".local", "share")) / _APP_NAME
    else:
        path = Path.home() / f".{_APP_NAME}" / "data"
    path.mkdir(parents=True, exist_ok=True)
    return path


# --- Atomic file writes ---


def atomic_write(path: Path, data: str, mode: Optional[int] = None) -> None:
    """Write *data* to *path* atomically using a temp file and rename.

    The temporary file is created next to *path* so that ``os.replace`` is
    an atomic rename on POSIX systems. On any failure the temp file is
    removed and the original file is left untouched.

    Args:
        path: Destination file.
        data: Text to write (UTF-8).
        mode: Optional permission bits applied to the temp file before the
            rename, e.g. ``0o600`` for files holding secrets.
    """
    path.parent.mkdir(parents=True, exist_ok=True)

    fd = None
    tmp_path: Optional[str] = None
    try:
        fd = tempfile.NamedTemporaryFile(
            mode="w",
            dir=path.parent,
            prefix=f".{path.name}.",
            suffix=".tmp",
            delete=False,
            encoding="utf-8",
        )
        tmp_path = fd.name
        if mode is not None:
            os.chmod(tmp_path, mode)
        fd.write(data)
        fd.flush()
        os.fsync(fd.fileno())
        fd.close()
        fd = None
        os.replace(tmp_path, path)
    except BaseException:
        if fd is not None:
            fd.close()
        if tmp_path is not None:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
        raise


# --- Manager config ---


def get_config_path() -> Path:
    """Path to the config file, honouring ``$CREDMAN_CONFIG``."""
    override = os.environ.get(CONFIG_ENV_VAR)
    if override:
        return Path(override).expanduser()
    return get_config_dir() / _CONFIG_FILENAME


def load_manager_config(path: Optional[Path] = None) -> ManagerConfig:
    """Load the manager configuration.

    Args:
        path: Explicit config file. Defaults to :func:`get_config_path`.

    Returns:
        The deserialised :class:`~credman.models.ManagerConfig`. If the
        file does not exist, a default instance is returned.

    Raises:
        ConfigError: If the file exists but contains invalid JSON or fails
            Pydantic validation.
    """
    path = path or get_config_path()
    if not path.is_file():
        return ManagerConfig()
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        return ManagerConfig.model_validate(data)
    except (json.JSONDecodeError, ValueError) as exc:
        raise ConfigError(f"Invalid config at {path}: {exc}") from exc


def save_manager_config(config: ManagerConfig, path: Optional[Path] = None) -> None:
    """Persist the manager configuration atomically to disk."""
    data = config.model_dump(mode="json", exclude_none=True)
    atomic_write(path or get_config_path(), json.dumps(data, indent=2) + "\n")


def get_credentials_path(config: Optional[ManagerConfig] = None) -> Path:
    """Resolve the credentials file location.

    Precedence (high to low): ``$CREDMAN_CREDENTIALS_FILE``,
    ``config.storage.path``, ``<data_dir>/credentials.json``.
    """
    override = os.environ.get(CREDENTIALS_FILE_ENV_VAR)
    if override:
        return Path(override).expanduser()
    if config is not None and config.storage.path:
        return Path(config.storage.path).expanduser()
    return get_data_dir() / _CREDENTIALS_FILENAME


# --- Precedence resolution ---


def resolve_config(
    cli_config: Optional[Path] = None,
    cli_credentials_file: Optional[Path] = None,
) -> ManagerConfig:
    """Resolve the effective configuration.

    Precedence (high to low):
        1. CLI flags (``--config``, ``--credentials-file``)
        2. Environment variables (``CREDMAN_CONFIG``, ``CREDMAN_CREDENTIALS_FILE``)
        3. User config (``~/.config/credman/config.json``)
        4. Defaults

    Returns:
        The :class:`~credman.models.ManagerConfig` with ``storage.path``
        filled in for file-backed storage.
    """
    config = load_manager_config(cli_config)
    if cli_credentials_file is not None:
        config.storage.path = str(cli_credentials_file)
    elif config.storage.backend == "file":
        config.storage.path = str(get_credentials_path(config))
    return config


# --- Secret source resolution ---


def resolve_credential(source: str) -> str:
    """Resolve a secret (client id or client secret) from its source descriptor.

    Supported formats:
        - ``"env:VAR_NAME"`` -- reads ``os.environ["VAR_NAME"]``
        - ``"file:/path/to/file"`` -- reads file content, stripped of whitespace
        - ``"prompt"`` -- prompts user interactively (requires a TTY)

    Args:
        source: The source descriptor string.

    Returns:
        The resolved secret.

    Raises:
        ConfigError: If the source can't be resolved.
    """
    if source.startswith("env:"):
        var_name = source[4:]
        value = os.environ.get(var_name)
        if value is None:
            raise ConfigError(
                f"Environment variable '{var_name}' is not set (source: {source})"
            )
        return value

    if source.startswith("file:"):
        path = Path(source[5:]).expanduser()
        if not path.is_file():
            raise ConfigError(f"Secret file not found: {path} (source: {source})")
        try:
            return path.read_text(encoding="utf-8").strip()
        except OSError as exc:
            raise ConfigError(f"Cannot read secret file {path}: {exc}") from exc

    if source == "prompt":
        if not sys.stdin.isatty():
            raise ConfigError(
                "Cannot prompt for secrets: stdin is not a TTY (source: prompt)"
            )
        return getpass.getpass("Enter secret: ")

    raise ConfigError(f"Unknown secret source format: {source}")
