"""Built-in CLI sub-commands for credman.

* :mod:`~credman.commands.login` -- run a device authorization login.
* :mod:`~credman.commands.credentials` -- list, show, refresh and remove
  stored credentials.
* :mod:`~credman.commands.providers` -- list configured identity providers.

Each command opens a :class:`~credman.auth.manager.CredentialManager` with
:func:`open_manager`, using the ``--config`` and ``--credentials-file``
options stored in the Typer context by the root callback.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer

from credman.auth.manager import CredentialManager, create_credential_manager
from credman.config import resolve_config
from credman.models import ManagerConfig


def load_config(ctx: Optional[typer.Context]) -> ManagerConfig:
    """Resolve the effective config using the root options in ``ctx.obj``."""
    obj = (ctx.obj if ctx is not None else None) or {}
    config_path: Optional[Path] = obj.get("config_path")
    credentials_file: Optional[Path] = obj.get("credentials_file")
    return resolve_config(cli_config=config_path, cli_credentials_file=credentials_file)


def open_manager(
    ctx: Optional[typer.Context], config: Optional[ManagerConfig] = None
) -> CredentialManager:
    """Create the credential manager for a CLI command.

    Raises:
        ConfigError: If the configuration or credentials file is invalid.
    """
    return create_credential_manager(config or load_config(ctx))
