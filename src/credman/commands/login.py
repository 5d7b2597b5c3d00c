"""Login command -- run an OAuth2 device authorization flow.

Prints the verification URI and user code to stderr, waits while the
device-flow controller polls in the background, then saves the new
credential::

    credman login twitch --scope chat:read --scope chat:edit
"""

from __future__ import annotations

import threading
from typing import Optional

import typer

from credman.auth.manager import CredentialManager
from credman.commands import load_config, open_manager
from credman.exceptions import (
    AuthorizationError,
    CredmanError,
    IdentityProviderNotFoundError,
)
from credman.models import (
    Credential,
    DeviceFlowError,
    DeviceTokenResponse,
    ManagerConfig,
    utcnow,
)
from credman.output import error, info, success, suggest

_ERROR_MESSAGES = {
    DeviceFlowError.ACCESS_DENIED: "Authorization denied by user",
    DeviceFlowError.EXPIRED_TOKEN: "Device code expired -- please try again",
}

# Extra wait beyond the device code lifetime, so the final poll can report
_GRACE_SECONDS = 30


def login_command(
    ctx: typer.Context,
    provider_name: str = typer.Argument(help="Identity provider to log in with."),
    scopes: Optional[list[str]] = typer.Option(
        None, "--scope", "-s", help="Scope to request (repeatable)."
    ),
    timeout: Optional[float] = typer.Option(
        None, "--timeout", help="Give up after this many seconds."
    ),
) -> None:
    """Log in through the OAuth2 device authorization flow.

    Scopes default to the ``scopes`` list of the provider's config entry.
    An existing credential for the same user and provider is replaced.
    """
    try:
        config = load_config(ctx)
        manager = open_manager(ctx, config)
    except CredmanError as exc:
        error(str(exc))
        raise typer.Exit(code=exc.exit_code) from None

    try:
        credential = run_device_login(manager, config, provider_name, scopes, timeout)
    except CredmanError as exc:
        error(str(exc))
        raise typer.Exit(code=exc.exit_code) from None
    finally:
        manager.close()

    who = getattr(credential, "user_name", None) or credential.user_id
    success(f"Logged in to {provider_name}" + (f" as {who}" if who else "") + ".")
    suggest("List stored credentials: credman credentials list")


def run_device_login(
    manager: CredentialManager,
    config: ManagerConfig,
    provider_name: str,
    scopes: Optional[list[str]] = None,
    timeout: Optional[float] = None,
) -> Credential:
    """Run a device login to completion and persist the resulting credential.

    Returns:
        The stored credential.

    Raises:
        IdentityProviderNotFoundError: If *provider_name* is not an OAuth2 provider.
        AuthorizationError: If the flow is denied, expires, times out or is cancelled.
        UnsupportedOperationError: If the device flow is disabled.
    """
    provider = manager.get_oauth2_identity_provider_by_name(provider_name)
    if provider is None:
        raise IdentityProviderNotFoundError(
            f"No OAuth2 identity provider named '{provider_name}' is configured"
        )
    if not scopes:
        scopes = next(
            (p.scopes for p in config.providers if p.name.lower() == provider_name.lower()),
            [],
        )

    done = threading.Event()
    outcome: list[Optional[DeviceTokenResponse]] = []

    def _on_result(response: Optional[DeviceTokenResponse]) -> None:
        outcome.append(response)
        done.set()

    authorization = manager.controller.start_device_flow(provider, list(scopes), _on_result)
    info("")
    info(f"Go to: {authorization.complete_uri}")
    info(f"Enter code: {authorization.user_code}")
    info("")
    info("Waiting for authorization...")

    if timeout is None:
        remaining = (authorization.expires_at - utcnow()).total_seconds()
        timeout = max(0.0, remaining) + authorization.interval + _GRACE_SECONDS
    if not done.wait(timeout):
        raise AuthorizationError("Timed out waiting for the device authorization")

    response = outcome[0]
    if response is None:
        raise AuthorizationError("Device login was cancelled")
    if response.error is not None:
        raise AuthorizationError(
            _ERROR_MESSAGES.get(
                response.error, f"Device authorization failed: {response.error.value}"
            )
        )

    stored = response.credential
    credentials = manager.get_credentials()
    if stored is None or not any(c is stored for c in credentials):
        raise CredmanError("The new credential could not be stored")
    for previous in credentials:
        if (
            previous is not stored
            and stored.user_id is not None
            and previous.user_id == stored.user_id
            and previous.identity_provider.lower() == stored.identity_provider.lower()
        ):
            manager.remove_credential(previous)
    manager.save()
    return stored
