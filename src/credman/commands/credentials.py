"""Credential commands -- inspect and maintain stored credentials.

Provides the ``credman credentials`` sub-command group. Credentials are
selected either by their 1-based position in ``credentials list`` or by
user id (case-insensitive)::

    credman credentials list
    credman credentials show 1
    credman credentials refresh 12345
    credman credentials remove 12345 --force
"""

from __future__ import annotations

from typing import Any

import typer

from credman.auth.manager import CredentialManager
from credman.commands import open_manager
from credman.controllers.refreshing import RefreshingOAuth2Controller
from credman.exceptions import (
    AuthorizationError,
    CredentialNotFoundError,
    CredmanError,
    IdentityProviderNotFoundError,
)
from credman.models import NEVER_EXPIRES_INSTANT, Credential, OAuth2Credential
from credman.output import error, info, print_record, print_table, success, suggest

credentials_app = typer.Typer(no_args_is_help=True)


def select_credential(manager: CredentialManager, selector: str) -> Credential:
    """Find a credential by 1-based list position or by user id.

    Raises:
        CredentialNotFoundError: If nothing matches.
    """
    credentials = manager.get_credentials()
    if selector.isdigit() and 1 <= int(selector) <= len(credentials):
        return credentials[int(selector) - 1]
    credential = manager.get_credential_by_user_id(selector)
    if credential is None:
        raise CredentialNotFoundError(f"No stored credential matches '{selector}'")
    return credential


def _mask(token: str | None) -> str | None:
    if token is None:
        return None
    if len(token) <= 8:
        return "*" * len(token)
    return f"{token[:4]}...{token[-4:]}"


def _expiry_label(credential: Credential) -> str:
    if not isinstance(credential, OAuth2Credential):
        return "-"
    if credential.issued_at is None:
        return "expired"
    if credential.expires_at == NEVER_EXPIRES_INSTANT:
        return "never"
    label = credential.expires_at.isoformat(timespec="seconds")
    return f"{label} (expired)" if credential.is_expired() else label


def credential_record(credential: Credential, reveal: bool = False) -> dict[str, Any]:
    """Serialise *credential* for display, masking tokens unless *reveal* is set."""
    record = credential.model_dump(mode="json", exclude_none=True)
    if isinstance(credential, OAuth2Credential):
        if not reveal:
            for key in ("access_token", "refresh_token"):
                if key in record:
                    record[key] = _mask(record[key])
        record["expires_at"] = _expiry_label(credential)
    return record


@credentials_app.command("list")
def credentials_list(ctx: typer.Context) -> None:
    """List stored credentials."""
    try:
        manager = open_manager(ctx)
    except CredmanError as exc:
        error(str(exc))
        raise typer.Exit(code=exc.exit_code) from None
    with manager:
        credentials = manager.get_credentials()

    if not credentials:
        info("No credentials stored.")
        suggest("Log in: credman login <provider>")
        return

    rows = []
    for index, credential in enumerate(credentials, 1):
        scopes = getattr(credential, "scopes", [])
        rows.append(
            [
                str(index),
                credential.identity_provider,
                credential.user_id or "",
                getattr(credential, "user_name", None) or "",
                _expiry_label(credential),
                " ".join(scopes),
            ]
        )
    print_table(
        ["#", "Provider", "User ID", "User", "Expires", "Scopes"],
        rows,
        title="Credentials",
    )


@credentials_app.command("show")
def credentials_show(
    ctx: typer.Context,
    selector: str = typer.Argument(help="List position or user id."),
    reveal: bool = typer.Option(
        False, "--reveal", help="Show tokens instead of masking them."
    ),
) -> None:
    """Show one stored credential."""
    try:
        with open_manager(ctx) as manager:
            credential = select_credential(manager, selector)
    except CredmanError as exc:
        error(str(exc))
        raise typer.Exit(code=exc.exit_code) from None
    print_record(credential_record(credential, reveal=reveal))


@credentials_app.command("refresh")
def credentials_refresh(
    ctx: typer.Context,
    selector: str = typer.Argument(help="List position or user id."),
) -> None:
    """Refresh a stored OAuth2 credential now and save it."""
    try:
        with open_manager(ctx) as manager:
            credential = select_credential(manager, selector)
            _refresh(manager, credential)
            manager.save()
    except CredmanError as exc:
        error(str(exc))
        raise typer.Exit(code=exc.exit_code) from None
    success("Credential refreshed.")


def _refresh(manager: CredentialManager, credential: Credential) -> None:
    if not isinstance(credential, OAuth2Credential):
        raise AuthorizationError("Only OAuth2 credentials can be refreshed")
    provider = manager.get_oauth2_identity_provider_by_name(credential.identity_provider)
    if provider is None:
        raise IdentityProviderNotFoundError(
            f"No OAuth2 identity provider named '{credential.identity_provider}' is configured"
        )
    controller = manager.controller
    if isinstance(controller, RefreshingOAuth2Controller):
        refreshed = controller.try_refresh(provider, credential)
    else:
        refreshed = provider.renew(credential)
    if not refreshed:
        raise AuthorizationError(
            "Could not refresh the credential; it may have been revoked. "
            "Log in again with: credman login " + credential.identity_provider
        )


@credentials_app.command("remove")
def credentials_remove(
    ctx: typer.Context,
    selector: str = typer.Argument(help="List position or user id."),
    force: bool = typer.Option(False, "--force", "-f", help="Skip confirmation."),
) -> None:
    """Remove a stored credential."""
    try:
        with open_manager(ctx) as manager:
            credential = select_credential(manager, selector)
            if not force and not typer.confirm(
                f"Remove the {credential.identity_provider} credential"
                f"{' for ' + credential.user_id if credential.user_id else ''}?"
            ):
                info("Cancelled.")
                return
            manager.remove_credential(credential)
            manager.save()
    except CredmanError as exc:
        error(str(exc))
        raise typer.Exit(code=exc.exit_code) from None
    success("Credential removed.")
