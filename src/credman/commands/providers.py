"""Provider commands -- show the configured identity providers."""

from __future__ import annotations

import typer

from credman.commands import open_manager
from credman.exceptions import CredmanError
from credman.output import error, info, print_table, suggest

providers_app = typer.Typer(no_args_is_help=True)


@providers_app.command("list")
def providers_list(ctx: typer.Context) -> None:
    """List registered identity providers."""
    try:
        with open_manager(ctx) as manager:
            providers = manager.get_identity_providers()
    except CredmanError as exc:
        error(str(exc))
        raise typer.Exit(code=exc.exit_code) from None

    if not providers:
        info("No identity providers configured.")
        suggest("Add one to the 'providers' list in your credman config.json")
        return

    rows = [
        [
            provider.name,
            provider.provider_type,
            "yes" if provider.supports_oauth2 else "no",
            "yes" if getattr(provider, "device_url", None) else "no",
        ]
        for provider in sorted(providers, key=lambda p: p.name.lower())
    ]
    print_table(["Name", "Type", "OAuth2", "Device flow"], rows, title="Identity providers")
