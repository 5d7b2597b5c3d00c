"""Typer application and CLI entry point for credman.

This module wires together the top-level Typer application and its
sub-commands (``login``, ``credentials``, ``providers``). The root
callback installs the global :class:`~credman.output.OutputManager` and
routes library logging through a :class:`rich.logging.RichHandler` on
stderr.

The :func:`main` function is the console-script entry point declared in
``pyproject.toml``. It installs signal handlers and invokes the Typer app.
:class:`~credman.exceptions.CredmanError` exits with its ``exit_code``;
any other exception is written to a crash log under the data directory.

See Also:
    :mod:`credman.config`: Configuration resolution.
    :mod:`credman.output`: Output formatting initialised in :func:`main_callback`.
"""

from __future__ import annotations

import logging
import signal
import sys
import traceback
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import typer
from rich.logging import RichHandler

from credman import __version__
from credman.exit_codes import EXIT_GENERIC_FAILURE

app = typer.Typer(
    name="credman",
    help="Manage OAuth2 credentials: device login, storage and refresh.",
    no_args_is_help=True,
    add_completion=False,
    rich_markup_mode="rich",
    pretty_exceptions_enable=False,
)

from credman.commands.credentials import credentials_app  # noqa: E402
from credman.commands.login import login_command  # noqa: E402
from credman.commands.providers import providers_app  # noqa: E402

app.command("login")(login_command)
app.add_typer(credentials_app, name="credentials", help="Stored credential management.")
app.add_typer(providers_app, name="providers", help="Identity provider information.")


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"credman {__version__}")
        raise typer.Exit()


@app.callback()
def main_callback(
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    config: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Config file (overrides $CREDMAN_CONFIG)."
    ),
    credentials_file: Optional[Path] = typer.Option(
        None,
        "--credentials-file",
        help="Credentials file (overrides $CREDMAN_CREDENTIALS_FILE).",
    ),
    json_output: bool = typer.Option(False, "--json", help="JSON output format."),
    plain_output: bool = typer.Option(False, "--plain", help="Plain text output."),
    no_color: bool = typer.Option(False, "--no-color", help="Disable color output."),
    quiet: bool = typer.Option(
        False, "--quiet", "-q", help="Suppress non-essential output."
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug output."),
) -> None:
    """Root callback executed before every sub-command.

    Initialises the global :class:`~credman.output.OutputManager` and the
    ``credman`` logger from CLI flags, and stores the config overrides in
    ``ctx.obj`` for :func:`~credman.commands.open_manager`.
    """
    from credman.output import OutputFormat, OutputManager, set_output

    fmt = OutputFormat.AUTO
    if json_output:
        fmt = OutputFormat.JSON
    elif plain_output:
        fmt = OutputFormat.PLAIN

    output = OutputManager(format=fmt, no_color=no_color, quiet=quiet, verbose=verbose)
    set_output(output)
    configure_logging(output.stderr_console, verbose)

    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config
    ctx.obj["credentials_file"] = credentials_file
    ctx.obj["verbose"] = verbose


def configure_logging(console: Any, verbose: bool) -> None:
    """Attach a single :class:`~rich.logging.RichHandler` to the ``credman`` logger.

    Library modules log through ``logging.getLogger(__name__)``; the CLI
    shows WARNING and above, or everything with ``--verbose``.
    """
    logger = logging.getLogger("credman")
    for handler in list(logger.handlers):
        if isinstance(handler, RichHandler):
            logger.removeHandler(handler)
    handler = RichHandler(
        console=console,
        show_path=False,
        show_time=verbose,
        markup=False,
        rich_tracebacks=verbose,
    )
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG if verbose else logging.WARNING)


def _setup_signal_handlers() -> None:
    """Install a SIGINT handler so Ctrl-C exits cleanly (and closes open managers)."""

    def _handler(signum: int, frame: Any) -> None:  # noqa: ANN401
        sys.stderr.write("\nCancelled.\n")
        sys.exit(130)

    signal.signal(signal.SIGINT, _handler)


def _write_crash_log(exc: Exception) -> str:
    """Write a crash traceback to ``<data_dir>/logs`` and return the log file path."""
    from credman.config import get_data_dir

    logs_dir = get_data_dir() / "logs"
    logs_dir.mkdir(parents=True, exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    log_path = logs_dir / f"crash-{timestamp}.log"
    log_path.write_text(traceback.format_exc())
    return str(log_path)


def main() -> None:
    """CLI entry point invoked by the ``credman`` console script.

    Unhandled :class:`~credman.exceptions.CredmanError` instances cause a
    clean exit with the error's ``exit_code``. All other exceptions produce
    a crash log and a generic failure exit.

    Raises:
        SystemExit: Always raised (either by Typer or explicitly).
    """
    _setup_signal_handlers()
    try:
        app()
    except SystemExit:
        raise
    except KeyboardInterrupt:
        sys.stderr.write("\nCancelled.\n")
        sys.exit(130)
    except Exception as exc:
        from credman.exceptions import CredmanError
        from credman.output import error

        if isinstance(exc, CredmanError):
            error(str(exc))
            sys.exit(exc.exit_code)
        log_path = _write_crash_log(exc)
        error(f"Unexpected error. Debug log: {log_path}")
        sys.exit(EXIT_GENERIC_FAILURE)
