"""Typer application and CLI entry point for authbroker.

This module wires together the top-level Typer application and registers the
built-in sub-commands (``login``, ``import``, ``status``, ``logout``).

The :func:`main` function is the console-script entry point declared in
``pyproject.toml``. It installs signal handlers and
invokes the Typer app. :class:`~authbroker.exceptions.BrokerError` exits with
its own code; any other exception is written to a crash log under the data
directory.

See Also:
    :mod:`authbroker.config`: Environment overrides and data directories.
    :mod:`authbroker.output`: Output formatting initialised in :func:`main_callback`.
"""

from __future__ import annotations

import signal
import sys
import traceback
from datetime import datetime
from typing import Any

import typer

from authbroker import __version__
from authbroker.exit_codes import EXIT_GENERIC_FAILURE


app = typer.Typer(
    name="authbroker",
    help="Sign in to Google with OAuth 2.0 + PKCE and keep the credential fresh.",
    no_args_is_help=True,
    add_completion=False,
    rich_markup_mode="rich",
)


# ------------------------------------------------------------------ #
# Commands
# ------------------------------------------------------------------ #

from authbroker.commands.auth import (  # noqa: E402
    import_command,
    login_command,
    logout_command,
    status_command,
)

app.command("login")(login_command)
app.command("import")(import_command)
app.command("status")(status_command)
app.command("logout")(logout_command)


def _version_callback(value: bool) -> None:
    """Print version and exit when --version is passed."""
    if value:
        typer.echo(f"authbroker {__version__}")
        raise typer.Exit()


@app.callback()
def main_callback(
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    json_output: bool = typer.Option(
        False, "--json", help="JSON output format."
    ),
    plain_output: bool = typer.Option(
        False, "--plain", help="Plain text output."
    ),
    no_color: bool = typer.Option(
        False, "--no-color", help="Disable color output."
    ),
    quiet: bool = typer.Option(
        False, "--quiet", "-q", help="Suppress non-essential output."
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable debug output."
    ),
) -> None:
    """Root callback executed before every sub-command.

    Initialises the global :class:`~authbroker.output.OutputManager` from
    CLI flags and routes the library's :mod:`logging` records to stderr.

    Args:
        version: If ``True``, print the version string and exit.
        json_output: Force JSON output format.
        plain_output: Force plain-text output format.
        no_color: Disable all colour and Rich markup.
        quiet: Suppress non-essential diagnostic output.
        verbose: Enable debug-level diagnostic output and library logs.

    Raises:
        InvalidUsageError: If both ``--json`` and ``--plain`` are given.
    """
    from authbroker.exceptions import InvalidUsageError
    from authbroker.output import OutputFormat, OutputManager, set_output

    if json_output and plain_output:
        raise InvalidUsageError("--json and --plain cannot be combined.")

    fmt = OutputFormat.AUTO
    if json_output:
        fmt = OutputFormat.JSON
    elif plain_output:
        fmt = OutputFormat.PLAIN

    output = OutputManager(
        format=fmt,
        no_color=no_color,
        quiet=quiet,
        verbose=verbose,
    )
    output.install_log_handler()
    set_output(output)


def _setup_signal_handlers() -> None:
    """Install a SIGINT handler so Ctrl-C exits cleanly."""

    def _handler(signum: int, frame: Any) -> None:  # noqa: ANN401
        sys.stderr.write("\nCancelled.\n")
        sys.exit(130)

    signal.signal(signal.SIGINT, _handler)


def _write_crash_log(exc: Exception) -> str:
    """Write a crash traceback to disk and return the log file path."""
    from authbroker.config import get_data_dir

    logs_dir = get_data_dir() / "logs"
    logs_dir.mkdir(parents=True, exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    log_path = logs_dir / f"crash-{timestamp}.log"
    log_path.write_text(
        "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    )
    return str(log_path)


def main() -> None:
    """CLI entry point invoked by the ``authbroker`` console script.

    Unhandled :class:`~authbroker.exceptions.BrokerError` instances cause a
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
        from authbroker.exceptions import BrokerError
        from authbroker.output import error

        if isinstance(exc, BrokerError):
            error(str(exc))
            sys.exit(exc.exit_code)
        else:
            log_path = _write_crash_log(exc)
            error(f"Unexpected error. Debug log: {log_path}")
            sys.exit(EXIT_GENERIC_FAILURE)
