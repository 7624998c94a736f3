"""Console output for the ``authbroker`` command line.

stdout carries only what a script may want to capture: the authorize URL
and the status table (as a rich table, tab-separated text, or JSON).
Everything addressed to the person at the terminal (progress, results,
errors, next-step hints) goes to stderr, uncoloured when ``NO_COLOR`` is
set, ``TERM=dumb``, or ``--no-color`` is given.

Commands call the module-level helpers (:func:`info`, :func:`error`, ...),
which delegate to the :class:`OutputManager` installed by
:func:`~authbroker.app.main_callback`.

Library modules under :mod:`authbroker.auth` log through :mod:`logging`
instead; :meth:`OutputManager.install_log_handler` routes those records to
the stderr console: warnings always, debug records only with ``--verbose``.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from enum import Enum
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table


class OutputFormat(str, Enum):
    """How stdout data is rendered.  ``AUTO`` picks ``RICH`` on a colour TTY."""

    AUTO = "auto"
    JSON = "json"
    PLAIN = "plain"
    RICH = "rich"


class OutputManager:
    """Holds the format and verbosity chosen on the command line.

    Args:
        format: Rendering of stdout data.
        no_color: Strip colour and markup from both streams.
        quiet: Drop informational stderr messages; errors still show.
        verbose: Also show the library's debug log records.
    """

    def __init__(
        self,
        format: OutputFormat = OutputFormat.AUTO,
        no_color: bool = False,
        quiet: bool = False,
        verbose: bool = False,
    ) -> None:
        self._no_color = no_color or _should_disable_color()
        self._quiet = quiet
        self._verbose = verbose
        if format == OutputFormat.AUTO:
            format = OutputFormat.RICH if _is_tty() and not self._no_color else OutputFormat.PLAIN
        self._format = format
        self._stdout = Console(
            file=sys.stdout,
            no_color=self._no_color,
            force_terminal=(format == OutputFormat.RICH),
        )
        self._stderr = Console(file=sys.stderr, no_color=self._no_color, stderr=True)

    @property
    def format(self) -> OutputFormat:
        return self._format

    def install_log_handler(self, logger_name: str = "authbroker") -> None:
        """Attach a single :class:`~rich.logging.RichHandler` to *logger_name*."""
        logger = logging.getLogger(logger_name)
        for existing in [h for h in logger.handlers if isinstance(h, RichHandler)]:
            logger.removeHandler(existing)
        logger.addHandler(
            RichHandler(console=self._stderr, show_time=False, show_path=False, markup=False)
        )
        logger.setLevel(logging.DEBUG if self._verbose else logging.WARNING)
        logger.propagate = False

    def print_data(self, text: str) -> None:
        print(text, file=sys.stdout, flush=True)

    def print_table(
        self,
        headers: list[str],
        rows: list[list[str]],
        title: Optional[str] = None,
    ) -> None:
        """Write *rows* to stdout: JSON objects, TSV lines, or a rich table."""
        if self._format == OutputFormat.JSON:
            self.print_data(json.dumps([dict(zip(headers, row)) for row in rows], indent=2))
            return
        if self._format == OutputFormat.PLAIN:
            for line in [headers, *rows]:
                self.print_data("\t".join(line))
            return
        table = Table(title=title, header_style="bold cyan")
        for header in headers:
            table.add_column(header)
        for row in rows:
            table.add_row(*row)
        self._stdout.print(table)

    def info(self, message: str) -> None:
        if not self._quiet:
            self._emit(message)

    def success(self, message: str) -> None:
        if not self._quiet:
            self._emit(message, style="green")

    def suggest(self, message: str) -> None:
        if not self._quiet:
            self._emit(f"→ {message}", style="dim")

    def error(self, message: str) -> None:
        """Never silenced, not even by ``--quiet``."""
        self._emit(f"Error: {message}", style="bold red")

    def _emit(self, text: str, style: Optional[str] = None) -> None:
        if self._no_color:
            print(text, file=sys.stderr, flush=True)
        else:
            self._stderr.print(text, style=style, markup=False, highlight=False)


def _is_tty() -> bool:
    return hasattr(sys.stdout, "isatty") and sys.stdout.isatty()


def _should_disable_color() -> bool:
    """``NO_COLOR`` set to anything, or a dumb terminal."""
    return os.environ.get("NO_COLOR") is not None or os.environ.get("TERM") == "dumb"


_output: Optional[OutputManager] = None


def get_output() -> OutputManager:
    """The installed manager, or a default one created on first use."""
    global _output
    if _output is None:
        _output = OutputManager()
    return _output


def set_output(output: OutputManager) -> None:
    global _output
    _output = output


def reset_output() -> None:
    global _output
    _output = None


def print_data(text: str) -> None:
    get_output().print_data(text)


def print_table(
    headers: list[str],
    rows: list[list[str]],
    title: Optional[str] = None,
) -> None:
    get_output().print_table(headers, rows, title)


def info(message: str) -> None:
    get_output().info(message)


def success(message: str) -> None:
    get_output().success(message)


def suggest(message: str) -> None:
    get_output().suggest(message)


def error(message: str) -> None:
    get_output().error(message)
