"""Console output for the command line interface."""

import json
from typing import Any, Optional

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table


class OutputFormatter:
    """Formats user-facing output, honoring ``--quiet`` and ``--json``.

    Status messages go to stdout, warnings and errors to stderr. In JSON mode
    only :meth:`output_json` writes to stdout so the output stays parseable.
    """

    def __init__(
        self,
        json_output: bool = False,
        quiet: bool = False,
        console: Optional[Console] = None,
        err_console: Optional[Console] = None,
    ):
        self.json_output = json_output
        self.quiet = quiet
        self.console = console or Console(highlight=False)
        self.err_console = err_console or Console(stderr=True, highlight=False)

    @property
    def silent(self) -> bool:
        """True when regular status output is suppressed."""
        return self.quiet or self.json_output

    def print(self, message: str = "") -> None:
        if self.silent:
            return
        self.console.print(escape(message), soft_wrap=True)

    def info(self, message: str) -> None:
        if self.silent:
            return
        self.console.print(escape(message), soft_wrap=True)

    def success(self, message: str) -> None:
        if self.silent:
            return
        self.console.print(f"[green]✓[/green] {escape(message)}", soft_wrap=True)

    def warning(self, message: str) -> None:
        if self.json_output:
            return
        self.err_console.print(
            f"[yellow]Warning:[/yellow] {escape(message)}", soft_wrap=True
        )

    def error(self, message: str) -> None:
        self.err_console.print(f"[red]Error:[/red] {escape(message)}", soft_wrap=True)

    def output_json(self, data: Any) -> None:
        """Write data as JSON to stdout."""
        click.echo(json.dumps(data, indent=2, default=str))

    def print_summary(self, title: str, items: list[tuple[str, Any]]) -> None:
        """Print a two column key/value table.

        Args:
            title: Table title
            items: (label, value) pairs
        """
        if self.silent:
            return
        table = Table(title=title, show_header=False, title_justify="left")
        table.add_column("Key", style="bold")
        table.add_column("Value")
        for key, value in items:
            table.add_row(escape(str(key)), escape(str(value)))
        self.console.print(table)
