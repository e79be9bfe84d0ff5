"""Console output formatting for the CLI and the sync engine."""

import json
from typing import Any

from rich.console import Console
from rich.markup import escape
from rich.table import Table


class OutputFormatter:
    """Writes user facing messages to the terminal.

    Informational messages are suppressed in quiet mode; errors are always
    printed to stderr. In JSON mode, structured results are written with
    :meth:`output_json` and informational chatter is suppressed as well.
    """

    def __init__(self, json_output: bool = False, quiet: bool = False):
        """Initialize output formatter.

        Args:
            json_output: Emit machine readable JSON results
            quiet: Suppress non-essential output
        """
        self.json_output = json_output
        self.quiet = quiet
        self.console = Console(highlight=False)
        self.err_console = Console(stderr=True, highlight=False)

    @property
    def _silent(self) -> bool:
        return self.quiet or self.json_output

    def print(self, message: str = "") -> None:
        if not self._silent:
            self.console.print(message, markup=False)

    def info(self, message: str) -> None:
        if not self._silent:
            self.console.print(message, markup=False)

    def success(self, message: str) -> None:
        if not self._silent:
            self.console.print(f"[green]✓[/green] {escape(message)}")

    def warning(self, message: str) -> None:
        if not self._silent:
            self.err_console.print(f"[yellow]{escape(message)}[/yellow]")

    def error(self, message: str) -> None:
        self.err_console.print(f"[red]Error:[/red] {escape(message)}")

    def output_table(
        self,
        rows: list[dict[str, Any]],
        columns: list[str],
        headers: dict[str, str],
        show_header: bool = True,
    ) -> None:
        """Print rows as a borderless table.

        Args:
            rows: One dictionary per row
            columns: Keys of the columns to print, in order
            headers: Column titles by key
            show_header: Print the title row
        """
        if self.json_output:
            return
        table = Table(show_header=show_header, box=None, pad_edge=False)
        for column in columns:
            table.add_column(headers.get(column, column), overflow="fold")
        for row in rows:
            table.add_row(*(escape(str(row.get(column, ""))) for column in columns))
        self.console.print(table)

    def output_json(self, data: Any) -> None:
        """Print data as JSON regardless of quiet mode."""
        self.console.print_json(json.dumps(data, default=str))
