"""Output formatting for the speleodb CLI."""

import json
from typing import Any, Optional

from rich.console import Console
from rich.table import Table

from .utils import format_size


class OutputFormatter:
    """Prints human readable (rich) or JSON output.

    In JSON mode only ``output_json`` writes to stdout; status messages go to
    stderr so the JSON stays parseable.
    """

    def __init__(self, json_output: bool = False, quiet: bool = False):
        self.json_output = json_output
        self.quiet = quiet
        self.console = Console()
        self.err_console = Console(stderr=True)

    @staticmethod
    def format_size(size_bytes: int) -> str:
        return format_size(size_bytes)

    def _status(self, message: str, style: Optional[str] = None) -> None:
        target = self.err_console if self.json_output else self.console
        target.print(message, style=style, highlight=False)

    def info(self, message: str) -> None:
        if not self.quiet:
            self._status(message)

    def success(self, message: str) -> None:
        if not self.quiet:
            self._status(message, style="green")

    def warning(self, message: str) -> None:
        self.err_console.print(f"Warning: {message}", style="yellow", highlight=False)

    def error(self, message: str) -> None:
        self.err_console.print(f"Error: {message}", style="bold red", highlight=False)

    def print(self, message: str) -> None:
        """Print regardless of quiet mode (command results)."""
        if self.json_output:
            return
        self.console.print(message, highlight=False)

    def output_json(self, data: Any) -> None:
        self.console.print_json(json.dumps(data, default=str))

    def output_table(
        self,
        data: list[dict[str, Any]],
        columns: list[str],
        headers: Optional[dict[str, str]] = None,
        title: Optional[str] = None,
    ) -> None:
        """Print rows as a table, or as a JSON list in JSON mode."""
        if self.json_output:
            self.output_json(data)
            return

        headers = headers or {}
        table = Table(title=title)
        for column in columns:
            table.add_column(headers.get(column, column))
        for row in data:
            table.add_row(
                *("" if row.get(c) is None else str(row.get(c)) for c in columns)
            )
        self.console.print(table)

    def print_summary(self, title: str, items: list[tuple[str, str]]) -> None:
        """Print a titled list of key/value pairs."""
        if self.json_output:
            self.output_json({key: value for key, value in items})
            return
        if self.quiet:
            return

        table = Table(title=title, show_header=False, box=None)
        table.add_column("Field", style="bold")
        table.add_column("Value")
        for key, value in items:
            table.add_row(key, value)
        self.console.print(table)
