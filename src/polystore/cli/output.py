"""Output formatting for CLI commands."""

import json
from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.pretty import Pretty
from rich.table import Table

from polystore.core.types import InsertResult, Pagination
from polystore.exceptions import PolystoreError

console = Console()


def _cell(value: Any) -> str:
    """Render a record value for a table cell."""
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


class OutputFormatter:
    """Formats output for terminal or JSON mode."""

    def __init__(self, json_mode: bool = False) -> None:
        """Initialize formatter.

        Args:
            json_mode: If True, output JSON instead of Rich formatting
        """
        self.json_mode = json_mode

    def print_records(
        self,
        title: str,
        records: list[dict[str, Any]],
        pagination: Pagination | None = None,
    ) -> None:
        """Print records as a Rich table or a JSON document.

        Columns are the union of record keys in first-seen order.

        Args:
            title: Table title
            records: Records to display
            pagination: Page information, if the records are one page
        """
        if self.json_mode:
            output: dict[str, Any] = {"data": records}
            if pagination is not None:
                output["pagination"] = pagination.model_dump()
            print(json.dumps(output, default=str, indent=2))
            return

        columns: list[str] = []
        for record in records:
            for key in record:
                if key not in columns:
                    columns.append(key)

        table = Table(title=title, show_header=True, header_style="bold magenta")
        for col in columns:
            table.add_column(col)
        for record in records:
            table.add_row(*[_cell(record.get(col)) for col in columns])
        console.print(table)

        if pagination is not None:
            total = "?" if pagination.total is None else f"{pagination.total:,}"
            pages = "?" if pagination.pages is None else pagination.pages
            console.print(
                f"Page {pagination.page}/{pages} · {len(records)} shown · {total} total",
                style="dim",
            )

    def print_insert_results(self, results: list[InsertResult]) -> None:
        """Print per-item outcomes of a batch insert.

        Args:
            results: Results in input order
        """
        stored = [r for r in results if r.ok]
        failed = [r for r in results if not r.ok]
        if self.json_mode:
            print(
                json.dumps(
                    {
                        "inserted": len(stored),
                        "failed": len(failed),
                        "results": [r.model_dump(exclude={"record"}) for r in results],
                    },
                    default=str,
                    indent=2,
                )
            )
            return

        console.print(f"✓ Inserted {len(stored)} of {len(results)} records", style="green")
        if failed:
            table = Table(title="Failed items", show_header=True, header_style="bold red")
            table.add_column("Index")
            table.add_column("Error type")
            table.add_column("Error")
            for result in failed:
                table.add_row(str(result.index), result.error_type or "", result.error or "")
            console.print(table)

    def print_success(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Print success message.

        Args:
            message: Success message
            details: Optional details to display
        """
        if self.json_mode:
            output = {"success": True, "message": message}
            if details:
                output.update(details)
            print(json.dumps(output, default=str, indent=2))
        else:
            console.print(f"✓ {message}", style="green")
            if details:
                for key, value in details.items():
                    console.print(f"  {key}: {value}", style="dim")

    def print_error(self, error: Exception) -> None:
        """Print error message.

        Args:
            error: Exception to display
        """
        if self.json_mode:
            if isinstance(error, PolystoreError):
                print(json.dumps(error.to_dict(), default=str, indent=2))
            else:
                print(json.dumps({"error": str(error)}, indent=2))
        else:
            error_text = str(error)
            # For PolystoreError, include context if available
            if isinstance(error, PolystoreError) and error.context:
                context_str = "\n".join(f"{k}: {v}" for k, v in error.context.items())
                error_text = f"{error_text}\n\n{context_str}"

            panel = Panel(
                error_text,
                title="[red]Error[/red]",
                border_style="red",
            )
            console.print(panel)

    def print_data(self, data: Any) -> None:
        """Print generic data (dict, list, etc.).

        Args:
            data: Data to print
        """
        if self.json_mode:
            print(json.dumps(data, default=str, indent=2))
        else:
            console.print(Pretty(data))
