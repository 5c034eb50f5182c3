"""Record CRUD and query commands."""

import json
from typing import Annotated

import typer

from polystore.cli.context import CLIContext
from polystore.cli.output import OutputFormatter
from polystore.cli.parsing import parse_where, read_json_file, read_jsonl_file
from polystore.core.types import SortOrder
from polystore.exceptions import NotFoundError, PolystoreError

# Failures reported to the user; anything else is a bug and propagates
CLI_ERRORS = (PolystoreError, ValueError, OSError)

WhereOption = Annotated[
    list[str] | None,
    typer.Option(
        "--where",
        "-w",
        help="Filter as field=value or field:op=value (repeatable)",
    ),
]


def get_command(
    ctx: typer.Context,
    collection: Annotated[str, typer.Argument(help="Collection name")],
    record_id: Annotated[str, typer.Argument(help="Record ID")],
) -> None:
    """Get a record by ID.

    Examples:

        polystore get users 1
        polystore -e document get users 665f1c2e9b1e8a3d4c5b6a79
    """
    cli_ctx: CLIContext = ctx.obj
    formatter = OutputFormatter(cli_ctx.json_output)

    try:
        record = cli_ctx.get_store().find_by_id(collection, record_id)
        if record is None:
            raise NotFoundError(collection, record_id)
        formatter.print_data(record)

    except CLI_ERRORS as e:
        formatter.print_error(e)
        raise typer.Exit(code=1) from e
    finally:
        cli_ctx.close()


def find_command(
    ctx: typer.Context,
    collection: Annotated[str, typer.Argument(help="Collection name")],
    where: WhereOption = None,
    q: Annotated[
        str | None,
        typer.Option("--q", "-q", help="Free-text search over searchable fields"),
    ] = None,
    sort: Annotated[str | None, typer.Option("--sort", help="Field to sort by")] = None,
    order: Annotated[
        SortOrder, typer.Option("--order", help="Sort direction")
    ] = SortOrder.ASC,
    page: Annotated[int, typer.Option("--page", "-p", min=1, help="Page number")] = 1,
    limit: Annotated[int, typer.Option("--limit", "-l", min=1, help="Page size")] = 20,
    expand: Annotated[
        str | None,
        typer.Option("--expand", "-x", help="Relation to expand (alias or foreign field)"),
    ] = None,
) -> None:
    """Find records with filters, search, sort, pagination and expansion.

    Examples:

        polystore find orders --where total:gt=100 --sort total --order desc
        polystore find orders --where items.productName=Mouse --expand user
        polystore find products --q "usb hub" --limit 5 --page 2
    """
    cli_ctx: CLIContext = ctx.obj
    formatter = OutputFormatter(cli_ctx.json_output)

    try:
        query = {
            "filter": parse_where(where),
            "q": q,
            "sort": sort,
            "order": order.value,
            "page": page,
            "limit": limit,
            "expand": expand,
        }
        result = cli_ctx.get_store().find_all_advanced(collection, query)
        formatter.print_records(collection, result.data, result.pagination)

    except CLI_ERRORS as e:
        formatter.print_error(e)
        raise typer.Exit(code=1) from e
    finally:
        cli_ctx.close()


def insert_command(
    ctx: typer.Context,
    collection: Annotated[str, typer.Argument(help="Collection name")],
    data_json: Annotated[
        str | None,
        typer.Argument(help="Record data as JSON string"),
    ] = None,
    from_file: Annotated[
        str | None,
        typer.Option("--from-file", "-f", help="Load data from JSON/JSONL file"),
    ] = None,
    batch: Annotated[
        bool,
        typer.Option("--batch", help="Batch insert from JSONL file (multiple records)"),
    ] = False,
) -> None:
    """Insert record(s) into a collection.

    Examples:

        # Inline JSON (single record)
        polystore insert users '{"name": "Ada", "email": "ada@example.com"}'

        # From JSON file (single record)
        polystore insert users --from-file user.json

        # Batch insert from JSONL file (multiple records)
        polystore insert users --from-file users.jsonl --batch
    """
    cli_ctx: CLIContext = ctx.obj
    formatter = OutputFormatter(cli_ctx.json_output)

    try:
        store = cli_ctx.get_store()
        if from_file and batch:
            results = store.insert_many(collection, read_jsonl_file(from_file))
            formatter.print_insert_results(results)
            if not all(r.ok for r in results):
                raise typer.Exit(code=1)
            return

        if from_file:
            data = read_json_file(from_file)
        elif data_json:
            data = json.loads(data_json)
        else:
            raise typer.BadParameter("Either provide data as JSON string or use --from-file")

        record = store.create(collection, data)
        formatter.print_success("Inserted record", {"id": record["id"]})

    except CLI_ERRORS as e:
        formatter.print_error(e)
        raise typer.Exit(code=1) from e
    finally:
        cli_ctx.close()


def update_command(
    ctx: typer.Context,
    collection: Annotated[str, typer.Argument(help="Collection name")],
    record_id: Annotated[str, typer.Argument(help="Record ID")],
    data_json: Annotated[str, typer.Argument(help="Fields to change as JSON string")],
) -> None:
    """Update a record.

    Examples:

        polystore update users 1 '{"email": "ada@example.org"}'
    """
    cli_ctx: CLIContext = ctx.obj
    formatter = OutputFormatter(cli_ctx.json_output)

    try:
        updated = cli_ctx.get_store().update(collection, record_id, json.loads(data_json))
        formatter.print_success("Record updated", {"id": updated["id"]})
        if not cli_ctx.json_output:
            formatter.print_data(updated)

    except CLI_ERRORS as e:
        formatter.print_error(e)
        raise typer.Exit(code=1) from e
    finally:
        cli_ctx.close()


def delete_command(
    ctx: typer.Context,
    collection: Annotated[str, typer.Argument(help="Collection name")],
    record_id: Annotated[str, typer.Argument(help="Record ID")],
) -> None:
    """Delete a record. Deleting a missing record is not an error.

    Examples:

        polystore delete users 1
    """
    cli_ctx: CLIContext = ctx.obj
    formatter = OutputFormatter(cli_ctx.json_output)

    try:
        deleted = cli_ctx.get_store().delete(collection, record_id)
        message = f"Record deleted: {record_id}" if deleted else f"No record {record_id}"
        formatter.print_success(message, {"deleted": deleted})

    except CLI_ERRORS as e:
        formatter.print_error(e)
        raise typer.Exit(code=1) from e
    finally:
        cli_ctx.close()


def count_command(
    ctx: typer.Context,
    collection: Annotated[str, typer.Argument(help="Collection name")],
    where: WhereOption = None,
) -> None:
    """Count records, optionally filtered.

    Examples:

        polystore count orders
        polystore count orders --where userId=1
    """
    cli_ctx: CLIContext = ctx.obj
    formatter = OutputFormatter(cli_ctx.json_output)

    try:
        total = cli_ctx.get_store().count(collection, parse_where(where))
        if cli_ctx.json_output:
            formatter.print_data({"collection": collection, "count": total})
        else:
            typer.echo(f"{total}")

    except CLI_ERRORS as e:
        formatter.print_error(e)
        raise typer.Exit(code=1) from e
    finally:
        cli_ctx.close()
