"""polystore CLI - Main entry point."""

import logging
import sys
from typing import Annotated

import typer

import polystore
from polystore.cli.commands import data
from polystore.cli.context import CLIContext, resolve_config
from polystore.cli.output import OutputFormatter
from polystore.core.types import EngineKind
from polystore.exceptions import PolystoreError

# Create main Typer app
app = typer.Typer(
    name="polystore",
    help="polystore CLI - one data-access interface over three storage engines",
    no_args_is_help=True,
)


@app.callback()
def main_callback(
    ctx: typer.Context,
    engine: Annotated[
        EngineKind | None,
        typer.Option(
            "--engine",
            "-e",
            help="Storage engine (default: POLYSTORE_ENGINE or json_row)",
        ),
    ] = None,
    url: Annotated[
        str | None,
        typer.Option(
            "--url",
            "-u",
            help="SQLAlchemy URL or MongoDB URI (default: POLYSTORE_URL)",
        ),
    ] = None,
    database: Annotated[
        str | None,
        typer.Option("--database", help="MongoDB database name"),
    ] = None,
    schema: Annotated[
        str | None,
        typer.Option(
            "--schema",
            "-s",
            envvar="POLYSTORE_SCHEMA",
            help="JSON file declaring the collections",
        ),
    ] = None,
    case_insensitive: Annotated[
        bool,
        typer.Option("--case-insensitive", help="Fold case in textual equality"),
    ] = False,
    echo: Annotated[
        bool,
        typer.Option("--echo", help="Echo SQL statements to console"),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option(
            "--json",
            "-j",
            help="Output as JSON (machine-readable)",
        ),
    ] = False,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Log operation details to stderr"),
    ] = False,
) -> None:
    """Initialize CLI context with global options."""
    logging.basicConfig(
        stream=sys.stderr,
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        config = resolve_config(
            engine.value if engine is not None else None,
            url,
            database,
            case_insensitive,
            echo,
        )
    except ValueError as e:
        OutputFormatter(json_output).print_error(e)
        raise typer.Exit(code=1) from e

    # Store in Typer context for command access
    ctx.obj = CLIContext(config=config, schema_path=schema, json_output=json_output)


@app.command()
def version() -> None:
    """Show version information."""
    typer.echo(f"polystore v{polystore.__version__}")


@app.command()
def ping(ctx: typer.Context) -> None:
    """Check that the configured engine is reachable.

    Examples:

        polystore ping
        polystore -e document -u mongodb://localhost:27017/shop ping
    """
    cli_ctx: CLIContext = ctx.obj
    formatter = OutputFormatter(cli_ctx.json_output)

    try:
        cli_ctx.get_store().ping()
        formatter.print_success(
            "Engine reachable",
            {"engine": cli_ctx.config.engine, "version": polystore.__version__},
        )
    except (PolystoreError, ValueError, OSError) as e:
        formatter.print_error(e)
        raise typer.Exit(code=1) from e
    finally:
        cli_ctx.close()


@app.command()
def init(ctx: typer.Context) -> None:
    """Create tables (SQL) or indexes (MongoDB) for the declared collections.

    Examples:

        polystore --schema shop.json init
    """
    cli_ctx: CLIContext = ctx.obj
    formatter = OutputFormatter(cli_ctx.json_output)

    try:
        # Opening the store creates missing tables and indexes
        store = cli_ctx.get_store()
        formatter.print_success(
            "Store initialized",
            {"engine": store.kind, "collections": len(store.registry.collections())},
        )
    except (PolystoreError, ValueError, OSError) as e:
        formatter.print_error(e)
        raise typer.Exit(code=1) from e
    finally:
        cli_ctx.close()


# Register record commands at the top level
app.command(name="get")(data.get_command)
app.command(name="find")(data.find_command)
app.command(name="insert")(data.insert_command)
app.command(name="update")(data.update_command)
app.command(name="delete")(data.delete_command)
app.command(name="count")(data.count_command)


def main() -> None:
    """Main entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
