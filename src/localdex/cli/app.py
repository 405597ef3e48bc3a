"""localdex CLI — Typer entrypoint with global options."""

from __future__ import annotations

import logging
import os
from typing import Annotated, NoReturn, Optional

import typer
from rich.console import Console

app = typer.Typer(
    name="localdex",
    help="Local semantic document index — ingest, search, and watch a folder of documents.",
    no_args_is_help=True,
)

# Global state shared across subcommands
_state: dict = {"json": False}


def is_json() -> bool:
    """Check if --json output mode is active."""
    return _state["json"]


def fail(error: Exception) -> NoReturn:
    """Report a user-facing error and exit with status 1."""
    if is_json():
        import json

        print(json.dumps({"status": "error", "error": str(error)}, indent=2))
    else:
        Console(stderr=True).print(f"[red]Error:[/red] {error}")
    raise typer.Exit(code=1)


def open_service():
    """Open the index described by the current settings."""
    from localdex.service import IndexService

    return IndexService.open()


@app.callback()
def main(
    json_output: Annotated[
        bool, typer.Option("--json", help="Output as JSON (agent-friendly)")
    ] = False,
    root: Annotated[
        Optional[str], typer.Option("--root", help="Override project root directory")
    ] = None,
):
    """Global options applied before any subcommand."""
    from localdex.config import get_settings, reset_settings

    _state["json"] = json_output
    if root:
        os.environ["LOCALDEX_ROOT"] = root
        reset_settings()

    logging.basicConfig(
        level=get_settings().log_level.upper(),
        format="%(levelname)s %(name)s %(message)s",
    )


# Register subcommands -------------------------------------------------------

from localdex.cli.docs_cmd import delete_cmd, list_cmd, read_cmd  # noqa: E402
from localdex.cli.doctor import doctor_cmd  # noqa: E402
from localdex.cli.ingest_cmd import ingest_cmd  # noqa: E402
from localdex.cli.search_cmd import search_cmd  # noqa: E402
from localdex.cli.watch_cmd import watch_cmd  # noqa: E402

app.command(name="ingest", help="Ingest a file or folder into the index.")(ingest_cmd)
app.command(name="search", help="Semantic search over indexed chunks.")(search_cmd)
app.command(name="list", help="List indexed documents, newest first.")(list_cmd)
app.command(name="read", help="Show a chunk by its doc:// resource URI.")(read_cmd)
app.command(name="delete", help="Delete documents by id or external id.")(delete_cmd)
app.command(name="watch", help="Watch a folder and keep the index in sync.")(watch_cmd)
app.command(name="doctor", help="Check configuration, store and embedding model.")(doctor_cmd)
