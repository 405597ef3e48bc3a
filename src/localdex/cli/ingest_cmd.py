"""localdex ingest — ingest files or folders into the index."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.table import Table

_STATUS_STYLE = {
    "inserted": "green",
    "updated": "cyan",
    "skipped": "dim",
    "error": "red",
}


def ingest_cmd(
    path: Annotated[Path, typer.Argument(help="File or folder to ingest")],
    force: Annotated[
        bool, typer.Option("--force", "-f", help="Re-ingest even if unchanged")
    ] = False,
):
    """Ingest a file or folder into the index."""
    from localdex.cli.app import fail, is_json, open_service
    from localdex.errors import LocaldexError

    async def _run():
        async with open_service() as service:
            return await service.ingest_path(path.resolve(), force=force)

    try:
        results = asyncio.run(_run())
    except LocaldexError as e:
        fail(e)

    if is_json():
        print(
            json.dumps(
                {
                    "status": "ok",
                    "processed": len(results),
                    "results": [r.model_dump(mode="json") for r in results],
                },
                indent=2,
            )
        )
        return

    console = Console()
    if not results:
        console.print("[yellow]No supported files found.[/yellow]")
        return

    table = Table(title=f"Processed {len(results)} file(s)")
    table.add_column("Status")
    table.add_column("Chunks", justify="right")
    table.add_column("Ingest status")
    table.add_column("Path")
    table.add_column("Detail")

    for r in results:
        style = _STATUS_STYLE.get(r.status, "")
        table.add_row(
            f"[{style}]{r.status}[/{style}]" if style else r.status,
            str(r.chunk_count),
            r.ingest_status.value if r.ingest_status else "",
            r.file_path,
            r.error or "",
        )

    console.print(table)
    if any(r.status == "error" for r in results):
        raise typer.Exit(code=1)
