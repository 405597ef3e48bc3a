"""localdex search — nearest chunks for a query."""

from __future__ import annotations

import asyncio
import json
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.table import Table


def search_cmd(
    query: Annotated[str, typer.Argument(help="What to search for")],
    top_k: Annotated[
        Optional[int], typer.Option("--top-k", "-k", help="Number of matches to return")
    ] = None,
    doc_ids: Annotated[
        Optional[list[str]], typer.Option("--doc", help="Restrict to this doc_id (repeatable)")
    ] = None,
):
    """Semantic search over indexed chunks."""
    from localdex.cli.app import fail, is_json, open_service
    from localdex.errors import LocaldexError

    async def _run():
        async with open_service() as service:
            return await service.search(query, top_k=top_k, doc_ids=doc_ids or None)

    try:
        matches = asyncio.run(_run())
    except LocaldexError as e:
        fail(e)

    if is_json():
        print(
            json.dumps(
                {"status": "ok", "query": query, "matches": [m.model_dump() for m in matches]},
                indent=2,
            )
        )
        return

    console = Console()
    if not matches:
        console.print("[yellow]No matches.[/yellow]")
        return

    table = Table(title=f"Results for: {query}", show_lines=True)
    table.add_column("#", justify="right")
    table.add_column("Score", justify="right")
    table.add_column("Source")
    table.add_column("Preview")
    table.add_column("Resource", style="dim")

    for i, m in enumerate(matches, 1):
        table.add_row(str(i), f"{m.score:.3f}", m.source_badge or "", m.preview, m.resource)

    console.print(table)
