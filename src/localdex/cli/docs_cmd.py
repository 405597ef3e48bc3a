"""localdex list / read / delete — browse and manage indexed documents."""

from __future__ import annotations

import json
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table


def list_cmd(
    limit: Annotated[int, typer.Option("--limit", "-n", help="Documents per page")] = 50,
    cursor: Annotated[
        Optional[str], typer.Option("--cursor", help="Cursor from a previous page")
    ] = None,
):
    """List indexed documents, most recently updated first."""
    from localdex.cli.app import fail, is_json, open_service
    from localdex.errors import LocaldexError

    try:
        service = open_service()
    except LocaldexError as e:
        fail(e)
    try:
        page = service.list_documents(limit=limit, cursor=cursor)
    except LocaldexError as e:
        fail(e)
    finally:
        service.store.close()

    if is_json():
        print(json.dumps(page.model_dump(mode="json"), indent=2))
        return

    console = Console()
    if not page.documents:
        console.print("[yellow]No documents indexed.[/yellow]")
        return

    table = Table(title=f"{len(page.documents)} document(s)")
    table.add_column("Doc ID", style="dim")
    table.add_column("Title")
    table.add_column("Status")
    table.add_column("Updated")
    table.add_column("URI")

    for d in page.documents:
        table.add_row(d.doc_id, d.title, d.ingest_status.value, d.updated_at, d.uri)

    console.print(table)
    if page.next_cursor:
        console.print(f"Next page: --cursor {page.next_cursor}")


def read_cmd(
    resource: Annotated[str, typer.Argument(help="doc://<doc_id>#<chunk_id>")],
):
    """Show the full text of a chunk and where it came from."""
    from localdex.cli.app import fail, is_json, open_service
    from localdex.errors import LocaldexError

    try:
        service = open_service()
    except LocaldexError as e:
        fail(e)
    try:
        chunk = service.resolve(resource)
    except LocaldexError as e:
        fail(e)
    finally:
        service.store.close()

    if is_json():
        print(json.dumps(chunk.model_dump(mode="json"), indent=2))
        return

    doc = chunk.document
    location = f"p.{chunk.page}" if chunk.page else chunk.segment_meta.get("heading", "")
    subtitle = f"{doc.uri}  [{chunk.start_char}:{chunk.end_char}]"
    Console().print(
        Panel(
            chunk.text,
            title=f"{doc.title} {location}".strip(),
            subtitle=subtitle,
        )
    )


def delete_cmd(
    doc_ids: Annotated[
        Optional[list[str]], typer.Option("--doc-id", help="doc_id to delete (repeatable)")
    ] = None,
    external_ids: Annotated[
        Optional[list[str]],
        typer.Option("--external-id", help="external_id (e.g. file path) to delete (repeatable)"),
    ] = None,
):
    """Delete documents with their segments, chunks and vectors."""
    from localdex.cli.app import fail, is_json, open_service
    from localdex.errors import LocaldexError

    try:
        service = open_service()
    except LocaldexError as e:
        fail(e)
    try:
        result = service.delete_documents(doc_ids=doc_ids, external_ids=external_ids)
    except LocaldexError as e:
        fail(e)
    finally:
        service.store.close()

    if is_json():
        print(json.dumps({"status": "ok", **result.model_dump()}, indent=2))
        return

    console = Console()
    if not result.deleted_doc_ids:
        console.print("[yellow]Nothing to delete.[/yellow]")
        return
    console.print(
        f"[green]Deleted {len(result.deleted_doc_ids)} document(s), "
        f"{result.deleted_chunk_count} chunk(s).[/green]"
    )
