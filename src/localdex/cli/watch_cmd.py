"""localdex watch — keep the index in sync with a folder until interrupted."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console


def watch_cmd(
    directory: Annotated[
        Optional[Path], typer.Argument(help="Folder to watch (default: watcher.watch_dir)")
    ] = None,
):
    """Watch a folder and ingest/delete documents as files change."""
    from localdex.cli.app import fail, is_json, open_service
    from localdex.errors import LocaldexError

    console = Console()
    final: dict = {}

    async def _run():
        async with open_service() as service:
            watcher = await service.start_watcher(directory)
            if not is_json():
                console.print(
                    f"[bold]Watching[/bold] {watcher.watch_dir} "
                    f"({watcher.stats().files_watched} files). Press Ctrl-C to stop."
                )
            try:
                await asyncio.Event().wait()
            finally:
                await service.stop_watcher()
                final["stats"] = watcher.stats()

    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        pass
    except LocaldexError as e:
        fail(e)

    stats = final.get("stats")
    if stats is None:
        return
    if is_json():
        print(json.dumps(stats.model_dump(), indent=2))
    else:
        console.print(
            f"Stopped. {stats.events_processed} events processed, {stats.errors} errors."
        )
