"""localdex doctor — validate config, store, vector search and the embedding model."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.table import Table


async def _check_config() -> tuple[bool, str]:
    """Verify config loads without error."""
    try:
        from localdex.config import get_settings
        settings = get_settings()
        return True, (
            f"chunk_size={settings.chunker.chunk_size}, "
            f"overlap={settings.chunker.chunk_overlap}, model={settings.embedding.model_id}"
        )
    except Exception as e:
        return False, str(e)


async def _check_data_dirs() -> tuple[bool, str]:
    """Verify data directories are writable."""
    try:
        from localdex.config import get_settings
        settings = get_settings()
        dirs = [Path(settings.store.path).parent, Path(settings.embedding.cache_dir)]
        if settings.watcher.watch_dir:
            dirs.append(Path(settings.watcher.watch_dir))
        for d in dirs:
            d.mkdir(parents=True, exist_ok=True)
        return True, "all data directories writable"
    except Exception as e:
        return False, str(e)


async def _check_store() -> tuple[bool, str]:
    """Open the store and count its rows."""
    try:
        from localdex.config import get_settings
        from localdex.stores.docstore import DocStore
        cfg = get_settings().store
        store = DocStore(cfg.path, vector_backend=cfg.vector_backend)
        try:
            diag = store.diagnostics()
            if not store.is_healthy():
                return False, "store is not responding"
        finally:
            store.close()
        return True, (
            f"{diag['documents']} documents, {diag['chunks']} chunks, "
            f"dim={diag['embedding_dim']}"
        )
    except Exception as e:
        return False, str(e)


async def _check_vector_search() -> tuple[bool, str]:
    """Report which vector search strategy this SQLite build supports."""
    try:
        import sqlite3

        from localdex.stores.vector_search import probe_native
        conn = sqlite3.connect(":memory:")
        try:
            version, error = probe_native(conn)
        finally:
            conn.close()
        if version:
            return True, f"native (sqlite-vec {version})"
        # Fallback still works, so this is not a failure
        return True, f"fallback (brute force): {error}"
    except Exception as e:
        return False, str(e)


async def _check_embed() -> tuple[bool, str]:
    """Load the embedding model and embed a trivial input."""
    try:
        from localdex.config import get_settings
        from localdex.embeddings import Embedder
        cfg = get_settings().embedding
        embedder = Embedder(cfg.model_id, batch_size=cfg.batch_size, cache_dir=cfg.cache_dir)
        vector = await embedder.embed_one("test")
        return True, f"{cfg.model_id} dim={len(vector)}"
    except Exception as e:
        return False, str(e)


async def _run_checks(skip_model: bool) -> list[dict]:
    """Run all checks and return results."""
    checks = [
        ("Config", _check_config),
        ("Data Dirs", _check_data_dirs),
        ("Store", _check_store),
        ("Vector Search", _check_vector_search),
    ]
    if not skip_model:
        checks.append(("Embeddings", _check_embed))
    results = []
    for name, check_fn in checks:
        ok, detail = await check_fn()
        results.append({"check": name, "ok": ok, "detail": detail})
    return results


def doctor_cmd(
    skip_model: Annotated[
        bool, typer.Option("--skip-model", help="Don't load the embedding model")
    ] = False,
):
    """Check configuration, store and embedding model."""
    from localdex.cli.app import is_json

    results = asyncio.run(_run_checks(skip_model))

    if is_json():
        print(json.dumps(results, indent=2))
        if not all(r["ok"] for r in results):
            raise typer.Exit(code=1)
        return

    console = Console()
    table = Table(title="localdex doctor", show_lines=True)
    table.add_column("Check", style="bold")
    table.add_column("Status")
    table.add_column("Detail")

    all_ok = True
    for r in results:
        status = "[green]PASS[/green]" if r["ok"] else "[red]FAIL[/red]"
        if not r["ok"]:
            all_ok = False
        table.add_row(r["check"], status, r["detail"])

    console.print(table)
    if all_ok:
        console.print("\n[bold green]All checks passed.[/bold green]")
    else:
        console.print("\n[bold yellow]Some checks failed. See details above.[/bold yellow]")
        raise typer.Exit(code=1)
