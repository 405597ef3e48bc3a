"""Tests for localdex.ingest.watcher.

Events are fed through handle_event() for files outside the watched
directory, so real filesystem notifications never race with the test.
"""

from __future__ import annotations

import asyncio
from unittest.mock import patch

import pytest
from watchfiles import Change

from localdex.config import IngestConfig
from localdex.ingest.files import FileIngestor, normalize_path
from localdex.ingest.watcher import FileWatcher, PathState


@pytest.fixture
def ingestor(pipeline, tmp_path):
    return FileIngestor(pipeline, IngestConfig(), watch_dir=tmp_path / "kb")


@pytest.fixture
def outside(tmp_path):
    d = tmp_path / "outside"
    d.mkdir()
    return d


def make_watcher(ingestor, tmp_path, **kw) -> FileWatcher:
    kw.setdefault("debounce_ms", 30)
    kw.setdefault("initial_scan", False)
    return FileWatcher(ingestor, watch_dir=tmp_path / "kb", **kw)


async def wait_idle(watcher: FileWatcher, timeout: float = 5.0) -> None:
    async def poll():
        while watcher.stats().pending_operations:
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout)


def test_rejects_bad_concurrency(ingestor, tmp_path):
    with pytest.raises(ValueError):
        make_watcher(ingestor, tmp_path, max_concurrency=0)


def test_handle_event_requires_running(ingestor, tmp_path, outside):
    watcher = make_watcher(ingestor, tmp_path)
    with pytest.raises(RuntimeError):
        watcher.handle_event(Change.added, outside / "a.md")


@pytest.mark.asyncio
async def test_burst_of_events_is_ingested_once(ingestor, store, tmp_path, outside):
    path = outside / "note.md"
    path.write_text("Debounced content.")
    watcher = make_watcher(ingestor, tmp_path)
    await watcher.start()
    try:
        with patch.object(ingestor, "ingest_file", wraps=ingestor.ingest_file) as spy:
            for change in (Change.added, Change.modified, Change.modified, Change.modified):
                watcher.handle_event(change, path)
            assert watcher.path_state(path) is PathState.PENDING
            await wait_idle(watcher)

        assert spy.await_count == 1
        assert watcher.path_state(path) is PathState.IDLE
        assert store.get_document_by_external_id(normalize_path(path)) is not None
        assert watcher.stats().events_processed == 1
    finally:
        await watcher.stop()


@pytest.mark.asyncio
async def test_unsupported_and_ignored_paths_are_dropped(ingestor, tmp_path, outside):
    watcher = make_watcher(ingestor, tmp_path)
    await watcher.start()
    try:
        watcher.handle_event(Change.added, outside / "photo.png")
        watcher.handle_event(Change.added, outside / "~$lock.docx")
        assert watcher.stats().pending_operations == 0
    finally:
        await watcher.stop()


@pytest.mark.asyncio
async def test_delete_event_removes_document(ingestor, store, tmp_path, outside):
    path = outside / "temp.md"
    path.write_text("Short lived.")
    result = await ingestor.ingest_file(path)

    watcher = make_watcher(ingestor, tmp_path)
    await watcher.start()
    try:
        path.unlink()
        watcher.handle_event(Change.deleted, path)
        await wait_idle(watcher)
    finally:
        await watcher.stop()

    assert store.get_document(result.doc_id) is None


@pytest.mark.asyncio
async def test_concurrency_is_bounded(ingestor, tmp_path, outside):
    active = 0
    peak = 0
    release = asyncio.Event()

    async def slow_ingest(path, *, force=False):
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await release.wait()
        active -= 1
        return await real_ingest(path, force=force)

    real_ingest = ingestor.ingest_file
    paths = []
    for i in range(5):
        p = outside / f"f{i}.md"
        p.write_text(f"File {i}.")
        paths.append(p)

    watcher = make_watcher(ingestor, tmp_path, max_concurrency=2)
    await watcher.start()
    try:
        with patch.object(ingestor, "ingest_file", side_effect=slow_ingest):
            for p in paths:
                watcher.handle_event(Change.added, p)
            await asyncio.sleep(0.2)

            states = [watcher.path_state(p) for p in paths]
            assert states.count(PathState.PROCESSING) == 2
            assert states.count(PathState.PENDING) == 3
            assert watcher.stats().pending_operations == 5

            release.set()
            await wait_idle(watcher)
    finally:
        await watcher.stop()

    assert peak == 2
    assert watcher.stats().events_processed == 5


@pytest.mark.asyncio
async def test_worker_errors_are_counted(ingestor, tmp_path, outside):
    bad = outside / "bad.md"
    good = outside / "good.md"
    bad.write_text("bad")
    good.write_text("good")
    real_ingest = ingestor.ingest_file

    async def flaky(path, *, force=False):
        if path.endswith("bad.md"):
            raise RuntimeError("extractor crashed")
        return await real_ingest(path, force=force)

    watcher = make_watcher(ingestor, tmp_path, max_concurrency=1)
    await watcher.start()
    try:
        with patch.object(ingestor, "ingest_file", side_effect=flaky):
            watcher.handle_event(Change.added, bad)
            watcher.handle_event(Change.added, good)
            await wait_idle(watcher)
    finally:
        await watcher.stop()

    stats = watcher.stats()
    assert stats.errors == 1
    assert stats.events_processed == 1
    assert stats.last_activity is not None


@pytest.mark.asyncio
async def test_stop_drains_queue_and_drops_pending_timers(ingestor, store, tmp_path, outside):
    queued = outside / "queued.md"
    queued.write_text("Already queued.")
    pending = outside / "pending.md"
    pending.write_text("Still debouncing.")

    watcher = make_watcher(ingestor, tmp_path, debounce_ms=10)
    await watcher.start()
    watcher.handle_event(Change.added, queued)
    await asyncio.sleep(0.05)
    watcher.debounce_ms = 60_000
    watcher.handle_event(Change.added, pending)

    await watcher.stop()

    assert not watcher.is_running
    assert store.get_document_by_external_id(normalize_path(queued)) is not None
    assert store.get_document_by_external_id(normalize_path(pending)) is None
    assert watcher.stats().pending_operations == 0


@pytest.mark.asyncio
async def test_initial_scan_and_force_rescan(ingestor, store, tmp_path):
    kb = tmp_path / "kb"
    kb.mkdir()
    for name in ("a.md", "b.txt"):
        (kb / name).write_text(f"Contents of {name}.")

    watcher = make_watcher(ingestor, tmp_path, initial_scan=True)
    await watcher.start()
    try:
        await wait_idle(watcher)
        assert store.counts()["documents"] == 2
        assert watcher.stats().files_watched == 2

        results = await watcher.force_rescan()
        assert sorted(r.status for r in results) == ["skipped", "skipped"]
    finally:
        await watcher.stop()

    with pytest.raises(RuntimeError):
        await watcher.force_rescan()


@pytest.mark.asyncio
async def test_start_twice_is_noop(ingestor, tmp_path):
    watcher = make_watcher(ingestor, tmp_path)
    await watcher.start()
    try:
        workers = list(watcher._workers)
        await watcher.start()
        assert watcher._workers == workers
    finally:
        await watcher.stop()
    await watcher.stop()


@pytest.mark.asyncio
async def test_event_during_processing_runs_after_it(ingestor, store, tmp_path, outside):
    path = outside / "busy.md"
    path.write_text("Being ingested slowly.")
    key = normalize_path(path)
    order: list[str] = []
    started = asyncio.Event()
    release = asyncio.Event()
    real_ingest = ingestor.ingest_file
    real_delete = ingestor.delete_file

    async def blocked_ingest(p, *, force=False):
        order.append("ingest")
        started.set()
        await release.wait()
        result = await real_ingest(p, force=force)
        order.append("ingest-done")
        return result

    def recorded_delete(p):
        order.append("delete")
        return real_delete(p)

    watcher = make_watcher(ingestor, tmp_path, max_concurrency=3)
    await watcher.start()
    try:
        with patch.object(ingestor, "ingest_file", side_effect=blocked_ingest), patch.object(
            ingestor, "delete_file", side_effect=recorded_delete
        ):
            watcher.handle_event(Change.added, path)
            await asyncio.wait_for(started.wait(), 5)
            assert watcher.path_state(path) is PathState.PROCESSING

            watcher.handle_event(Change.deleted, path)
            # Past the debounce: the delete is queued behind the in-flight ingest
            await asyncio.sleep(0.2)
            assert order == ["ingest"]
            assert watcher.stats().pending_operations == 2

            release.set()
            await wait_idle(watcher)
    finally:
        await watcher.stop()

    assert order == ["ingest", "ingest-done", "delete"]
    assert store.get_document_by_external_id(key) is None
    assert watcher.stats().events_processed == 2


@pytest.mark.asyncio
async def test_events_arriving_while_stopping_are_dropped(
    ingestor, store, tmp_path, outside, monkeypatch
):
    late = outside / "late.md"
    late.write_text("Reported by the final filesystem batch.")

    async def final_batch(watch_dir, stop_event):
        await stop_event.wait()
        yield {(Change.added, str(late))}

    monkeypatch.setattr("localdex.ingest.watcher.awatch", final_batch)

    watcher = make_watcher(ingestor, tmp_path, debounce_ms=10)
    await watcher.start()
    await watcher.stop()

    assert watcher._timers == {}
    assert watcher.stats().pending_operations == 0
    await asyncio.sleep(0.05)
    assert store.get_document_by_external_id(normalize_path(late)) is None
