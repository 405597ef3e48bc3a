"""Watch a directory and keep the index in sync with it.

Raw filesystem events (from ``watchfiles.awatch``) are debounced per path:
each event (re)arms a timer, and only when it fires does the path go on the
work queue. A fixed pool of worker tasks drains the queue, so at most
``max_concurrency`` ingestions run at once and the rest wait in line.

Per path the state goes idle -> pending (timer armed or queued) ->
processing -> idle, and events for one path are handled in arrival order.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from collections import Counter
from enum import Enum
from pathlib import Path

from watchfiles import Change, awatch

from localdex.ingest.files import FileIngestor, normalize_path
from localdex.models import FileIngestResult, WatcherStats, utc_now

log = logging.getLogger(__name__)


class PathState(str, Enum):
    IDLE = "idle"
    PENDING = "pending"
    PROCESSING = "processing"


class FileWatcher:
    """Debounced, concurrency-limited file watcher feeding a FileIngestor."""

    def __init__(
        self,
        ingestor: FileIngestor,
        *,
        watch_dir: str | Path,
        debounce_ms: int = 600,
        max_concurrency: int = 3,
        initial_scan: bool = True,
    ):
        if max_concurrency <= 0:
            raise ValueError("max_concurrency must be positive")
        self.ingestor = ingestor
        self.watch_dir = Path(watch_dir).resolve()
        self.debounce_ms = debounce_ms
        self.max_concurrency = max_concurrency
        self.initial_scan = initial_scan

        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._latest: dict[str, Change] = {}
        self._queued: Counter[str] = Counter()
        self._processing: Counter[str] = Counter()
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

        self._queue: asyncio.Queue | None = None
        self._workers: list[asyncio.Task] = []
        self._watch_task: asyncio.Task | None = None
        self._stop_event: asyncio.Event | None = None

        self._files_watched = 0
        self._events_processed = 0
        self._errors = 0
        self._last_activity: str | None = None

    @property
    def is_running(self) -> bool:
        return self._queue is not None

    # -- Lifecycle -----------------------------------------------------------

    async def start(self) -> None:
        """Start the worker pool and filesystem observation."""
        if self.is_running:
            log.info("File watcher already running")
            return

        self.watch_dir.mkdir(parents=True, exist_ok=True)
        log.info("Starting file watcher on %s", self.watch_dir)

        self._queue = asyncio.Queue()
        self._stop_event = asyncio.Event()
        self._workers = [
            asyncio.create_task(self._worker(), name=f"localdex-watch-worker-{i}")
            for i in range(self.max_concurrency)
        ]

        files = self.ingestor.find_files(self.watch_dir)
        self._files_watched = len(files)
        if self.initial_scan:
            for path in files:
                self.handle_event(Change.added, path)

        self._watch_task = asyncio.create_task(self._observe(), name="localdex-watch")

    async def stop(self) -> None:
        """Drop pending events, stop observing, then drain queued and in-flight work."""
        if not self.is_running:
            return
        log.info("Stopping file watcher...")

        # handle_event ignores anything arriving after this, so no timer is re-armed
        self._stop_event.set()
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        self._latest.clear()

        if self._watch_task is not None:
            await self._watch_task

        await self._queue.join()
        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)

        self._workers = []
        self._watch_task = None
        self._queue = None
        log.info("File watcher stopped")

    async def _observe(self) -> None:
        try:
            async for changes in awatch(self.watch_dir, stop_event=self._stop_event):
                for change, path in changes:
                    self.handle_event(change, path)
        except Exception:
            self._errors += 1
            log.exception("File watcher error; observation stopped")

    # -- Events --------------------------------------------------------------

    def handle_event(self, change: Change, path: str | Path) -> None:
        """Record a raw filesystem event and (re)arm the path's debounce timer.

        Must be called from the event loop the watcher was started on.
        """
        if not self.is_running:
            raise RuntimeError("File watcher is not running")
        if self._stop_event.is_set():
            log.debug("Watcher stopping; dropping %s event for %s", change.name, path)
            return
        if not self.ingestor.is_supported(path) or self.ingestor.is_ignored(path):
            return

        key = normalize_path(path)
        existing = self._timers.pop(key, None)
        if existing is not None:
            existing.cancel()
        self._latest[key] = change

        loop = asyncio.get_running_loop()
        self._timers[key] = loop.call_later(self.debounce_ms / 1000, self._dispatch, key)

    def _dispatch(self, key: str) -> None:
        self._timers.pop(key, None)
        change = self._latest.pop(key, None)
        if change is None or self._queue is None:
            return
        self._enqueue(key, change)

    def _enqueue(self, key: str, change: Change, future: asyncio.Future | None = None) -> None:
        self._queued[key] += 1
        self._queue.put_nowait((key, change, future))

    # -- Workers -------------------------------------------------------------

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def _worker(self) -> None:
        while True:
            key, change, future = await self._queue.get()
            try:
                result = await self._process(key, change)
                if future is not None and not future.done():
                    future.set_result(result)
            finally:
                self._queue.task_done()

    async def _process(self, key: str, change: Change) -> FileIngestResult | None:
        # Taken before the first await, so queue order is lock order
        async with self._lock_for(key):
            self._queued[key] -= 1
            if self._queued[key] <= 0:
                del self._queued[key]
            self._processing[key] += 1
            self._last_activity = utc_now()
            try:
                if change == Change.deleted:
                    deleted = self.ingestor.delete_file(key)
                    log.info(
                        "Deleted file %s: %d documents, %d chunks",
                        key, len(deleted.deleted_doc_ids), deleted.deleted_chunk_count,
                    )
                    result = None
                else:
                    result = await self.ingestor.ingest_file(key)
                    if result.status == "error":
                        self._errors += 1
                        log.error("Ingest %s failed: %s", key, result.error)
                    else:
                        log.info("Ingested %s: %s (%d chunks)", key, result.status, result.chunk_count)
                self._events_processed += 1
                return result
            except Exception:
                self._errors += 1
                log.exception("Error processing %s event for %s", change.name, key)
                return None
            finally:
                self._processing[key] -= 1
                if self._processing[key] <= 0:
                    del self._processing[key]

    # -- Control and status --------------------------------------------------

    async def force_rescan(self) -> list[FileIngestResult]:
        """Re-walk the watch dir and ingest every file through the worker pool.

        Unchanged files are cheap: the pipeline skips them by content hash.
        """
        if not self.is_running:
            raise RuntimeError("File watcher is not running")

        files = self.ingestor.find_files(self.watch_dir)
        self._files_watched = len(files)
        log.info("Starting forced rescan of %d files", len(files))

        loop = asyncio.get_running_loop()
        futures = []
        for path in files:
            future = loop.create_future()
            self._enqueue(normalize_path(path), Change.modified, future)
            futures.append(future)

        results = [r for r in await asyncio.gather(*futures) if r is not None]
        counts = Counter(r.status for r in results)
        log.info(
            "Rescan complete: %d inserted, %d updated, %d skipped, %d errors",
            counts["inserted"], counts["updated"], counts["skipped"], counts["error"],
        )
        return results

    def path_state(self, path: str | Path) -> PathState:
        key = normalize_path(path)
        if self._processing.get(key):
            return PathState.PROCESSING
        if key in self._timers or self._queued.get(key):
            return PathState.PENDING
        return PathState.IDLE

    def stats(self) -> WatcherStats:
        return WatcherStats(
            files_watched=self._files_watched,
            events_processed=self._events_processed,
            last_activity=self._last_activity,
            pending_operations=(
                len(self._timers)
                + sum(self._queued.values())
                + sum(self._processing.values())
            ),
            errors=self._errors,
        )
