"""Incremental re-indexing driven by filesystem events.

A watchdog observer thread reports create/change/delete events. They are
handed to the event loop, folded into an accumulator keyed by path (the
latest event for a path wins) and processed as one batch once the
accumulator has been quiet for ``BATCH_DEBOUNCE_DELAY_MS``.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
from pathlib import Path
from typing import Any, Callable

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from codeindex.batch_processor import run_with_retries
from codeindex.cache import CacheManager
from codeindex.config import (
    BATCH_DEBOUNCE_DELAY_MS,
    BATCH_SEGMENT_THRESHOLD,
    FILE_PROCESSING_CONCURRENCY_LIMIT,
    MAX_BATCH_RETRIES,
    MAX_FILE_SIZE_BYTES,
)
from codeindex.debounce import Debouncer
from codeindex.embedders import Embedder
from codeindex.events import EventBus
from codeindex.models import (
    BatchProcessingSummary,
    CodeIndexError,
    FileEvent,
    FileProcessingResult,
    PointStruct,
)
from codeindex.parser import CodeParser, is_supported
from codeindex.scanner import block_to_point
from codeindex.vector_store import VectorStore
from codeindex.workspace import Workspace

logger = logging.getLogger(__name__)

BATCH_START = "batch-start"
BATCH_PROGRESS = "batch-progress"
BATCH_FINISH = "batch-finish"


class _WatchEventHandler(FileSystemEventHandler):
    """Forwards watchdog events (observer thread) to the watcher's loop."""

    def __init__(self, watcher: FileWatcher) -> None:
        super().__init__()
        self.watcher = watcher

    def _handle_event(self, event: Any, change_type: str) -> None:
        if event.is_directory:
            return
        self.watcher.queue_event_threadsafe(os.fsdecode(event.src_path), change_type)

    def on_created(self, event: Any) -> None:
        self._handle_event(event, "create")

    def on_modified(self, event: Any) -> None:
        self._handle_event(event, "change")

    def on_deleted(self, event: Any) -> None:
        self._handle_event(event, "delete")

    def on_moved(self, event: Any) -> None:
        if event.is_directory:
            return
        self.watcher.queue_event_threadsafe(os.fsdecode(event.src_path), "delete")
        self.watcher.queue_event_threadsafe(os.fsdecode(event.dest_path), "create")


class FileWatcher:
    """Watches the workspace and keeps the index in step with file edits."""

    def __init__(
        self,
        workspace: Workspace,
        parser: CodeParser,
        cache: CacheManager,
        embedder: Embedder | None = None,
        vector_store: VectorStore | None = None,
        event_bus: EventBus | None = None,
        debounce_ms: int = BATCH_DEBOUNCE_DELAY_MS,
    ) -> None:
        self.workspace = workspace
        self.parser = parser
        self.cache = cache
        self.embedder = embedder
        self.vector_store = vector_store
        self.events = event_bus or EventBus()
        self._accumulated: dict[str, FileEvent] = {}
        self._debouncer = Debouncer(self._trigger_batch_processing, debounce_ms)
        self._observer: Any = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._disposed = False

    # ── Subscriptions ────────────────────────────────────────────────────

    def on_did_start_batch_processing(
        self, handler: Callable[[list[str]], None]
    ) -> Callable[[], None]:
        return self.events.on(BATCH_START, handler)

    def on_batch_progress_update(
        self, handler: Callable[[dict[str, Any]], None]
    ) -> Callable[[], None]:
        return self.events.on(BATCH_PROGRESS, handler)

    def on_did_finish_batch_processing(
        self, handler: Callable[[BatchProcessingSummary], None]
    ) -> Callable[[], None]:
        return self.events.on(BATCH_FINISH, handler)

    # ── Lifecycle ────────────────────────────────────────────────────────

    @property
    def is_watching(self) -> bool:
        return self._observer is not None

    async def initialize(self) -> None:
        """Start the observer thread on the workspace root."""
        if self._observer is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._disposed = False
        observer = Observer()
        observer.daemon = True
        observer.schedule(_WatchEventHandler(self), self.workspace.root_path, recursive=True)
        observer.start()
        self._observer = observer
        logger.info("Watching %s", self.workspace.root_path)

    def dispose(self) -> None:
        """Stop watching and drop any events not yet processed."""
        self._disposed = True
        self._debouncer.cancel()
        self._accumulated.clear()
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5.0)
            self._observer = None
            logger.info("Stopped watching %s", self.workspace.root_path)

    # ── Event intake ─────────────────────────────────────────────────────

    def queue_event_threadsafe(self, path: str, change_type: str) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self.queue_event, path, change_type)

    def queue_event(self, path: str, change_type: str) -> None:
        """Record *change_type* for *path* and re-arm the debounce timer."""
        if self._disposed:
            return
        path = os.path.abspath(path)
        if not is_supported(path) or self.workspace.should_ignore(path):
            return
        self._accumulated[path] = FileEvent(path=path, change_type=change_type)
        self._debouncer.trigger()

    @property
    def pending_paths(self) -> list[str]:
        return list(self._accumulated)

    async def process_pending(self) -> None:
        """Process the accumulator now instead of waiting for the timer."""
        self._debouncer.cancel()
        await self._debouncer.wait_idle()
        await self._trigger_batch_processing()

    async def _trigger_batch_processing(self) -> None:
        if not self._accumulated:
            return
        events = list(self._accumulated.values())
        self._accumulated = {}
        self.events.emit(BATCH_START, [e.path for e in events])
        try:
            await self._process_batch(events)
        except Exception as e:
            logger.exception("Batch processing failed")
            self.events.emit(
                BATCH_FINISH,
                BatchProcessingSummary(processed_files=[], batch_error=e),
            )

    # ── Batch ────────────────────────────────────────────────────────────

    def _emit_progress(self, processed: int, total: int, current: str | None) -> None:
        self.events.emit(
            BATCH_PROGRESS,
            {
                "processed_in_batch": processed,
                "total_in_batch": total,
                "current_file": current,
            },
        )

    async def _process_batch(self, events: list[FileEvent]) -> None:
        total = len(events)
        done = 0
        self._emit_progress(0, total, None)

        results: dict[str, FileProcessingResult] = {}
        deleted = [e.path for e in events if e.change_type == "delete"]
        changed = [e.path for e in events if e.change_type != "delete"]

        if self.embedder is None or self.vector_store is None:
            # Nothing to embed with: keep the store free of removed files only
            for path in changed:
                results[path] = FileProcessingResult(
                    path=path, status="skipped", reason="Indexing is not configured"
                )
                done += 1
                self._emit_progress(done, total, path)
            if deleted and self.vector_store is not None:
                await self._delete_paths(deleted, results)
            for path in deleted:
                results.setdefault(path, FileProcessingResult(path=path, status="success"))
                done += 1
                self._emit_progress(done, total, path)
            self._finish_batch(list(results.values()), total)
            return

        limiter = asyncio.Semaphore(FILE_PROCESSING_CONCURRENCY_LIMIT)

        async def run(path: str) -> None:
            nonlocal done
            async with limiter:
                results[path] = await self.process_file(path)
            done += 1
            self._emit_progress(done, total, path)

        await asyncio.gather(*(run(p) for p in changed))

        to_index = [r for r in results.values() if r.status == "processed_for_batching"]

        # Old points of deleted and re-processed files go before any upsert
        delete_failed: set[str] = set()
        if deleted or to_index:
            delete_failed = await self._delete_paths(
                deleted + [r.path for r in to_index], results
            )
        for path in deleted:
            if path not in delete_failed:
                results[path] = FileProcessingResult(path=path, status="success")
            done += 1
            self._emit_progress(done, total, path)

        upsert_failed = await self._upsert_points(
            [p for r in to_index for p in r.points_to_upsert],
            {p.id: r.path for r in to_index for p in r.points_to_upsert},
        )

        for result in to_index:
            path = result.path
            if path in delete_failed:
                continue
            if path in upsert_failed:
                results[path] = FileProcessingResult(
                    path=path, status="error", error=upsert_failed[path]
                )
                continue
            if result.new_hash:
                self.cache.update_hash(path, result.new_hash)
            results[path] = FileProcessingResult(
                path=path, status="success", new_hash=result.new_hash
            )

        self._finish_batch(list(results.values()), total)

    async def _delete_paths(
        self, paths: list[str], results: dict[str, FileProcessingResult]
    ) -> set[str]:
        """Delete points for *paths*; returns the paths whose delete failed."""
        assert self.vector_store is not None
        store_paths = [self.workspace.get_relative_path(p) for p in paths]
        try:
            await self.vector_store.delete_points_by_multiple_file_paths(store_paths)
        except Exception as e:
            logger.error("Failed to delete points for %d files: %s", len(paths), e)
            for path in paths:
                results[path] = FileProcessingResult(
                    path=path, status="error", reason="delete_failed", error=e
                )
            return set(paths)
        # Only files that are gone lose their cache entry here
        self.cache.delete_hashes(
            [p for p in paths if p not in results or results[p].status != "processed_for_batching"]
        )
        return set()

    async def _upsert_points(
        self, points: list[PointStruct], owner: dict[str, str]
    ) -> dict[str, Exception]:
        """Upsert in segments with retries; returns failed file paths and their error."""
        assert self.vector_store is not None
        failed: dict[str, Exception] = {}
        for start in range(0, len(points), BATCH_SEGMENT_THRESHOLD):
            segment = points[start : start + BATCH_SEGMENT_THRESHOLD]

            async def upsert(segment: list[PointStruct] = segment) -> None:
                await self.vector_store.upsert_points(segment)

            error = await run_with_retries(upsert)
            if error is None:
                continue
            logger.error(
                "Failed to upsert %d points after %d attempts: %s",
                len(segment),
                MAX_BATCH_RETRIES,
                error,
            )
            for point in segment:
                failed.setdefault(owner[point.id], error)
        return failed

    def _finish_batch(self, results: list[FileProcessingResult], total: int) -> None:
        errors = [r for r in results if r.status in ("error", "local_error")]
        batch_error = None
        if errors:
            batch_error = CodeIndexError(
                f"{len(errors)} of {total} files failed to process"
            )
        self.events.emit(
            BATCH_FINISH,
            BatchProcessingSummary(processed_files=results, batch_error=batch_error),
        )
        self._emit_progress(total, total, None)
        if not self._accumulated:
            self._emit_progress(0, 0, None)

    # ── Single file ──────────────────────────────────────────────────────

    async def process_file(self, file_path: str) -> FileProcessingResult:
        """Read, hash, parse and embed one file without touching the store."""
        try:
            if self.workspace.should_ignore(file_path) or not is_supported(file_path):
                return FileProcessingResult(
                    path=file_path, status="skipped", reason="File is ignored"
                )

            size = (await asyncio.to_thread(os.stat, file_path)).st_size
            if size > MAX_FILE_SIZE_BYTES:
                return FileProcessingResult(
                    path=file_path, status="skipped", reason="File is too large"
                )

            raw = await asyncio.to_thread(Path(file_path).read_bytes)
            content = raw.decode("utf-8", errors="replace")
            new_hash = hashlib.sha256(content.encode("utf-8")).hexdigest()
            if self.cache.get_hash(file_path) == new_hash:
                return FileProcessingResult(
                    path=file_path, status="skipped", reason="File has not changed"
                )

            blocks = await self.parser.parse_file(file_path, content=content, file_hash=new_hash)
            blocks = [b for b in blocks if b.content.strip()]

            points: list[PointStruct] = []
            if self.embedder is not None and blocks:
                response = await self.embedder.create_embeddings(
                    [b.content.strip() for b in blocks]
                )
                if len(response.embeddings) != len(blocks):
                    raise CodeIndexError(
                        f"Expected {len(blocks)} embeddings, got {len(response.embeddings)}"
                    )
                points = [
                    block_to_point(block, vector, self.workspace)
                    for block, vector in zip(blocks, response.embeddings)
                ]

            return FileProcessingResult(
                path=file_path,
                status="processed_for_batching",
                new_hash=new_hash,
                points_to_upsert=points,
            )
        except Exception as e:
            logger.error("Error processing file %s: %s", file_path, e)
            return FileProcessingResult(path=file_path, status="local_error", error=e)
