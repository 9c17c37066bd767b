"""Drives a full scan followed by continuous watching, and owns the state."""

from __future__ import annotations

import logging
import os
from typing import Any, Callable

from codeindex.cache import CacheManager
from codeindex.config import ConfigManager
from codeindex.models import CodeIndexError, ConfigurationError, IndexingState
from codeindex.scanner import DirectoryScanner
from codeindex.state import StateManager
from codeindex.vector_store import VectorStore
from codeindex.watcher import FileWatcher

logger = logging.getLogger(__name__)


class Orchestrator:
    """Runs ``Standby -> Indexing -> Indexed`` and falls back to ``Error``.

    After the initial scan the file watcher keeps the index current; its
    progress moves the state back to ``Indexing`` while a batch runs and to
    ``Indexed`` once the queue drains.
    """

    def __init__(
        self,
        config_manager: ConfigManager,
        state_manager: StateManager,
        workspace_path: str,
        cache: CacheManager,
        vector_store: VectorStore,
        scanner: DirectoryScanner,
        watcher: FileWatcher,
    ) -> None:
        self.config_manager = config_manager
        self.state_manager = state_manager
        self.workspace_path = workspace_path
        self.cache = cache
        self.vector_store = vector_store
        self.scanner = scanner
        self.watcher = watcher
        self._subscriptions: list[Callable[[], None]] = []

    @property
    def state(self) -> IndexingState:
        return self.state_manager.state

    # ── Watcher ──────────────────────────────────────────────────────────

    async def _start_watcher(self) -> None:
        if not self.config_manager.is_feature_configured:
            raise ConfigurationError("Cannot start watcher: service not configured")

        self.state_manager.set_system_state(IndexingState.INDEXING, "Initializing file watcher...")
        try:
            await self.watcher.initialize()
            self._unsubscribe()
            self._subscriptions = [
                self.watcher.on_batch_progress_update(self._on_batch_progress),
                self.watcher.on_did_finish_batch_processing(self._on_batch_finished),
            ]
        except Exception:
            self.stop_watcher()
            raise

    def _on_batch_progress(self, progress: dict[str, Any]) -> None:
        processed = progress["processed_in_batch"]
        total = progress["total_in_batch"]
        current = progress.get("current_file")

        if total > 0 and self.state != IndexingState.INDEXING:
            self.state_manager.set_system_state(
                IndexingState.INDEXING, "Processing file changes..."
            )
        self.state_manager.report_file_queue_progress(
            processed, total, os.path.basename(current) if current else None
        )
        if processed == total:
            if total > 0:
                self.state_manager.set_system_state(
                    IndexingState.INDEXED, "File changes processed. Index up-to-date."
                )
            elif self.state == IndexingState.INDEXING:
                self.state_manager.set_system_state(
                    IndexingState.INDEXED, "Index up-to-date. File queue empty."
                )

    def _on_batch_finished(self, summary: Any) -> None:
        if summary.batch_error is not None:
            logger.error("File watcher batch finished with errors: %s", summary.batch_error)

    def _unsubscribe(self) -> None:
        for unsubscribe in self._subscriptions:
            unsubscribe()
        self._subscriptions = []

    def stop_watcher(self) -> None:
        self.watcher.dispose()
        self._unsubscribe()
        if self.state != IndexingState.ERROR:
            self.state_manager.set_system_state(IndexingState.STANDBY, "File watcher stopped.")

    # ── Indexing ─────────────────────────────────────────────────────────

    async def start_indexing(self) -> None:
        """Scan the workspace, then hand over to the file watcher."""
        if not self.config_manager.is_feature_configured:
            self.state_manager.set_system_state(
                IndexingState.STANDBY,
                "Missing configuration. Save your settings to start indexing.",
            )
            logger.warning("Start rejected: missing configuration")
            return

        if self.state == IndexingState.INDEXING:
            logger.warning("Start rejected: indexing is already in progress")
            return

        self.state_manager.set_system_state(IndexingState.INDEXING, "Initializing services...")

        try:
            collection_created = await self.vector_store.initialize()
            if collection_created:
                await self.cache.clear_cache_file()

            self.state_manager.set_system_state(
                IndexingState.INDEXING, "Services ready. Starting workspace scan..."
            )

            blocks_found = 0
            blocks_indexed = 0
            scan_errors: list[Exception] = []

            def on_error(error: Exception) -> None:
                logger.error("Error during initial scan: %s", error)
                scan_errors.append(error)

            def on_blocks_indexed(count: int) -> None:
                nonlocal blocks_indexed
                blocks_indexed += count
                self.state_manager.report_block_indexing_progress(blocks_indexed, blocks_found)

            def on_file_parsed(count: int) -> None:
                nonlocal blocks_found
                blocks_found += count
                self.state_manager.report_block_indexing_progress(blocks_indexed, blocks_found)

            result = await self.scanner.scan_directory(
                self.workspace_path,
                on_error=on_error,
                on_blocks_indexed=on_blocks_indexed,
                on_file_parsed=on_file_parsed,
            )

            if scan_errors and blocks_indexed == 0 and result.total_block_count > 0:
                raise CodeIndexError(f"Indexing failed: {scan_errors[0]}")

            await self._start_watcher()

            processed = result.stats.get("processed", 0)
            skipped = result.stats.get("skipped", 0)
            if processed == 0 and skipped > 0:
                message = f"All files cached ({skipped} files skipped). Index up-to-date."
            elif processed > 0 and skipped > 0:
                message = f"Indexed {processed} new/changed files, {skipped} cached files skipped."
            elif processed > 0:
                message = f"Indexed {processed} files."
            else:
                message = "File watcher started."
            self.state_manager.set_system_state(IndexingState.INDEXED, message)
        except Exception as e:
            logger.exception("Error during indexing")
            try:
                await self.vector_store.clear_collection()
            except Exception as cleanup_error:
                logger.error("Failed to clear collection after error: %s", cleanup_error)
            try:
                await self.cache.clear_cache_file()
            except Exception as cleanup_error:
                logger.error("Failed to clear cache after error: %s", cleanup_error)
            self.state_manager.set_system_state(
                IndexingState.ERROR, f"Failed during initial scan: {e}"
            )
            self.stop_watcher()

    async def clear_index_data(self) -> None:
        """Stop watching, drop the collection and empty the cache."""
        self.state_manager.set_system_state(IndexingState.INDEXING, "Clearing index data...")
        try:
            self.stop_watcher()
            try:
                await self.vector_store.delete_collection()
            except Exception as e:
                logger.error("Failed to delete collection: %s", e)
                self.state_manager.set_system_state(
                    IndexingState.ERROR, f"Failed to delete collection: {e}"
                )
            await self.cache.clear_cache_file()
            if self.state != IndexingState.ERROR:
                self.state_manager.set_system_state(
                    IndexingState.STANDBY, "Index data cleared successfully."
                )
        except Exception as e:
            logger.exception("Failed to clear index data")
            self.state_manager.set_system_state(
                IndexingState.ERROR, f"Failed to clear index data: {e}"
            )
