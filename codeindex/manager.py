"""Per-workspace entry point wiring config, cache, services and state."""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import Any, Callable

from codeindex.cache import CacheManager
from codeindex.config import MAX_SEARCH_RESULTS, ConfigManager
from codeindex.embedders import Embedder, create_embedder
from codeindex.events import EventBus
from codeindex.models import CodeIndexError, IndexingState, SearchFilter, SearchResult
from codeindex.orchestrator import Orchestrator
from codeindex.parser import CodeParser
from codeindex.scanner import DirectoryScanner
from codeindex.search import SearchService
from codeindex.state import StateManager
from codeindex.vector_store import VectorStore, create_vector_store
from codeindex.watcher import FileWatcher
from codeindex.workspace import Workspace

logger = logging.getLogger(__name__)


class CodeIndexManager:
    """Owns every indexing service for one workspace.

    Services are rebuilt whenever :meth:`initialize` finds settings that
    require a restart; the cache and the state survive rebuilds.
    """

    def __init__(
        self,
        workspace_path: str,
        config_manager: ConfigManager | None = None,
        event_bus: EventBus | None = None,
        cache_dir: Path | None = None,
    ) -> None:
        self.workspace_path = os.path.abspath(workspace_path)
        self.config_manager = config_manager or ConfigManager()
        self.events = event_bus or EventBus()
        self.state_manager = StateManager(self.events)
        self._cache_dir = cache_dir
        self.cache: CacheManager | None = None
        self.embedder: Embedder | None = None
        self.vector_store: VectorStore | None = None
        self._orchestrator: Orchestrator | None = None
        self._search_service: SearchService | None = None
        self._indexing_task: asyncio.Task | None = None

    # ── Status ───────────────────────────────────────────────────────────

    @property
    def state(self) -> IndexingState:
        return self.state_manager.state

    @property
    def is_feature_enabled(self) -> bool:
        return self.config_manager.is_feature_enabled

    @property
    def is_feature_configured(self) -> bool:
        return self.config_manager.is_feature_configured

    @property
    def is_initialized(self) -> bool:
        return self._orchestrator is not None

    def get_current_status(self) -> dict[str, Any]:
        return self.state_manager.get_current_status()

    def on_progress_update(self, handler: Callable[[dict[str, Any]], None]) -> Callable[[], None]:
        return self.state_manager.on_progress_update(handler)

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def initialize(self, auto_start: bool = True) -> bool:
        """Load settings and (re)build services.

        Returns True when the settings changed in a way that required the
        services to be rebuilt. With *auto_start*, indexing starts in the
        background when it is not already running.
        """
        requires_restart = self.config_manager.load_configuration()

        if not self.is_feature_enabled:
            if self._orchestrator is not None:
                self._orchestrator.stop_watcher()
            logger.info("Code indexing is disabled")
            return requires_restart

        if self.cache is None:
            self.cache = CacheManager(self.workspace_path, cache_dir=self._cache_dir)
            await self.cache.initialize()

        needs_services = self._orchestrator is None or requires_restart
        if needs_services:
            if self._orchestrator is not None:
                self._orchestrator.stop_watcher()
            try:
                self._recreate_services()
            except Exception as e:
                self.state_manager.set_system_state(
                    IndexingState.ERROR, f"Failed to create services: {e}"
                )
                raise

        should_start = requires_restart or (
            needs_services and self.state != IndexingState.INDEXING
        )
        if auto_start and should_start and self.is_feature_configured:
            self._indexing_task = asyncio.create_task(self.start_indexing())
        return requires_restart

    def _recreate_services(self) -> None:
        if not self.is_feature_configured:
            self.state_manager.set_system_state(
                IndexingState.STANDBY,
                "Missing configuration. Save your settings to start indexing.",
            )
            self._orchestrator = None
            self._search_service = None
            return

        assert self.cache is not None
        config = self.config_manager.config
        workspace = Workspace(self.workspace_path)
        parser = CodeParser()
        self.embedder = create_embedder(config.embedder)
        self.vector_store = create_vector_store(config, self.workspace_path)

        scanner = DirectoryScanner(
            workspace, parser, self.cache, embedder=self.embedder, vector_store=self.vector_store
        )
        watcher = FileWatcher(
            workspace,
            parser,
            self.cache,
            embedder=self.embedder,
            vector_store=self.vector_store,
            event_bus=self.events,
        )
        self._orchestrator = Orchestrator(
            self.config_manager,
            self.state_manager,
            self.workspace_path,
            self.cache,
            self.vector_store,
            scanner,
            watcher,
        )
        self._search_service = SearchService(
            self.config_manager, self.state_manager, self.embedder, self.vector_store
        )
        logger.debug(
            "Services ready: embedder=%s store=%s",
            config.embedder.provider,
            config.vector_store,
        )

    def _require_orchestrator(self) -> Orchestrator:
        if self._orchestrator is None:
            raise CodeIndexError("CodeIndexManager not initialized. Call initialize() first.")
        return self._orchestrator

    async def start_indexing(self) -> None:
        if not self.is_feature_enabled:
            return
        await self._require_orchestrator().start_indexing()

    async def wait_for_indexing(self) -> None:
        """Wait for a background run started by :meth:`initialize`."""
        if self._indexing_task is not None:
            await self._indexing_task

    def stop_watcher(self) -> None:
        if self._orchestrator is not None:
            self._orchestrator.stop_watcher()

    async def clear_index_data(self) -> None:
        if not self.is_feature_enabled:
            return
        await self._require_orchestrator().clear_index_data()

    async def search_index(self, query: str, limit: int = MAX_SEARCH_RESULTS) -> list[SearchResult]:
        if not self.is_feature_enabled:
            return []
        self._require_orchestrator()
        assert self._search_service is not None
        return await self._search_service.search_index(query, SearchFilter(limit=limit))

    async def handle_external_settings_change(self) -> bool:
        """Re-read settings; restarts indexing when they changed materially."""
        if self._orchestrator is None and self.cache is None:
            return self.config_manager.load_configuration()
        return await self.initialize()

    async def dispose(self) -> None:
        if self._indexing_task is not None and not self._indexing_task.done():
            self._indexing_task.cancel()
            try:
                await self._indexing_task
            except asyncio.CancelledError:
                pass
        self.stop_watcher()
        if self.cache is not None:
            self.cache.flush()
        close = getattr(self.embedder, "close", None)
        if close is not None:
            await close()
        self.state_manager.dispose()


class ManagerRegistry:
    """One :class:`CodeIndexManager` per workspace path."""

    def __init__(self, config_manager: ConfigManager | None = None) -> None:
        self._config_manager = config_manager
        self._managers: dict[str, CodeIndexManager] = {}

    def get(self, workspace_path: str) -> CodeIndexManager:
        key = os.path.abspath(workspace_path)
        if key not in self._managers:
            self._managers[key] = CodeIndexManager(key, config_manager=self._config_manager)
        return self._managers[key]

    def __len__(self) -> int:
        return len(self._managers)

    async def dispose_all(self) -> None:
        for manager in self._managers.values():
            await manager.dispose()
        self._managers.clear()
