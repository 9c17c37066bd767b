"""Semantic search over an indexed workspace."""

from __future__ import annotations

import logging

from codeindex.config import MAX_SEARCH_RESULTS, ConfigManager
from codeindex.embedders import Embedder
from codeindex.models import CodeIndexError, IndexingState, SearchFilter, SearchResult
from codeindex.state import StateManager
from codeindex.vector_store import VectorStore

logger = logging.getLogger(__name__)

QUERY_PREFIX = "search_codebase: "


class SearchService:
    def __init__(
        self,
        config_manager: ConfigManager,
        state_manager: StateManager,
        embedder: Embedder,
        vector_store: VectorStore,
    ) -> None:
        self.config_manager = config_manager
        self.state_manager = state_manager
        self.embedder = embedder
        self.vector_store = vector_store

    async def search_index(
        self, query: str, search_filter: SearchFilter | None = None
    ) -> list[SearchResult]:
        """Embed *query* and return the closest indexed blocks.

        Raises CodeIndexError if the feature is disabled or unconfigured, or
        while the index is neither built nor being built.
        """
        if not self.config_manager.is_feature_enabled or not self.config_manager.is_feature_configured:
            raise CodeIndexError("Code index feature is disabled or not configured.")

        state = self.state_manager.state
        if state not in (IndexingState.INDEXED, IndexingState.INDEXING):
            raise CodeIndexError(f"Code index is not ready for search. Current state: {state.value}")

        search_filter = search_filter or SearchFilter()
        if search_filter.min_score is None:
            search_filter.min_score = self.config_manager.config.search_min_score
        if search_filter.limit is None:
            search_filter.limit = MAX_SEARCH_RESULTS

        try:
            response = await self.embedder.create_embeddings([f"{QUERY_PREFIX}{query}"])
            if not response.embeddings:
                raise CodeIndexError("Failed to generate embedding for query.")
            return await self.vector_store.search(response.embeddings[0], search_filter)
        except Exception as e:
            logger.error("Error during search: %s", e)
            self.state_manager.set_system_state(IndexingState.ERROR, f"Search failed: {e}")
            raise
