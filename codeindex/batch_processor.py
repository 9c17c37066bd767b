"""Shared embed → upsert → cache pipeline used by the scanner and the watcher."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, TypeVar

import tenacity

from codeindex.cache import CacheManager
from codeindex.config import BATCH_SEGMENT_THRESHOLD, INITIAL_RETRY_DELAY_MS, MAX_BATCH_RETRIES
from codeindex.embedders import Embedder
from codeindex.models import BatchResult, EmbeddingError, FileProcessingResult, PointStruct
from codeindex.vector_store import VectorStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _log_retry(retry_state: tenacity.RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning("Error processing batch (attempt %d): %s", retry_state.attempt_number, exc)


async def run_with_retries(
    operation: Callable[[], Awaitable[None]], retries: int = MAX_BATCH_RETRIES
) -> Exception | None:
    """Run *operation* until it succeeds or *retries* attempts have failed.

    Waits ``INITIAL_RETRY_DELAY_MS * 2**(attempt - 1)`` between attempts.
    Returns None on success, otherwise the last error.
    """
    retrying = tenacity.AsyncRetrying(
        stop=tenacity.stop_after_attempt(retries),
        wait=tenacity.wait_exponential(multiplier=INITIAL_RETRY_DELAY_MS / 1000),
        before_sleep=_log_retry,
        sleep=asyncio.sleep,
        reraise=True,
    )
    try:
        await retrying(operation)
    except Exception as e:
        return e
    return None


@dataclass
class BatchStrategy(Generic[T]):
    """How to turn items of type ``T`` into vector points.

    ``get_files_to_delete`` returns absolute paths whose old points must be
    removed before upserting; ``to_store_path`` maps them to the path stored
    in point payloads.
    """

    item_to_text: Callable[[T], str]
    item_to_point: Callable[[T, list[float], int], PointStruct]
    item_to_file_path: Callable[[T], str]
    get_file_hash: Callable[[T], str | None] | None = None
    get_files_to_delete: Callable[[list[T]], list[str]] | None = None
    to_store_path: Callable[[str], str] | None = None
    on_progress: Callable[[int, int, str | None], None] | None = None
    on_error: Callable[[Exception], None] | None = None


class BatchProcessor(Generic[T]):
    """Deletes stale points, then embeds and upserts items in segments.

    Each segment is retried up to ``MAX_BATCH_RETRIES`` times with
    exponential backoff. A file's hash is cached only once every segment
    holding its blocks has been upserted.
    """

    def __init__(
        self, embedder: Embedder, vector_store: VectorStore, cache: CacheManager
    ) -> None:
        self.embedder = embedder
        self.vector_store = vector_store
        self.cache = cache

    async def process_batch(self, items: list[T], strategy: BatchStrategy[T]) -> BatchResult:
        result = BatchResult()
        if not items:
            return result

        total = len(items)
        file_status: dict[str, FileProcessingResult] = {}
        hashes: dict[str, str] = {}
        self._progress(strategy, 0, total, None)

        if strategy.get_files_to_delete is not None:
            to_delete = strategy.get_files_to_delete(items)
            if to_delete:
                await self._handle_deletions(to_delete, strategy, result, file_status)

        for start in range(0, total, BATCH_SEGMENT_THRESHOLD):
            segment = items[start : start + BATCH_SEGMENT_THRESHOLD]
            await self._process_segment(
                segment, start, total, strategy, result, file_status, hashes
            )

        # A file split over several segments is cached only if all of them landed
        for path, file_hash in hashes.items():
            if file_status[path].status == "success":
                self.cache.update_hash(path, file_hash)

        result.processed_files = list(file_status.values())
        return result

    async def _handle_deletions(
        self,
        file_paths: list[str],
        strategy: BatchStrategy[T],
        result: BatchResult,
        file_status: dict[str, FileProcessingResult],
    ) -> None:
        store_paths = [strategy.to_store_path(p) if strategy.to_store_path else p for p in file_paths]
        try:
            await self.vector_store.delete_points_by_multiple_file_paths(store_paths)
        except Exception as e:
            logger.error("Failed to delete points for %d files: %s", len(file_paths), e)
            result.errors.append(e)
            if strategy.on_error:
                strategy.on_error(e)
            for path in file_paths:
                file_status[path] = FileProcessingResult(
                    path=path, status="error", reason="delete_failed", error=e
                )
            return
        self.cache.delete_hashes(file_paths)

    async def _process_segment(
        self,
        segment: list[T],
        offset: int,
        total: int,
        strategy: BatchStrategy[T],
        result: BatchResult,
        file_status: dict[str, FileProcessingResult],
        hashes: dict[str, str],
    ) -> None:
        async def embed_and_upsert() -> None:
            texts = [strategy.item_to_text(item) for item in segment]
            response = await self.embedder.create_embeddings(texts)
            if len(response.embeddings) != len(segment):
                raise EmbeddingError(
                    f"Expected {len(segment)} embeddings, got {len(response.embeddings)}"
                )
            points = [
                strategy.item_to_point(item, vector, offset + i)
                for i, (item, vector) in enumerate(zip(segment, response.embeddings))
            ]
            await self.vector_store.upsert_points(points)

        last_error = await run_with_retries(embed_and_upsert)
        if last_error is None:
            for item in segment:
                path = strategy.item_to_file_path(item)
                file_hash = strategy.get_file_hash(item) if strategy.get_file_hash else None
                if file_hash:
                    hashes[path] = file_hash
                result.processed += 1
                if path not in file_status:
                    file_status[path] = FileProcessingResult(
                        path=path, status="success", new_hash=file_hash
                    )
                self._progress(strategy, result.processed + result.failed, total, path)
            return

        result.failed += len(segment)
        result.errors.append(last_error)
        batch_error = RuntimeError(
            f"Failed to process batch after {MAX_BATCH_RETRIES} attempts: {last_error}"
        )
        result.errors.append(batch_error)
        if strategy.on_error:
            strategy.on_error(batch_error)
        for item in segment:
            path = strategy.item_to_file_path(item)
            file_status[path] = FileProcessingResult(
                path=path, status="error", reason="batch_failed", error=last_error
            )
            self._progress(strategy, result.processed + result.failed, total, path)

    @staticmethod
    def _progress(strategy: BatchStrategy[T], done: int, total: int, path: str | None) -> None:
        if strategy.on_progress:
            strategy.on_progress(done, total, path)
