"""Full-workspace scan: find changed files, parse them and index their blocks."""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import uuid
from collections import Counter
from pathlib import Path
from typing import Callable

from codeindex.batch_processor import BatchProcessor, BatchStrategy
from codeindex.cache import CacheManager
from codeindex.config import (
    BATCH_PROCESSING_CONCURRENCY,
    BATCH_SEGMENT_THRESHOLD,
    MAX_FILE_SIZE_BYTES,
    MAX_LIST_FILES_LIMIT,
    PARSING_CONCURRENCY,
    POINT_ID_NAMESPACE,
)
from codeindex.embedders import Embedder
from codeindex.models import BatchResult, CodeBlock, PointStruct, ScanResult
from codeindex.parser import CodeParser, is_supported
from codeindex.vector_store import VectorStore
from codeindex.workspace import SKIP_DIRS, Workspace

logger = logging.getLogger(__name__)

_NAMESPACE = uuid.UUID(POINT_ID_NAMESPACE)


# ── Points ───────────────────────────────────────────────────────────────


def point_id_for(block: CodeBlock) -> str:
    """Deterministic point id, stable while the block's span and content are."""
    normalized = os.path.normpath(os.path.abspath(block.file_path))
    name = f"{normalized}:{block.start_line}:{block.end_line}:{block.segment_hash}"
    return str(uuid.uuid5(_NAMESPACE, name))


def block_to_point(block: CodeBlock, vector: list[float], workspace: Workspace) -> PointStruct:
    return PointStruct(
        id=point_id_for(block),
        vector=vector,
        payload={
            "filePath": workspace.get_relative_path(block.file_path),
            "codeChunk": block.content.strip(),
            "startLine": block.start_line,
            "endLine": block.end_line,
            "chunkSource": block.chunk_source,
            "type": block.block_type,
            "identifier": block.identifier,
            "parentChain": [
                {"identifier": p.identifier, "type": p.container_type}
                for p in block.parent_chain
            ],
            "hierarchyDisplay": block.hierarchy_display,
        },
    )


# ── File Collection ──────────────────────────────────────────────────────


def _is_binary(path: str) -> bool:
    """Check if file is binary by looking for null bytes in first 8KB."""
    try:
        with open(path, "rb") as f:
            return b"\x00" in f.read(8192)
    except OSError:
        return True  # Can't read = treat as binary


def list_files(workspace: Workspace, directory: str, limit: int = MAX_LIST_FILES_LIMIT) -> list[str]:
    """Collect candidate files under *directory*.

    Skips hidden entries, symlinks, binaries, default skip directories and
    anything the workspace ignore rules reject. Stops after *limit* files.
    """
    root_path = os.path.abspath(directory)
    files: list[str] = []

    for root, dirs, filenames in os.walk(root_path, followlinks=False):
        if len(files) >= limit:
            break

        dirs[:] = sorted(
            d
            for d in dirs
            if d not in SKIP_DIRS
            and not d.startswith(".")
            and not (Path(root) / d).is_symlink()
        )

        for filename in sorted(filenames):
            if len(files) >= limit:
                break
            if filename.startswith("."):
                continue
            full_path = os.path.join(root, filename)
            if os.path.islink(full_path):
                continue
            if workspace.should_ignore(full_path):
                continue
            if _is_binary(full_path):
                continue
            files.append(full_path)

    return files


# ── Scanner ──────────────────────────────────────────────────────────────


class _PendingFiles:
    """Caches a file's hash once every batch holding its blocks has landed.

    A file's blocks may be split over several concurrent batches; if any of
    them fails the hash stays uncached so the next scan retries the file.
    """

    def __init__(self, cache: CacheManager) -> None:
        self.cache = cache
        self._hashes: dict[str, str] = {}
        self._remaining: dict[str, int] = {}
        self._failed: set[str] = set()

    def add(self, file_path: str, file_hash: str, block_count: int) -> None:
        self._hashes[file_path] = file_hash
        self._remaining[file_path] = block_count

    def settle(self, blocks: list[CodeBlock], result: BatchResult) -> None:
        self._failed.update(r.path for r in result.processed_files if r.status == "error")
        for file_path, count in Counter(b.file_path for b in blocks).items():
            self._remaining[file_path] -= count
            if self._remaining[file_path] > 0:
                continue
            del self._remaining[file_path]
            file_hash = self._hashes.pop(file_path)
            if file_path in self._failed:
                self._failed.discard(file_path)
                logger.warning("Not caching %s: some of its blocks failed to index", file_path)
            else:
                self.cache.update_hash(file_path, file_hash)


class DirectoryScanner:
    """Parses new or changed files and sends their blocks for indexing.

    Files are parsed concurrently; blocks are pooled into a shared buffer
    and flushed to the batch processor every ``BATCH_SEGMENT_THRESHOLD``
    blocks. After the walk, cache entries for files that disappeared are
    reconciled away together with their points.
    """

    def __init__(
        self,
        workspace: Workspace,
        parser: CodeParser,
        cache: CacheManager,
        embedder: Embedder | None = None,
        vector_store: VectorStore | None = None,
    ) -> None:
        self.workspace = workspace
        self.parser = parser
        self.cache = cache
        self.embedder = embedder
        self.vector_store = vector_store
        self._batch_processor: BatchProcessor[CodeBlock] | None = None
        if embedder is not None and vector_store is not None:
            self._batch_processor = BatchProcessor(embedder, vector_store, cache)

    async def get_all_file_paths(self, directory: str) -> list[str]:
        """Supported, non-ignored files under *directory*."""
        candidates = await asyncio.to_thread(list_files, self.workspace, directory)
        return [p for p in candidates if is_supported(p)]

    async def scan_directory(
        self,
        directory: str,
        on_error: Callable[[Exception], None] | None = None,
        on_blocks_indexed: Callable[[int], None] | None = None,
        on_file_parsed: Callable[[int], None] | None = None,
    ) -> ScanResult:
        logger.debug("Scanning directory: %s", directory)
        file_paths = await self.get_all_file_paths(directory)
        logger.debug("Found %d supported files", len(file_paths))

        processed_files: set[str] = set()
        code_blocks: list[CodeBlock] = []
        stats = {"processed": 0, "skipped": 0}
        total_block_count = 0

        parse_limiter = asyncio.Semaphore(PARSING_CONCURRENCY)
        batch_limiter = asyncio.Semaphore(BATCH_PROCESSING_CONCURRENCY)
        lock = asyncio.Lock()

        pending_blocks: list[CodeBlock] = []
        pending_files = _PendingFiles(self.cache)
        batch_tasks: list[asyncio.Task] = []
        indexing = self._batch_processor is not None

        async def run_batch(blocks: list[CodeBlock]) -> None:
            result = await self._run_batch(blocks, batch_limiter, on_error, on_blocks_indexed)
            pending_files.settle(blocks, result)

        def submit(blocks: list[CodeBlock]) -> None:
            batch_tasks.append(asyncio.create_task(run_batch(blocks)))

        async def process_file(file_path: str) -> None:
            nonlocal total_block_count, pending_blocks
            async with parse_limiter:
                try:
                    size = (await asyncio.to_thread(os.stat, file_path)).st_size
                    if size > MAX_FILE_SIZE_BYTES:
                        logger.debug("Skipping large file: %s", file_path)
                        stats["skipped"] += 1
                        return

                    raw = await asyncio.to_thread(Path(file_path).read_bytes)
                    content = raw.decode("utf-8", errors="replace")
                    current_hash = hashlib.sha256(content.encode("utf-8")).hexdigest()
                    processed_files.add(file_path)

                    cached_hash = self.cache.get_hash(file_path)
                    if cached_hash == current_hash:
                        stats["skipped"] += 1
                        return

                    blocks = await self.parser.parse_file(
                        file_path, content=content, file_hash=current_hash
                    )
                    if on_file_parsed:
                        on_file_parsed(len(blocks))
                    code_blocks.extend(blocks)
                    stats["processed"] += 1

                    if indexing and cached_hash is not None:
                        # Modified file: old points go before any new ones land
                        await self.vector_store.delete_points_by_file_path(
                            self.workspace.get_relative_path(file_path)
                        )

                    indexable = [b for b in blocks if b.content.strip()]
                    if not indexing or not indexable:
                        self.cache.update_hash(file_path, current_hash)
                        return

                    async with lock:
                        total_block_count += len(indexable)
                        pending_files.add(file_path, current_hash, len(indexable))
                        for block in indexable:
                            pending_blocks.append(block)
                            if len(pending_blocks) >= BATCH_SEGMENT_THRESHOLD:
                                batch, pending_blocks = pending_blocks, []
                                submit(batch)
                except Exception as e:
                    logger.error("Error processing file %s: %s", file_path, e)
                    if on_error:
                        on_error(e)

        await asyncio.gather(*(process_file(p) for p in file_paths))

        async with lock:
            if pending_blocks:
                batch, pending_blocks = pending_blocks, []
                submit(batch)

        if batch_tasks:
            await asyncio.gather(*batch_tasks)

        await self._reconcile(processed_files, on_error)

        logger.info(
            "Scan finished: %d processed, %d skipped, %d blocks",
            stats["processed"],
            stats["skipped"],
            total_block_count,
        )
        return ScanResult(blocks=code_blocks, stats=stats, total_block_count=total_block_count)

    async def _reconcile(
        self, seen: set[str], on_error: Callable[[Exception], None] | None
    ) -> None:
        """Drop cache entries and points of files that no longer exist or qualify."""
        for cached_path in self.cache.get_all_hashes():
            if cached_path in seen:
                continue
            try:
                if self.vector_store is not None:
                    await self.vector_store.delete_points_by_file_path(
                        self.workspace.get_relative_path(cached_path)
                    )
                self.cache.delete_hash(cached_path)
            except Exception as e:
                logger.error("Failed to delete points for %s: %s", cached_path, e)
                if on_error:
                    on_error(e)

    async def _run_batch(
        self,
        blocks: list[CodeBlock],
        limiter: asyncio.Semaphore,
        on_error: Callable[[Exception], None] | None,
        on_blocks_indexed: Callable[[int], None] | None,
    ) -> BatchResult:
        assert self._batch_processor is not None

        def report_error(error: Exception) -> None:
            logger.error("Batch processing error: %s", error)
            if on_error:
                on_error(error)

        strategy: BatchStrategy[CodeBlock] = BatchStrategy(
            item_to_text=lambda block: block.content.strip(),
            item_to_point=lambda block, vector, _index: block_to_point(
                block, vector, self.workspace
            ),
            item_to_file_path=lambda block: block.file_path,
            to_store_path=self.workspace.get_relative_path,
            on_error=report_error,
        )
        async with limiter:
            result = await self._batch_processor.process_batch(blocks, strategy)
        if result.processed > 0 and on_blocks_indexed:
            on_blocks_indexed(result.processed)
        return result
