"""Data classes shared across the indexing pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

# ── Code blocks ──────────────────────────────────────────────────────────

CHUNK_SOURCE_GRAMMAR = "grammar"
CHUNK_SOURCE_FALLBACK = "fallback"
CHUNK_SOURCE_LINE_SEGMENT = "line-segment"


@dataclass
class ParentContainer:
    """One enclosing named construct of a code block."""

    identifier: str
    container_type: str  # class, interface, namespace, module, function, ...


@dataclass
class CodeBlock:
    """A contiguous span of a file produced by the chunking parser."""

    file_path: str
    identifier: str | None
    block_type: str
    start_line: int  # 1-based, inclusive
    end_line: int  # 1-based, inclusive
    content: str
    file_hash: str
    segment_hash: str
    chunk_source: str = CHUNK_SOURCE_GRAMMAR
    parent_chain: list[ParentContainer] = field(default_factory=list)
    hierarchy_display: str | None = None


# ── Vector points ────────────────────────────────────────────────────────


@dataclass
class PointStruct:
    """A vector plus its payload, ready to upsert into a vector store."""

    id: str
    vector: list[float]
    payload: dict[str, Any]


# ── Results ──────────────────────────────────────────────────────────────


@dataclass
class FileProcessingResult:
    """Outcome of processing one file in the watcher or batch processor."""

    path: str
    status: str  # success, skipped, error, local_error, processed_for_batching
    reason: str | None = None
    error: Exception | None = None
    new_hash: str | None = None
    points_to_upsert: list[PointStruct] = field(default_factory=list)


@dataclass
class BatchProcessingSummary:
    processed_files: list[FileProcessingResult]
    batch_error: Exception | None = None


@dataclass
class BatchResult:
    processed: int = 0
    failed: int = 0
    errors: list[Exception] = field(default_factory=list)
    processed_files: list[FileProcessingResult] = field(default_factory=list)


@dataclass
class ScanResult:
    blocks: list[CodeBlock]
    stats: dict[str, int]
    total_block_count: int = 0


@dataclass
class FileEvent:
    """A pending filesystem change waiting in the watcher accumulator."""

    path: str
    change_type: str  # create, change, delete


# ── Search ───────────────────────────────────────────────────────────────


@dataclass
class SearchFilter:
    path_filters: list[str] = field(default_factory=list)
    min_score: float | None = None
    limit: int | None = None


@dataclass
class SearchResult:
    id: str | int
    score: float
    payload: dict[str, Any] | None = None


# ── Embeddings ───────────────────────────────────────────────────────────


@dataclass
class EmbeddingResponse:
    embeddings: list[list[float]]
    usage: dict[str, int] = field(default_factory=dict)


# ── State ────────────────────────────────────────────────────────────────


class IndexingState(str, Enum):
    STANDBY = "Standby"
    INDEXING = "Indexing"
    INDEXED = "Indexed"
    ERROR = "Error"


# ── Errors ───────────────────────────────────────────────────────────────


class CodeIndexError(Exception):
    """Base class for indexing pipeline errors."""

    pass


class ConfigurationError(CodeIndexError):
    """Raised when the embedder or vector store is missing required settings."""

    pass


class EmbeddingError(CodeIndexError):
    """Raised when an embedding provider fails."""

    pass
