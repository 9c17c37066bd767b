"""Vector store backends.

``QdrantVectorStore`` talks to a Qdrant server; ``LocalVectorStore`` keeps
points in a SQLite file and searches them with a FAISS inner-product index
over normalized vectors, for running without a server.
"""

from __future__ import annotations

import hashlib
import json
import logging
from pathlib import Path
from typing import Any, Protocol

import aiosqlite
import faiss
import numpy as np
from qdrant_client import AsyncQdrantClient
from qdrant_client.http.models import (
    Distance,
    FieldCondition,
    Filter,
    FilterSelector,
    MatchText,
    MatchValue,
    PayloadSchemaType,
    PointStruct as QdrantPoint,
    SearchParams,
    VectorParams,
)

from codeindex.config import MAX_SEARCH_RESULTS, SEARCH_MIN_SCORE, get_local_store_path
from codeindex.models import PointStruct, SearchFilter, SearchResult

logger = logging.getLogger(__name__)

_REQUIRED_PAYLOAD_KEYS = ("filePath", "codeChunk", "startLine", "endLine")
_SCROLL_PAGE_SIZE = 250


class VectorStore(Protocol):
    async def initialize(self) -> bool: ...

    async def upsert_points(self, points: list[PointStruct]) -> None: ...

    async def search(
        self, query_vector: list[float], search_filter: SearchFilter | None = None
    ) -> list[SearchResult]: ...

    async def delete_points_by_file_path(self, file_path: str) -> None: ...

    async def delete_points_by_multiple_file_paths(self, file_paths: list[str]) -> None: ...

    async def clear_collection(self) -> None: ...

    async def delete_collection(self) -> None: ...

    async def collection_exists(self) -> bool: ...

    async def get_all_file_paths(self) -> list[str]: ...


def collection_name_for(workspace_path: str) -> str:
    digest = hashlib.sha256(workspace_path.encode("utf-8")).hexdigest()
    return f"ws-{digest[:16]}"


def path_segments(file_path: str) -> dict[str, str]:
    """``"src/a/b.py"`` -> ``{"0": "src", "1": "a", "2": "b.py"}``."""
    parts = [p for p in file_path.replace("\\", "/").split("/") if p]
    return {str(i): part for i, part in enumerate(parts)}


def _payload_is_valid(payload: dict | None) -> bool:
    return bool(payload) and all(k in payload for k in _REQUIRED_PAYLOAD_KEYS)


# ── Qdrant ───────────────────────────────────────────────────────────────


class QdrantVectorStore:
    """One Qdrant collection per workspace, cosine distance."""

    def __init__(
        self,
        workspace_path: str,
        url: str,
        vector_size: int,
        api_key: str | None = None,
        client: AsyncQdrantClient | None = None,
    ) -> None:
        self.collection_name = collection_name_for(workspace_path)
        self.vector_size = vector_size
        self._client = client or AsyncQdrantClient(url=url, api_key=api_key or None)

    async def _get_collection_info(self) -> Any:
        try:
            return await self._client.get_collection(self.collection_name)
        except Exception as e:
            logger.debug("Collection %s not available: %s", self.collection_name, e)
            return None

    async def _create_collection(self) -> None:
        await self._client.create_collection(
            collection_name=self.collection_name,
            vectors_config=VectorParams(size=self.vector_size, distance=Distance.COSINE),
        )

    async def initialize(self) -> bool:
        """Ensure the collection exists with the right vector size.

        Returns True when the collection was (re)created, which means any
        local hash cache no longer matches the store.
        """
        info = await self._get_collection_info()
        created = False
        if info is None:
            await self._create_collection()
            created = True
        else:
            vectors = info.config.params.vectors
            existing = getattr(vectors, "size", None)
            if existing != self.vector_size:
                logger.warning(
                    "Collection %s has vector size %s, expected %s. Recreating.",
                    self.collection_name,
                    existing,
                    self.vector_size,
                )
                await self._client.delete_collection(self.collection_name)
                await self._create_collection()
                created = True

        try:
            await self._client.create_payload_index(
                collection_name=self.collection_name,
                field_name="filePath",
                field_schema=PayloadSchemaType.KEYWORD,
            )
        except Exception as e:
            if "already exists" not in str(e).lower():
                logger.warning("Could not create filePath index on %s: %s", self.collection_name, e)
        return created

    async def upsert_points(self, points: list[PointStruct]) -> None:
        if not points:
            return
        await self._client.upsert(
            collection_name=self.collection_name,
            points=[
                QdrantPoint(
                    id=p.id,
                    vector=p.vector,
                    payload={**p.payload, "pathSegments": path_segments(p.payload["filePath"])}
                    if p.payload.get("filePath")
                    else p.payload,
                )
                for p in points
            ],
            wait=True,
        )

    async def search(
        self, query_vector: list[float], search_filter: SearchFilter | None = None
    ) -> list[SearchResult]:
        search_filter = search_filter or SearchFilter()
        query_filter = None
        if search_filter.path_filters:
            query_filter = Filter(
                should=[
                    FieldCondition(key="filePath", match=MatchText(text=p.replace("\\", "/")))
                    for p in search_filter.path_filters
                ]
            )

        response = await self._client.query_points(
            collection_name=self.collection_name,
            query=query_vector,
            query_filter=query_filter,
            score_threshold=(
                search_filter.min_score
                if search_filter.min_score is not None
                else SEARCH_MIN_SCORE
            ),
            limit=search_filter.limit or MAX_SEARCH_RESULTS,
            search_params=SearchParams(hnsw_ef=128, exact=False),
            with_payload=True,
        )
        return [
            SearchResult(id=point.id, score=point.score, payload=point.payload)
            for point in response.points
            if _payload_is_valid(point.payload)
        ]

    async def delete_points_by_file_path(self, file_path: str) -> None:
        await self.delete_points_by_multiple_file_paths([file_path])

    async def delete_points_by_multiple_file_paths(self, file_paths: list[str]) -> None:
        if not file_paths:
            return
        await self._client.delete(
            collection_name=self.collection_name,
            points_selector=FilterSelector(
                filter=Filter(
                    should=[
                        FieldCondition(key="filePath", match=MatchValue(value=path))
                        for path in file_paths
                    ]
                )
            ),
            wait=True,
        )

    async def clear_collection(self) -> None:
        await self._client.delete(
            collection_name=self.collection_name,
            points_selector=FilterSelector(filter=Filter(must=[])),
            wait=True,
        )

    async def delete_collection(self) -> None:
        if await self.collection_exists():
            await self._client.delete_collection(self.collection_name)

    async def collection_exists(self) -> bool:
        return await self._get_collection_info() is not None

    async def get_all_file_paths(self) -> list[str]:
        paths: set[str] = set()
        offset = None
        try:
            while True:
                points, offset = await self._client.scroll(
                    collection_name=self.collection_name,
                    limit=_SCROLL_PAGE_SIZE,
                    with_payload=["filePath"],
                    with_vectors=False,
                    offset=offset,
                )
                for point in points:
                    path = (point.payload or {}).get("filePath")
                    if isinstance(path, str):
                        paths.add(path)
                if offset is None:
                    break
        except Exception as e:
            logger.warning("Failed to list indexed file paths: %s", e)
            return []
        return sorted(paths)


# ── Local (SQLite + FAISS) ───────────────────────────────────────────────

_SCHEMA = """
CREATE TABLE IF NOT EXISTS meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS points (
    id TEXT PRIMARY KEY,
    file_path TEXT NOT NULL,
    payload TEXT NOT NULL,
    embedding BLOB NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_points_file ON points(file_path);
"""


class LocalVectorStore:
    """Single-file vector store for one workspace."""

    def __init__(self, db_path: Path, vector_size: int) -> None:
        self.db_path = Path(db_path)
        self.vector_size = vector_size

    async def _connect(self) -> aiosqlite.Connection:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = await aiosqlite.connect(str(self.db_path))
        await conn.executescript(_SCHEMA)
        return conn

    async def initialize(self) -> bool:
        existed = self.db_path.is_file()
        conn = await self._connect()
        try:
            async with conn.execute("SELECT value FROM meta WHERE key = 'vector_size'") as cur:
                row = await cur.fetchone()
            if existed and row is not None and int(row[0]) == self.vector_size:
                return False
            if row is not None:
                logger.warning(
                    "Local store %s has vector size %s, expected %s. Recreating.",
                    self.db_path,
                    row[0],
                    self.vector_size,
                )
            await conn.execute("DELETE FROM points")
            await conn.execute(
                "INSERT OR REPLACE INTO meta (key, value) VALUES ('vector_size', ?)",
                (str(self.vector_size),),
            )
            await conn.commit()
            return True
        finally:
            await conn.close()

    async def upsert_points(self, points: list[PointStruct]) -> None:
        if not points:
            return
        conn = await self._connect()
        try:
            await conn.executemany(
                "INSERT OR REPLACE INTO points (id, file_path, payload, embedding) "
                "VALUES (?, ?, ?, ?)",
                [
                    (
                        str(p.id),
                        p.payload.get("filePath", ""),
                        json.dumps(p.payload),
                        np.asarray(p.vector, dtype=np.float32).tobytes(),
                    )
                    for p in points
                ],
            )
            await conn.commit()
        finally:
            await conn.close()

    async def search(
        self, query_vector: list[float], search_filter: SearchFilter | None = None
    ) -> list[SearchResult]:
        search_filter = search_filter or SearchFilter()
        min_score = (
            search_filter.min_score if search_filter.min_score is not None else SEARCH_MIN_SCORE
        )
        limit = search_filter.limit or MAX_SEARCH_RESULTS
        patterns = [p.replace("\\", "/") for p in search_filter.path_filters]

        conn = await self._connect()
        try:
            async with conn.execute("SELECT id, file_path, payload, embedding FROM points") as cur:
                rows = [
                    row
                    async for row in cur
                    if not patterns or any(p in row[1] for p in patterns)
                ]
        finally:
            await conn.close()

        if not rows:
            return []

        embeddings = np.vstack([np.frombuffer(r[3], dtype=np.float32) for r in rows])
        query = np.asarray(query_vector, dtype=np.float32).reshape(1, -1)
        # Cosine similarity via inner product of normalized vectors
        faiss.normalize_L2(embeddings)
        faiss.normalize_L2(query)
        index = faiss.IndexFlatIP(embeddings.shape[1])
        index.add(embeddings)
        scores, indices = index.search(query, min(limit, len(rows)))

        results: list[SearchResult] = []
        for score, idx in zip(scores[0], indices[0]):
            if idx < 0 or float(score) < min_score:
                continue
            payload = json.loads(rows[idx][2])
            if _payload_is_valid(payload):
                results.append(SearchResult(id=rows[idx][0], score=float(score), payload=payload))
        return results

    async def delete_points_by_file_path(self, file_path: str) -> None:
        await self.delete_points_by_multiple_file_paths([file_path])

    async def delete_points_by_multiple_file_paths(self, file_paths: list[str]) -> None:
        if not file_paths:
            return
        conn = await self._connect()
        try:
            await conn.executemany(
                "DELETE FROM points WHERE file_path = ?", [(p,) for p in file_paths]
            )
            await conn.commit()
        finally:
            await conn.close()

    async def clear_collection(self) -> None:
        conn = await self._connect()
        try:
            await conn.execute("DELETE FROM points")
            await conn.commit()
        finally:
            await conn.close()

    async def delete_collection(self) -> None:
        if self.db_path.is_file():
            self.db_path.unlink()

    async def collection_exists(self) -> bool:
        return self.db_path.is_file()

    async def get_all_file_paths(self) -> list[str]:
        if not self.db_path.is_file():
            return []
        try:
            conn = await self._connect()
            try:
                async with conn.execute("SELECT DISTINCT file_path FROM points") as cur:
                    paths = [row[0] async for row in cur]
                return sorted(paths)
            finally:
                await conn.close()
        except (aiosqlite.Error, OSError) as e:
            logger.warning("Failed to list indexed file paths: %s", e)
            return []


def create_vector_store(config: Any, workspace_path: str) -> VectorStore:
    """Build the vector store selected by ``config.vector_store``."""
    if config.vector_store == "local":
        return LocalVectorStore(get_local_store_path(workspace_path), config.embedder.dimension)
    return QdrantVectorStore(
        workspace_path,
        url=config.qdrant_url,
        vector_size=config.embedder.dimension,
        api_key=config.qdrant_api_key,
    )
