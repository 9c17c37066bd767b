"""Persistent map of absolute file path to content hash for one workspace."""

import asyncio
import hashlib
import json
import logging
from pathlib import Path

from codeindex.config import CACHE_SAVE_DEBOUNCE_MS, get_cache_dir
from codeindex.debounce import Debouncer

logger = logging.getLogger(__name__)


class CacheManager:
    """Tracks which file contents have already been embedded.

    Mutations are kept in memory and written back through a debounced save,
    so a burst of updates results in a single write. ``clear_cache_file``
    writes immediately.
    """

    def __init__(
        self,
        workspace_path: str,
        cache_dir: Path | None = None,
        debounce_ms: int = CACHE_SAVE_DEBOUNCE_MS,
    ) -> None:
        self.workspace_path = workspace_path
        digest = hashlib.sha256(workspace_path.encode("utf-8")).hexdigest()
        directory = cache_dir if cache_dir is not None else get_cache_dir()
        self._cache_path = Path(directory) / f"index-cache-{digest}.json"
        self._hashes: dict[str, str] = {}
        self._debounce_ms = debounce_ms
        self._debouncer: Debouncer | None = None

    @property
    def cache_path(self) -> Path:
        return self._cache_path

    async def initialize(self) -> None:
        """Load the cache file. Missing or corrupt files yield an empty cache."""
        try:
            text = await asyncio.to_thread(self._cache_path.read_text, encoding="utf-8")
            data = json.loads(text)
        except FileNotFoundError:
            data = {}
        except (OSError, ValueError) as e:
            logger.warning("Failed to load cache %s: %s", self._cache_path, e)
            data = {}
        if not isinstance(data, dict):
            data = {}
        self._hashes = {str(k): str(v) for k, v in data.items()}

    # ── mutation ─────────────────────────────────────────────────────────

    def get_hash(self, file_path: str) -> str | None:
        return self._hashes.get(file_path)

    def update_hash(self, file_path: str, file_hash: str) -> None:
        self._hashes[file_path] = file_hash
        self._schedule_save()

    def delete_hash(self, file_path: str) -> None:
        self._hashes.pop(file_path, None)
        self._schedule_save()

    def delete_hashes(self, file_paths: list[str]) -> None:
        for path in file_paths:
            self._hashes.pop(path, None)
        self._schedule_save()

    def get_all_hashes(self) -> dict[str, str]:
        """Return a copy of the whole cache."""
        return dict(self._hashes)

    # ── persistence ──────────────────────────────────────────────────────

    def _schedule_save(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop (sync caller): write straight away
            self._write()
            return
        if self._debouncer is None:
            self._debouncer = Debouncer(self._save, self._debounce_ms, loop)
        self._debouncer.trigger()

    def _write_text(self, data: str) -> None:
        try:
            self._cache_path.parent.mkdir(parents=True, exist_ok=True)
            self._cache_path.write_text(data, encoding="utf-8")
        except OSError as e:
            logger.error("Failed to save cache %s: %s", self._cache_path, e)

    def _write(self) -> None:
        self._write_text(json.dumps(self._hashes, indent=2))

    async def _save(self) -> None:
        # Serialize on the loop, write in a worker thread
        await asyncio.to_thread(self._write_text, json.dumps(self._hashes, indent=2))

    def flush(self) -> None:
        """Write any pending debounced save now."""
        if self._debouncer is not None and self._debouncer.pending:
            self._debouncer.cancel()
            self._write()

    async def clear_cache_file(self) -> None:
        """Reset the cache and write an empty file immediately."""
        if self._debouncer is not None:
            self._debouncer.cancel()
            await self._debouncer.wait_idle()
        self._hashes = {}
        try:
            self._cache_path.parent.mkdir(parents=True, exist_ok=True)
            await asyncio.to_thread(self._cache_path.write_text, "{}", encoding="utf-8")
        except OSError as e:
            logger.error("Failed to clear cache %s: %s", self._cache_path, e)
