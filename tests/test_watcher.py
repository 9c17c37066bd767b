"""Unit tests for codeindex.watcher."""

import asyncio
from unittest import mock

import pytest
from watchdog.events import DirCreatedEvent, FileCreatedEvent, FileModifiedEvent, FileMovedEvent

from codeindex.cache import CacheManager
from codeindex.config import MAX_FILE_SIZE_BYTES
from codeindex.models import EmbeddingResponse
from codeindex.parser import CodeParser, compute_hash
from codeindex.watcher import FileWatcher, _WatchEventHandler
from codeindex.workspace import Workspace

PY_SOURCE = '''def greet(name: str) -> str:
    """Say hello to someone by name."""
    return f"Hello, {name}!"
'''

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def workspace_dir(tmp_path):
    root = tmp_path / "project"
    root.mkdir()
    return root


@pytest.fixture
def cache(tmp_path):
    return CacheManager("/ws", cache_dir=tmp_path / "cache", debounce_ms=10_000)


def _embedder():
    embedder = mock.AsyncMock()
    embedder.create_embeddings.side_effect = lambda texts: EmbeddingResponse(
        embeddings=[[1.0, 0.0] for _ in texts]
    )
    return embedder


def _watcher(workspace_dir, cache, embedder="default", store="default", debounce_ms=10):
    return FileWatcher(
        Workspace(str(workspace_dir)),
        CodeParser(),
        cache,
        embedder=_embedder() if embedder == "default" else embedder,
        vector_store=mock.AsyncMock() if store == "default" else store,
        debounce_ms=debounce_ms,
    )


class _Recorder:
    """Collects every event a watcher emits."""

    def __init__(self, watcher):
        self.starts = []
        self.progress = []
        self.finishes = []
        watcher.on_did_start_batch_processing(self.starts.append)
        watcher.on_batch_progress_update(self.progress.append)
        watcher.on_did_finish_batch_processing(self.finishes.append)


# ---------------------------------------------------------------------------
# Accumulator
# ---------------------------------------------------------------------------


class TestQueueEvent:
    @pytest.mark.asyncio
    async def test_last_event_wins(self, workspace_dir, cache):
        watcher = _watcher(workspace_dir, cache, debounce_ms=10_000)
        path = str(workspace_dir / "a.py")
        watcher.queue_event(path, "create")
        watcher.queue_event(path, "change")
        assert watcher.pending_paths == [path]
        assert watcher._accumulated[path].change_type == "change"
        watcher.dispose()

    @pytest.mark.asyncio
    async def test_filters_unsupported_and_ignored(self, workspace_dir, cache):
        watcher = _watcher(workspace_dir, cache, debounce_ms=10_000)
        watcher.queue_event(str(workspace_dir / "notes.txt"), "create")
        watcher.queue_event(str(workspace_dir / "node_modules" / "x.js"), "create")
        watcher.queue_event(str(workspace_dir / ".hidden.py"), "create")
        assert watcher.pending_paths == []

    @pytest.mark.asyncio
    async def test_debounce_fires_single_batch(self, workspace_dir, cache):
        watcher = _watcher(workspace_dir, cache, debounce_ms=20)
        recorder = _Recorder(watcher)
        for name in ("a.py", "b.py", "c.py"):
            (workspace_dir / name).write_text(PY_SOURCE)
            watcher.queue_event(str(workspace_dir / name), "create")
        await asyncio.sleep(0.1)
        await watcher._debouncer.wait_idle()
        assert len(recorder.starts) == 1
        assert len(recorder.starts[0]) == 3
        assert watcher.pending_paths == []

    @pytest.mark.asyncio
    async def test_dispose_drops_pending(self, workspace_dir, cache):
        watcher = _watcher(workspace_dir, cache, debounce_ms=20)
        recorder = _Recorder(watcher)
        watcher.queue_event(str(workspace_dir / "a.py"), "create")
        watcher.dispose()
        watcher.queue_event(str(workspace_dir / "b.py"), "create")
        await asyncio.sleep(0.06)
        assert recorder.starts == []
        assert watcher.pending_paths == []


class TestWatchdogHandler:
    @pytest.mark.asyncio
    async def test_events_are_marshalled_to_loop(self, workspace_dir, cache):
        watcher = _watcher(workspace_dir, cache, debounce_ms=10_000)
        watcher._loop = asyncio.get_running_loop()
        handler = _WatchEventHandler(watcher)
        path = str(workspace_dir / "a.py")

        handler.on_created(FileCreatedEvent(path))
        handler.on_created(DirCreatedEvent(str(workspace_dir / "pkg.py")))
        await asyncio.sleep(0)

        assert watcher.pending_paths == [path]
        watcher.dispose()

    @pytest.mark.asyncio
    async def test_move_is_delete_plus_create(self, workspace_dir, cache):
        watcher = _watcher(workspace_dir, cache, debounce_ms=10_000)
        watcher._loop = asyncio.get_running_loop()
        src = str(workspace_dir / "old.py")
        dest = str(workspace_dir / "new.py")

        _WatchEventHandler(watcher).on_moved(FileMovedEvent(src, dest))
        await asyncio.sleep(0)

        kinds = {p: e.change_type for p, e in watcher._accumulated.items()}
        assert kinds == {src: "delete", dest: "create"}
        watcher.dispose()

    @pytest.mark.asyncio
    async def test_log_output_ignored(self, workspace_dir, cache):
        watcher = _watcher(workspace_dir, cache, debounce_ms=10_000)
        watcher._loop = asyncio.get_running_loop()
        handler = _WatchEventHandler(watcher)
        handler.on_created(FileCreatedEvent(str(workspace_dir / "log" / "x.py")))
        handler.on_modified(FileModifiedEvent(str(workspace_dir / "codeindex-run.log")))
        await asyncio.sleep(0)
        assert watcher.pending_paths == []


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_initialize_and_dispose(self, workspace_dir, cache):
        watcher = _watcher(workspace_dir, cache)
        await watcher.initialize()
        assert watcher.is_watching
        watcher.dispose()
        assert not watcher.is_watching


# ---------------------------------------------------------------------------
# process_file
# ---------------------------------------------------------------------------


class TestProcessFile:
    @pytest.mark.asyncio
    async def test_new_file_is_embedded(self, workspace_dir, cache):
        path = workspace_dir / "a.py"
        path.write_text(PY_SOURCE)
        result = await _watcher(workspace_dir, cache).process_file(str(path))
        assert result.status == "processed_for_batching"
        assert result.new_hash == compute_hash(PY_SOURCE)
        assert len(result.points_to_upsert) == 1
        assert result.points_to_upsert[0].payload["filePath"] == "a.py"

    @pytest.mark.asyncio
    async def test_unchanged_file_skipped(self, workspace_dir, cache):
        path = workspace_dir / "a.py"
        path.write_text(PY_SOURCE)
        cache.update_hash(str(path), compute_hash(PY_SOURCE))
        result = await _watcher(workspace_dir, cache).process_file(str(path))
        assert result.status == "skipped"
        assert result.reason == "File has not changed"

    @pytest.mark.asyncio
    async def test_ignored_file_skipped(self, workspace_dir, cache):
        path = workspace_dir / "notes.md"
        path.write_text("# notes")
        result = await _watcher(workspace_dir, cache).process_file(str(path))
        assert result.reason == "File is ignored"

    @pytest.mark.asyncio
    async def test_large_file_skipped(self, workspace_dir, cache):
        path = workspace_dir / "big.py"
        path.write_text("#" * (MAX_FILE_SIZE_BYTES + 1))
        result = await _watcher(workspace_dir, cache).process_file(str(path))
        assert result.reason == "File is too large"

    @pytest.mark.asyncio
    async def test_missing_file_is_local_error(self, workspace_dir, cache):
        result = await _watcher(workspace_dir, cache).process_file(str(workspace_dir / "gone.py"))
        assert result.status == "local_error"
        assert result.error is not None

    @pytest.mark.asyncio
    async def test_embedding_failure_is_local_error(self, workspace_dir, cache):
        path = workspace_dir / "a.py"
        path.write_text(PY_SOURCE)
        embedder = mock.AsyncMock()
        embedder.create_embeddings.side_effect = RuntimeError("offline")
        result = await _watcher(workspace_dir, cache, embedder=embedder).process_file(str(path))
        assert result.status == "local_error"


# ---------------------------------------------------------------------------
# Batches
# ---------------------------------------------------------------------------


class TestProcessBatch:
    @pytest.mark.asyncio
    async def test_change_and_delete(self, workspace_dir, cache):
        calls = []
        store = mock.AsyncMock()
        store.delete_points_by_multiple_file_paths.side_effect = lambda paths: calls.append(
            ("delete", sorted(paths))
        )
        store.upsert_points.side_effect = lambda points: calls.append(("upsert", len(points)))
        changed = workspace_dir / "a.py"
        changed.write_text(PY_SOURCE)
        removed = str(workspace_dir / "old.py")
        cache.update_hash(str(changed), "stale")
        cache.update_hash(removed, "old")

        watcher = _watcher(workspace_dir, cache, store=store)
        recorder = _Recorder(watcher)
        watcher.queue_event(str(changed), "change")
        watcher.queue_event(removed, "delete")
        await watcher.process_pending()

        assert calls == [("delete", ["a.py", "old.py"]), ("upsert", 1)]
        assert cache.get_hash(str(changed)) == compute_hash(PY_SOURCE)
        assert cache.get_hash(removed) is None

        summary = recorder.finishes[0]
        assert summary.batch_error is None
        assert {r.path: r.status for r in summary.processed_files} == {
            str(changed): "success",
            removed: "success",
        }
        assert recorder.progress[0] == {
            "processed_in_batch": 0,
            "total_in_batch": 2,
            "current_file": None,
        }
        assert recorder.progress[-2]["processed_in_batch"] == 2
        assert recorder.progress[-1] == {
            "processed_in_batch": 0,
            "total_in_batch": 0,
            "current_file": None,
        }

    @pytest.mark.asyncio
    async def test_unchanged_file_keeps_points(self, workspace_dir, cache):
        store = mock.AsyncMock()
        path = workspace_dir / "a.py"
        path.write_text(PY_SOURCE)
        cache.update_hash(str(path), compute_hash(PY_SOURCE))

        watcher = _watcher(workspace_dir, cache, store=store)
        watcher.queue_event(str(path), "change")
        await watcher.process_pending()

        store.delete_points_by_multiple_file_paths.assert_not_awaited()
        store.upsert_points.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_upsert_failure_marks_error(self, workspace_dir, cache):
        store = mock.AsyncMock()
        store.upsert_points.side_effect = RuntimeError("down")
        path = workspace_dir / "a.py"
        path.write_text(PY_SOURCE)

        watcher = _watcher(workspace_dir, cache, store=store)
        recorder = _Recorder(watcher)
        watcher.queue_event(str(path), "create")
        with mock.patch("codeindex.batch_processor.asyncio.sleep", mock.AsyncMock()):
            await watcher.process_pending()

        assert store.upsert_points.await_count == 3
        assert cache.get_hash(str(path)) is None
        summary = recorder.finishes[0]
        assert summary.batch_error is not None
        assert summary.processed_files[0].status == "error"

    @pytest.mark.asyncio
    async def test_delete_failure_keeps_cache(self, workspace_dir, cache):
        store = mock.AsyncMock()
        store.delete_points_by_multiple_file_paths.side_effect = RuntimeError("down")
        removed = str(workspace_dir / "old.py")
        cache.update_hash(removed, "old")

        watcher = _watcher(workspace_dir, cache, store=store)
        recorder = _Recorder(watcher)
        watcher.queue_event(removed, "delete")
        await watcher.process_pending()

        assert cache.get_hash(removed) == "old"
        assert recorder.finishes[0].processed_files[0].status == "error"

    @pytest.mark.asyncio
    async def test_without_embedder_only_deletes(self, workspace_dir, cache):
        store = mock.AsyncMock()
        path = workspace_dir / "a.py"
        path.write_text(PY_SOURCE)
        removed = str(workspace_dir / "old.py")

        watcher = _watcher(workspace_dir, cache, embedder=None, store=store)
        recorder = _Recorder(watcher)
        watcher.queue_event(str(path), "create")
        watcher.queue_event(removed, "delete")
        await watcher.process_pending()

        store.delete_points_by_multiple_file_paths.assert_awaited_once_with(["old.py"])
        store.upsert_points.assert_not_awaited()
        statuses = {r.path: r.status for r in recorder.finishes[0].processed_files}
        assert statuses == {str(path): "skipped", removed: "success"}

    @pytest.mark.asyncio
    async def test_empty_accumulator_is_noop(self, workspace_dir, cache):
        watcher = _watcher(workspace_dir, cache)
        recorder = _Recorder(watcher)
        await watcher.process_pending()
        assert recorder.starts == []
        assert recorder.finishes == []
