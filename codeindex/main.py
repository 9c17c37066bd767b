import argparse
import asyncio
import logging
import os
from datetime import datetime
from pathlib import Path

from codeindex.manager import CodeIndexManager, ManagerRegistry
from codeindex.models import IndexingState

logger = logging.getLogger(__name__)


def setup_logging() -> str:
    """Configure file logging. Returns the log file path."""
    log_dir = Path("log")
    log_dir.mkdir(exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    log_file = log_dir / f"codeindex-{timestamp}.log"
    logging.basicConfig(
        filename=str(log_file),
        level=logging.DEBUG,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    return str(log_file)


def _print_status(status: dict) -> None:
    line = f"[{status['systemStatus']}] {status['message']}"
    if status["totalItems"]:
        line += f" ({status['processedItems']}/{status['totalItems']} {status['currentItemUnit']})"
    print(line)


async def _ensure_ready(manager: CodeIndexManager) -> bool:
    await manager.initialize(auto_start=False)
    if not manager.is_feature_enabled:
        print("⚠️  Code indexing is disabled. Set CODEINDEX_ENABLED=true to enable it.")
        return False
    if not manager.is_feature_configured:
        print("⚠️  Code indexing is not configured. Check the embedder and vector store settings.")
        return False
    return True


# ── Commands ─────────────────────────────────────────────────────────────


async def cmd_index(manager: CodeIndexManager, args: argparse.Namespace) -> int:
    if not await _ensure_ready(manager):
        return 1
    await manager.start_indexing()
    status = manager.get_current_status()
    manager.stop_watcher()
    _print_status(status)
    return 1 if status["systemStatus"] == IndexingState.ERROR.value else 0


async def cmd_watch(manager: CodeIndexManager, args: argparse.Namespace) -> int:
    if not await _ensure_ready(manager):
        return 1
    manager.on_progress_update(_print_status)
    await manager.start_indexing()
    if manager.state == IndexingState.ERROR:
        return 1
    print(f"👀 Watching {manager.workspace_path} (Ctrl+C to stop)")
    try:
        await asyncio.Event().wait()
    except asyncio.CancelledError:
        pass
    return 0


async def cmd_search(manager: CodeIndexManager, args: argparse.Namespace) -> int:
    if not await _ensure_ready(manager):
        return 1
    assert manager.vector_store is not None
    if not await manager.vector_store.collection_exists():
        print("No index found. Run `codeindex index` first.")
        return 1
    # A persisted index is searchable without rescanning
    manager.state_manager.set_system_state(IndexingState.INDEXED, "Using existing index.")

    results = await manager.search_index(args.query, limit=args.limit)
    if not results:
        print("No results.")
        return 0
    for result in results:
        payload = result.payload or {}
        print(
            f"{result.score:.3f}  {payload.get('filePath')}:"
            f"{payload.get('startLine')}-{payload.get('endLine')}"
            f"  {payload.get('hierarchyDisplay') or payload.get('identifier') or ''}"
        )
    return 0


async def cmd_clear(manager: CodeIndexManager, args: argparse.Namespace) -> int:
    if not await _ensure_ready(manager):
        return 1
    await manager.clear_index_data()
    status = manager.get_current_status()
    _print_status(status)
    return 1 if status["systemStatus"] == IndexingState.ERROR.value else 0


async def cmd_status(manager: CodeIndexManager, args: argparse.Namespace) -> int:
    await manager.initialize(auto_start=False)
    config = manager.config_manager.config
    print(f"Workspace:    {manager.workspace_path}")
    print(f"Enabled:      {config.is_enabled}")
    print(f"Configured:   {config.is_configured}")
    print(f"Embedder:     {config.embedder.provider} ({config.embedder.model}, {config.embedder.dimension})")
    print(f"Vector store: {config.vector_store}")
    if manager.cache is not None:
        print(f"Cached files: {len(manager.cache.get_all_hashes())}")
    if manager.vector_store is not None:
        exists = await manager.vector_store.collection_exists()
        print(f"Index:        {'present' if exists else 'missing'}")
    return 0


COMMANDS = {
    "index": cmd_index,
    "watch": cmd_watch,
    "search": cmd_search,
    "clear": cmd_clear,
    "status": cmd_status,
}


async def run(args: argparse.Namespace) -> int:
    registry = ManagerRegistry()
    manager = registry.get(args.workspace or os.getcwd())
    try:
        return await COMMANDS[args.command](manager, args)
    except Exception as e:
        logger.exception("Command %s failed", args.command)
        print(f"❌ {e}")
        return 1
    finally:
        await registry.dispose_all()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="codeindex – incremental semantic code index")
    parser.add_argument(
        "--log",
        action="store_true",
        help="Enable logging to log/codeindex-{datetime}.log",
    )
    parser.add_argument(
        "--workspace",
        default=None,
        help="Workspace directory to index (default: current directory)",
    )
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("index", help="Scan the workspace once and update the index")
    sub.add_parser("watch", help="Scan, then keep the index updated as files change")
    search = sub.add_parser("search", help="Search the index")
    search.add_argument("query")
    search.add_argument("--limit", type=int, default=10)
    sub.add_parser("clear", help="Delete the index and the file cache")
    sub.add_parser("status", help="Show configuration and index status")
    return parser


def main():
    args = build_parser().parse_args()

    if args.log:
        log_file = setup_logging()
        print(f"📝 Logging to: {log_file}")

    try:
        code = asyncio.run(run(args))
    except KeyboardInterrupt:
        code = 0
    raise SystemExit(code)


if __name__ == "__main__":  # pragma: no cover
    main()
