"""Centralised configuration for codeindex.

Load order (later sources override earlier ones):
  1. Built-in defaults
  2. ~/.codeindex/config.json
  3. .env file (via python-dotenv)
  4. Real environment variables

Unlike plain constants, the indexing settings are re-read on every call to
``load_index_config`` so that a running manager can detect changes that
require restarting the pipeline.
"""

import hashlib
import json
import logging
import os
from dataclasses import asdict, dataclass
from pathlib import Path

from dotenv import load_dotenv

# Load .env first so real env vars still win over it
load_dotenv()

logger = logging.getLogger(__name__)

# ── tuning constants ──────────────────────────────────────────────────

# Chunking
MAX_BLOCK_CHARS = 1000
MIN_BLOCK_CHARS = 50
MIN_CHUNK_REMAINDER_CHARS = 200
MAX_CHARS_TOLERANCE_FACTOR = 1.15

# Scanning
MAX_FILE_SIZE_BYTES = 1 * 1024 * 1024
MAX_LIST_FILES_LIMIT = 3000
PARSING_CONCURRENCY = 10
BATCH_PROCESSING_CONCURRENCY = 10

# Batching
BATCH_SEGMENT_THRESHOLD = 60
MAX_BATCH_RETRIES = 3
INITIAL_RETRY_DELAY_MS = 500

# Watching
BATCH_DEBOUNCE_DELAY_MS = 500
FILE_PROCESSING_CONCURRENCY_LIMIT = 10

# Cache
CACHE_SAVE_DEBOUNCE_MS = 1500

# Embedding
MAX_BATCH_TOKENS = 100000
MAX_ITEM_TOKENS = 8191

# Search
SEARCH_MIN_SCORE = 0.4
MAX_SEARCH_RESULTS = 50

# Namespace for deterministic vector point ids
POINT_ID_NAMESPACE = "f47ac10b-58cc-4372-a567-0e02b2c3d479"

EMBEDDER_PROVIDERS = ("openai", "openai-compatible", "ollama", "sentence-transformers")
VECTOR_STORES = ("qdrant", "local")

# Default model and vector size per provider
_PROVIDER_DEFAULTS: dict[str, tuple[str, int]] = {
    "openai": ("text-embedding-3-small", 1536),
    "openai-compatible": ("text-embedding-3-small", 1536),
    "ollama": ("nomic-embed-text:latest", 768),
    "sentence-transformers": ("all-MiniLM-L6-v2", 384),
}

# ── defaults ──────────────────────────────────────────────────────────
_DEFAULTS = {
    "enabled": "true",
    "embedder_provider": "ollama",
    "embedder_model": "",  # Empty means the provider default
    "embedder_dimension": "",  # Empty means the provider default
    "embedder_base_url": "",
    "embedder_api_key": "",
    "vector_store": "qdrant",
    "qdrant_url": "http://localhost:6333",
    "qdrant_api_key": "",
    "search_min_score": str(SEARCH_MIN_SCORE),
}

# Map config keys to the corresponding env-var names
_ENV_MAP = {
    "enabled": "CODEINDEX_ENABLED",
    "embedder_provider": "EMBEDDER_PROVIDER",
    "embedder_model": "EMBEDDER_MODEL",
    "embedder_dimension": "EMBEDDER_DIMENSION",
    "embedder_base_url": "EMBEDDER_BASE_URL",
    "embedder_api_key": "EMBEDDER_API_KEY",
    "vector_store": "VECTOR_STORE",
    "qdrant_url": "QDRANT_URL",
    "qdrant_api_key": "QDRANT_API_KEY",
    "search_min_score": "SEARCH_MIN_SCORE",
}


# ── data directory (configurable via CODEINDEX_DATA_DIR) ──────────────
def _get_data_dir() -> Path:
    """Return the data directory, respecting CODEINDEX_DATA_DIR env var."""
    env_dir = os.environ.get("CODEINDEX_DATA_DIR")
    if env_dir:
        return Path(env_dir)
    return Path.home() / ".codeindex"


def config_dir() -> Path:
    """Return the data directory path, respecting CODEINDEX_DATA_DIR env var."""
    return _get_data_dir()


def config_path() -> Path:
    """Return the canonical path to ``~/.codeindex/config.json``."""
    return config_dir() / "config.json"


def get_cache_dir() -> Path:
    """Return the directory holding per-workspace hash caches."""
    return config_dir() / "cache"


def get_local_store_path(workspace_path: str) -> Path:
    """Return the path of the local vector store database for a workspace."""
    digest = hashlib.sha256(workspace_path.encode("utf-8")).hexdigest()
    return config_dir() / "stores" / f"ws-{digest[:16]}.db"


def _load_file_config() -> dict:
    path = config_path()
    if not path.is_file():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError):
        return {}
    return data if isinstance(data, dict) else {}


def _get(key: str, file_cfg: dict) -> str:
    """Return a config value using the load-order described above."""
    # 4) env var  (highest priority)
    env_name = _ENV_MAP.get(key)
    if env_name:
        env_val = os.getenv(env_name)
        if env_val:  # non-empty string
            return env_val

    # 3) ~/.codeindex/config.json
    val = file_cfg.get(key)
    if val is not None and str(val):
        return str(val)

    # 1) built-in default
    return _DEFAULTS[key]


def _as_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


# ── indexing configuration ────────────────────────────────────────────


@dataclass(frozen=True)
class EmbedderConfig:
    """Settings for one embedding provider."""

    provider: str
    model: str
    dimension: int
    base_url: str = ""
    api_key: str = ""


@dataclass(frozen=True)
class IndexConfig:
    """Snapshot of everything the indexing pipeline needs."""

    is_enabled: bool
    embedder: EmbedderConfig
    vector_store: str = "qdrant"
    qdrant_url: str = ""
    qdrant_api_key: str = ""
    search_min_score: float = SEARCH_MIN_SCORE

    @property
    def is_configured(self) -> bool:
        """True when the selected provider and store have their required settings."""
        emb = self.embedder
        if emb.provider not in EMBEDDER_PROVIDERS or emb.dimension <= 0:
            return False
        if emb.provider == "openai" and not emb.api_key:
            return False
        if emb.provider == "openai-compatible" and not (emb.base_url and emb.api_key):
            return False
        if self.vector_store == "qdrant":
            return bool(self.qdrant_url)
        return self.vector_store in VECTOR_STORES


def load_index_config() -> IndexConfig:
    """Read the current indexing configuration from all sources."""
    file_cfg = _load_file_config()
    provider = _get("embedder_provider", file_cfg).strip().lower()
    default_model, default_dimension = _PROVIDER_DEFAULTS.get(provider, ("", 0))

    dimension_raw = _get("embedder_dimension", file_cfg)
    try:
        dimension = int(dimension_raw) if dimension_raw else default_dimension
    except ValueError:
        logger.warning("Invalid embedder dimension %r, using default", dimension_raw)
        dimension = default_dimension

    try:
        min_score = float(_get("search_min_score", file_cfg))
    except ValueError:
        min_score = SEARCH_MIN_SCORE

    return IndexConfig(
        is_enabled=_as_bool(_get("enabled", file_cfg)),
        embedder=EmbedderConfig(
            provider=provider,
            model=_get("embedder_model", file_cfg) or default_model,
            dimension=dimension,
            base_url=_get("embedder_base_url", file_cfg),
            api_key=_get("embedder_api_key", file_cfg),
        ),
        vector_store=_get("vector_store", file_cfg).strip().lower(),
        qdrant_url=_get("qdrant_url", file_cfg),
        qdrant_api_key=_get("qdrant_api_key", file_cfg),
        search_min_score=min_score,
    )


class ConfigManager:
    """Holds the active configuration and detects restart-worthy changes."""

    def __init__(self, loader=load_index_config) -> None:
        self._loader = loader
        self._config: IndexConfig | None = None

    @property
    def config(self) -> IndexConfig:
        if self._config is None:
            self._config = self._loader()
        return self._config

    @property
    def is_feature_enabled(self) -> bool:
        return self.config.is_enabled

    @property
    def is_feature_configured(self) -> bool:
        return self.config.is_configured

    def load_configuration(self) -> bool:
        """Reload settings and return True when the pipeline must restart.

        A restart is required when the feature goes from disabled/unconfigured
        to ready, or when any embedder or vector store setting changes while
        the feature is ready.
        """
        previous = self._config
        current = self._loader()
        self._config = current

        ready = current.is_enabled and current.is_configured
        if previous is None:
            return ready
        was_ready = previous.is_enabled and previous.is_configured
        if not ready:
            return False
        if not was_ready:
            return True
        return _snapshot(previous) != _snapshot(current)


def _snapshot(cfg: IndexConfig) -> dict:
    snap = asdict(cfg)
    snap.pop("search_min_score", None)
    return snap


def save_config(settings: dict[str, str]) -> Path:
    """Write *settings* to ``~/.codeindex/config.json``.

    Creates the data directory if it doesn't exist.
    Returns the path written to.
    """
    d = config_dir()
    d.mkdir(parents=True, exist_ok=True)
    path = config_path()
    path.write_text(json.dumps(settings, indent=2) + "\n", encoding="utf-8")
    return path
