"""Unit tests for codeindex.config."""

import json
import os
from unittest import mock

import pytest

from codeindex import config as cfg
from codeindex.config import (
    ConfigManager,
    EmbedderConfig,
    IndexConfig,
    get_cache_dir,
    get_local_store_path,
    load_index_config,
    save_config,
)

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clean_env(tmp_path):
    """Point the data dir at tmp_path and blank every config env var."""
    env = {name: "" for name in cfg._ENV_MAP.values()}
    env["CODEINDEX_DATA_DIR"] = str(tmp_path / "data")
    with mock.patch.dict(os.environ, env, clear=False):
        yield tmp_path / "data"


def _write_config(data_dir, settings):
    data_dir.mkdir(parents=True, exist_ok=True)
    (data_dir / "config.json").write_text(json.dumps(settings))


def _config(**overrides):
    embedder = overrides.pop(
        "embedder", EmbedderConfig(provider="ollama", model="nomic-embed-text:latest", dimension=768)
    )
    values = dict(is_enabled=True, embedder=embedder, vector_store="qdrant", qdrant_url="http://q")
    values.update(overrides)
    return IndexConfig(**values)


# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------


class TestPaths:
    def test_data_dir_from_env(self, clean_env):
        assert cfg.config_dir() == clean_env
        assert cfg.config_path() == clean_env / "config.json"
        assert get_cache_dir() == clean_env / "cache"

    def test_local_store_path_is_stable_per_workspace(self, clean_env):
        a = get_local_store_path("/work/a")
        assert a == get_local_store_path("/work/a")
        assert a != get_local_store_path("/work/b")
        assert a.parent == clean_env / "stores"
        assert a.name.startswith("ws-") and a.suffix == ".db"


# ---------------------------------------------------------------------------
# load_index_config
# ---------------------------------------------------------------------------


class TestLoadIndexConfig:
    def test_defaults(self, clean_env):
        config = load_index_config()
        assert config.is_enabled is True
        assert config.embedder.provider == "ollama"
        assert config.embedder.model == "nomic-embed-text:latest"
        assert config.embedder.dimension == 768
        assert config.vector_store == "qdrant"
        assert config.qdrant_url == "http://localhost:6333"
        assert config.search_min_score == cfg.SEARCH_MIN_SCORE
        assert config.is_configured

    def test_file_config_overrides_defaults(self, clean_env):
        _write_config(
            clean_env,
            {"embedder_provider": "sentence-transformers", "vector_store": "local"},
        )
        config = load_index_config()
        assert config.embedder.provider == "sentence-transformers"
        assert config.embedder.model == "all-MiniLM-L6-v2"
        assert config.embedder.dimension == 384
        assert config.vector_store == "local"

    def test_env_overrides_file(self, clean_env):
        _write_config(clean_env, {"embedder_model": "from-file"})
        with mock.patch.dict(os.environ, {"EMBEDDER_MODEL": "from-env"}):
            assert load_index_config().embedder.model == "from-env"

    def test_corrupt_file_is_ignored(self, clean_env):
        clean_env.mkdir(parents=True)
        (clean_env / "config.json").write_text("{not json")
        assert load_index_config().embedder.provider == "ollama"

    def test_non_dict_file_is_ignored(self, clean_env):
        clean_env.mkdir(parents=True)
        (clean_env / "config.json").write_text("[1, 2]")
        assert load_index_config().embedder.provider == "ollama"

    def test_invalid_dimension_falls_back(self, clean_env):
        with mock.patch.dict(os.environ, {"EMBEDDER_DIMENSION": "abc"}):
            assert load_index_config().embedder.dimension == 768

    def test_invalid_min_score_falls_back(self, clean_env):
        with mock.patch.dict(os.environ, {"SEARCH_MIN_SCORE": "high"}):
            assert load_index_config().search_min_score == cfg.SEARCH_MIN_SCORE

    @pytest.mark.parametrize("raw,expected", [("true", True), ("1", True), ("no", False), ("off", False)])
    def test_enabled_flag(self, clean_env, raw, expected):
        with mock.patch.dict(os.environ, {"CODEINDEX_ENABLED": raw}):
            assert load_index_config().is_enabled is expected


# ---------------------------------------------------------------------------
# is_configured
# ---------------------------------------------------------------------------


class TestIsConfigured:
    def test_openai_needs_key(self):
        emb = EmbedderConfig(provider="openai", model="m", dimension=1536)
        assert not _config(embedder=emb).is_configured
        emb = EmbedderConfig(provider="openai", model="m", dimension=1536, api_key="k")
        assert _config(embedder=emb).is_configured

    def test_openai_compatible_needs_url_and_key(self):
        emb = EmbedderConfig(provider="openai-compatible", model="m", dimension=8, api_key="k")
        assert not _config(embedder=emb).is_configured
        emb = EmbedderConfig(
            provider="openai-compatible", model="m", dimension=8, api_key="k", base_url="http://x"
        )
        assert _config(embedder=emb).is_configured

    def test_unknown_provider(self):
        emb = EmbedderConfig(provider="nope", model="m", dimension=8)
        assert not _config(embedder=emb).is_configured

    def test_qdrant_needs_url(self):
        assert not _config(qdrant_url="").is_configured

    def test_local_store_needs_no_url(self):
        assert _config(vector_store="local", qdrant_url="").is_configured

    def test_unknown_store(self):
        assert not _config(vector_store="pinecone").is_configured


# ---------------------------------------------------------------------------
# ConfigManager
# ---------------------------------------------------------------------------


class TestConfigManager:
    def _manager(self, *configs):
        loader = mock.Mock(side_effect=list(configs))
        return ConfigManager(loader=loader)

    def test_first_load_reports_ready(self):
        assert self._manager(_config()).load_configuration() is True

    def test_first_load_disabled(self):
        assert self._manager(_config(is_enabled=False)).load_configuration() is False

    def test_unchanged_settings_need_no_restart(self):
        manager = self._manager(_config(), _config())
        manager.load_configuration()
        assert manager.load_configuration() is False

    def test_becoming_ready_requires_restart(self):
        manager = self._manager(_config(is_enabled=False), _config())
        manager.load_configuration()
        assert manager.load_configuration() is True

    def test_model_change_requires_restart(self):
        other = EmbedderConfig(provider="ollama", model="other", dimension=768)
        manager = self._manager(_config(), _config(embedder=other))
        manager.load_configuration()
        assert manager.load_configuration() is True

    def test_min_score_change_needs_no_restart(self):
        manager = self._manager(_config(), _config(search_min_score=0.9))
        manager.load_configuration()
        assert manager.load_configuration() is False

    def test_becoming_disabled_needs_no_restart(self):
        manager = self._manager(_config(), _config(is_enabled=False))
        manager.load_configuration()
        assert manager.load_configuration() is False
        assert manager.is_feature_enabled is False

    def test_config_property_loads_lazily(self):
        manager = self._manager(_config())
        assert manager.is_feature_configured is True


class TestSaveConfig:
    def test_writes_json(self, clean_env):
        path = save_config({"embedder_provider": "openai"})
        assert path == clean_env / "config.json"
        assert json.loads(path.read_text()) == {"embedder_provider": "openai"}
