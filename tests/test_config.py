"""Tests for configuration loading and validation."""

import json
import os

import pytest

from kiro_memory.config import (
    AppConfig,
    ContextConfig,
    EmbeddingConfig,
    MaintenanceConfig,
    SearchConfig,
    ServerConfig,
    StorageConfig,
    load_config,
    load_and_validate_config,
    resolve_storage_paths,
    save_config,
    update_config,
    validate_config,
)
from kiro_memory.exceptions import ConfigurationError


@pytest.fixture
def config_file(temp_dir, monkeypatch):
    """Point configuration loading at a file inside a temporary directory."""
    path = os.path.join(temp_dir, "config.json")
    monkeypatch.setenv("KIRO_MEMORY_CONFIG", path)
    for name in list(os.environ):
        if name.startswith("KIRO_MEMORY_") and name != "KIRO_MEMORY_CONFIG":
            monkeypatch.delenv(name)
    return path


class TestLoadConfig:
    def test_defaults_without_file(self, config_file):
        config = load_config()
        assert config.storage.data_dir == "~/.kiro-memory"
        assert config.search.hybrid_boost == pytest.approx(1.15)
        assert config.maintenance.min_group_size == 3
        assert config.embeddings.providers == ["fastembed", "sentence-transformers"]

    def test_file_values_and_unknown_keys(self, config_file):
        with open(config_file, "w", encoding="utf-8") as handle:
            json.dump({"search": {"vector_threshold": 0.5}, "llm": {"provider": "gone"}}, handle)
        config = load_config()
        assert config.search.vector_threshold == 0.5

    def test_environment_overrides_file(self, config_file, monkeypatch):
        save_config(AppConfig(server=ServerConfig(port=4000)))
        monkeypatch.setenv("KIRO_MEMORY_WORKER_PORT", "4100")
        monkeypatch.setenv("KIRO_MEMORY_EMBEDDING_PROVIDERS", "none")
        monkeypatch.setenv("KIRO_MEMORY_RECENCY_HALFLIFE_HOURS", "24")
        monkeypatch.setenv("KIRO_MEMORY_LOG_JSON", "yes")
        monkeypatch.setenv("KIRO_MEMORY_WORKER_TOKEN", "secret")

        config = load_config()
        assert config.server.port == 4100
        assert config.embeddings.providers == ["none"]
        assert config.search.recency_half_life_hours == 24.0
        assert config.logging.json_format is True
        assert config.server.worker_token == "secret"

    def test_malformed_numbers_are_ignored(self, config_file, monkeypatch):
        monkeypatch.setenv("KIRO_MEMORY_WORKER_PORT", "not-a-port")
        monkeypatch.setenv("KIRO_MEMORY_VECTOR_THRESHOLD", "high")
        config = load_config()
        assert config.server.port == 3001
        assert config.search.vector_threshold == 0.3

    def test_update_config_merges_sections(self, config_file):
        updated = update_config({"context": {"summary_count": 2}})
        assert updated.context.summary_count == 2
        assert updated.context.observation_count == 20
        assert load_config().context.summary_count == 2


def test_resolve_storage_paths(temp_dir):
    storage = resolve_storage_paths(AppConfig(storage=StorageConfig(data_dir=temp_dir)))
    assert storage.sqlite_path == os.path.join(temp_dir, "kiro-memory.db")

    explicit = resolve_storage_paths(
        AppConfig(storage=StorageConfig(data_dir=temp_dir, sqlite_path="/tmp/other.db"))
    )
    assert explicit.sqlite_path == "/tmp/other.db"


class TestValidateConfig:
    def test_valid_default_config(self):
        is_valid, warnings = validate_config(AppConfig(server=ServerConfig(worker_token="t")))
        assert is_valid
        assert warnings == []

    def test_missing_token_is_a_warning(self):
        is_valid, warnings = validate_config(AppConfig())
        assert is_valid
        assert any("worker_token" in w for w in warnings)

    def test_negative_weight(self):
        with pytest.raises(ConfigurationError) as exc_info:
            validate_config(AppConfig(search=SearchConfig(fts_weight=-0.1)))
        assert "fts_weight must be non-negative" in str(exc_info.value)

    def test_weights_not_summing_to_one_warn(self):
        config = AppConfig(search=SearchConfig(semantic_weight=0.9), server=ServerConfig(worker_token="t"))
        _, warnings = validate_config(config)
        assert any("sum to" in w for w in warnings)

    def test_invalid_threshold_and_penalty(self):
        with pytest.raises(ConfigurationError) as exc_info:
            validate_config(AppConfig(search=SearchConfig(vector_threshold=1.5, stale_penalty=0)))
        errors = exc_info.value.details["errors"]
        assert len(errors) == 2

    def test_min_group_size(self):
        with pytest.raises(ConfigurationError):
            validate_config(AppConfig(maintenance=MaintenanceConfig(min_group_size=1)))

    def test_context_counts(self):
        with pytest.raises(ConfigurationError):
            validate_config(AppConfig(context=ContextConfig(observation_count=0)))

    def test_unknown_provider_warns(self):
        config = AppConfig(embeddings=EmbeddingConfig(providers=["openai"]), server=ServerConfig(worker_token="t"))
        _, warnings = validate_config(config)
        assert any("openai" in w for w in warnings)

    def test_strict_mode_promotes_warnings(self):
        with pytest.raises(ConfigurationError):
            validate_config(AppConfig(), strict=True)

    def test_data_dir_must_be_directory(self, temp_dir):
        path = os.path.join(temp_dir, "file")
        open(path, "w").close()
        with pytest.raises(ConfigurationError):
            validate_config(AppConfig(storage=StorageConfig(data_dir=path)))


def test_load_and_validate_config(config_file, monkeypatch):
    monkeypatch.setenv("KIRO_MEMORY_WORKER_TOKEN", "abc")
    config, warnings = load_and_validate_config()
    assert config.server.worker_token == "abc"
    assert warnings == []
