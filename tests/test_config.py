"""Tests for configuration models and environment loading."""

from pathlib import Path

import pytest
from pydantic import ValidationError as PydanticValidationError

from agent_memory.config import (
    EmbeddingConfig,
    MemoryConfig,
    RetrievalConfig,
    StorageConfig,
    TokenConfig,
    get_env_bool,
    get_env_int,
)


def test_defaults():
    cfg = MemoryConfig()
    assert cfg.embedding.provider == "local"
    assert cfg.embedding.dimension == 384
    assert cfg.retrieval.top_k == 20
    assert cfg.tokens.near_limit_threshold == 0.90
    assert cfg.tokens.critical_threshold == 0.95
    assert cfg.learning.enabled is True
    assert cfg.server.port == 8420


def test_storage_layout(tmp_path):
    cfg = StorageConfig(data_dir=str(tmp_path))
    assert cfg.sqlite_path == Path(tmp_path) / "metadata.db"
    assert cfg.vector_dir == Path(tmp_path) / "vectors"
    assert cfg.conversations_dir == Path(tmp_path) / "conversations"


def test_storage_rejects_parent_traversal():
    with pytest.raises(PydanticValidationError):
        StorageConfig(data_dir="../outside")


def test_critical_threshold_must_not_be_below_near_limit():
    with pytest.raises(PydanticValidationError):
        TokenConfig(near_limit_threshold=0.9, critical_threshold=0.8)


def test_embedding_concurrency_must_be_positive():
    with pytest.raises(PydanticValidationError):
        EmbeddingConfig(max_concurrency=0)


def test_retrieval_top_k_must_be_positive():
    with pytest.raises(PydanticValidationError):
        RetrievalConfig(top_k=0)


def test_from_env(monkeypatch, tmp_path):
    monkeypatch.setenv("AGENT_MEMORY_DATA_DIR", str(tmp_path / "mem"))
    monkeypatch.setenv("AGENT_MEMORY_EMBEDDING_PROVIDER", "api")
    monkeypatch.setenv("AGENT_MEMORY_TOP_K", "5")
    monkeypatch.setenv("AGENT_MEMORY_NEAR_LIMIT", "0.8")
    monkeypatch.setenv("AGENT_MEMORY_LEARNING", "false")
    monkeypatch.setenv("AGENT_MEMORY_PORT", "9000")

    cfg = MemoryConfig.from_env()
    assert cfg.storage.data_dir == str(tmp_path / "mem")
    assert cfg.embedding.provider == "api"
    assert cfg.retrieval.top_k == 5
    assert cfg.tokens.near_limit_threshold == 0.8
    assert cfg.learning.enabled is False
    assert cfg.server.port == 9000


def test_env_helpers_fall_back_on_bad_values(monkeypatch):
    monkeypatch.setenv("AGENT_MEMORY_TEST_INT", "not-a-number")
    monkeypatch.setenv("AGENT_MEMORY_TEST_BOOL", "YES")
    assert get_env_int("AGENT_MEMORY_TEST_INT", 7) == 7
    assert get_env_bool("AGENT_MEMORY_TEST_BOOL") is True
    assert get_env_bool("AGENT_MEMORY_TEST_UNSET", True) is True
