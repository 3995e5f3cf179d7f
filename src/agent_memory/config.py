"""Agent memory configuration models."""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator


def get_env(key: str, default: str = "") -> str:
    """Get environment variable with default fallback."""
    return os.getenv(key, default)


def get_env_int(key: str, default: int = 0) -> int:
    """Get environment variable as integer with default fallback."""
    value = os.getenv(key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def get_env_float(key: str, default: float = 0.0) -> float:
    """Get environment variable as float with default fallback."""
    value = os.getenv(key)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def get_env_bool(key: str, default: bool = False) -> bool:
    """Get environment variable as boolean with default fallback."""
    value = os.getenv(key)
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


class StorageConfig(BaseModel):
    """Storage paths configuration."""

    data_dir: str = "./memory_data"

    @model_validator(mode="after")
    def _validate_paths(self) -> "StorageConfig":
        normalized = os.path.normpath(self.data_dir)
        parts = normalized.replace("\\", "/").split("/")
        if ".." in parts:
            raise ValueError(
                f"data_dir must not contain '..' components: {self.data_dir!r}"
            )
        self.data_dir = normalized
        return self

    @property
    def sqlite_path(self) -> Path:
        return Path(self.data_dir) / "metadata.db"

    @property
    def vector_dir(self) -> Path:
        return Path(self.data_dir) / "vectors"

    @property
    def conversations_dir(self) -> Path:
        return Path(self.data_dir) / "conversations"


class EmbeddingConfig(BaseModel):
    """Embedding provider configuration."""

    provider: str = "local"  # "local" or "api"
    model: str = "sentence-transformers/all-MiniLM-L6-v2"
    dimension: int = 384
    trust_remote_code: bool = False
    api_url: str = "https://api.openai.com/v1/embeddings"
    api_key: str = ""
    timeout_seconds: float = 30.0
    max_concurrency: int = Field(default=4, ge=1)


class RetrievalConfig(BaseModel):
    """Retrieval configuration."""

    top_k: int = Field(default=20, ge=1)
    min_similarity: float = 0.0
    default_recent_messages: int = 10
    default_token_budget: int = 4096
    # Rough floor used to scale k to the remaining budget
    min_memory_tokens: int = Field(default=8, ge=1)


class TokenConfig(BaseModel):
    """Token accounting configuration."""

    encoding_model: str = "gpt-4"
    default_context_limit: int = 128000
    near_limit_threshold: float = Field(default=0.90, gt=0.0, le=1.0)
    critical_threshold: float = Field(default=0.95, gt=0.0, le=1.0)

    @model_validator(mode="after")
    def _validate_thresholds(self) -> "TokenConfig":
        if self.critical_threshold < self.near_limit_threshold:
            raise ValueError(
                "critical_threshold must be >= near_limit_threshold"
            )
        return self


class LearningConfig(BaseModel):
    """Self-learning configuration."""

    enabled: bool = True
    auto_persist: bool = True
    reconcile_interval_seconds: float = 60.0  # 0 disables the background loop


class ServerConfig(BaseModel):
    """HTTP server configuration."""

    host: str = "127.0.0.1"
    port: int = 8420
    log_level: str = "INFO"


class MemoryConfig(BaseModel):
    """Top-level agent memory configuration."""

    storage: StorageConfig = Field(default_factory=StorageConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    tokens: TokenConfig = Field(default_factory=TokenConfig)
    learning: LearningConfig = Field(default_factory=LearningConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)

    @classmethod
    def from_env(cls) -> "MemoryConfig":
        """Build configuration from ``AGENT_MEMORY_*`` environment variables.

        A ``.env`` file in the working directory is loaded first if present.
        Unset variables keep the model defaults.
        """
        load_dotenv()
        defaults = cls()
        return cls(
            storage=StorageConfig(
                data_dir=get_env("AGENT_MEMORY_DATA_DIR", defaults.storage.data_dir),
            ),
            embedding=EmbeddingConfig(
                provider=get_env(
                    "AGENT_MEMORY_EMBEDDING_PROVIDER", defaults.embedding.provider
                ),
                model=get_env("AGENT_MEMORY_EMBEDDING_MODEL", defaults.embedding.model),
                dimension=get_env_int(
                    "AGENT_MEMORY_EMBEDDING_DIMENSION", defaults.embedding.dimension
                ),
                api_url=get_env("AGENT_MEMORY_EMBEDDING_API_URL", defaults.embedding.api_url),
                api_key=get_env("AGENT_MEMORY_EMBEDDING_API_KEY", ""),
                max_concurrency=get_env_int(
                    "AGENT_MEMORY_EMBEDDING_CONCURRENCY",
                    defaults.embedding.max_concurrency,
                ),
            ),
            retrieval=RetrievalConfig(
                top_k=get_env_int("AGENT_MEMORY_TOP_K", defaults.retrieval.top_k),
                min_similarity=get_env_float(
                    "AGENT_MEMORY_MIN_SIMILARITY", defaults.retrieval.min_similarity
                ),
            ),
            tokens=TokenConfig(
                encoding_model=get_env(
                    "AGENT_MEMORY_TOKEN_MODEL", defaults.tokens.encoding_model
                ),
                near_limit_threshold=get_env_float(
                    "AGENT_MEMORY_NEAR_LIMIT", defaults.tokens.near_limit_threshold
                ),
            ),
            learning=LearningConfig(
                enabled=get_env_bool("AGENT_MEMORY_LEARNING", defaults.learning.enabled),
                reconcile_interval_seconds=get_env_float(
                    "AGENT_MEMORY_RECONCILE_INTERVAL",
                    defaults.learning.reconcile_interval_seconds,
                ),
            ),
            server=ServerConfig(
                host=get_env("AGENT_MEMORY_HOST", defaults.server.host),
                port=get_env_int("AGENT_MEMORY_PORT", defaults.server.port),
                log_level=get_env("AGENT_MEMORY_LOG_LEVEL", defaults.server.log_level),
            ),
        )
