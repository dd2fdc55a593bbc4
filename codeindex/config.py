import os
from typing import cast

from pydantic import BaseModel, Field, model_validator

MODEL_DIMENSIONS = {
    "text-embedding-3-small": 1536,
    "openai/text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "openai/text-embedding-3-large": 3072,
    "nomic-embed-text": 768,
    "nomic-embed-text:v1.5": 768,
}

_TRUTHY = {"1", "true", "yes", "on"}


class Settings(BaseModel):
    qdrant_url: str = "http://localhost:6333"
    collection_name: str = "codeindex"

    embedding_model: str = "text-embedding-3-small"
    embedding_dimensions: int | None = Field(default=None, gt=0)
    embedding_api_base: str = "https://openrouter.ai/api/v1"
    embedding_api_key: str = ""
    embedding_rpm_limit: int = Field(default=600, gt=0)
    max_input_length: int = Field(default=4096, gt=0)
    request_timeout: float = Field(default=120.0, gt=0)

    max_retries: int = Field(default=3, ge=1)
    retry_delay: float = Field(default=2.0, ge=0)

    chunk_size_chars: int = Field(default=2000, gt=0)
    chunk_overlap_chars: int = Field(default=200, ge=0)
    commit_history_depth: int = Field(default=50, ge=0)
    max_file_bytes: int = Field(default=500 * 1024, gt=0)
    upsert_batch_size: int = Field(default=100, gt=0)
    embed_concurrency: int = Field(default=4, gt=0)
    skip_unchanged_files: bool = True
    diff_timeout: float = Field(default=30.0, gt=0)

    search_limit_default: int = Field(default=10, gt=0)
    max_refinement_iterations: int = Field(default=2, ge=0)
    relevance_threshold: float = Field(default=0.75, ge=0.0, le=1.0)

    log_level: str = "INFO"
    log_json: bool = False

    @model_validator(mode="after")
    def _check(self) -> "Settings":
        if self.chunk_overlap_chars >= self.chunk_size_chars:
            raise ValueError("chunk_overlap_chars must be smaller than chunk_size_chars")
        if self.embedding_dimensions is None:
            if self.embedding_model not in MODEL_DIMENSIONS:
                raise ValueError(
                    f"Unknown model '{self.embedding_model}'. Set EMBEDDING_DIMENSIONS or use one of: "
                    f"{', '.join(MODEL_DIMENSIONS)}"
                )
            self.embedding_dimensions = MODEL_DIMENSIONS[self.embedding_model]
        return self

    @property
    def dimensions(self) -> int:
        return cast(int, self.embedding_dimensions)

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> "Settings":
        """Build settings from environment variables, ignoring unset or empty ones."""
        env = os.environ if environ is None else environ
        mapping = {
            "QDRANT_URL": "qdrant_url",
            "COLLECTION_NAME": "collection_name",
            "EMBEDDING_MODEL": "embedding_model",
            "EMBEDDING_DIMENSIONS": "embedding_dimensions",
            "EMBEDDING_API_BASE": "embedding_api_base",
            "OPENROUTER_API_KEY": "embedding_api_key",
            "EMBEDDING_RPM_LIMIT": "embedding_rpm_limit",
            "MAX_INPUT_LENGTH": "max_input_length",
            "REQUEST_TIMEOUT": "request_timeout",
            "MAX_RETRIES": "max_retries",
            "RETRY_DELAY": "retry_delay",
            "CHUNK_SIZE_CHARS": "chunk_size_chars",
            "CHUNK_OVERLAP_CHARS": "chunk_overlap_chars",
            "COMMIT_HISTORY_DEPTH": "commit_history_depth",
            "MAX_FILE_BYTES": "max_file_bytes",
            "UPSERT_BATCH_SIZE": "upsert_batch_size",
            "EMBED_CONCURRENCY": "embed_concurrency",
            "SKIP_UNCHANGED_FILES": "skip_unchanged_files",
            "DIFF_TIMEOUT": "diff_timeout",
            "SEARCH_LIMIT_DEFAULT": "search_limit_default",
            "MAX_REFINEMENT_ITERATIONS": "max_refinement_iterations",
            "RELEVANCE_THRESHOLD": "relevance_threshold",
            "LOG_LEVEL": "log_level",
            "LOG_JSON": "log_json",
        }
        values: dict[str, object] = {}
        for key, field in mapping.items():
            raw = env.get(key)
            if raw is None or raw == "":
                continue
            if field in ("skip_unchanged_files", "log_json"):
                values[field] = raw.strip().lower() in _TRUTHY
            else:
                values[field] = raw
        return cls(**values)
