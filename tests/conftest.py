import hashlib
import re
import shutil
import subprocess
from pathlib import Path

import pytest
import pytest_asyncio
from qdrant_client import AsyncQdrantClient

from codeindex.config import Settings
from codeindex.embedding import EmbeddingClient
from codeindex.indexing import Indexer
from codeindex.refinement import Searcher
from codeindex.retry import RateLimiter
from codeindex.store import VectorIndex

DIMENSIONS = 512

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git executable not available")


class FakeEmbedModel:
    """Deterministic bag-of-words embedding: identical text gives identical vectors."""

    def __init__(self, dimensions: int = DIMENSIONS, fail_on: str | None = None, error: Exception | None = None):
        self.dimensions = dimensions
        self.fail_on = fail_on
        self.error = error
        self.calls: list[str] = []

    async def aget_text_embedding(self, text: str) -> list[float]:
        self.calls.append(text)
        if self.fail_on is not None and self.fail_on in text:
            raise self.error
        vector = [0.0] * self.dimensions
        for token in re.findall(r"\w+", text.lower()):
            bucket = int(hashlib.md5(token.encode()).hexdigest(), 16) % self.dimensions
            vector[bucket] += 1.0
        if not any(vector):
            vector[0] = 1.0
        return vector


class GitRepo:
    def __init__(self, path: Path):
        self.path = path
        self.git("init", "-q")

    def git(self, *args: str) -> str:
        result = subprocess.run(
            [
                "git",
                "-c", "user.name=Test Author",
                "-c", "user.email=test@example.com",
                "-c", "commit.gpgsign=false",
                "-c", "core.autocrlf=false",
                *args,
            ],
            cwd=self.path,
            capture_output=True,
            text=True,
            check=True,
        )
        return result.stdout

    def write(self, name: str, content: str) -> Path:
        target = self.path / name
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
        return target

    def remove(self, name: str) -> None:
        self.git("rm", "-q", name)

    def commit(self, message: str) -> str:
        self.git("add", "-A")
        self.git("commit", "-q", "--allow-empty", "-m", message)
        return self.git("rev-parse", "HEAD").strip()


def words(prefix: str, count: int) -> str:
    """Text made of count distinct words, eight per line."""
    tokens = [f"{prefix}{i:05d}" for i in range(count)]
    return "\n".join(" ".join(tokens[i : i + 8]) for i in range(0, count, 8)) + "\n"


@pytest.fixture
def git_repo(tmp_path) -> GitRepo:
    if shutil.which("git") is None:
        pytest.skip("git executable not available")
    repo_dir = tmp_path / "repo"
    repo_dir.mkdir()
    return GitRepo(repo_dir)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        collection_name="test_codeindex",
        embedding_model="fake-embedding",
        embedding_dimensions=DIMENSIONS,
        chunk_size_chars=2000,
        chunk_overlap_chars=200,
        max_retries=2,
        retry_delay=0,
        upsert_batch_size=3,
        embed_concurrency=2,
        commit_history_depth=10,
    )


@pytest.fixture
def embed_model() -> FakeEmbedModel:
    return FakeEmbedModel()


@pytest_asyncio.fixture
async def qdrant():
    client = AsyncQdrantClient(location=":memory:")
    yield client
    await client.close()


@pytest.fixture
def embedder(settings, embed_model) -> EmbeddingClient:
    return EmbeddingClient(
        embed_model,
        settings.dimensions,
        RateLimiter(10_000),
        max_input_length=settings.max_input_length,
        timeout=5.0,
        max_attempts=settings.max_retries,
        base_delay=0,
    )


@pytest.fixture
def vector_index(settings, qdrant) -> VectorIndex:
    return VectorIndex(
        qdrant,
        settings.collection_name,
        settings.dimensions,
        batch_size=settings.upsert_batch_size,
        max_attempts=settings.max_retries,
        base_delay=0,
    )


@pytest.fixture
def indexer(settings, embedder, vector_index) -> Indexer:
    return Indexer(settings, embedder, vector_index)


@pytest.fixture
def searcher(settings, embedder, vector_index) -> Searcher:
    return Searcher(settings, embedder, vector_index)
