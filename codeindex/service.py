from dataclasses import dataclass

from qdrant_client import AsyncQdrantClient

from .config import Settings
from .embedding import EmbeddingClient
from .indexing import Indexer
from .refinement import Searcher
from .retry import RateLimiter
from .store import VectorIndex


@dataclass
class Services:
    settings: Settings
    index: VectorIndex
    indexer: Indexer
    searcher: Searcher

    async def close(self) -> None:
        await self.index.client.close()


def build_services(settings: Settings, client: AsyncQdrantClient | None = None) -> Services:
    """Wire one embedding client, vector index, indexer and searcher from settings."""
    client = client or AsyncQdrantClient(url=settings.qdrant_url, timeout=int(settings.request_timeout))
    embedder = EmbeddingClient.from_settings(settings, RateLimiter(settings.embedding_rpm_limit))
    index = VectorIndex(
        client,
        settings.collection_name,
        settings.dimensions,
        batch_size=settings.upsert_batch_size,
        max_attempts=settings.max_retries,
        base_delay=settings.retry_delay,
    )
    return Services(
        settings=settings,
        index=index,
        indexer=Indexer(settings, embedder, index),
        searcher=Searcher(settings, embedder, index),
    )
