from collections.abc import Iterable
from dataclasses import dataclass

from qdrant_client import AsyncQdrantClient, models

from .errors import DataIntegrityError
from .log import get_logger
from .models import AdjacentChunks, IndexPoint, NeighborChunk, SearchResult
from .retry import with_retry

logger = get_logger(__name__)

SCROLL_LIMIT = 250
FILE_CHUNK = "file_chunk"


@dataclass(frozen=True)
class FileFingerprint:
    content_hash: str | None
    total_chunks: int


def _match(key: str, value) -> models.FieldCondition:
    return models.FieldCondition(key=key, match=models.MatchValue(value=value))


def file_chunk_filter(filepath: str | None = None, *extra: models.Condition) -> models.Filter:
    must: list[models.Condition] = [_match("dataType", FILE_CHUNK)]
    if filepath is not None:
        must.append(_match("filepath", filepath))
    must.extend(extra)
    return models.Filter(must=must)


class VectorIndex:
    """Keeps Qdrant points consistent with repository state."""

    def __init__(
        self,
        client: AsyncQdrantClient,
        collection_name: str,
        dimensions: int,
        batch_size: int = 100,
        max_attempts: int = 3,
        base_delay: float = 2.0,
    ):
        self.client = client
        self.collection_name = collection_name
        self.dimensions = dimensions
        self.batch_size = batch_size
        self.max_attempts = max_attempts
        self.base_delay = base_delay

    async def _retry(self, fn):
        return await with_retry(fn, self.max_attempts, self.base_delay)

    async def ensure_collection(self) -> None:
        exists = await self._retry(lambda: self.client.collection_exists(self.collection_name))
        if exists:
            info = await self._retry(lambda: self.client.get_collection(self.collection_name))
            vectors = info.config.params.vectors
            size = vectors.size if isinstance(vectors, models.VectorParams) else None
            if size != self.dimensions:
                raise DataIntegrityError(
                    f"Collection '{self.collection_name}' has vector size {size}, "
                    f"embedding model produces {self.dimensions}"
                )
            return

        logger.info("collection.create", collection=self.collection_name, size=self.dimensions)
        await self._retry(
            lambda: self.client.create_collection(
                collection_name=self.collection_name,
                vectors_config=models.VectorParams(size=self.dimensions, distance=models.Distance.COSINE),
            )
        )
        for field_name, schema in (
            ("dataType", models.PayloadSchemaType.KEYWORD),
            ("filepath", models.PayloadSchemaType.KEYWORD),
            ("commit_oid", models.PayloadSchemaType.KEYWORD),
            ("chunk_index", models.PayloadSchemaType.INTEGER),
        ):
            await self.client.create_payload_index(
                collection_name=self.collection_name,
                field_name=field_name,
                field_schema=schema,
            )

    async def upsert_batch(self, points: list[IndexPoint]) -> int:
        """Upsert points keyed by their content-addressed id, batch by batch."""
        for start in range(0, len(points), self.batch_size):
            batch = [
                models.PointStruct(id=p.point_id, vector=p.vector, payload=p.qdrant_payload())
                for p in points[start : start + self.batch_size]
            ]
            try:
                await self._retry(
                    lambda: self.client.upsert(collection_name=self.collection_name, points=batch, wait=True)
                )
            except Exception as e:
                logger.error(
                    "upsert.failed",
                    collection=self.collection_name,
                    batch_start=start,
                    batch_size=len(batch),
                    error=str(e),
                )
                raise
            logger.debug("upsert.batch", count=len(batch), processed=min(start + self.batch_size, len(points)))
        return len(points)

    async def remove_stale(self, filepath: str, new_total_chunks: int) -> None:
        """Drop file chunks of filepath whose index no longer exists after re-chunking."""
        selector = models.FilterSelector(
            filter=file_chunk_filter(
                filepath,
                models.FieldCondition(key="chunk_index", range=models.Range(gte=new_total_chunks)),
            )
        )
        await self._retry(
            lambda: self.client.delete(collection_name=self.collection_name, points_selector=selector, wait=True)
        )

    async def _scroll(self, scroll_filter: models.Filter, with_payload) -> list[models.Record]:
        records: list[models.Record] = []
        offset = None
        while True:
            points, next_offset = await self._retry(
                lambda: self.client.scroll(
                    collection_name=self.collection_name,
                    scroll_filter=scroll_filter,
                    limit=SCROLL_LIMIT,
                    offset=offset,
                    with_payload=with_payload,
                    with_vectors=False,
                )
            )
            records.extend(points)
            if next_offset is None:
                break
            offset = next_offset
        return records

    async def remove_for_deleted_files(self, current_files: Iterable[str]) -> int:
        """Delete every file chunk whose filepath is not in current_files."""
        current = set(current_files)
        stale_ids = []
        for record in await self._scroll(file_chunk_filter(), ["filepath"]):
            filepath = (record.payload or {}).get("filepath")
            if filepath is None:
                logger.warning("stale_check.missing_filepath", point_id=str(record.id))
                continue
            if filepath not in current:
                stale_ids.append(record.id)

        if not stale_ids:
            logger.info("stale_check.clean", collection=self.collection_name)
            return 0
        logger.info("stale_check.removing", count=len(stale_ids))
        for start in range(0, len(stale_ids), self.batch_size):
            selector = models.PointIdsList(points=stale_ids[start : start + self.batch_size])
            await self._retry(
                lambda: self.client.delete(collection_name=self.collection_name, points_selector=selector, wait=True)
            )
        return len(stale_ids)

    async def fetch_file_hashes(self) -> dict[str, FileFingerprint]:
        """Stored content hash and chunk count of every completely indexed file.

        A file whose chunks disagree on content_hash or total_chunks, or with
        fewer stored chunks than total_chunks, gets no fingerprint.
        """
        seen: dict[str, list[tuple[str | None, int]]] = {}
        for record in await self._scroll(file_chunk_filter(), ["filepath", "content_hash", "total_chunks"]):
            payload = record.payload or {}
            filepath = payload.get("filepath")
            if filepath:
                seen.setdefault(filepath, []).append((payload.get("content_hash"), payload.get("total_chunks", 0)))

        fingerprints: dict[str, FileFingerprint] = {}
        for filepath, chunks in seen.items():
            distinct = set(chunks)
            if len(distinct) != 1:
                logger.warning("fingerprint.inconsistent", filepath=filepath, variants=len(distinct))
                continue
            content_hash, total_chunks = distinct.pop()
            if len(chunks) < total_chunks:
                logger.info("fingerprint.incomplete", filepath=filepath, stored=len(chunks), total=total_chunks)
                continue
            fingerprints[filepath] = FileFingerprint(content_hash, total_chunks)
        return fingerprints

    async def _lookup_chunk(self, filepath: str, index: int) -> NeighborChunk:
        if index < 0:
            return NeighborChunk(chunk_index=index, found=False, note="Start of file: no previous chunk")
        points, _ = await self._retry(
            lambda: self.client.scroll(
                collection_name=self.collection_name,
                scroll_filter=file_chunk_filter(filepath, _match("chunk_index", index)),
                limit=1,
                with_payload=True,
                with_vectors=False,
            )
        )
        if not points:
            return NeighborChunk(chunk_index=index, found=False, note=f"No chunk {index} indexed for {filepath}")
        payload = points[0].payload or {}
        return NeighborChunk(
            chunk_index=index,
            found=True,
            content=payload.get("content"),
            total_chunks=payload.get("total_chunks"),
        )

    async def fetch_adjacent_chunks(self, filepath: str, index: int) -> AdjacentChunks:
        """The chunks just before and after index in filepath. Missing neighbours are annotated, not errors."""
        return AdjacentChunks(
            filepath=filepath,
            chunk_index=index,
            previous=await self._lookup_chunk(filepath, index - 1),
            next=await self._lookup_chunk(filepath, index + 1),
        )

    async def search(
        self,
        vector: list[float],
        limit: int,
        scope_files: list[str] | None = None,
    ) -> list[SearchResult]:
        if not await self._retry(lambda: self.client.collection_exists(self.collection_name)):
            logger.info("search.no_collection", collection=self.collection_name)
            return []
        query_filter = None
        if scope_files:
            query_filter = models.Filter(
                must=[models.FieldCondition(key="filepath", match=models.MatchAny(any=list(scope_files)))]
            )
        response = await self._retry(
            lambda: self.client.query_points(
                collection_name=self.collection_name,
                query=vector,
                limit=limit,
                query_filter=query_filter,
                with_payload=True,
            )
        )
        results = []
        for point in response.points:
            payload = point.payload or {}
            results.append(SearchResult(id=payload.get("point_key", str(point.id)), score=point.score, payload=payload))
        return results
