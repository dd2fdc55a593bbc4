import pytest
from qdrant_client import models

from codeindex.errors import DataIntegrityError
from codeindex.models import ChangeType, CommitInfo, DiffChunk, FileChunk, IndexPoint, point_uuid
from codeindex.store import VectorIndex, file_chunk_filter
from conftest import DIMENSIONS


def vector(seed: int) -> list[float]:
    v = [0.0] * DIMENSIONS
    v[seed % DIMENSIONS] = 1.0
    return v


def file_points(filepath: str, total: int, seed: int = 0) -> list[IndexPoint]:
    return [
        IndexPoint(
            vector=vector(seed + i),
            payload=FileChunk(
                filepath=filepath,
                chunk_index=i,
                total_chunks=total,
                content=f"{filepath} chunk {i}",
                last_modified="2024-01-01T00:00:00+00:00",
            ),
        )
        for i in range(total)
    ]


async def stored_chunk_indices(index: VectorIndex, filepath: str) -> list[int]:
    points, _ = await index.client.scroll(
        collection_name=index.collection_name,
        scroll_filter=file_chunk_filter(filepath),
        limit=100,
        with_payload=True,
    )
    return sorted(p.payload["chunk_index"] for p in points)


async def total_points(index: VectorIndex) -> int:
    return (await index.client.count(collection_name=index.collection_name, exact=True)).count


def test_point_ids_are_content_addressed():
    chunk = FileChunk(filepath="src/a.ts", chunk_index=2, total_chunks=3, content="x", last_modified="t")
    commit = CommitInfo(commit_oid="abc", message="m", author_name="n", author_email="e", date="d")
    diff = DiffChunk(
        commit_oid="abc", filepath="src/a.ts", chunk_index=0, total_chunks=1, content="+x", change_type=ChangeType.ADD
    )

    assert IndexPoint(vector=[0.0], payload=chunk).id == "file:src/a.ts:chunk:2"
    assert IndexPoint(vector=[0.0], payload=commit).id == "commit:abc"
    assert IndexPoint(vector=[0.0], payload=diff).id == "diff:abc:src/a.ts:chunk:0"
    assert point_uuid("commit:abc") == point_uuid("commit:abc")
    assert point_uuid("commit:abc") != point_uuid("commit:abd")


def test_payload_uses_data_type_discriminant():
    point = file_points("a.py", 1)[0]

    payload = point.qdrant_payload()

    assert payload["dataType"] == "file_chunk"
    assert payload["point_key"] == "file:a.py:chunk:0"
    assert "data_type" not in payload


async def test_ensure_collection_is_idempotent(vector_index):
    await vector_index.ensure_collection()
    await vector_index.ensure_collection()

    assert await vector_index.client.collection_exists(vector_index.collection_name)


async def test_ensure_collection_rejects_dimension_mismatch(vector_index):
    await vector_index.ensure_collection()
    other = VectorIndex(vector_index.client, vector_index.collection_name, DIMENSIONS // 2)

    with pytest.raises(DataIntegrityError):
        await other.ensure_collection()


async def test_upsert_is_idempotent_across_batches(vector_index):
    await vector_index.ensure_collection()

    await vector_index.upsert_batch(file_points("a.py", 5))
    await vector_index.upsert_batch(file_points("a.py", 5))

    assert await total_points(vector_index) == 5
    assert await stored_chunk_indices(vector_index, "a.py") == [0, 1, 2, 3, 4]


async def test_remove_stale_drops_chunks_beyond_new_total(vector_index):
    await vector_index.ensure_collection()
    await vector_index.upsert_batch(file_points("a.py", 5) + file_points("b.py", 4))

    await vector_index.upsert_batch(file_points("a.py", 2, seed=100))
    await vector_index.remove_stale("a.py", 2)

    assert await stored_chunk_indices(vector_index, "a.py") == [0, 1]
    assert await stored_chunk_indices(vector_index, "b.py") == [0, 1, 2, 3]


async def test_remove_for_deleted_files_keeps_commits(vector_index):
    await vector_index.ensure_collection()
    commit = IndexPoint(
        vector=vector(7),
        payload=CommitInfo(commit_oid="abc", message="m", author_name="n", author_email="e", date="d"),
    )
    await vector_index.upsert_batch(file_points("a.py", 3) + file_points("b.py", 2) + [commit])

    removed = await vector_index.remove_for_deleted_files({"b.py"})

    assert removed == 3
    assert await stored_chunk_indices(vector_index, "a.py") == []
    assert await stored_chunk_indices(vector_index, "b.py") == [0, 1]
    assert await total_points(vector_index) == 3


async def test_fetch_adjacent_chunks_annotates_missing_neighbours(vector_index):
    await vector_index.ensure_collection()
    await vector_index.upsert_batch(file_points("a.py", 3))

    first = await vector_index.fetch_adjacent_chunks("a.py", 0)
    middle = await vector_index.fetch_adjacent_chunks("a.py", 1)
    last = await vector_index.fetch_adjacent_chunks("a.py", 2)

    assert not first.previous.found and first.previous.note
    assert first.next.found and first.next.content == "a.py chunk 1"
    assert middle.previous.content == "a.py chunk 0"
    assert middle.next.content == "a.py chunk 2"
    assert last.previous.found
    assert not last.next.found and last.next.note


async def test_fetch_file_hashes_reports_fingerprints(vector_index):
    await vector_index.ensure_collection()
    points = file_points("a.py", 2)
    for p in points:
        p.payload.content_hash = "deadbeef"
    await vector_index.upsert_batch(points)

    hashes = await vector_index.fetch_file_hashes()

    assert hashes["a.py"].content_hash == "deadbeef"
    assert hashes["a.py"].total_chunks == 2


async def test_search_orders_by_similarity_and_respects_scope(vector_index):
    await vector_index.ensure_collection()
    await vector_index.upsert_batch(file_points("a.py", 2, seed=0) + file_points("b.py", 2, seed=10))

    hits = await vector_index.search(vector(10), limit=3)
    scoped = await vector_index.search(vector(10), limit=3, scope_files=["a.py"])

    assert hits[0].id == "file:b.py:chunk:0"
    assert hits[0].score == pytest.approx(1.0)
    assert {h.filepath for h in scoped} == {"a.py"}


async def test_search_on_empty_collection_returns_nothing(vector_index):
    await vector_index.ensure_collection()

    assert await vector_index.search(vector(1), limit=5) == []


async def test_upsert_failure_is_surfaced(vector_index, monkeypatch):
    await vector_index.ensure_collection()
    calls = {"n": 0}

    async def broken_upsert(**kwargs):
        calls["n"] += 1
        raise ConnectionError("qdrant unavailable")

    monkeypatch.setattr(vector_index.client, "upsert", broken_upsert)

    with pytest.raises(ConnectionError):
        await vector_index.upsert_batch(file_points("a.py", 1))
    assert calls["n"] == vector_index.max_attempts


def test_filter_targets_file_chunks():
    f = file_chunk_filter("a.py")

    assert isinstance(f, models.Filter)
    assert [c.key for c in f.must] == ["dataType", "filepath"]


async def test_fetch_file_hashes_ignores_mixed_versions(vector_index):
    await vector_index.ensure_collection()
    points = file_points("a.py", 5)
    for p in points:
        p.payload.content_hash = "new" if p.payload.chunk_index < 3 else "old"
    await vector_index.upsert_batch(points + file_points("b.py", 1))

    hashes = await vector_index.fetch_file_hashes()

    assert "a.py" not in hashes
    assert "b.py" in hashes


async def test_fetch_file_hashes_ignores_incomplete_files(vector_index):
    await vector_index.ensure_collection()
    points = file_points("a.py", 5)
    for p in points:
        p.payload.content_hash = "deadbeef"
    await vector_index.upsert_batch(points[:3])

    assert await vector_index.fetch_file_hashes() == {}


async def test_search_without_collection_returns_nothing(vector_index):
    assert await vector_index.search(vector(1), limit=5) == []
    assert not await vector_index.client.collection_exists(vector_index.collection_name)
