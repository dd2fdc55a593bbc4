import asyncio
from datetime import datetime, timezone
from pathlib import Path

from . import git
from .config import Settings
from .embedding import EmbeddingClient
from .errors import GitTimeoutError, RepositoryValidationError
from .log import get_logger
from .models import (
    CommitInfo,
    DiffChunk,
    FileChunk,
    IndexingPhase,
    IndexingStatus,
    IndexPoint,
    IndexResult,
)
from .retry import with_retry
from .splitter import chunk_text, is_indexable
from .status import StatusTracker
from .store import FileFingerprint, VectorIndex

logger = get_logger(__name__)


class Indexer:
    """Builds and refreshes the vector index for one repository at a time.

    At most one run is active per instance; the process keeps a single
    instance so status is observable from every caller.
    """

    def __init__(
        self,
        settings: Settings,
        embedder: EmbeddingClient,
        index: VectorIndex,
        status: StatusTracker | None = None,
    ):
        self.settings = settings
        self.embedder = embedder
        self.index = index
        self.status = status or StatusTracker()
        self._task: asyncio.Task | None = None
        self._result: IndexResult | None = None

    def get_status(self) -> IndexingStatus:
        return self.status.snapshot()

    @property
    def last_result(self) -> IndexResult | None:
        return self._result

    async def run_indexing(self, repo_path: str) -> IndexingStatus:
        """Index repo_path now. A no-op returning current status if a run is active."""
        if not self.status.try_begin(repo_path):
            logger.info("indexing.already_running", repo_path=repo_path)
            return self.get_status()
        await self._run(repo_path)
        return self.get_status()

    async def trigger_update(self, repo_path: str) -> IndexingStatus:
        """Start a background run unless one is active. Never cancels a running pass."""
        if not self.status.try_begin(repo_path):
            logger.info("indexing.update_ignored", repo_path=repo_path, phase=self.status.phase.value)
            return self.get_status()
        self._task = asyncio.create_task(self._run(repo_path))
        return self.get_status()

    async def wait(self) -> None:
        if self._task is not None:
            await self._task

    async def _run(self, repo_path: str) -> None:
        result = IndexResult(collection_name=self.index.collection_name)
        self._result = result
        try:
            if not await asyncio.to_thread(git.validate_repository, repo_path):
                raise RepositoryValidationError(f"{repo_path} is not a valid Git repository")
            await self.index.ensure_collection()

            self.status.transition(IndexingPhase.LISTING_FILES)
            tracked = await asyncio.to_thread(lambda: list(git.list_tracked_files(repo_path)))
            files = [f for f in tracked if is_indexable(f)]
            logger.info("indexing.files_listed", tracked=len(tracked), indexable=len(files))

            self.status.transition(IndexingPhase.INDEXING_FILE_CONTENT, files_total=len(files))
            await self._index_files(repo_path, files, result)

            commits = await asyncio.to_thread(
                lambda: list(git.commit_history(repo_path, count=self.settings.commit_history_depth))
            )
            self.status.transition(IndexingPhase.INDEXING_COMMITS_DIFFS, commits_total=len(commits))
            for commit in commits:
                try:
                    result.chunks_upserted += await self._index_commit(repo_path, commit, result)
                    result.commits_indexed += 1
                except Exception as e:
                    self._record_failure(result, "commit", commit.oid, e)
                finally:
                    self.status.increment("commits_processed")

            removed = await self.index.remove_for_deleted_files(files)
            logger.info("indexing.stale_removed", count=removed)
        except RepositoryValidationError as e:
            logger.warning("indexing.invalid_repository", repo_path=repo_path)
            self.status.fail(str(e))
            return
        except Exception as e:
            logger.exception("indexing.failed", repo_path=repo_path)
            self.status.fail(f"{type(e).__name__}: {e}")
            return

        self.status.transition(IndexingPhase.COMPLETED)
        logger.info(
            "indexing.completed",
            repo_path=repo_path,
            files_indexed=result.files_indexed,
            files_skipped=result.files_skipped,
            commits_indexed=result.commits_indexed,
            chunks_upserted=result.chunks_upserted,
            errors=result.errors,
        )
        self.status.transition(IndexingPhase.IDLE)

    def _record_failure(self, result: IndexResult, kind: str, name: str, error: Exception) -> None:
        logger.error(f"indexing.{kind}_failed", target=name, error=str(error), error_type=type(error).__name__)
        result.errors += 1
        self.status.record_error(f"Failed to index {kind} {name}: {error}")

    async def _index_files(self, repo_path: str, files: list[str], result: IndexResult) -> None:
        existing: dict[str, FileFingerprint] = {}
        if self.settings.skip_unchanged_files:
            existing = await self.index.fetch_file_hashes()

        for filepath in files:
            try:
                upserted = await self._index_file(repo_path, filepath, existing.get(filepath))
                if upserted is None:
                    result.files_skipped += 1
                else:
                    result.files_indexed += 1
                    result.chunks_upserted += upserted
            except Exception as e:
                self._record_failure(result, "file", filepath, e)
            finally:
                self.status.increment("files_processed")

    async def _index_file(self, repo_path: str, filepath: str, previous: FileFingerprint | None) -> int | None:
        """Index one working-tree file. Returns the number of points written, None if skipped."""
        full_path = Path(repo_path) / filepath
        if not full_path.is_file():
            logger.info("indexing.missing_from_worktree", filepath=filepath)
            await self.index.remove_stale(filepath, 0)
            return None
        stat = full_path.stat()
        if stat.st_size > self.settings.max_file_bytes:
            logger.info("indexing.file_too_large", filepath=filepath, size=stat.st_size)
            await self.index.remove_stale(filepath, 0)
            return None
        raw = full_path.read_bytes()
        try:
            text = raw.decode("utf-8", errors="strict")
        except UnicodeDecodeError:
            logger.debug("indexing.binary_file", filepath=filepath)
            await self.index.remove_stale(filepath, 0)
            return None

        if not text.strip():
            await self.index.remove_stale(filepath, 0)
            logger.info("indexing.empty_file", filepath=filepath)
            return None

        content_hash = git.hash_file_content(raw)
        chunks = chunk_text(text, self.settings.chunk_size_chars, self.settings.chunk_overlap_chars)
        if previous is not None and previous.content_hash == content_hash and previous.total_chunks == len(chunks):
            return None

        last_modified = datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc).isoformat()
        units = [
            FileChunk(
                filepath=filepath,
                chunk_index=chunk.index,
                total_chunks=chunk.total,
                content=chunk.content,
                last_modified=last_modified,
                content_hash=content_hash,
            )
            for chunk in chunks
            if chunk.content.strip()
        ]
        points = await self._embed_units(units)
        # The whole file is embedded before anything is written.
        try:
            await self.index.upsert_batch(points)
        except Exception:
            # A partly written file is dropped so the next run re-indexes it.
            logger.warning("indexing.rollback_partial_file", filepath=filepath)
            await self.index.remove_stale(filepath, 0)
            raise
        await self.index.remove_stale(filepath, len(chunks))
        logger.info("indexing.file_indexed", filepath=filepath, chunks=len(chunks))
        return len(points)

    async def _embed_units(self, units: list[FileChunk | DiffChunk | CommitInfo]) -> list[IndexPoint]:
        semaphore = asyncio.Semaphore(self.settings.embed_concurrency)

        async def embed(unit) -> IndexPoint:
            text = unit.message if isinstance(unit, CommitInfo) else unit.content
            async with semaphore:
                vector = await self.embedder.embed(text)
            return IndexPoint(vector=vector, payload=unit)

        return list(await asyncio.gather(*(embed(u) for u in units)))

    async def _index_commit(self, repo_path: str, commit: git.Commit, result: IndexResult) -> int:
        changes = await asyncio.to_thread(git.changed_files, repo_path, commit)
        info = CommitInfo(
            commit_oid=commit.oid,
            message=commit.message or commit.oid,
            author_name=commit.author_name,
            author_email=commit.author_email,
            date=commit.date,
            changed_files_summary=[c.summary() for c in changes],
            parent_oids=commit.parent_oids,
        )
        written = await self.index.upsert_batch(await self._embed_units([info]))

        for change in changes:
            if not is_indexable(change.path):
                continue
            try:
                diff = await with_retry(
                    lambda: asyncio.to_thread(
                        git.file_diff, repo_path, commit, change.path, self.settings.diff_timeout
                    ),
                    self.settings.max_retries,
                    self.settings.retry_delay,
                    retry_on=GitTimeoutError,
                )
                if not diff.strip():
                    continue
                chunks = chunk_text(diff, self.settings.chunk_size_chars, self.settings.chunk_overlap_chars)
                units = [
                    DiffChunk(
                        commit_oid=commit.oid,
                        filepath=change.path,
                        chunk_index=chunk.index,
                        total_chunks=chunk.total,
                        content=chunk.content,
                        change_type=change.change_type,
                    )
                    for chunk in chunks
                    if chunk.content.strip()
                ]
                written += await self.index.upsert_batch(await self._embed_units(units))
            except Exception as e:
                self._record_failure(result, "diff", f"{commit.oid[:12]}:{change.path}", e)
        logger.debug("indexing.commit_indexed", commit=commit.oid, changes=len(changes))
        return written
