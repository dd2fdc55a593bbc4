import uuid
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

POINT_NAMESPACE = uuid.UUID("6f1c8e52-3b7a-4a8e-9d43-0c2f6d5e8a11")


class ChangeType(str, Enum):
    ADD = "add"
    MODIFY = "modify"
    DELETE = "delete"
    TYPECHANGE = "typechange"


class _Unit(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class FileChunk(_Unit):
    data_type: Literal["file_chunk"] = Field(default="file_chunk", alias="dataType")
    filepath: str
    chunk_index: int
    total_chunks: int
    content: str
    last_modified: str
    content_hash: str | None = None

    @property
    def key(self) -> str:
        return f"file:{self.filepath}:chunk:{self.chunk_index}"


class CommitInfo(_Unit):
    data_type: Literal["commit_info"] = Field(default="commit_info", alias="dataType")
    commit_oid: str
    message: str
    author_name: str
    author_email: str
    date: str
    changed_files_summary: list[str] = Field(default_factory=list)
    parent_oids: list[str] = Field(default_factory=list)

    @property
    def key(self) -> str:
        return f"commit:{self.commit_oid}"


class DiffChunk(_Unit):
    data_type: Literal["diff_chunk"] = Field(default="diff_chunk", alias="dataType")
    commit_oid: str
    filepath: str
    chunk_index: int
    total_chunks: int
    content: str
    change_type: ChangeType

    @property
    def key(self) -> str:
        return f"diff:{self.commit_oid}:{self.filepath}:chunk:{self.chunk_index}"


IndexableUnit = Annotated[Union[FileChunk, CommitInfo, DiffChunk], Field(discriminator="data_type")]


def point_uuid(key: str) -> str:
    """Qdrant point id for a content-addressed key. Stable across runs."""
    return str(uuid.uuid5(POINT_NAMESPACE, key))


class IndexPoint(BaseModel):
    vector: list[float]
    payload: IndexableUnit

    @property
    def id(self) -> str:
        return self.payload.key

    @property
    def point_id(self) -> str:
        return point_uuid(self.id)

    def qdrant_payload(self) -> dict[str, Any]:
        payload = self.payload.model_dump(mode="json", by_alias=True)
        payload["point_key"] = self.id
        return payload


class SearchResult(BaseModel):
    id: str
    score: float
    payload: dict[str, Any] = Field(default_factory=dict)

    @property
    def filepath(self) -> str:
        return self.payload.get("filepath", "")

    @property
    def content(self) -> str:
        return self.payload.get("content") or self.payload.get("message", "")


class NeighborChunk(BaseModel):
    chunk_index: int
    found: bool
    content: str | None = None
    total_chunks: int | None = None
    note: str | None = None


class AdjacentChunks(BaseModel):
    filepath: str
    chunk_index: int
    previous: NeighborChunk
    next: NeighborChunk


class IndexingPhase(str, Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    LISTING_FILES = "listing_files"
    INDEXING_FILE_CONTENT = "indexing_file_content"
    INDEXING_COMMITS_DIFFS = "indexing_commits_diffs"
    COMPLETED = "completed"
    ERROR = "error"


class IndexingStatus(BaseModel):
    phase: IndexingPhase = IndexingPhase.IDLE
    repo_path: str | None = None
    files_processed: int = 0
    files_total: int = 0
    commits_processed: int = 0
    commits_total: int = 0
    errors: int = 0
    last_error: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None


class IndexResult(BaseModel):
    collection_name: str
    files_indexed: int = 0
    files_skipped: int = 0
    chunks_upserted: int = 0
    commits_indexed: int = 0
    errors: int = 0
