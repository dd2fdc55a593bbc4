import threading
from datetime import datetime, timezone

from .errors import InvalidTransitionError
from .models import IndexingPhase, IndexingStatus

ACTIVE_PHASES = frozenset({
    IndexingPhase.INITIALIZING,
    IndexingPhase.LISTING_FILES,
    IndexingPhase.INDEXING_FILE_CONTENT,
    IndexingPhase.INDEXING_COMMITS_DIFFS,
})

TRANSITIONS: dict[IndexingPhase, frozenset[IndexingPhase]] = {
    IndexingPhase.IDLE: frozenset({IndexingPhase.INITIALIZING}),
    IndexingPhase.INITIALIZING: frozenset({IndexingPhase.LISTING_FILES, IndexingPhase.ERROR}),
    IndexingPhase.LISTING_FILES: frozenset({IndexingPhase.INDEXING_FILE_CONTENT, IndexingPhase.ERROR}),
    IndexingPhase.INDEXING_FILE_CONTENT: frozenset({IndexingPhase.INDEXING_COMMITS_DIFFS, IndexingPhase.ERROR}),
    IndexingPhase.INDEXING_COMMITS_DIFFS: frozenset({IndexingPhase.COMPLETED, IndexingPhase.ERROR}),
    IndexingPhase.COMPLETED: frozenset({IndexingPhase.IDLE, IndexingPhase.INITIALIZING}),
    IndexingPhase.ERROR: frozenset({IndexingPhase.INITIALIZING, IndexingPhase.IDLE}),
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


class StatusTracker:
    """Owner of the indexing status.

    Only the orchestrator writes through this object; everyone else reads
    copies from snapshot().
    """

    def __init__(self):
        self._status = IndexingStatus()
        self._lock = threading.Lock()

    def snapshot(self) -> IndexingStatus:
        with self._lock:
            return self._status.model_copy()

    @property
    def phase(self) -> IndexingPhase:
        with self._lock:
            return self._status.phase

    @property
    def is_active(self) -> bool:
        return self.phase in ACTIVE_PHASES

    def try_begin(self, repo_path: str) -> bool:
        """Move to initializing unless a run is already active. Resets counters."""
        with self._lock:
            if self._status.phase in ACTIVE_PHASES:
                return False
            self._check(IndexingPhase.INITIALIZING)
            self._status = IndexingStatus(
                phase=IndexingPhase.INITIALIZING,
                repo_path=repo_path,
                started_at=_now(),
            )
            return True

    def transition(self, phase: IndexingPhase, **changes) -> None:
        with self._lock:
            self._check(phase)
            if phase in (IndexingPhase.COMPLETED, IndexingPhase.ERROR):
                changes.setdefault("finished_at", _now())
            self._status = self._status.model_copy(update={"phase": phase, **changes})

    def fail(self, message: str) -> None:
        self.transition(IndexingPhase.ERROR, last_error=message)

    def update(self, **changes) -> None:
        with self._lock:
            self._status = self._status.model_copy(update=changes)

    def increment(self, field: str, by: int = 1) -> None:
        with self._lock:
            current = getattr(self._status, field)
            self._status = self._status.model_copy(update={field: current + by})

    def record_error(self, message: str) -> None:
        with self._lock:
            self._status = self._status.model_copy(
                update={"last_error": message, "errors": self._status.errors + 1}
            )

    def _check(self, phase: IndexingPhase) -> None:
        current = self._status.phase
        if phase not in TRANSITIONS[current]:
            raise InvalidTransitionError(current.value, phase.value)
