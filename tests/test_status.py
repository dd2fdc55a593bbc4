import pytest

from codeindex.errors import InvalidTransitionError
from codeindex.models import IndexingPhase
from codeindex.status import StatusTracker


def walk_to_commits(tracker: StatusTracker) -> None:
    assert tracker.try_begin("/repo")
    tracker.transition(IndexingPhase.LISTING_FILES)
    tracker.transition(IndexingPhase.INDEXING_FILE_CONTENT, files_total=4)
    tracker.transition(IndexingPhase.INDEXING_COMMITS_DIFFS, commits_total=2)


def test_initial_status_is_idle():
    status = StatusTracker().snapshot()

    assert status.phase is IndexingPhase.IDLE
    assert status.files_processed == status.files_total == 0
    assert status.last_error is None


def test_full_lifecycle_reaches_idle():
    tracker = StatusTracker()
    walk_to_commits(tracker)

    tracker.transition(IndexingPhase.COMPLETED)
    completed = tracker.snapshot()
    tracker.transition(IndexingPhase.IDLE)

    assert completed.finished_at is not None
    assert completed.started_at <= completed.finished_at
    assert completed.files_total == 4
    assert completed.commits_total == 2
    assert tracker.phase is IndexingPhase.IDLE


@pytest.mark.parametrize(
    "path",
    [
        [IndexingPhase.LISTING_FILES],
        [IndexingPhase.COMPLETED],
        [IndexingPhase.ERROR],
        [IndexingPhase.INITIALIZING, IndexingPhase.INDEXING_FILE_CONTENT],
        [IndexingPhase.INITIALIZING, IndexingPhase.LISTING_FILES, IndexingPhase.COMPLETED],
        [IndexingPhase.INITIALIZING, IndexingPhase.LISTING_FILES, IndexingPhase.INITIALIZING],
    ],
)
def test_illegal_transitions_raise(path):
    tracker = StatusTracker()
    *legal, illegal = path
    for phase in legal:
        tracker.transition(phase)

    with pytest.raises(InvalidTransitionError):
        tracker.transition(illegal)


def test_try_begin_refuses_while_active():
    tracker = StatusTracker()

    assert tracker.try_begin("/repo") is True
    assert tracker.try_begin("/other") is False
    assert tracker.snapshot().repo_path == "/repo"


def test_try_begin_after_error_resets_counters():
    tracker = StatusTracker()
    walk_to_commits(tracker)
    tracker.increment("files_processed", 4)
    tracker.record_error("boom")
    tracker.fail("fatal")

    failed = tracker.snapshot()
    assert failed.phase is IndexingPhase.ERROR
    assert failed.last_error == "fatal"
    assert failed.errors == 1

    assert tracker.try_begin("/repo")
    fresh = tracker.snapshot()
    assert fresh.phase is IndexingPhase.INITIALIZING
    assert fresh.files_processed == 0
    assert fresh.errors == 0
    assert fresh.last_error is None


def test_every_active_phase_can_fail():
    for target in (
        IndexingPhase.INITIALIZING,
        IndexingPhase.LISTING_FILES,
        IndexingPhase.INDEXING_FILE_CONTENT,
        IndexingPhase.INDEXING_COMMITS_DIFFS,
    ):
        tracker = StatusTracker()
        tracker.try_begin("/repo")
        for phase in (
            IndexingPhase.LISTING_FILES,
            IndexingPhase.INDEXING_FILE_CONTENT,
            IndexingPhase.INDEXING_COMMITS_DIFFS,
        ):
            if tracker.phase is target:
                break
            tracker.transition(phase)

        tracker.fail("boom")

        assert tracker.phase is IndexingPhase.ERROR


def test_snapshot_is_a_copy():
    tracker = StatusTracker()
    tracker.try_begin("/repo")

    snapshot = tracker.snapshot()
    snapshot.files_processed = 99
    tracker.increment("files_processed")

    assert tracker.snapshot().files_processed == 1
    assert snapshot.files_processed == 99
