import hashlib
import os
import subprocess
from collections.abc import Iterator
from dataclasses import dataclass, field

from .errors import GitTimeoutError, ToolInvocationError
from .log import get_logger
from .models import ChangeType

logger = get_logger(__name__)

MAX_DIFF_LENGTH = 10_000
TRUNCATION_MARKER = "\n... (diff truncated)"
EMPTY_TREE_OID = "4b825dc642cb6eb9a060e54bf8d69288fbee4904"

NO_REPOSITORY = "No Git repository found"
NO_PREVIOUS_COMMITS = "No previous commits to compare"
NO_TEXTUAL_CHANGES = "No textual changes found between last two commits."

# Record separator between commits, unit separator between fields.
_LOG_FORMAT = "%H%x1f%T%x1f%P%x1f%an%x1f%ae%x1f%aI%x1f%B%x1e"


@dataclass(frozen=True)
class Commit:
    oid: str
    tree_oid: str
    parent_oids: list[str]
    author_name: str
    author_email: str
    date: str
    message: str


@dataclass(frozen=True)
class TreeEntry:
    mode: str
    type: str
    oid: str


@dataclass(frozen=True)
class FileChange:
    path: str
    change_type: ChangeType
    old_oid: str | None = field(default=None, compare=False)
    new_oid: str | None = field(default=None, compare=False)

    def summary(self) -> str:
        return f"{self.change_type.value} {self.path}"


def _git_dir(repo_path: str) -> str:
    return os.path.join(repo_path, ".git")


def _run(repo_path: str, *args: str, text: bool = True, timeout: float | None = None):
    """Run a git command against the repository at repo_path.

    Returns stdout (str or bytes). Raises ToolInvocationError on a non-zero
    exit status and GitTimeoutError on a timeout.
    """
    cmd = ["git", "--git-dir", _git_dir(repo_path), "--work-tree", repo_path, *args]
    encoding = {"encoding": "utf-8", "errors": "replace"} if text else {}
    try:
        result = subprocess.run(cmd, capture_output=True, timeout=timeout, **encoding)
    except subprocess.TimeoutExpired as e:
        stderr = e.stderr.decode(errors="replace") if isinstance(e.stderr, bytes) else (e.stderr or "")
        raise GitTimeoutError(list(args), None, f"timed out after {timeout}s {stderr}".strip()) from e
    if result.returncode != 0:
        stderr = result.stderr if text else result.stderr.decode(errors="replace")
        raise ToolInvocationError(list(args), result.returncode, stderr)
    return result.stdout


def validate_repository(repo_path: str) -> bool:
    """True iff repo_path/.git exists and HEAD resolves to a commit. Never raises."""
    try:
        if not os.path.isdir(_git_dir(repo_path)):
            return False
        _run(repo_path, "rev-parse", "--verify", "--quiet", "HEAD^{commit}")
        return True
    except (OSError, ToolInvocationError):
        return False


def list_tracked_files(repo_path: str, ref: str = "HEAD") -> Iterator[str]:
    """Yield every file tracked at ref."""
    out = _run(repo_path, "ls-tree", "-r", "-z", "--name-only", ref)
    for path in out.split("\0"):
        if path:
            yield path


def commit_history(repo_path: str, count: int | None = None, ref: str = "HEAD") -> Iterator[Commit]:
    """Yield commits reachable from ref, most recent first."""
    args = ["log", f"--format={_LOG_FORMAT}"]
    if count is not None:
        args.append(f"-n{count}")
    args.append(ref)
    out = _run(repo_path, *args)
    for record in out.split("\x1e"):
        record = record.lstrip("\n")
        if not record:
            continue
        oid, tree, parents, name, email, date, message = record.split("\x1f", 6)
        yield Commit(
            oid=oid,
            tree_oid=tree,
            parent_oids=parents.split(),
            author_name=name,
            author_email=email,
            date=date,
            message=message.strip(),
        )


def read_tree(repo_path: str, tree_oid: str) -> dict[str, TreeEntry]:
    """Recursive listing of one tree object, keyed by path."""
    # -z lines look like: "<mode> <type> <object>\t<path>\0"
    out = _run(repo_path, "ls-tree", "-r", "-z", tree_oid)
    entries: dict[str, TreeEntry] = {}
    for line in out.split("\0"):
        if not line:
            continue
        meta, path = line.split("\t", 1)
        mode, kind, oid = meta.split()
        entries[path] = TreeEntry(mode=mode, type=kind, oid=oid)
    return entries


def _entry_kind(entry: TreeEntry) -> str:
    if entry.mode == "120000":
        return "symlink"
    if entry.mode == "160000":
        return "submodule"
    return "file"


def diff_trees(old: dict[str, TreeEntry], new: dict[str, TreeEntry]) -> list[FileChange]:
    changes: list[FileChange] = []
    for path in sorted(old.keys() | new.keys()):
        before = old.get(path)
        after = new.get(path)
        if before is None:
            changes.append(FileChange(path, ChangeType.ADD, None, after.oid))
        elif after is None:
            changes.append(FileChange(path, ChangeType.DELETE, before.oid, None))
        elif _entry_kind(before) != _entry_kind(after):
            changes.append(FileChange(path, ChangeType.TYPECHANGE, before.oid, after.oid))
        elif before.oid != after.oid:
            changes.append(FileChange(path, ChangeType.MODIFY, before.oid, after.oid))
    return changes


def changed_files(repo_path: str, commit: Commit) -> list[FileChange]:
    """Files added, deleted or modified by commit relative to its first parent."""
    new_tree = read_tree(repo_path, commit.tree_oid)
    if not commit.parent_oids:
        return [
            FileChange(path, ChangeType.ADD, None, entry.oid)
            for path, entry in sorted(new_tree.items())
            if entry.type == "blob"
        ]
    parent_tree_oid = _run(repo_path, "rev-parse", f"{commit.parent_oids[0]}^{{tree}}").strip()
    return diff_trees(read_tree(repo_path, parent_tree_oid), new_tree)


def file_diff(repo_path: str, commit: Commit, file_path: str, timeout: float | None = None) -> str:
    """Unified diff of file_path introduced by commit."""
    base = commit.parent_oids[0] if commit.parent_oids else EMPTY_TREE_OID
    return _run(
        repo_path,
        "diff", "--no-color", "--no-ext-diff", base, commit.oid, "--", file_path,
        timeout=timeout,
    )


def read_blob(repo_path: str, oid: str) -> bytes:
    return _run(repo_path, "cat-file", "blob", oid, text=False)


def hash_file_content(content: bytes) -> str:
    """SHA-256 of file content bytes."""
    return hashlib.sha256(content).hexdigest()


def diff_summary(repo_path: str, timeout: float = 30.0) -> str:
    """Textual diff between the two most recent commits, for display.

    Never raises: failures come back as a diagnostic string.
    """
    if not validate_repository(repo_path):
        logger.warning("diff_summary.not_a_repository", repo_path=repo_path)
        return NO_REPOSITORY

    try:
        commits = list(commit_history(repo_path, count=2))
        if len(commits) < 2:
            logger.info("diff_summary.not_enough_commits", repo_path=repo_path, found=len(commits))
            return NO_PREVIOUS_COMMITS
        latest, previous = commits
        logger.info("diff_summary.running", repo_path=repo_path, previous=previous.oid, latest=latest.oid)
        out = _run(repo_path, "diff", "--no-color", previous.oid, latest.oid, timeout=timeout)
    except ToolInvocationError as e:
        logger.error(
            "diff_summary.failed",
            repo_path=repo_path,
            exit_code=e.returncode,
            stderr=e.stderr.strip(),
        )
        return f"Failed to retrieve diff for {repo_path}: {e}"
    except (OSError, UnicodeDecodeError) as e:
        logger.error("diff_summary.failed", repo_path=repo_path, error=str(e))
        return f"Failed to retrieve diff for {repo_path}: {e}"

    out = out.strip()
    if not out:
        return NO_TEXTUAL_CHANGES
    if len(out) > MAX_DIFF_LENGTH:
        logger.info("diff_summary.truncated", length=len(out), limit=MAX_DIFF_LENGTH)
        out = out[:MAX_DIFF_LENGTH] + TRUNCATION_MARKER
    return out
