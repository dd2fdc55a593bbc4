class IndexerError(Exception):
    """Base class for indexing and retrieval failures."""


class RepositoryValidationError(IndexerError):
    """The path is not a git repository or HEAD does not resolve."""


class TransientIOError(IndexerError):
    """Network or timeout failure talking to the embedding service or Qdrant."""


class DataIntegrityError(IndexerError):
    """A response or stored state that cannot be used as-is. Never retried."""


class EmbeddingError(DataIntegrityError):
    pass


class InvalidTransitionError(IndexerError):
    def __init__(self, current: str, requested: str):
        super().__init__(f"Illegal indexing transition {current} -> {requested}")
        self.current = current
        self.requested = requested


class ToolInvocationError(RuntimeError):
    """A git subprocess exited non-zero or timed out."""

    def __init__(self, git_args: list[str], returncode: int | None, stderr: str):
        detail = stderr.strip() or "no stderr"
        super().__init__(f"git {git_args[0]} failed (exit {returncode}): {detail}")
        self.git_args = git_args
        self.returncode = returncode
        self.stderr = stderr


class GitTimeoutError(ToolInvocationError):
    """A git subprocess did not finish within its timeout."""


NON_RETRYABLE = (DataIntegrityError, RepositoryValidationError)
