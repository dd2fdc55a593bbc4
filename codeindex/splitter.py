import math
from dataclasses import dataclass
from pathlib import PurePosixPath

INDEXED_EXTENSIONS = {
    ".py", ".js", ".jsx", ".ts", ".tsx", ".go", ".rs", ".java",
    ".c", ".h", ".cpp", ".cc", ".cxx", ".hpp", ".cs", ".rb", ".php",
    ".swift", ".kt", ".scala", ".lua",
    ".json", ".md", ".html", ".css", ".scss", ".toml", ".yaml", ".yml",
}
SKIP_DIRS = {".git", "node_modules", "__pycache__", ".venv", "dist", "build"}


@dataclass(frozen=True)
class TextChunk:
    index: int
    total: int
    content: str
    start: int
    end: int


def chunk_count(length: int, chunk_size: int, overlap: int) -> int:
    if length <= chunk_size:
        return 1
    return math.ceil((length - overlap) / (chunk_size - overlap))


def chunk_text(text: str, chunk_size: int, overlap: int) -> list[TextChunk]:
    """Split text into windows of chunk_size characters.

    Each window starts chunk_size - overlap characters after the previous
    one, and the last window always reaches the end of the text.
    """
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    if overlap < 0 or overlap >= chunk_size:
        raise ValueError("overlap must be >= 0 and smaller than chunk_size")

    total = chunk_count(len(text), chunk_size, overlap)
    step = chunk_size - overlap
    chunks = []
    for i in range(total):
        start = i * step
        end = min(start + chunk_size, len(text))
        chunks.append(TextChunk(index=i, total=total, content=text[start:end], start=start, end=end))
    return chunks


def is_indexable(file_path: str) -> bool:
    """Whether a tracked file is worth embedding: known source/doc type, not vendored or hidden."""
    path = PurePosixPath(file_path)
    if any(part.startswith(".") or part in SKIP_DIRS for part in path.parts):
        return False
    return path.suffix.lower() in INDEXED_EXTENSIONS
