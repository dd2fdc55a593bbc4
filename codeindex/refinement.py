import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum

from pydantic import BaseModel

from .config import Settings
from .embedding import EmbeddingClient, preprocess_text
from .log import get_logger
from .models import SearchResult
from .store import VectorIndex

logger = get_logger(__name__)

BROADEN_BELOW = 0.3
FOCUS_BELOW = 0.7

COMMON_WORDS = {
    "the", "and", "that", "this", "with", "from", "have", "for", "is", "was",
    "are", "were", "be", "been", "being", "it", "its", "a", "an", "to", "of",
    "in", "on", "at", "by",
}
_PUNCTUATION = re.compile(r"[.,;:!?(){}\[\]\"']")
_RESTRICTIVE_WORDS = re.compile(r"\b(exact|specific|only|must)\b", re.IGNORECASE)
_FILE_EXTENSIONS = re.compile(r"\.(ts|js|tsx|jsx|py|java|cpp|rb|go|rs|php)\b", re.IGNORECASE)

SearchFn = Callable[[str, int, list[str] | None], Awaitable[list[SearchResult]]]
RefineFn = Callable[[str, list[SearchResult], float], str]


class RefineStrategy(str, Enum):
    BROADEN = "broaden"
    FOCUS = "focus"
    TWEAK = "tweak"


def extract_keywords(text: str) -> list[str]:
    """Distinct words longer than two characters, skipping stop words and numbers, in order of appearance."""
    words = _PUNCTUATION.sub(" ", preprocess_text(text).lower()).split()
    keywords: list[str] = []
    for word in words:
        word = word.rstrip("():<>")
        if len(word) > 2 and word not in COMMON_WORDS and not word.isdigit() and word not in keywords:
            keywords.append(word)
    return keywords


def broaden_query(query: str) -> str:
    broadened = _RESTRICTIVE_WORDS.sub("", query)
    broadened = _FILE_EXTENSIONS.sub("", broadened)
    broadened = re.sub(r"[\"'{}()\[\]]", " ", broadened)
    broadened = re.sub(r"\s\s+", " ", broadened).strip()
    if not broadened:
        return "general code context"
    if len(broadened) < 10:
        return f"{broadened} implementation code"
    return broadened


def focus_query(query: str, results: list[SearchResult]) -> str:
    """Append the first two keywords found in the top results."""
    if not results:
        return query
    sample = " ".join(r.content[:200] for r in results[:3])
    existing = set(query.lower().split())
    keywords = [k for k in extract_keywords(sample) if k not in existing][:2]
    if not keywords:
        return query
    return f"{query} {' '.join(keywords)}".strip()


def tweak_query(query: str, results: list[SearchResult]) -> str:
    """Mention the top hit's file type, or failing that its top-level directory."""
    if not results:
        return query
    filepath = results[0].filepath
    match = re.search(r"\.([a-zA-Z0-9]+)$", filepath)
    file_type = match.group(1) if match else ""
    parts = re.split(r"[/\\]", filepath)
    directory = parts[0] if len(parts) > 1 else ""
    if file_type and file_type.lower() not in query.lower():
        return f"{query} {file_type}"
    if directory and directory.lower() not in query.lower():
        return f"{query} in {directory}"
    return query


def select_strategy(relevance: float, has_results: bool = True) -> RefineStrategy:
    if not has_results or relevance < BROADEN_BELOW:
        return RefineStrategy.BROADEN
    if relevance < FOCUS_BELOW:
        return RefineStrategy.FOCUS
    return RefineStrategy.TWEAK


@dataclass
class RefineHelpers:
    broaden: Callable[[str], str] = broaden_query
    focus: Callable[[str, list[SearchResult]], str] = focus_query
    tweak: Callable[[str, list[SearchResult]], str] = tweak_query


def refine_query(
    query: str,
    results: list[SearchResult],
    relevance: float,
    helpers: RefineHelpers | None = None,
) -> str:
    helpers = helpers or RefineHelpers()
    strategy = select_strategy(relevance, bool(results))
    logger.debug("refine.strategy", strategy=strategy.value, relevance=round(relevance, 3), query=query)
    if strategy is RefineStrategy.BROADEN:
        return helpers.broaden(query)
    if strategy is RefineStrategy.FOCUS:
        return helpers.focus(query, results)
    return helpers.tweak(query, results)


@dataclass
class RefinementState:
    query: str
    iteration: int = 0
    relevance_score: float = 0.0
    results: list[SearchResult] = field(default_factory=list)


class SearchOutcome(BaseModel):
    results: list[SearchResult]
    refined_query: str
    relevance_score: float


def top_score(results: list[SearchResult]) -> float:
    return results[0].score if results else 0.0


async def search_with_refinement(
    search_fn: SearchFn,
    query: str,
    scope_files: list[str] | None = None,
    limit: int = 10,
    max_refinements: int = 2,
    relevance_threshold: float = 0.75,
    refine_fn: RefineFn = refine_query,
) -> SearchOutcome:
    """Search, then rewrite and search again while relevance stays under the threshold.

    Runs at most max_refinements rewrites (max_refinements + 1 searches). The
    outcome of the last search is returned, even when an earlier iteration
    scored higher.
    """
    state = RefinementState(query=query)
    state.results = await search_fn(state.query, limit, scope_files)
    state.relevance_score = top_score(state.results)
    logger.info("refine.search", iteration=0, query=state.query, hits=len(state.results), score=state.relevance_score)

    while state.relevance_score < relevance_threshold and state.iteration < max_refinements:
        rewritten = refine_fn(state.query, state.results, state.relevance_score)
        if rewritten == state.query and state.results:
            logger.info("refine.unchanged", query=state.query)
            break
        state.iteration += 1
        state.query = rewritten
        state.results = await search_fn(state.query, limit, scope_files)
        state.relevance_score = top_score(state.results)
        logger.info(
            "refine.search",
            iteration=state.iteration,
            query=state.query,
            hits=len(state.results),
            score=state.relevance_score,
        )

    logger.info(
        "refine.done",
        refinements=state.iteration,
        final_query=state.query,
        score=state.relevance_score,
    )
    return SearchOutcome(results=state.results, refined_query=state.query, relevance_score=state.relevance_score)


class Searcher:
    """Binds the embedding client and vector index into the refinement loop."""

    def __init__(self, settings: Settings, embedder: EmbeddingClient, index: VectorIndex):
        self.settings = settings
        self.embedder = embedder
        self.index = index

    async def embed_and_search(self, query: str, limit: int, scope_files: list[str] | None) -> list[SearchResult]:
        vector = await self.embedder.embed(query)
        return await self.index.search(vector, limit, scope_files)

    async def search(
        self,
        query: str,
        scope_files: list[str] | None = None,
        limit: int | None = None,
        refine_fn: RefineFn = refine_query,
    ) -> SearchOutcome:
        return await search_with_refinement(
            self.embed_and_search,
            query,
            scope_files=scope_files,
            limit=limit if limit and limit > 0 else self.settings.search_limit_default,
            max_refinements=self.settings.max_refinement_iterations,
            relevance_threshold=self.settings.relevance_threshold,
            refine_fn=refine_fn,
        )

    async def fetch_adjacent_chunks(self, filepath: str, index: int):
        return await self.index.fetch_adjacent_chunks(filepath, index)
