import asyncio
import os

from dotenv import load_dotenv
from fastmcp import FastMCP

from . import git
from .config import Settings
from .log import configure_logging
from .service import Services, build_services


def create_server(services: Services) -> FastMCP:
    settings = services.settings
    default_repo = os.environ.get("REPO_PATH", os.getcwd())

    mcp = FastMCP(
        name="codeindex",
        instructions=(
            "Semantic search over an indexed git repository: file contents, commit messages and diffs. "
            "Use trigger_update to (re)index, get_status to follow progress, "
            "search to find relevant chunks and fetch_adjacent_chunks to read around a hit."
        ),
    )

    @mcp.tool()
    async def trigger_update(repo_path: str | None = None) -> dict:
        """Start re-indexing the repository in the background. No-op while a run is active."""
        status = await services.indexer.trigger_update(repo_path or default_repo)
        return status.model_dump(mode="json")

    @mcp.tool()
    def get_status() -> dict:
        """Current indexing phase, progress counters and last error."""
        return services.indexer.get_status().model_dump(mode="json")

    @mcp.tool()
    async def search(query: str, scope_files: list[str] | None = None, limit: int | None = None) -> dict:
        """Search indexed code, commits and diffs, refining the query when relevance is low.

        Args:
            query: Natural language search query.
            scope_files: Only return chunks of these file paths.
            limit: Number of results to return (max 50).
        """
        limit = min(limit or settings.search_limit_default, 50)
        outcome = await services.searcher.search(query, scope_files=scope_files, limit=limit)
        return {
            "refined_query": outcome.refined_query,
            "relevance_score": round(outcome.relevance_score, 4),
            "results": [
                {
                    "id": r.id,
                    "score": round(r.score, 4),
                    "type": r.payload.get("dataType"),
                    "filepath": r.filepath,
                    "chunk_index": r.payload.get("chunk_index"),
                    "total_chunks": r.payload.get("total_chunks"),
                    "commit_oid": r.payload.get("commit_oid"),
                    "content": r.content,
                }
                for r in outcome.results
            ],
        }

    @mcp.tool()
    async def fetch_adjacent_chunks(filepath: str, chunk_index: int) -> dict:
        """The stored chunks just before and after chunk_index of filepath."""
        adjacent = await services.searcher.fetch_adjacent_chunks(filepath, chunk_index)
        return adjacent.model_dump(mode="json")

    @mcp.tool()
    async def get_repository_diff(repo_path: str | None = None) -> str:
        """Unified diff between the two most recent commits (truncated to 10,000 characters)."""
        return await asyncio.to_thread(git.diff_summary, repo_path or default_repo, settings.diff_timeout)

    return mcp


def main() -> None:
    load_dotenv()
    settings = Settings.from_env()
    configure_logging(settings.log_level, settings.log_json)
    if not settings.embedding_api_key:
        raise RuntimeError("OPENROUTER_API_KEY environment variable is not set")

    mcp = create_server(build_services(settings))

    transport = os.environ.get("MCP_TRANSPORT", "stdio")
    kwargs = {}
    if transport != "stdio":
        kwargs["host"] = os.environ.get("MCP_HOST", "0.0.0.0")
        kwargs["port"] = int(os.environ.get("MCP_PORT", "8080"))
    mcp.run(transport=transport, **kwargs)


if __name__ == "__main__":
    main()
