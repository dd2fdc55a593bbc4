import asyncio

import click
from dotenv import load_dotenv
from pydantic import ValidationError

from . import git
from .config import Settings
from .log import configure_logging
from .models import IndexingPhase
from .service import build_services


def _load_settings(require_key: bool = True) -> Settings:
    load_dotenv()
    try:
        settings = Settings.from_env()
    except ValidationError as e:
        raise click.ClickException(f"Invalid configuration: {e}")
    configure_logging(settings.log_level, settings.log_json)
    if require_key and not settings.embedding_api_key:
        raise click.ClickException("OPENROUTER_API_KEY environment variable is not set")
    return settings


@click.group()
def cli() -> None:
    """Index a git repository into Qdrant and search it semantically."""


@cli.command()
@click.argument("path", type=click.Path(exists=True, file_okay=False, resolve_path=True))
@click.option("--collection", default=None, help="Qdrant collection (default: COLLECTION_NAME).")
@click.option("--full", is_flag=True, default=False, help="Re-embed every file even if unchanged.")
def index(path: str, collection: str | None, full: bool) -> None:
    """Index file contents, commits and diffs of the repository at PATH."""
    settings = _load_settings()
    overrides = {}
    if collection:
        overrides["collection_name"] = collection
    if full:
        overrides["skip_unchanged_files"] = False
    if overrides:
        settings = settings.model_copy(update=overrides)

    click.echo(f"Collection: {settings.collection_name}")

    async def run():
        services = build_services(settings)
        try:
            status = await services.indexer.run_indexing(path)
            return status, services.indexer.last_result
        finally:
            await services.close()

    status, result = asyncio.run(run())
    if status.phase is IndexingPhase.ERROR:
        raise click.ClickException(status.last_error or "Indexing failed")

    click.echo(
        f"Done. Indexed {result.files_indexed} files ({result.files_skipped} unchanged or skipped), "
        f"{result.commits_indexed} commits, "
        f"{result.chunks_upserted} points upserted, "
        f"{result.errors} errors."
    )
    if status.last_error:
        click.echo(f"Last error: {status.last_error}", err=True)


@cli.command()
@click.argument("query")
@click.option("--limit", type=int, default=None, help="Number of results.")
@click.option("--file", "files", multiple=True, help="Restrict results to this file path (repeatable).")
def search(query: str, limit: int | None, files: tuple[str, ...]) -> None:
    """Search the index for QUERY."""
    settings = _load_settings()

    async def run():
        services = build_services(settings)
        try:
            return await services.searcher.search(query, scope_files=list(files) or None, limit=limit)
        finally:
            await services.close()

    outcome = asyncio.run(run())
    click.echo(f"Query: {outcome.refined_query} (relevance {outcome.relevance_score:.2f})")
    for r in outcome.results:
        label = r.filepath or r.payload.get("commit_oid", "")
        click.echo(f"[{r.score:.4f}] {r.payload.get('dataType')} {label}")
        click.echo(f"  {r.content[:120].strip()}")
        click.echo()


@cli.command()
@click.argument("path", type=click.Path(file_okay=False, resolve_path=True))
def diff(path: str) -> None:
    """Show the diff between the two most recent commits of PATH."""
    settings = _load_settings(require_key=False)
    click.echo(git.diff_summary(path, settings.diff_timeout))


@cli.command()
def serve() -> None:
    """Run the MCP server (transport from MCP_TRANSPORT)."""
    from .server import main as serve_main

    serve_main()


if __name__ == "__main__":
    cli()
