#!/usr/bin/env python3
"""docslurp command-line interface."""

import asyncio
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from config.server_config import ServerPaths, list_servers
from config.settings import Settings
from indexer.vector_store import VectorStore
from observability.logging import setup_logging
from pipelines.embeddings import OpenAIEmbeddingProvider
from pipelines.errors import DocslurpError, ServerNotFoundError
from pipelines.indexer import IndexingOptions, IndexingOrchestrator, IndexingReport

console = Console()
app = typer.Typer(help="docslurp - turn documentation sites into local semantic indexes")

state = {"settings": None}


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    settings = Settings.from_env()
    setup_logging(
        level="DEBUG" if verbose else settings.log_level,
        log_file=settings.log_file,
        use_json=settings.log_json,
    )
    state["settings"] = settings


def _settings() -> Settings:
    return state["settings"] or Settings.from_env()


def _orchestrator(settings: Settings) -> IndexingOrchestrator:
    if not settings.openai_api_key:
        console.print("❌ OPENAI_API_KEY is not set", style="bold red")
        raise typer.Exit(1)
    provider = OpenAIEmbeddingProvider(
        api_key=settings.openai_api_key,
        model=settings.embedding_model,
        dimensions=settings.embedding_dimensions,
    )
    return IndexingOrchestrator(
        settings,
        provider,
        progress=lambda message: console.print(f"  • {message}"),
    )


async def _run(orchestrator: IndexingOrchestrator, command: str, *args, **kwargs):
    try:
        return await getattr(orchestrator, command)(*args, **kwargs)
    finally:
        await orchestrator.provider.close()


def _print_report(report: IndexingReport):
    table = Table(title=f"📊 {report.server}")
    table.add_column("Source", style="bold")
    table.add_column("Pages", justify="right")
    table.add_column("Chunks", justify="right")
    table.add_column("Embeddings", justify="right")
    table.add_column("Deleted", justify="right")
    table.add_column("Status")

    for result in report.results:
        if result.error:
            status = f"[red]{result.error}[/red]"
        elif result.pending_urls:
            status = f"[yellow]{result.pending_urls} pending[/yellow]"
        else:
            status = "[green]ok[/green]"
        table.add_row(
            result.url,
            str(result.pages_found),
            str(result.chunks_created),
            str(result.embeddings_generated),
            str(result.deleted_chunks),
            status,
        )

    console.print(table)
    console.print(
        f"📚 Totals: {report.total_pages} pages, {report.total_chunks} chunks, "
        f"{report.indexed_vectors} vectors indexed"
    )


@app.command()
def create(
    url: str = typer.Argument(..., help="Documentation site to index"),
    name: str = typer.Option(..., "--name", "-n", help="Server name"),
    depth: Optional[int] = typer.Option(None, "--depth", help="Maximum link depth"),
    max_pages: Optional[int] = typer.Option(None, "--max-pages", help="Maximum pages to crawl"),
):
    """Create a new server from a documentation site"""
    orchestrator = _orchestrator(_settings())
    options = IndexingOptions(max_depth=depth, max_pages=max_pages)
    console.print(f"🔧 Creating server [bold]{name}[/bold] from {url}")
    try:
        report = asyncio.run(_run(orchestrator, "create", name, url, options))
    except (DocslurpError, ValueError) as e:
        console.print(f"❌ Create failed: {e}", style="bold red")
        raise typer.Exit(1)

    _print_report(report)
    console.print(f"✅ Server {name} created", style="bold green")


@app.command()
def add(
    url: str = typer.Argument(..., help="Documentation site to add"),
    to: str = typer.Option(..., "--to", help="Server to add the source to"),
    force: bool = typer.Option(False, "--force", help="Add even if the URL is already a source"),
    resume: bool = typer.Option(False, "--continue", help="Continue an incomplete crawl of this source"),
    depth: Optional[int] = typer.Option(None, "--depth", help="Maximum link depth"),
    max_pages: Optional[int] = typer.Option(None, "--max-pages", help="Maximum pages to crawl"),
):
    """Add a documentation source to an existing server"""
    orchestrator = _orchestrator(_settings())
    options = IndexingOptions(max_depth=depth, max_pages=max_pages, force=force, resume=resume)
    try:
        report = asyncio.run(_run(orchestrator, "add", to, url, options))
    except (DocslurpError, ValueError) as e:
        console.print(f"❌ Add failed: {e}", style="bold red")
        raise typer.Exit(1)

    _print_report(report)
    console.print(f"✅ Source added to {to}", style="bold green")


@app.command()
def update(
    name: str = typer.Argument(..., help="Server to update"),
    url: Optional[str] = typer.Option(None, "--url", help="Only update this source"),
    depth: Optional[int] = typer.Option(None, "--depth", help="Maximum link depth"),
    max_pages: Optional[int] = typer.Option(None, "--max-pages", help="Maximum pages to crawl"),
):
    """Re-crawl and re-index the sources of a server"""
    orchestrator = _orchestrator(_settings())
    options = IndexingOptions(max_depth=depth, max_pages=max_pages)
    try:
        report = asyncio.run(_run(orchestrator, "update", name, url, options))
    except (DocslurpError, ValueError) as e:
        console.print(f"❌ Update failed: {e}", style="bold red")
        raise typer.Exit(1)

    _print_report(report)
    if report.failed:
        console.print(f"⚠️  {len(report.failed)} source(s) could not be updated", style="bold yellow")
    else:
        console.print(f"✅ Server {name} updated", style="bold green")


@app.command()
def sources(name: str = typer.Argument(..., help="Server to inspect")):
    """List the sources of a server"""
    paths = ServerPaths.for_server(_settings().servers_dir, name)
    if not paths.exists():
        console.print(f"❌ {ServerNotFoundError(name)}", style="bold red")
        raise typer.Exit(1)

    config = paths.load_config()
    with VectorStore(paths.db_path, _settings().embedding_dimensions).open(
        legacy_sources=[entry.model_dump() for entry in config.legacy_sources()]
    ) as store:
        rows = store.get_sources()

    table = Table(title=f"📚 Sources of {name}")
    table.add_column("ID", style="dim", justify="right")
    table.add_column("URL", style="bold")
    table.add_column("Pages", justify="right")
    table.add_column("Chunks", justify="right")
    table.add_column("Added")
    table.add_column("Crawl")

    for source in rows:
        crawl = f"{len(source.crawl_state.pending_urls)} pending" if source.resumable else "complete"
        table.add_row(
            str(source.id),
            source.url,
            str(source.page_count),
            str(source.chunk_count),
            source.added_at[:10],
            crawl,
        )
    console.print(table)


@app.command(name="list")
def list_command():
    """List all servers"""
    configs = list_servers(_settings().servers_dir)
    if not configs:
        console.print("No servers yet. Create one with [bold]docslurp create URL --name NAME[/bold]")
        return

    table = Table(title="📚 Servers")
    table.add_column("Name", style="bold")
    table.add_column("Sources", justify="right")
    table.add_column("Pages", justify="right")
    table.add_column("Chunks", justify="right")
    table.add_column("Updated")

    for config in configs:
        table.add_row(
            config.name,
            str(len(config.legacy_sources())),
            str(config.page_count),
            str(config.chunk_count),
            (config.updated_at or config.created_at)[:10],
        )
    console.print(table)


@app.command()
def remove(
    name: str = typer.Argument(..., help="Server to delete"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
):
    """Delete a server and its index"""
    paths = ServerPaths.for_server(_settings().servers_dir, name)
    if not paths.exists():
        console.print(f"❌ {ServerNotFoundError(name)}", style="bold red")
        raise typer.Exit(1)

    if not yes and not typer.confirm(f"Delete server {name} and all its data?"):
        raise typer.Exit(0)
    paths.remove()
    console.print(f"✅ Server {name} removed", style="bold green")


@app.command()
def search(
    name: str = typer.Argument(..., help="Server to search"),
    query: str = typer.Argument(..., help="Search query"),
    limit: int = typer.Option(5, "--limit", "-k", help="Number of results"),
):
    """Search a server's index"""
    orchestrator = _orchestrator(_settings())
    with console.status(f"[bold blue]Searching for: {query}"):
        try:
            results = asyncio.run(_run(orchestrator, "search", name, query, limit))
        except DocslurpError as e:
            console.print(f"❌ Search failed: {e}", style="bold red")
            raise typer.Exit(1)

    console.print(f"\n🔍 Query: [bold]{query}[/bold]")
    table = Table(show_header=True, header_style="bold blue")
    table.add_column("#", style="dim", width=3)
    table.add_column("Page", style="bold")
    table.add_column("Content")
    table.add_column("Distance", justify="right", width=8)

    for i, result in enumerate(results, 1):
        title = result.title
        content = result.content.replace("\n", " ")
        table.add_row(
            str(i),
            f"{title[:40]}...\n{result.url}" if len(title) > 40 else f"{title}\n{result.url}",
            content[:100] + "..." if len(content) > 100 else content,
            f"{result.distance:.3f}",
        )
    console.print(table)


if __name__ == "__main__":
    app()
