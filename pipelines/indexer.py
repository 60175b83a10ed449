"""Indexing orchestration for docslurp servers.

Drives crawl -> chunk -> embed -> insert for the ``create``, ``add`` and
``update`` commands and rebuilds the similarity index exactly once per run.
"""

import asyncio
import logging
import os
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

from config.server_config import ServerConfig, ServerPaths, SourceEntry, utc_now
from config.settings import Settings
from indexer.models import SearchResult, Source
from indexer.source_registry import SourceRegistry
from indexer.vector_store import VectorStore

from .chunker import Document, DocumentChunk, DocumentChunker, count_pages
from .crawler import Crawler, CrawlOutcome, WebCrawler
from .embeddings import EmbeddingBatcher, EmbeddingProvider, Sleep, embed_query
from .errors import (
    EmptyCrawlError,
    NoSourcesError,
    NothingToResumeError,
    ServerBusyError,
    ServerExistsError,
    ServerNotFoundError,
    SourceNotFoundError,
)

logger = logging.getLogger(__name__)

Progress = Callable[[str], None]


@dataclass
class IndexingOptions:
    """Per-run crawl limits and ``add`` flags; None limits fall back to settings."""
    max_depth: Optional[int] = None
    max_pages: Optional[int] = None
    force: bool = False
    resume: bool = False


@dataclass
class SourceResult:
    """What one run did to one source."""
    source_id: int
    url: str
    pages_found: int = 0
    chunks_created: int = 0
    embeddings_generated: int = 0
    deleted_chunks: int = 0
    pending_urls: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class IndexingReport:
    """Summary of an indexing run."""
    server: str
    results: List[SourceResult] = field(default_factory=list)
    total_pages: int = 0
    total_chunks: int = 0
    indexed_vectors: int = 0

    @property
    def failed(self) -> List[SourceResult]:
        return [result for result in self.results if not result.ok]


@contextmanager
def server_lock(paths: ServerPaths):
    """Hold the server's lock file for the duration of a mutating run."""
    paths.root.mkdir(parents=True, exist_ok=True)
    try:
        fd = os.open(paths.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
    except FileExistsError:
        raise ServerBusyError(paths.name)

    try:
        os.write(fd, str(os.getpid()).encode())
        os.close(fd)
        yield
    finally:
        try:
            paths.lock_path.unlink()
        except FileNotFoundError:
            logger.warning(f"Lock file {paths.lock_path} vanished during run")


class IndexingOrchestrator:
    """Runs indexing commands against named servers."""

    def __init__(self,
                 settings: Settings,
                 provider: EmbeddingProvider,
                 crawler: Optional[Crawler] = None,
                 sleep: Sleep = asyncio.sleep,
                 progress: Optional[Progress] = None):
        """Initialize orchestrator.

        Args:
            settings: Runtime settings
            provider: Embedding provider shared by every run
            crawler: Crawler backend (defaults to ``WebCrawler``)
            sleep: Awaitable used for embedding backoff and batch pauses
            progress: Called with a one-line summary after each pipeline step
        """
        self.settings = settings
        self.provider = provider
        self.crawler = crawler or WebCrawler(request_timeout=settings.request_timeout)
        self.chunker = DocumentChunker(
            chunk_size=settings.chunk_size,
            chunk_overlap=settings.chunk_overlap,
            min_chunk_size=settings.min_chunk_size,
        )
        self.batcher = EmbeddingBatcher(
            provider,
            batch_size=settings.embedding_batch_size,
            max_retries=settings.max_retries,
            base_delay=settings.base_delay,
            batch_delay=settings.batch_delay,
            dimensions=settings.embedding_dimensions,
            sleep=sleep,
        )
        self._progress = progress

    def _report(self, message: str):
        logger.info(message)
        if self._progress:
            self._progress(message)

    def paths(self, name: str) -> ServerPaths:
        return ServerPaths.for_server(self.settings.servers_dir, name)

    def _open_store(self, paths: ServerPaths, config: ServerConfig) -> VectorStore:
        store = VectorStore(paths.db_path, self.settings.embedding_dimensions)
        legacy = [entry.model_dump() for entry in config.legacy_sources()]
        return store.open(legacy_sources=legacy)

    # Pipeline steps

    async def _crawl(self, url: str, options: IndexingOptions,
                     pending_urls: Optional[List[str]] = None,
                     exclude_urls: Optional[List[str]] = None) -> CrawlOutcome:
        max_depth = options.max_depth if options.max_depth is not None else self.settings.max_depth
        max_pages = options.max_pages if options.max_pages is not None else self.settings.max_pages

        outcome = await self.crawler.crawl(
            url, max_depth, max_pages, pending_urls=pending_urls, exclude_urls=exclude_urls
        )
        self._report(f"Crawled {url}: {len(outcome.documents)} pages found")
        if outcome.max_pages_reached and outcome.pending_urls:
            self._report(
                f"Page limit reached with {len(outcome.pending_urls)} URLs pending; "
                f"use --continue to resume"
            )
        return outcome

    async def _prepare(self, documents: List[Document]) -> Tuple[List[DocumentChunk], int]:
        chunks = self.chunker.chunk_documents(documents)
        self._report(f"Created {len(chunks)} chunks from {count_pages(chunks)} pages")
        embedded = await self.batcher.embed(chunks)
        self._report(f"Generated {embedded} embeddings")
        return chunks, embedded

    def _store_chunks(self, store: VectorStore, registry: SourceRegistry, source: Source,
                      chunks: List[DocumentChunk], outcome: CrawlOutcome,
                      replace: bool = False) -> int:
        """Write one source's chunks in a single transaction.

        Returns the number of chunks deleted first when ``replace`` is set.
        """
        deleted = 0
        with store.transaction():
            if replace:
                deleted = store.delete_chunks_for_source(source.id)
            store.insert_chunks(chunks, source.id)
            registry.refresh_counts(source.id)
            registry.record_crawl(source.id, outcome.pending_urls, outcome.max_pages_reached)
        return deleted

    def _finish(self, store: VectorStore, registry: SourceRegistry,
                paths: ServerPaths, report: IndexingReport) -> IndexingReport:
        """Rebuild the similarity index and refresh ``config.json`` totals."""
        report.indexed_vectors = store.rebuild_similarity_index()
        stats = store.stats()
        report.total_pages = stats["page_count"]
        report.total_chunks = stats["chunk_count"]

        config = paths.load_config()
        sources = registry.all()
        config.page_count = report.total_pages
        config.chunk_count = report.total_chunks
        config.sources = [SourceEntry(url=s.url, added_at=s.added_at) for s in sources]
        if not config.source_url and sources:
            config.source_url = sources[0].url
        config.updated_at = utc_now()
        paths.save_config(config)

        self._report(
            f"Server {report.server}: {report.total_pages} pages, "
            f"{report.total_chunks} chunks, {report.indexed_vectors} vectors indexed"
        )
        return report

    # Commands

    async def create(self, name: str, url: str,
                     options: Optional[IndexingOptions] = None) -> IndexingReport:
        """Create a new server from a single source URL.

        Nothing is written to disk unless the crawl finds content and every
        chunk is embedded.
        """
        options = options or IndexingOptions()
        paths = self.paths(name)
        if paths.exists():
            raise ServerExistsError(name)

        outcome = await self._crawl(url, options)
        if not outcome.documents:
            raise EmptyCrawlError(url)
        chunks, embedded = await self._prepare(outcome.documents)

        report = IndexingReport(server=name)
        try:
            with server_lock(paths):
                # Another run may have created the server while we crawled.
                if paths.config_path.exists() or paths.db_path.exists():
                    raise ServerExistsError(name)

                created_at = utc_now()
                config = ServerConfig(name=name, source_url=url, created_at=created_at, sources=[])
                paths.save_config(config)

                with self._open_store(paths, config) as store:
                    registry = SourceRegistry(store)
                    source = store.create_source(url, added_at=created_at)
                    self._store_chunks(store, registry, source, chunks, outcome)
                    report.results.append(SourceResult(
                        source_id=source.id,
                        url=url,
                        pages_found=len(outcome.documents),
                        chunks_created=len(chunks),
                        embeddings_generated=embedded,
                        pending_urls=len(outcome.pending_urls),
                    ))
                    self._finish(store, registry, paths, report)
        except (ServerBusyError, ServerExistsError):
            raise
        except BaseException:
            logger.error(f"Creating server {name} failed, removing {paths.root}")
            paths.remove()
            raise

        return report

    async def add(self, name: str, url: str,
                  options: Optional[IndexingOptions] = None) -> IndexingReport:
        """Index ``url`` into an existing server.

        A URL already registered (after normalization) is re-indexed in
        place unless ``force`` asks for a duplicate source. ``resume``
        continues the source's incomplete crawl and appends to its chunks.
        """
        options = options or IndexingOptions()
        paths = self.paths(name)
        if not paths.exists():
            raise ServerNotFoundError(name)

        report = IndexingReport(server=name)
        with server_lock(paths):
            config = paths.load_config()
            with self._open_store(paths, config) as store:
                registry = SourceRegistry(store)
                try:
                    if options.resume:
                        result = await self._resume_source(store, registry, url, options)
                    else:
                        result = await self._add_source(store, registry, url, options)
                    report.results.append(result)
                finally:
                    self._finish(store, registry, paths, report)
        return report

    async def _add_source(self, store: VectorStore, registry: SourceRegistry,
                          url: str, options: IndexingOptions) -> SourceResult:
        existing = None if options.force else registry.find(url)
        if existing is not None:
            self._report(f"Source {existing.url} already indexed; re-indexing in place")

        outcome = await self._crawl(url, options)
        if not outcome.documents:
            raise EmptyCrawlError(url)
        chunks, embedded = await self._prepare(outcome.documents)

        if existing is not None:
            source, replace = existing, True
        else:
            source, _ = registry.register(url, force=options.force)
            replace = False

        deleted = self._store_chunks(store, registry, source, chunks, outcome, replace=replace)
        if deleted:
            self._report(f"Replaced {deleted} existing chunks")
        return SourceResult(
            source_id=source.id,
            url=source.url,
            pages_found=len(outcome.documents),
            chunks_created=len(chunks),
            embeddings_generated=embedded,
            deleted_chunks=deleted,
            pending_urls=len(outcome.pending_urls),
        )

    async def _resume_source(self, store: VectorStore, registry: SourceRegistry,
                             url: str, options: IndexingOptions) -> SourceResult:
        source = registry.find(url)
        if source is None or not source.resumable:
            raise NothingToResumeError(url)

        pending = source.crawl_state.pending_urls
        self._report(f"Continuing crawl of {source.url} from {len(pending)} pending URLs")
        outcome = await self._crawl(
            source.url, options,
            pending_urls=pending,
            exclude_urls=store.page_urls_for_source(source.id),
        )
        chunks, embedded = await self._prepare(outcome.documents)
        self._store_chunks(store, registry, source, chunks, outcome)
        return SourceResult(
            source_id=source.id,
            url=source.url,
            pages_found=len(outcome.documents),
            chunks_created=len(chunks),
            embeddings_generated=embedded,
            pending_urls=len(outcome.pending_urls),
        )

    async def update(self, name: str, url: Optional[str] = None,
                     options: Optional[IndexingOptions] = None) -> IndexingReport:
        """Re-index one source, or every source of the server.

        A source whose crawl fails or finds nothing is reported and skipped;
        its old chunks stay deleted. Embedding failures end the run. The
        similarity index is rebuilt once either way. ``url`` selects every
        source with that normalized URL, forced duplicates included.
        """
        options = options or IndexingOptions()
        paths = self.paths(name)
        if not paths.exists():
            raise ServerNotFoundError(name)

        report = IndexingReport(server=name)
        with server_lock(paths):
            config = paths.load_config()
            with self._open_store(paths, config) as store:
                registry = SourceRegistry(store)
                sources = registry.select(url)
                if url is not None and not sources:
                    raise SourceNotFoundError(url)
                if not sources:
                    raise NoSourcesError(name)

                try:
                    for source in sources:
                        report.results.append(await self._update_source(store, registry, source, options))
                finally:
                    self._finish(store, registry, paths, report)

        for result in report.failed:
            logger.warning(f"Source {result.url} was not updated: {result.error}")
        return report

    async def _update_source(self, store: VectorStore, registry: SourceRegistry,
                             source: Source, options: IndexingOptions) -> SourceResult:
        result = SourceResult(source_id=source.id, url=source.url)
        result.deleted_chunks = store.delete_chunks_for_source(source.id)
        self._report(f"Deleted {result.deleted_chunks} chunks of {source.url}")

        try:
            outcome = await self._crawl(source.url, options)
            if not outcome.documents:
                raise EmptyCrawlError(source.url)
        except Exception as e:
            logger.error(f"Crawl of {source.url} failed: {e}")
            result.error = str(e)
            registry.refresh_counts(source.id)
            return result

        try:
            chunks, embedded = await self._prepare(outcome.documents)
            self._store_chunks(store, registry, source, chunks, outcome)
        except BaseException:
            # Old chunks are already deleted; recount before propagating.
            registry.refresh_counts(source.id)
            raise
        result.pages_found = len(outcome.documents)
        result.chunks_created = len(chunks)
        result.embeddings_generated = embedded
        result.pending_urls = len(outcome.pending_urls)
        return result

    async def search(self, name: str, query: str, limit: int = 5) -> List[SearchResult]:
        """Embed ``query`` and return the nearest chunks of a server."""
        paths = self.paths(name)
        if not paths.exists():
            raise ServerNotFoundError(name)

        vector = await embed_query(self.provider, query)
        with self._open_store(paths, paths.load_config()) as store:
            return store.find_similar(vector, limit)
