"""Pipelines package for docslurp.

Provides crawling, chunking, embedding and indexing orchestration.
"""

from .errors import (
    DocslurpError,
    EmbeddingError,
    RateLimitError,
    RateLimitExceededError,
    EmbeddingProviderError,
    CrawlError,
    EmptyCrawlError,
    ServerExistsError,
    ServerNotFoundError,
    ServerBusyError,
    SourceNotFoundError,
    NothingToResumeError,
    NoSourcesError
)
from .crawler import WebCrawler, CrawlOutcome, CrawlStats, crawl_site
from .chunker import Document, DocumentChunker, DocumentChunk, chunk_documents
from .embeddings import EmbeddingBatcher, OpenAIEmbeddingProvider, embed_query
from .indexer import IndexingOrchestrator, IndexingOptions, IndexingReport, SourceResult, server_lock

__all__ = [
    # Errors
    'DocslurpError',
    'EmbeddingError',
    'RateLimitError',
    'RateLimitExceededError',
    'EmbeddingProviderError',
    'CrawlError',
    'EmptyCrawlError',
    'ServerExistsError',
    'ServerNotFoundError',
    'ServerBusyError',
    'SourceNotFoundError',
    'NothingToResumeError',
    'NoSourcesError',

    # Crawler
    'WebCrawler',
    'CrawlOutcome',
    'CrawlStats',
    'crawl_site',

    # Chunker
    'Document',
    'DocumentChunker',
    'DocumentChunk',
    'chunk_documents',

    # Embeddings
    'EmbeddingBatcher',
    'OpenAIEmbeddingProvider',
    'embed_query',

    # Indexer
    'IndexingOrchestrator',
    'IndexingOptions',
    'IndexingReport',
    'SourceResult',
    'server_lock'
]
