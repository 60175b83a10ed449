"""Persistent store for docslurp servers.

Provides URL normalization, the source registry and the SQLite vector store.
"""

from .url_normalizer import normalize_url, same_source
from .models import CrawlState, Source, SearchResult, PageRef
from .vector_store import VectorStore
from .source_registry import SourceRegistry

__all__ = [
    'normalize_url',
    'same_source',
    'CrawlState',
    'Source',
    'SearchResult',
    'PageRef',
    'VectorStore',
    'SourceRegistry'
]
