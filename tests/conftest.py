"""Shared fixtures for docslurp tests."""

import hashlib
import sqlite3
from typing import Dict, List, Optional, Union

import pytest

from config.settings import Settings
from pipelines.chunker import Document
from pipelines.crawler import CrawlOutcome

DIMENSIONS = 8


def _sqlite_vec_available() -> bool:
    try:
        import sqlite_vec
    except ImportError:
        return False
    conn = sqlite3.connect(":memory:")
    try:
        conn.enable_load_extension(True)
        sqlite_vec.load(conn)
        return True
    except (AttributeError, sqlite3.OperationalError):
        return False
    finally:
        conn.close()


requires_sqlite_vec = pytest.mark.skipif(
    not _sqlite_vec_available(), reason="sqlite-vec extension cannot be loaded"
)


def fake_vector(text: str, dimensions: int = DIMENSIONS) -> List[float]:
    """Deterministic unit-ish vector derived from the text."""
    digest = hashlib.sha256(text.encode("utf-8")).digest()
    return [(digest[i] + 1) / 256 for i in range(dimensions)]


class FakeProvider:
    """Embedding provider that records every request."""

    def __init__(self, dimensions: int = DIMENSIONS, errors: Optional[List[Exception]] = None):
        self.dimensions = dimensions
        self.calls: List[List[str]] = []
        self.errors = list(errors or [])
        self.closed = False

    async def embed(self, texts: List[str]) -> List[List[float]]:
        self.calls.append(list(texts))
        if self.errors:
            raise self.errors.pop(0)
        return [fake_vector(text, self.dimensions) for text in texts]

    async def close(self):
        self.closed = True


class FakeCrawler:
    """Crawler returning canned outcomes per seed URL."""

    def __init__(self, sites: Optional[Dict[str, Union[CrawlOutcome, List[Document], Exception]]] = None):
        self.sites = dict(sites or {})
        self.calls: List[dict] = []

    async def crawl(self, seed_url, max_depth, max_pages, pending_urls=None, exclude_urls=None):
        self.calls.append({
            "seed_url": seed_url,
            "max_depth": max_depth,
            "max_pages": max_pages,
            "pending_urls": list(pending_urls) if pending_urls else None,
            "exclude_urls": list(exclude_urls) if exclude_urls else None,
        })
        site = self.sites.get(seed_url, [])
        if isinstance(site, Exception):
            raise site
        if isinstance(site, CrawlOutcome):
            return site
        return CrawlOutcome(documents=list(site))


def make_page(url: str, length: int = 600, title: Optional[str] = None) -> Document:
    """Page of numbered sentences about ``url`` of roughly ``length`` characters."""
    sentences = []
    i = 0
    while sum(len(s) + 1 for s in sentences) < length:
        sentences.append(f"Sentence {i} of {url} explains option {i * 7}.")
        i += 1
    return Document(url=url, title=title or url.rsplit("/", 1)[-1] or url, content=" ".join(sentences))


@pytest.fixture
def settings(tmp_path):
    return Settings(
        home=tmp_path / "home",
        openai_api_key="sk-test",
        embedding_dimensions=DIMENSIONS,
        embedding_batch_size=25,
        base_delay=0.01,
        batch_delay=0.0,
    )


@pytest.fixture
def provider():
    return FakeProvider()
