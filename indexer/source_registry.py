"""Source registration with deduplication by normalized URL."""

import logging
from typing import List, Optional, Sequence, Tuple

from .models import CrawlState, Source
from .vector_store import VectorStore

logger = logging.getLogger(__name__)


class SourceRegistry:
    """Tracks the sources of one server store.

    All lookups go through URL normalization, so ``https://Docs.example.com/``
    and ``https://docs.example.com?utm_source=x`` name the same source.
    """

    def __init__(self, store: VectorStore):
        self.store = store

    def all(self) -> List[Source]:
        return self.store.get_sources()

    def get(self, source_id: int) -> Optional[Source]:
        return self.store.get_source(source_id)

    def find(self, url: str) -> Optional[Source]:
        return self.store.find_source_by_url(url)

    def register(self, url: str, force: bool = False) -> Tuple[Source, bool]:
        """Return the source for ``url`` and whether it was newly created.

        With ``force`` a new row is always created, even when a source with
        the same normalized URL already exists.
        """
        if not force:
            existing = self.find(url)
            if existing is not None:
                return existing, False
        elif self.find(url) is not None:
            logger.warning(f"Registering duplicate source for {url}")
        return self.store.create_source(url), True

    def select(self, url: Optional[str] = None) -> List[Source]:
        """Sources matching ``url`` (forced duplicates included), or all when ``url`` is None."""
        if url is None:
            return self.all()
        return self.store.find_sources_by_url(url)

    def record_crawl(self, source_id: int, pending_urls: Sequence[str], max_pages_reached: bool):
        """Persist the resume point of an incomplete crawl, or clear it."""
        if max_pages_reached and pending_urls:
            state = CrawlState(pending_urls=list(pending_urls), max_pages_reached=True)
            self.store.save_crawl_state(source_id, state)
            logger.info(f"Saved crawl state for source {source_id}: {len(state.pending_urls)} pending URLs")
        else:
            self.store.clear_crawl_state(source_id)

    def refresh_counts(self, source_id: int) -> Source:
        return self.store.refresh_source_counts(source_id)
