"""Records read from and written to a server store."""

from __future__ import annotations
import json
import logging
from dataclasses import dataclass, field, asdict
from typing import List, Optional, Dict, Any

logger = logging.getLogger(__name__)


@dataclass
class CrawlState:
    """Resume point of an incomplete crawl."""
    pending_urls: List[str] = field(default_factory=list)
    max_pages_reached: bool = False

    def to_json(self) -> str:
        return json.dumps({
            "pendingUrls": list(self.pending_urls),
            "maxPagesReached": self.max_pages_reached,
        })

    @classmethod
    def from_json(cls, raw: Optional[str]) -> Optional["CrawlState"]:
        """Parse the stored form; unreadable state counts as no state."""
        if not raw:
            return None
        try:
            data = json.loads(raw)
            pending = data.get("pendingUrls") or []
            if not isinstance(pending, list):
                raise ValueError("pendingUrls is not a list")
            return cls(
                pending_urls=[str(u) for u in pending],
                max_pages_reached=bool(data.get("maxPagesReached", False)),
            )
        except (ValueError, AttributeError) as e:
            logger.warning(f"Ignoring unreadable crawl state: {e}")
            return None


@dataclass
class Source:
    """One registered origin URL of a server."""
    id: int
    url: str
    added_at: str
    page_count: int = 0
    chunk_count: int = 0
    crawl_state: Optional[CrawlState] = None

    @property
    def resumable(self) -> bool:
        return bool(self.crawl_state and self.crawl_state.pending_urls)

    @classmethod
    def from_row(cls, row) -> "Source":
        return cls(
            id=row["id"],
            url=row["url"],
            added_at=row["added_at"],
            page_count=row["page_count"] or 0,
            chunk_count=row["chunk_count"] or 0,
            crawl_state=CrawlState.from_json(row["crawl_state"]),
        )


@dataclass
class SearchResult:
    """Chunk returned by a nearest-neighbor lookup."""
    chunk_id: int
    content: str
    url: str
    title: str
    distance: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PageRef:
    url: str
    title: str
