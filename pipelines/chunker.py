"""Document chunking pipeline for docslurp.

Splits crawled pages into overlapping character windows for embedding.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class Document:
    """Plain-text page produced by a crawler."""
    url: str
    title: str
    content: str


@dataclass
class DocumentChunk:
    """Represents a chunk of a document."""
    content: str
    url: str
    title: str
    chunk_index: int
    embedding: Optional[List[float]] = field(default=None, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "content": self.content,
            "url": self.url,
            "title": self.title,
            "chunk_index": self.chunk_index,
        }


class DocumentChunker:
    """Chunks documents into overlapping windows.

    Windows end on the last period or newline in their second half when
    there is one, otherwise they are cut at ``chunk_size`` characters.
    Consecutive windows share ``chunk_overlap`` characters.
    """

    # ~4 characters per token for English text
    chars_per_token = 4

    def __init__(self,
                 chunk_size: int = 2000,
                 chunk_overlap: int = 200,
                 min_chunk_size: int = 50):
        """Initialize chunker.

        Args:
            chunk_size: Target size for each chunk in characters
            chunk_overlap: Number of characters to overlap between chunks
            min_chunk_size: Minimum size for a split chunk to be kept
        """
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        if not 0 <= chunk_overlap < chunk_size:
            raise ValueError("chunk_overlap must be non-negative and smaller than chunk_size")
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.min_chunk_size = min_chunk_size

    @classmethod
    def from_tokens(cls, max_tokens: int = 500, overlap_tokens: int = 50, min_chunk_size: int = 50) -> "DocumentChunker":
        return cls(max_tokens * cls.chars_per_token, overlap_tokens * cls.chars_per_token, min_chunk_size)

    def _find_boundary(self, text: str, start: int, end: int) -> int:
        """Move ``end`` back to just after a sentence or line break if one is late enough."""
        boundary = max(text.rfind(".", start, end), text.rfind("\n", start, end))
        if boundary > start + self.chunk_size / 2:
            return boundary + 1
        return end

    def split_text(self, text: str) -> List[str]:
        """Split one text into window strings."""
        if len(text) <= self.chunk_size:
            stripped = text.strip()
            return [stripped] if stripped else []

        pieces = []
        start = 0
        length = len(text)

        while start < length:
            end = start + self.chunk_size
            if end < length:
                end = self._find_boundary(text, start, end)
            end = min(end, length)

            piece = text[start:end].strip()
            if len(piece) >= self.min_chunk_size:
                pieces.append(piece)

            if end >= length:
                break
            start = max(end - self.chunk_overlap, start + 1)

        return pieces

    def chunk_document(self, document: Document) -> List[DocumentChunk]:
        return [
            DocumentChunk(
                content=piece,
                url=document.url,
                title=document.title,
                chunk_index=index,
            )
            for index, piece in enumerate(self.split_text(document.content))
        ]

    def chunk_documents(self, documents: Iterable[Document]) -> List[DocumentChunk]:
        chunks: List[DocumentChunk] = []
        for document in documents:
            chunks.extend(self.chunk_document(document))
        logger.debug(f"Created {len(chunks)} chunks")
        return chunks


def chunk_documents(documents: Iterable[Document],
                    chunk_size: int = 2000,
                    chunk_overlap: int = 200,
                    min_chunk_size: int = 50) -> List[DocumentChunk]:
    """Convenience function to chunk documents with the default window."""
    chunker = DocumentChunker(chunk_size, chunk_overlap, min_chunk_size)
    return chunker.chunk_documents(documents)


def count_pages(chunks: Iterable[DocumentChunk]) -> int:
    """Number of distinct pages the chunks came from."""
    return len({chunk.url for chunk in chunks})
