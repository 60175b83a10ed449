"""Embedding generation for docslurp.

``EmbeddingBatcher`` sends chunk texts to an embedding provider in bounded
batches and recovers from rate limiting with exponential backoff. Providers
are injected, so the batcher never owns a client of its own.
"""

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Protocol, Sequence

import openai

from .chunker import DocumentChunk
from .errors import EmbeddingProviderError, RateLimitError, RateLimitExceededError

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


class EmbeddingProvider(Protocol):
    """Turns texts into vectors, one per text, in input order.

    Raises ``RateLimitError`` when throttled and ``EmbeddingProviderError``
    for anything that retrying will not fix.
    """
    dimensions: int

    async def embed(self, texts: List[str]) -> List[List[float]]:
        ...


def _retry_after_seconds(error: openai.RateLimitError) -> Optional[float]:
    """Read the server's retry hint from a 429 response."""
    response = getattr(error, "response", None)
    headers = getattr(response, "headers", None) or {}

    retry_after_ms = headers.get("retry-after-ms")
    if retry_after_ms:
        try:
            return (float(retry_after_ms) + 100) / 1000
        except ValueError:
            logger.debug(f"Unparseable retry-after-ms header: {retry_after_ms}")

    retry_after = headers.get("retry-after")
    if retry_after:
        try:
            return float(retry_after)
        except ValueError:
            logger.debug(f"Unparseable retry-after header: {retry_after}")
    return None


class OpenAIEmbeddingProvider:
    """Embedding provider backed by the OpenAI embeddings endpoint."""

    def __init__(self,
                 api_key: Optional[str] = None,
                 model: str = "text-embedding-3-small",
                 dimensions: int = 1536,
                 client: Optional[openai.AsyncOpenAI] = None):
        self.model = model
        self.dimensions = dimensions
        # EmbeddingBatcher owns retries.
        self.client = client or openai.AsyncOpenAI(api_key=api_key, max_retries=0)

    async def embed(self, texts: List[str]) -> List[List[float]]:
        try:
            response = await self.client.embeddings.create(model=self.model, input=texts)
        except openai.RateLimitError as e:
            raise RateLimitError(str(e), retry_after=_retry_after_seconds(e)) from e
        except openai.OpenAIError as e:
            raise EmbeddingProviderError(str(e)) from e

        data = sorted(response.data, key=lambda item: item.index)
        return [item.embedding for item in data]

    async def close(self):
        await self.client.close()


class EmbeddingBatcher:
    """Attaches embeddings to chunks, one provider request per batch."""

    def __init__(self,
                 provider: EmbeddingProvider,
                 batch_size: int = 25,
                 max_retries: int = 5,
                 base_delay: float = 1.0,
                 batch_delay: float = 0.5,
                 dimensions: Optional[int] = None,
                 sleep: Sleep = asyncio.sleep):
        """Initialize batcher.

        Args:
            provider: Embedding provider to call
            batch_size: Maximum texts per provider request
            max_retries: Attempts per batch before giving up on rate limits
            base_delay: First backoff delay in seconds, doubled per retry
            batch_delay: Pause between successive batches in seconds
            dimensions: Expected vector size (defaults to the provider's)
            sleep: Awaitable used for every pause
        """
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        if max_retries <= 0:
            raise ValueError("max_retries must be positive")
        self.provider = provider
        self.batch_size = batch_size
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.batch_delay = batch_delay
        self.dimensions = dimensions or getattr(provider, "dimensions", None)
        self._sleep = sleep

    def backoff_delay(self, attempt: int) -> float:
        """Delay after the ``attempt``-th rate-limited call (1-based)."""
        return self.base_delay * (2 ** (attempt - 1))

    async def _embed_batch(self, texts: List[str]) -> List[List[float]]:
        previous_delay = 0.0
        for attempt in range(1, self.max_retries + 1):
            try:
                return await self.provider.embed(texts)
            except RateLimitError as e:
                if attempt >= self.max_retries:
                    logger.error(f"Rate limited on all {self.max_retries} attempts")
                    raise RateLimitExceededError(self.max_retries) from e

                delay = max(self.backoff_delay(attempt), e.retry_after or 0.0, previous_delay)
                previous_delay = delay
                logger.warning(
                    f"Rate limited, retrying in {delay:.2f}s (attempt {attempt}/{self.max_retries})"
                )
                await self._sleep(delay)
        raise AssertionError("unreachable")

    def _check_vectors(self, vectors: Sequence[Sequence[float]], expected: int):
        if len(vectors) != expected:
            raise EmbeddingProviderError(
                f"Provider returned {len(vectors)} embeddings for {expected} texts"
            )
        if self.dimensions:
            for vector in vectors:
                if len(vector) != self.dimensions:
                    raise EmbeddingProviderError(
                        f"Provider returned a {len(vector)}-dimensional embedding, "
                        f"expected {self.dimensions}"
                    )

    async def embed(self, chunks: Sequence[DocumentChunk]) -> int:
        """Attach an embedding to every chunk, in place.

        Returns the number of embeddings generated. On failure some chunks
        may already carry embeddings; callers must not store any of them.
        """
        total = len(chunks)
        for start in range(0, total, self.batch_size):
            batch = chunks[start:start + self.batch_size]
            vectors = await self._embed_batch([chunk.content for chunk in batch])
            self._check_vectors(vectors, len(batch))

            for chunk, vector in zip(batch, vectors):
                chunk.embedding = list(vector)
            logger.debug(f"Embedded {min(start + len(batch), total)}/{total} chunks")

            if start + self.batch_size < total:
                await self._sleep(self.batch_delay)

        return total


async def embed_query(provider: EmbeddingProvider, text: str) -> List[float]:
    """Embed a single search query."""
    vectors = await provider.embed([text])
    if len(vectors) != 1:
        raise EmbeddingProviderError(f"Provider returned {len(vectors)} embeddings for 1 text")
    return list(vectors[0])
