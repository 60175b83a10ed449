"""Tests for the embedding batcher and the OpenAI provider adapter."""

import math
from unittest.mock import AsyncMock, Mock, call

import httpx
import openai
import pytest

from pipelines.chunker import DocumentChunk
from pipelines.embeddings import EmbeddingBatcher, OpenAIEmbeddingProvider, embed_query
from pipelines.errors import EmbeddingProviderError, RateLimitError, RateLimitExceededError

from conftest import DIMENSIONS, FakeProvider


def make_chunks(count):
    return [
        DocumentChunk(content=f"chunk {i}", url="https://docs.example.com", title="Docs", chunk_index=i)
        for i in range(count)
    ]


class TestEmbeddingBatcher:

    @pytest.fixture
    def sleep(self):
        return AsyncMock()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("count,batch_size", [(60, 25), (25, 25), (1, 25), (10, 3)])
    async def test_provider_calls_per_batch(self, sleep, count, batch_size):
        provider = FakeProvider()
        batcher = EmbeddingBatcher(provider, batch_size=batch_size, batch_delay=0.5, sleep=sleep)
        chunks = make_chunks(count)

        generated = await batcher.embed(chunks)

        assert generated == count
        assert len(provider.calls) == math.ceil(count / batch_size)
        assert all(len(texts) <= batch_size for texts in provider.calls)
        assert [t for texts in provider.calls for t in texts] == [c.content for c in chunks]
        assert all(len(c.embedding) == DIMENSIONS for c in chunks)
        assert sleep.await_args_list == [call(0.5)] * (len(provider.calls) - 1)

    @pytest.mark.asyncio
    async def test_no_chunks_no_calls(self, sleep):
        provider = FakeProvider()
        assert await EmbeddingBatcher(provider, sleep=sleep).embed([]) == 0
        assert provider.calls == []
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self, sleep):
        provider = FakeProvider(errors=[RateLimitError() for _ in range(10)])
        batcher = EmbeddingBatcher(provider, max_retries=5, base_delay=1.0, sleep=sleep)

        with pytest.raises(RateLimitExceededError, match="after 5 retries"):
            await batcher.embed(make_chunks(3))

        assert len(provider.calls) == 5
        delays = [c.args[0] for c in sleep.await_args_list]
        assert delays == [1.0, 2.0, 4.0, 8.0]
        assert delays == sorted(delays)

    @pytest.mark.asyncio
    async def test_recovers_after_rate_limit(self, sleep):
        provider = FakeProvider(errors=[RateLimitError(), RateLimitError()])
        batcher = EmbeddingBatcher(provider, max_retries=5, base_delay=1.0, sleep=sleep)
        chunks = make_chunks(2)

        assert await batcher.embed(chunks) == 2
        assert len(provider.calls) == 3
        assert sleep.await_args_list == [call(1.0), call(2.0)]
        assert all(c.embedding is not None for c in chunks)

    @pytest.mark.asyncio
    async def test_retry_hint_is_respected(self, sleep):
        provider = FakeProvider(errors=[RateLimitError(retry_after=3.0), RateLimitError(retry_after=0.1)])
        batcher = EmbeddingBatcher(provider, base_delay=1.0, sleep=sleep)

        await batcher.embed(make_chunks(1))

        # The second delay never drops below the first.
        assert sleep.await_args_list == [call(3.0), call(3.0)]

    @pytest.mark.asyncio
    async def test_provider_errors_are_not_retried(self, sleep):
        provider = FakeProvider(errors=[EmbeddingProviderError("invalid api key")])
        batcher = EmbeddingBatcher(provider, sleep=sleep)

        with pytest.raises(EmbeddingProviderError, match="invalid api key"):
            await batcher.embed(make_chunks(4))

        assert len(provider.calls) == 1
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_wrong_vector_count(self, sleep):
        provider = Mock(dimensions=DIMENSIONS)
        provider.embed = AsyncMock(return_value=[[0.0] * DIMENSIONS])
        batcher = EmbeddingBatcher(provider, sleep=sleep)

        with pytest.raises(EmbeddingProviderError, match="1 embeddings for 2 texts"):
            await batcher.embed(make_chunks(2))

    @pytest.mark.asyncio
    async def test_wrong_dimensions(self, sleep):
        provider = Mock(dimensions=DIMENSIONS)
        provider.embed = AsyncMock(return_value=[[0.0] * 3])
        batcher = EmbeddingBatcher(provider, sleep=sleep)

        with pytest.raises(EmbeddingProviderError, match="3-dimensional"):
            await batcher.embed(make_chunks(1))

    def test_backoff_doubles(self):
        batcher = EmbeddingBatcher(FakeProvider(), base_delay=0.5)
        assert [batcher.backoff_delay(n) for n in (1, 2, 3)] == [0.5, 1.0, 2.0]

    def test_invalid_batch_size(self):
        with pytest.raises(ValueError):
            EmbeddingBatcher(FakeProvider(), batch_size=0)


class TestOpenAIEmbeddingProvider:

    @pytest.fixture
    def client(self):
        client = Mock()
        client.embeddings.create = AsyncMock()
        client.close = AsyncMock()
        return client

    @staticmethod
    def _response(status, headers=None):
        request = httpx.Request("POST", "https://api.openai.com/v1/embeddings")
        return httpx.Response(status, headers=headers or {}, request=request)

    @pytest.mark.asyncio
    async def test_returns_vectors_in_input_order(self, client):
        client.embeddings.create.return_value = Mock(data=[
            Mock(index=1, embedding=[0.2, 0.2]),
            Mock(index=0, embedding=[0.1, 0.1]),
        ])
        provider = OpenAIEmbeddingProvider(model="text-embedding-3-small", dimensions=2, client=client)

        vectors = await provider.embed(["first", "second"])

        assert vectors == [[0.1, 0.1], [0.2, 0.2]]
        client.embeddings.create.assert_awaited_once_with(
            model="text-embedding-3-small", input=["first", "second"]
        )

    @pytest.mark.asyncio
    async def test_rate_limit_carries_hint(self, client):
        client.embeddings.create.side_effect = openai.RateLimitError(
            "Rate limit reached",
            response=self._response(429, {"retry-after-ms": "1500"}),
            body=None,
        )
        provider = OpenAIEmbeddingProvider(client=client)

        with pytest.raises(RateLimitError) as exc_info:
            await provider.embed(["text"])
        assert exc_info.value.retry_after == pytest.approx(1.6)

    @pytest.mark.asyncio
    async def test_rate_limit_with_seconds_hint(self, client):
        client.embeddings.create.side_effect = openai.RateLimitError(
            "Rate limit reached",
            response=self._response(429, {"retry-after": "2"}),
            body=None,
        )
        provider = OpenAIEmbeddingProvider(client=client)

        with pytest.raises(RateLimitError) as exc_info:
            await provider.embed(["text"])
        assert exc_info.value.retry_after == 2.0

    @pytest.mark.asyncio
    async def test_other_errors_are_fatal(self, client):
        client.embeddings.create.side_effect = openai.AuthenticationError(
            "Incorrect API key", response=self._response(401), body=None
        )
        provider = OpenAIEmbeddingProvider(client=client)

        with pytest.raises(EmbeddingProviderError, match="Incorrect API key"):
            await provider.embed(["text"])

    @pytest.mark.asyncio
    async def test_close(self, client):
        await OpenAIEmbeddingProvider(client=client).close()
        client.close.assert_awaited_once()


@pytest.mark.asyncio
async def test_embed_query():
    vector = await embed_query(FakeProvider(), "how do I install?")
    assert len(vector) == DIMENSIONS
