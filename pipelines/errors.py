"""Exceptions raised by the docslurp pipelines."""

from typing import Optional


class DocslurpError(Exception):
    """Base class for docslurp errors."""


class EmbeddingError(DocslurpError):
    """Embedding generation failed."""


class RateLimitError(EmbeddingError):
    """The provider asked us to slow down.

    ``retry_after`` is the provider's hint in seconds, when it sent one.
    """

    def __init__(self, message: str = "Rate limited", retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class RateLimitExceededError(EmbeddingError):
    """Rate limiting persisted through every retry."""

    def __init__(self, attempts: int):
        super().__init__(f"Rate limit exceeded after {attempts} retries")
        self.attempts = attempts


class EmbeddingProviderError(EmbeddingError):
    """Non-transient provider failure such as bad credentials or input."""


class CrawlError(DocslurpError):
    """A whole crawl failed."""


class EmptyCrawlError(CrawlError):
    """A crawl produced no usable documents."""

    def __init__(self, url: str):
        super().__init__(f"No content found at {url}")
        self.url = url


class ServerExistsError(DocslurpError):
    def __init__(self, name: str):
        super().__init__(f'Server "{name}" already exists')
        self.name = name


class ServerNotFoundError(DocslurpError):
    def __init__(self, name: str):
        super().__init__(f'Server "{name}" doesn\'t exist')
        self.name = name


class ServerBusyError(DocslurpError):
    """Another indexing run holds the server lock."""

    def __init__(self, name: str):
        super().__init__(f'Server "{name}" is being indexed by another process')
        self.name = name


class SourceNotFoundError(DocslurpError):
    def __init__(self, url: str):
        super().__init__(f'Source "{url}" not found')
        self.url = url


class NothingToResumeError(DocslurpError):
    def __init__(self, url: str):
        super().__init__(f"No pending crawl to continue for {url}")
        self.url = url


class NoSourcesError(DocslurpError):
    def __init__(self, name: str):
        super().__init__(f'Server "{name}" has no sources to update')
        self.name = name
