"""Runtime settings for docslurp.

Settings are read once per process from environment variables and passed
down explicitly to the components that need them.
"""

import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, model_validator


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    """docslurp configuration."""
    home: Path = Field(default_factory=lambda: Path.home() / ".docslurp", description="Data directory")

    # Embeddings
    openai_api_key: Optional[str] = Field(default=None, description="OpenAI API key")
    embedding_model: str = Field(default="text-embedding-3-small", description="Embedding model name")
    embedding_dimensions: int = Field(default=1536, gt=0, description="Embedding vector size")
    embedding_batch_size: int = Field(default=25, gt=0, le=2048, description="Texts per provider request")
    max_retries: int = Field(default=5, gt=0, description="Attempts per batch on rate limits")
    base_delay: float = Field(default=1.0, ge=0, description="First backoff delay in seconds")
    batch_delay: float = Field(default=0.5, ge=0, description="Pause between batches in seconds")

    # Chunking
    chunk_size: int = Field(default=2000, gt=0, description="Window size in characters")
    chunk_overlap: int = Field(default=200, ge=0, description="Overlap between windows in characters")
    min_chunk_size: int = Field(default=50, ge=0, description="Shortest chunk kept")

    # Crawling
    max_depth: int = Field(default=3, ge=0, description="Maximum link depth")
    max_pages: int = Field(default=100, gt=0, description="Maximum pages per crawl")
    request_timeout: int = Field(default=30, gt=0, description="HTTP timeout in seconds")

    # Logging
    log_level: str = Field(default="INFO", description="Log level")
    log_json: bool = Field(default=False, description="Emit JSON logs to the console")
    log_file: Optional[str] = Field(default=None, description="Optional JSON log file")

    @model_validator(mode="after")
    def _check_window(self) -> "Settings":
        if self.chunk_overlap >= self.chunk_size:
            raise ValueError("chunk_overlap must be smaller than chunk_size")
        return self

    @property
    def servers_dir(self) -> Path:
        return self.home / "servers"

    @classmethod
    def from_env(cls) -> "Settings":
        """Create settings from environment variables."""
        home = os.getenv("DOCSLURP_HOME")
        return cls(
            home=Path(home).expanduser() if home else Path.home() / ".docslurp",
            openai_api_key=os.getenv("OPENAI_API_KEY") or None,
            embedding_model=os.getenv("DOCSLURP_EMBEDDING_MODEL", "text-embedding-3-small"),
            embedding_batch_size=int(os.getenv("DOCSLURP_EMBEDDING_BATCH_SIZE", "25")),
            max_retries=int(os.getenv("DOCSLURP_MAX_RETRIES", "5")),
            base_delay=float(os.getenv("DOCSLURP_BASE_DELAY", "1.0")),
            batch_delay=float(os.getenv("DOCSLURP_BATCH_DELAY", "0.5")),
            chunk_size=int(os.getenv("DOCSLURP_CHUNK_SIZE", "2000")),
            chunk_overlap=int(os.getenv("DOCSLURP_CHUNK_OVERLAP", "200")),
            max_depth=int(os.getenv("DOCSLURP_MAX_DEPTH", "3")),
            max_pages=int(os.getenv("DOCSLURP_MAX_PAGES", "100")),
            request_timeout=int(os.getenv("DOCSLURP_REQUEST_TIMEOUT", "30")),
            log_level=os.getenv("DOCSLURP_LOG_LEVEL", "INFO"),
            log_json=_env_bool("DOCSLURP_LOG_JSON"),
            log_file=os.getenv("DOCSLURP_LOG_FILE") or None,
        )
