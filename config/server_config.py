"""Per-server workspace layout and the ``config.json`` summary file."""

import json
import logging
import shutil
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class SourceEntry(BaseModel):
    """Source listed in ``config.json``."""
    model_config = ConfigDict(populate_by_name=True)

    url: str
    added_at: Optional[str] = Field(default=None, alias="addedAt")


class ServerConfig(BaseModel):
    """Summary written next to each server store.

    Older servers only carry ``sourceUrl``; ``legacy_sources()`` turns either
    shape into the list used to seed the ``sources`` table.
    """
    model_config = ConfigDict(populate_by_name=True)

    name: str
    source_url: Optional[str] = Field(default=None, alias="sourceUrl")
    created_at: str = Field(default_factory=utc_now, alias="createdAt")
    updated_at: Optional[str] = Field(default=None, alias="updatedAt")
    page_count: int = Field(default=0, alias="pageCount")
    chunk_count: int = Field(default=0, alias="chunkCount")
    sources: Optional[List[SourceEntry]] = None

    def legacy_sources(self) -> List[SourceEntry]:
        if self.sources is not None:
            return list(self.sources)
        if self.source_url:
            return [SourceEntry(url=self.source_url, added_at=self.created_at)]
        return []

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True, indent=2)


@dataclass(frozen=True)
class ServerPaths:
    """Filesystem locations of one named server."""
    root: Path

    @classmethod
    def for_server(cls, servers_dir: Path, name: str) -> "ServerPaths":
        if not name or name in (".", "..") or "/" in name or "\\" in name:
            raise ValueError(f"Invalid server name: {name!r}")
        return cls(Path(servers_dir) / name)

    @property
    def name(self) -> str:
        return self.root.name

    @property
    def db_path(self) -> Path:
        return self.root / "vectors.db"

    @property
    def config_path(self) -> Path:
        return self.root / "config.json"

    @property
    def lock_path(self) -> Path:
        return self.root / ".lock"

    def exists(self) -> bool:
        return self.root.is_dir()

    def load_config(self) -> ServerConfig:
        if not self.config_path.exists():
            return ServerConfig(name=self.name)
        with open(self.config_path, "r", encoding="utf-8") as f:
            return ServerConfig.model_validate(json.load(f))

    def save_config(self, config: ServerConfig) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        tmp_path = self.config_path.with_suffix(".json.tmp")
        tmp_path.write_text(config.to_json(), encoding="utf-8")
        tmp_path.replace(self.config_path)

    def remove(self) -> None:
        shutil.rmtree(self.root)
        logger.info(f"Removed server directory {self.root}")


def list_servers(servers_dir: Path) -> List[ServerConfig]:
    """Read the config of every server under ``servers_dir``."""
    servers_dir = Path(servers_dir)
    if not servers_dir.is_dir():
        return []

    configs = []
    for entry in sorted(servers_dir.iterdir()):
        paths = ServerPaths(entry)
        if entry.is_dir() and paths.config_path.exists():
            try:
                configs.append(paths.load_config())
            except (ValueError, OSError) as e:
                logger.warning(f"Skipping unreadable server config {paths.config_path}: {e}")
    return configs
