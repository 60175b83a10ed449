"""Configuration module for docslurp.

Provides runtime settings and the per-server workspace layout.
"""

from .settings import Settings
from .server_config import (
    ServerConfig,
    ServerPaths,
    SourceEntry,
    list_servers,
    utc_now
)

__all__ = [
    'Settings',
    'ServerConfig',
    'ServerPaths',
    'SourceEntry',
    'list_servers',
    'utc_now'
]
