"""Observability package for docslurp."""

from .logging import setup_logging, JSONFormatter, ColoredFormatter

__all__ = [
    'setup_logging',
    'JSONFormatter',
    'ColoredFormatter'
]
