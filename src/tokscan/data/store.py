"""Cache backend selection."""

from __future__ import annotations

import logging

from tokscan.config import Config
from tokscan.data.blob_store import BlobStore
from tokscan.data.protocols import CacheStore
from tokscan.data.sqlite_store import SqliteStore

logger = logging.getLogger(__name__)


def open_store(config: Config) -> CacheStore:
    """Build the configured cache store; enter it with ``async with``."""
    match config.backend:
        case "sqlite":
            logger.debug("Using relational cache at %s", config.db_path)
            return SqliteStore.at(config.db_path)
        case _:
            logger.debug("Using blob cache at %s", config.blob_dir)
            return BlobStore(config.blob_dir)
