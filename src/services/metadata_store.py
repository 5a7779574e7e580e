"""
Durable key-value store for small persisted records.

Backed by diskcache (SQLite), so every set_item() is committed before it
returns. Values are opaque strings; callers own their serialization.
"""

from pathlib import Path
from typing import Optional, cast

import diskcache
import structlog

logger = structlog.get_logger()


class MetadataStore:
    """
    Key-value persistence primitive.

    Read/write errors propagate to the caller, which decides whether a
    failure is fatal.
    """

    def __init__(self, directory: Path):
        """
        Initialize metadata store.

        Args:
            directory: Directory holding the diskcache database
        """
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self._cache = diskcache.Cache(str(self.directory))

        logger.debug("metadata_store_opened", directory=str(self.directory))

    def get_item(self, key: str) -> Optional[str]:
        """
        Read a value.

        Args:
            key: Storage key

        Returns:
            Stored string or None if the key is absent
        """
        value = self._cache.get(key)
        if value is None:
            return None
        return cast(str, value)

    def set_item(self, key: str, value: str) -> None:
        """
        Write a value, replacing any previous one.

        Args:
            key: Storage key
            value: Serialized value
        """
        self._cache.set(key, value)

    def remove_item(self, key: str) -> None:
        """Delete a key. Missing keys are ignored."""
        self._cache.delete(key)

    def close(self) -> None:
        self._cache.close()
        logger.debug("metadata_store_closed", directory=str(self.directory))

    def __enter__(self) -> "MetadataStore":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
