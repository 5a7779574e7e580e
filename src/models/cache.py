"""
Data models for the image cache.

Defines cache configuration, per-entry metadata, the persisted metadata
snapshot and statistics models.
"""

from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ConfigDict

from src.utils.clock import MS_PER_DAY, now_ms

# Maximum length of a derived cache key (also the on-disk filename)
MAX_KEY_LENGTH = 100


class KeyStrategy(str, Enum):
    """How cache keys are derived from source URLs."""

    SANITIZED = "sanitized"  # Default: replace unsafe chars, truncate to 100
    HASHED = "hashed"  # Fixed-length SHA-256 digest, collision resistant


class ImageCacheConfig(BaseModel):
    """Image cache configuration"""

    model_config = ConfigDict(protected_namespaces=())

    cache_root: str = "./cache"
    cache_subdir: str = "image-cache"

    # Key-value store holding the metadata snapshot
    metadata_dir: str = "./data/kv"
    metadata_key: str = "image_cache_metadata"

    # Size and age bounds
    max_cache_size_mb: float = Field(100, gt=0)
    max_cache_age_days: float = Field(7, gt=0)
    eviction_target_ratio: float = Field(0.8, gt=0.0, le=1.0)

    reconcile_orphans: bool = True
    key_strategy: KeyStrategy = KeyStrategy.SANITIZED
    download_timeout_seconds: int = Field(30, ge=1, le=600)

    @property
    def cache_dir(self) -> Path:
        return Path(self.cache_root) / self.cache_subdir

    @property
    def max_cache_size_bytes(self) -> int:
        return int(self.max_cache_size_mb * 1024 * 1024)

    @property
    def max_cache_age_ms(self) -> int:
        return int(self.max_cache_age_days * MS_PER_DAY)


class CacheEntry(BaseModel):
    """One cached resource."""

    key: str = Field(..., min_length=1, max_length=MAX_KEY_LENGTH)
    size: int = Field(0, ge=0)
    timestamp: int = Field(default_factory=now_ms)

    def age_ms(self, now: Optional[int] = None) -> int:
        """Milliseconds elapsed since the entry was written."""
        return (now if now is not None else now_ms()) - self.timestamp


class CacheMetadata(BaseModel):
    """Index of all cached entries plus running totals.

    total_size is maintained incrementally by add_entry/remove_entry and
    always equals the sum of entry sizes.
    """

    entries: Dict[str, CacheEntry] = Field(default_factory=dict)
    total_size: int = 0
    last_cleanup: int = Field(default_factory=now_ms)

    def add_entry(self, key: str, size: int, timestamp: int) -> CacheEntry:
        """Register an entry, replacing any previous entry under the same key."""
        self.remove_entry(key)
        entry = CacheEntry(key=key, size=size, timestamp=timestamp)
        self.entries[key] = entry
        self.total_size += entry.size
        return entry

    def remove_entry(self, key: str) -> Optional[CacheEntry]:
        entry = self.entries.pop(key, None)
        if entry is not None:
            self.total_size -= entry.size
        return entry

    def get_entry(self, key: str) -> Optional[CacheEntry]:
        return self.entries.get(key)

    def get_all_entries(self) -> List[CacheEntry]:
        return list(self.entries.values())

    def get_entry_count(self) -> int:
        return len(self.entries)

    def clear(self) -> None:
        self.entries.clear()
        self.total_size = 0

    def to_snapshot(self) -> Dict[str, Any]:
        """Serialize to the persisted snapshot shape."""
        return {
            "entries": {
                key: {"size": entry.size, "timestamp": entry.timestamp}
                for key, entry in self.entries.items()
            },
            "totalSize": self.total_size,
            "lastCleanup": self.last_cleanup,
        }

    @classmethod
    def from_snapshot(cls, data: Dict[str, Any]) -> "CacheMetadata":
        """Rebuild metadata from a persisted snapshot.

        Malformed entries are dropped and total_size is recomputed from the
        surviving entries so the size invariant holds after every load.
        """
        metadata = cls()
        raw_entries = data.get("entries") or {}
        if isinstance(raw_entries, dict):
            for key, value in raw_entries.items():
                if not isinstance(value, dict):
                    continue
                try:
                    entry = CacheEntry(
                        key=key,
                        size=int(value.get("size") or 0),
                        timestamp=int(value.get("timestamp") or 0),
                    )
                except (TypeError, ValueError):
                    continue
                metadata.entries[key] = entry

        metadata.total_size = sum(e.size for e in metadata.entries.values())
        metadata.last_cleanup = int(data.get("lastCleanup") or now_ms())
        return metadata


class CacheStats(BaseModel):
    """Cache statistics snapshot"""

    total_size: int = 0
    entry_count: int = 0
    max_size: int = 0
    last_cleanup: int = 0

    @property
    def usage_ratio(self) -> float:
        """Fraction of the size budget currently used"""
        if self.max_size == 0:
            return 0.0
        return self.total_size / self.max_size
