"""
Size- and age-bounded disk cache for remotely sourced images.

Maps an image URL to a file under the cache directory and keeps an index
of every cached file (size + write time) in a persisted metadata snapshot.

Policies:
1. Size bound: before each write, if the cache exceeds max_cache_size the
   oldest entries are evicted until it is back under 80% of the budget.
2. Age bound: entries older than max_cache_age are evicted on access and
   during the cleanup sweep run at initialization.
3. Self-healing: entries whose file disappeared are purged when touched,
   and files with no entry are deleted at initialization.
"""

import asyncio
import hashlib
import json
import re
from pathlib import Path
from typing import Optional

import structlog

from src.models.cache import (
    MAX_KEY_LENGTH,
    CacheMetadata,
    CacheStats,
    ImageCacheConfig,
    KeyStrategy,
)
from src.observability.metrics import CACHE_ENTRIES, CACHE_OPERATIONS, CACHE_SIZE_BYTES
from src.services.blob_store import BlobStore, partial_path
from src.services.metadata_store import MetadataStore
from src.utils.clock import now_ms
from src.utils.exceptions import CacheWriteError

logger = structlog.get_logger()

_UNSAFE_KEY_CHARS = re.compile(r"[^a-zA-Z0-9]")


def sanitize_cache_key(url: str) -> str:
    """Replace every non-alphanumeric character with '_' and cap the length."""
    return _UNSAFE_KEY_CHARS.sub("_", url)[:MAX_KEY_LENGTH]


def hash_cache_key(url: str) -> str:
    """Fixed-length SHA-256 key; immune to long-prefix collisions."""
    return hashlib.sha256(url.encode("utf-8")).hexdigest()


class ImageCacheService:
    """
    Disk-backed image cache.

    Every public coroutine calls initialize() first, so the cache can be
    used without an explicit startup step. Metadata read-modify-write
    sequences are serialized by an asyncio.Lock because overlapping calls
    can interleave at every await.
    """

    def __init__(
        self,
        config: ImageCacheConfig,
        metadata_store: Optional[MetadataStore] = None,
        blob_store: Optional[BlobStore] = None,
    ):
        """
        Initialize image cache service.

        Args:
            config: Cache configuration
            metadata_store: Key-value store for the metadata snapshot
                (opened from config.metadata_dir on initialize if omitted)
            blob_store: File primitives (default BlobStore)
        """
        self.config = config
        self.cache_dir = config.cache_dir
        self.max_cache_size = config.max_cache_size_bytes
        self.max_cache_age = config.max_cache_age_ms

        self.metadata = CacheMetadata()
        self.is_initialized = False

        self._metadata_store = metadata_store
        self._blob_store = blob_store or BlobStore(
            download_timeout_seconds=config.download_timeout_seconds
        )
        self._init_lock = asyncio.Lock()
        self._lock = asyncio.Lock()

    async def __aenter__(self) -> "ImageCacheService":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # ==================== Lifecycle ====================

    async def initialize(self) -> None:
        """
        Prepare the cache for use. Safe to call any number of times.

        Creates the cache directory, loads the persisted metadata, removes
        orphaned files and runs the age-based cleanup sweep. Failures are
        logged and initialization is retried on the next call.
        """
        if self.is_initialized:
            return

        async with self._init_lock:
            if self.is_initialized:
                return

            try:
                await self._blob_store.mkdir(self.cache_dir, intermediates=True)

                if self._metadata_store is None:
                    self._metadata_store = MetadataStore(
                        Path(self.config.metadata_dir)
                    )

                self._load_metadata()

                async with self._lock:
                    if self.config.reconcile_orphans:
                        await self._reconcile_orphans()
                    await self._cleanup_locked()

                self.is_initialized = True

                logger.info(
                    "image_cache_initialized",
                    cache_dir=str(self.cache_dir),
                    entries=self.metadata.get_entry_count(),
                    total_size=self.metadata.total_size,
                    max_size=self.max_cache_size,
                )

            except Exception as e:
                logger.error("image_cache_init_failed", error=str(e))

    async def close(self) -> None:
        """Release the metadata store and any open HTTP session."""
        await self._blob_store.close()
        if self._metadata_store is not None:
            self._metadata_store.close()
            self._metadata_store = None
        self.is_initialized = False

    # ==================== Keys ====================

    def generate_cache_key(self, url: str) -> str:
        """
        Derive the cache key (and on-disk filename) for a URL.

        Args:
            url: Source image URL

        Returns:
            Deterministic filesystem-safe key of at most 100 characters

        Raises:
            ValueError: If url is empty
        """
        if not url:
            raise ValueError("url must not be empty")

        if self.config.key_strategy == KeyStrategy.HASHED:
            return hash_cache_key(url)
        return sanitize_cache_key(url)

    def get_cache_path(self, key: str) -> Path:
        return self.cache_dir / key

    # ==================== Public API ====================

    async def get_cached_image(self, url: str) -> Optional[Path]:
        """
        Look up the cached file for a URL.

        Args:
            url: Source image URL

        Returns:
            Path to the cached file, or None on a miss. A missing backing
            file or an expired entry is also a miss, and the entry is
            dropped from the metadata as a side effect.
        """
        await self.initialize()

        key = self.generate_cache_key(url)
        cache_path = self.get_cache_path(key)

        async with self._lock:
            entry = self.metadata.get_entry(key)

            if entry is None:
                CACHE_OPERATIONS.labels(operation="miss").inc()
                logger.debug("image_cache_miss", key=key[:16])
                return None

            try:
                info = await self._blob_store.stat(cache_path)
            except OSError as e:
                CACHE_OPERATIONS.labels(operation="error").inc()
                logger.error("image_cache_lookup_error", key=key[:16], error=str(e))
                return None

            if not info.exists:
                self.metadata.remove_entry(key)
                self._save_metadata()
                CACHE_OPERATIONS.labels(operation="stale").inc()
                logger.warning("image_cache_stale", key=key[:16])
                return None

            age = entry.age_ms()
            if age > self.max_cache_age:
                await self._remove_key(key)
                CACHE_OPERATIONS.labels(operation="expire").inc()
                logger.debug("image_cache_expired", key=key[:16], age_ms=age)
                return None

            CACHE_OPERATIONS.labels(operation="hit").inc()
            logger.debug("image_cache_hit", key=key[:16])
            return cache_path

    async def cache_image(self, url: str, source_uri: str) -> Path:
        """
        Copy an image into the cache and register it.

        Args:
            url: Source image URL (the cache key is derived from it)
            source_uri: Where to read the bytes from: a local path, a
                file:// URI or an http(s):// URL

        Returns:
            Path to the cached file

        Raises:
            CacheWriteError: The copy failed; callers should keep using the
                original resource. Partial files have been removed.
        """
        await self.initialize()

        key = self.generate_cache_key(url)
        cache_path = self.get_cache_path(key)

        async with self._lock:
            try:
                await self._ensure_cache_space_locked()
                await self._blob_store.copy(source_uri, cache_path)
                info = await self._blob_store.stat(cache_path)
            except Exception as e:
                logger.error(
                    "image_cache_write_failed",
                    key=key[:16],
                    source=source_uri,
                    error=str(e),
                )
                await self._discard_partial(key, cache_path)
                CACHE_OPERATIONS.labels(operation="error").inc()
                raise CacheWriteError(f"Failed to cache image: {e}", url=url) from e

            self.metadata.add_entry(key, info.size, now_ms())
            self._save_metadata()

        CACHE_OPERATIONS.labels(operation="set").inc()
        logger.debug("image_cached", key=key[:16], size_bytes=info.size)
        return cache_path

    async def remove_cached_image(self, url: str) -> None:
        """
        Delete a cached image and its metadata entry.

        Missing files are not an error; delete failures are logged.

        Args:
            url: Source image URL
        """
        await self.initialize()

        key = self.generate_cache_key(url)
        async with self._lock:
            await self._remove_key(key)

    async def ensure_cache_space(self) -> None:
        """Evict oldest entries if the cache is over its size budget."""
        await self.initialize()

        async with self._lock:
            await self._ensure_cache_space_locked()

    async def cleanup(self) -> None:
        """Evict expired entries and record the sweep time."""
        await self.initialize()

        async with self._lock:
            await self._cleanup_locked()

    async def clear_cache(self) -> None:
        """Delete every cached file and reset the metadata."""
        await self.initialize()

        async with self._lock:
            try:
                await self._blob_store.delete(self.cache_dir, idempotent=True)
                await self._blob_store.mkdir(self.cache_dir, intermediates=True)
            except OSError as e:
                logger.error("image_cache_clear_failed", error=str(e))
                return

            self.metadata.clear()
            self._save_metadata()

        logger.info("image_cache_cleared", cache_dir=str(self.cache_dir))

    async def get_cache_stats(self) -> CacheStats:
        """
        Get cache statistics.

        Returns:
            CacheStats with current totals
        """
        await self.initialize()

        return CacheStats(
            total_size=self.metadata.total_size,
            entry_count=self.metadata.get_entry_count(),
            max_size=self.max_cache_size,
            last_cleanup=self.metadata.last_cleanup,
        )

    # ==================== Internals (caller holds self._lock) ====================

    async def _remove_key(self, key: str, persist: bool = True) -> bool:
        """Delete the file then the entry. Returns False if the delete failed."""
        cache_path = self.get_cache_path(key)

        try:
            await self._blob_store.delete(cache_path, idempotent=True)
        except OSError as e:
            logger.error("image_cache_remove_failed", key=key[:16], error=str(e))
            return False

        self.metadata.remove_entry(key)
        if persist:
            self._save_metadata()
        return True

    async def _ensure_cache_space_locked(self) -> None:
        if self.metadata.total_size <= self.max_cache_size:
            return

        target = self.max_cache_size * self.config.eviction_target_ratio
        size_before = self.metadata.total_size
        evicted = 0

        # Oldest first; key breaks timestamp ties deterministically
        entries = sorted(
            self.metadata.get_all_entries(), key=lambda e: (e.timestamp, e.key)
        )

        for entry in entries:
            if self.metadata.total_size <= target:
                break

            if await self._remove_key(entry.key):
                evicted += 1
                CACHE_OPERATIONS.labels(operation="evict").inc()

        logger.info(
            "image_cache_evicted",
            evicted=evicted,
            size_before=size_before,
            size_after=self.metadata.total_size,
            target=int(target),
        )

    async def _cleanup_locked(self) -> None:
        now = now_ms()
        expired = 0
        missing = 0

        for entry in self.metadata.get_all_entries():
            if entry.age_ms(now) > self.max_cache_age:
                if await self._remove_key(entry.key, persist=False):
                    expired += 1
                    CACHE_OPERATIONS.labels(operation="expire").inc()
                continue

            try:
                info = await self._blob_store.stat(self.get_cache_path(entry.key))
            except OSError as e:
                logger.warning(
                    "image_cache_cleanup_stat_failed", key=entry.key[:16], error=str(e)
                )
                continue

            if not info.exists:
                self.metadata.remove_entry(entry.key)
                missing += 1
                CACHE_OPERATIONS.labels(operation="stale").inc()

        self.metadata.last_cleanup = now
        self._save_metadata()

        if expired or missing:
            logger.info("image_cache_cleanup", expired=expired, missing=missing)

    async def _reconcile_orphans(self) -> None:
        """Delete files in the cache directory that no entry refers to."""
        try:
            names = await self._blob_store.list_dir(self.cache_dir)
        except OSError as e:
            logger.warning("image_cache_reconcile_failed", error=str(e))
            return

        removed = 0
        for name in names:
            if name in self.metadata.entries:
                continue
            try:
                await self._blob_store.delete(self.cache_dir / name, idempotent=True)
                removed += 1
                CACHE_OPERATIONS.labels(operation="orphan").inc()
            except OSError as e:
                logger.warning("image_cache_orphan_delete_failed", name=name, error=str(e))

        if removed:
            logger.info("image_cache_orphans_removed", count=removed)

    async def _discard_partial(self, key: str, cache_path: Path) -> None:
        """Remove leftovers of a failed write without touching a valid entry."""
        targets = [partial_path(cache_path)]
        if key not in self.metadata.entries:
            targets.append(cache_path)

        for target in targets:
            try:
                await self._blob_store.delete(target, idempotent=True)
            except OSError:
                pass

    # ==================== Persistence ====================

    def _load_metadata(self) -> None:
        """Load the metadata snapshot; fall back to empty on any failure."""
        assert self._metadata_store is not None
        try:
            raw = self._metadata_store.get_item(self.config.metadata_key)
            if raw:
                self.metadata = CacheMetadata.from_snapshot(json.loads(raw))
        except Exception as e:
            logger.error("image_cache_metadata_load_failed", error=str(e))
            self.metadata = CacheMetadata()

        self._update_gauges()

    def _save_metadata(self) -> None:
        """Persist the full snapshot. Failures are logged, not raised."""
        self._update_gauges()

        if self._metadata_store is None:
            logger.warning("image_cache_metadata_store_unavailable")
            return

        try:
            self._metadata_store.set_item(
                self.config.metadata_key, json.dumps(self.metadata.to_snapshot())
            )
        except Exception as e:
            logger.error("image_cache_metadata_save_failed", error=str(e))

    def _update_gauges(self) -> None:
        CACHE_SIZE_BYTES.set(self.metadata.total_size)
        CACHE_ENTRIES.set(self.metadata.get_entry_count())
