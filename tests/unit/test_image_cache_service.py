"""Unit tests for the image cache service"""

import asyncio
import json
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from src.models.cache import ImageCacheConfig, KeyStrategy
from src.services.image_cache_service import (
    ImageCacheService,
    hash_cache_key,
    sanitize_cache_key,
)
from src.services.metadata_store import MetadataStore
from src.utils.clock import now_ms
from src.utils.exceptions import CacheWriteError


def make_cache(tmp_path: Path, **overrides) -> ImageCacheService:
    """Create a cache service rooted in tmp_path"""
    config = ImageCacheConfig(
        cache_root=str(tmp_path / "cache"),
        metadata_dir=str(tmp_path / "kv"),
        **overrides,
    )
    return ImageCacheService(config)


def write_source(tmp_path: Path, name: str, size: int) -> Path:
    """Create a source image of the given size"""
    path = tmp_path / "sources" / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"\x89" * size)
    return path


def assert_size_invariant(cache: ImageCacheService) -> None:
    entries = cache.metadata.get_all_entries()
    assert cache.metadata.total_size == sum(e.size for e in entries)


class TestCacheKeys:
    def test_sanitize_replaces_non_alphanumerics(self):
        assert sanitize_cache_key("https://x/a.jpg") == "https___x_a_jpg"

    def test_key_is_deterministic_and_safe(self, tmp_path):
        cache = make_cache(tmp_path)
        url = "https://example.com/images/a b&c.jpg?size=large&v=" + "9" * 300

        first = cache.generate_cache_key(url)
        second = cache.generate_cache_key(url)

        assert first == second
        assert len(first) <= 100
        assert " " not in first
        assert "&" not in first

    def test_empty_url_rejected(self, tmp_path):
        with pytest.raises(ValueError):
            make_cache(tmp_path).generate_cache_key("")

    def test_hashed_strategy_separates_long_common_prefixes(self, tmp_path):
        cache = make_cache(tmp_path, key_strategy=KeyStrategy.HASHED)
        prefix = "https://example.com/" + "a" * 120

        key_1 = cache.generate_cache_key(prefix + "/1.jpg")
        key_2 = cache.generate_cache_key(prefix + "/2.jpg")

        assert key_1 != key_2
        assert key_1 == hash_cache_key(prefix + "/1.jpg")
        assert len(key_1) == 64

    def test_sanitized_strategy_truncates_long_common_prefixes(self, tmp_path):
        cache = make_cache(tmp_path)
        prefix = "https://example.com/" + "a" * 120

        assert cache.generate_cache_key(prefix + "/1.jpg") == cache.generate_cache_key(
            prefix + "/2.jpg"
        )


class TestInitialize:
    @pytest.mark.asyncio
    async def test_creates_cache_dir(self, tmp_path):
        async with make_cache(tmp_path) as cache:
            assert cache.is_initialized
            assert cache.cache_dir.is_dir()

    @pytest.mark.asyncio
    async def test_initialize_is_idempotent(self, tmp_path):
        async with make_cache(tmp_path) as cache:
            await cache.initialize()
            await cache.initialize()
            assert cache.is_initialized

    @pytest.mark.asyncio
    async def test_removes_orphan_files(self, tmp_path):
        cache_dir = tmp_path / "cache" / "image-cache"
        cache_dir.mkdir(parents=True)
        (cache_dir / "orphan").write_bytes(b"x")

        async with make_cache(tmp_path):
            assert not (cache_dir / "orphan").exists()

    @pytest.mark.asyncio
    async def test_keeps_orphans_when_reconcile_disabled(self, tmp_path):
        cache_dir = tmp_path / "cache" / "image-cache"
        cache_dir.mkdir(parents=True)
        (cache_dir / "orphan").write_bytes(b"x")

        async with make_cache(tmp_path, reconcile_orphans=False):
            assert (cache_dir / "orphan").exists()

    @pytest.mark.asyncio
    async def test_init_failure_is_logged_and_retried(self, tmp_path):
        cache = make_cache(tmp_path)

        with patch.object(
            cache._blob_store, "mkdir", AsyncMock(side_effect=OSError("read-only"))
        ):
            await cache.initialize()
            assert not cache.is_initialized

        await cache.initialize()
        assert cache.is_initialized
        await cache.close()


class TestCacheImage:
    @pytest.mark.asyncio
    async def test_cache_then_get(self, tmp_path):
        source = write_source(tmp_path, "a.jpg", 1024)

        async with make_cache(tmp_path) as cache:
            url = "https://x/a.jpg"
            path = await cache.cache_image(url, f"file://{source}")
            key = cache.generate_cache_key(url)

            assert cache.metadata.get_entry(key).size == 1024
            assert path.read_bytes() == source.read_bytes()

            hit = await cache.get_cached_image(url)
            assert hit is not None
            assert key in str(hit)

    @pytest.mark.asyncio
    async def test_get_unknown_url_is_miss(self, tmp_path):
        async with make_cache(tmp_path) as cache:
            assert await cache.get_cached_image("https://x/unknown.jpg") is None

    @pytest.mark.asyncio
    async def test_missing_source_raises_and_registers_nothing(self, tmp_path):
        async with make_cache(tmp_path) as cache:
            url = "https://x/a.jpg"

            with pytest.raises(CacheWriteError) as exc_info:
                await cache.cache_image(url, str(tmp_path / "missing.jpg"))

            assert exc_info.value.url == url
            key = cache.generate_cache_key(url)
            assert cache.metadata.get_entry(key) is None
            assert not cache.get_cache_path(key).exists()
            assert cache.metadata.total_size == 0

    @pytest.mark.asyncio
    async def test_failed_recache_keeps_existing_entry(self, tmp_path):
        source = write_source(tmp_path, "a.jpg", 100)

        async with make_cache(tmp_path) as cache:
            url = "https://x/a.jpg"
            await cache.cache_image(url, str(source))

            with pytest.raises(CacheWriteError):
                await cache.cache_image(url, str(tmp_path / "missing.jpg"))

            assert await cache.get_cached_image(url) is not None
            assert cache.metadata.total_size == 100

    @pytest.mark.asyncio
    async def test_recache_replaces_size(self, tmp_path):
        small = write_source(tmp_path, "small.jpg", 100)
        large = write_source(tmp_path, "large.jpg", 300)

        async with make_cache(tmp_path) as cache:
            url = "https://x/a.jpg"
            await cache.cache_image(url, str(small))
            await cache.cache_image(url, str(large))

            assert cache.metadata.get_entry_count() == 1
            assert cache.metadata.total_size == 300

    @pytest.mark.asyncio
    async def test_concurrent_writes_preserve_total(self, tmp_path):
        sources = [write_source(tmp_path, f"{i}.jpg", 100 + i) for i in range(8)]

        async with make_cache(tmp_path) as cache:
            await asyncio.gather(
                *(
                    cache.cache_image(f"https://x/{i}.jpg", str(source))
                    for i, source in enumerate(sources)
                )
            )

            assert cache.metadata.get_entry_count() == 8
            assert cache.metadata.total_size == sum(100 + i for i in range(8))
            assert_size_invariant(cache)


class TestStaleAndExpired:
    @pytest.mark.asyncio
    async def test_file_deleted_out_of_band(self, tmp_path):
        source = write_source(tmp_path, "a.jpg", 100)

        async with make_cache(tmp_path) as cache:
            url = "https://x/a.jpg"
            path = await cache.cache_image(url, str(source))
            path.unlink()

            assert await cache.get_cached_image(url) is None
            assert cache.metadata.get_entry(cache.generate_cache_key(url)) is None
            assert cache.metadata.total_size == 0

    @pytest.mark.asyncio
    async def test_expired_entry_is_removed(self, tmp_path):
        source = write_source(tmp_path, "a.jpg", 100)

        async with make_cache(tmp_path) as cache:
            url = "https://x/a.jpg"
            path = await cache.cache_image(url, str(source))
            key = cache.generate_cache_key(url)
            cache.metadata.entries[key].timestamp = now_ms() - cache.max_cache_age - 1

            assert await cache.get_cached_image(url) is None
            assert cache.metadata.get_entry(key) is None
            assert not path.exists()
            assert cache.metadata.total_size == 0

    @pytest.mark.asyncio
    async def test_cleanup_sweeps_expired_and_missing(self, tmp_path):
        async with make_cache(tmp_path) as cache:
            for name in ("old", "gone", "fresh"):
                source = write_source(tmp_path, f"{name}.jpg", 10)
                await cache.cache_image(f"https://x/{name}.jpg", str(source))

            old_key = cache.generate_cache_key("https://x/old.jpg")
            gone_key = cache.generate_cache_key("https://x/gone.jpg")
            cache.metadata.entries[old_key].timestamp = 0
            cache.get_cache_path(gone_key).unlink()

            await cache.cleanup()

            assert list(cache.metadata.entries) == [
                cache.generate_cache_key("https://x/fresh.jpg")
            ]
            assert cache.metadata.total_size == 10
            assert cache.metadata.last_cleanup >= now_ms() - 60_000


class TestEviction:
    @pytest.mark.asyncio
    async def test_evicts_oldest_until_under_target(self, tmp_path):
        async with make_cache(tmp_path) as cache:
            cache.max_cache_size = 1000
            base = now_ms()

            urls = [f"https://x/{name}.jpg" for name in "abcd"]
            for i, url in enumerate(urls):
                source = write_source(tmp_path, f"{i}.jpg", 300)
                await cache.cache_image(url, str(source))
                cache.metadata.entries[cache.generate_cache_key(url)].timestamp = (
                    base - 10_000 + i * 1_000
                )

            assert cache.metadata.total_size == 1200

            await cache.ensure_cache_space()

            remaining = {e.key for e in cache.metadata.get_all_entries()}
            assert remaining == {cache.generate_cache_key(u) for u in urls[2:]}
            assert cache.metadata.total_size <= 1000 * 0.8
            for url in urls[:2]:
                assert not cache.get_cache_path(cache.generate_cache_key(url)).exists()
            assert_size_invariant(cache)

    @pytest.mark.asyncio
    async def test_no_eviction_under_budget(self, tmp_path):
        source = write_source(tmp_path, "a.jpg", 100)

        async with make_cache(tmp_path) as cache:
            await cache.cache_image("https://x/a.jpg", str(source))
            await cache.ensure_cache_space()
            assert cache.metadata.get_entry_count() == 1

    @pytest.mark.asyncio
    async def test_write_evicts_before_copy(self, tmp_path):
        async with make_cache(tmp_path) as cache:
            cache.max_cache_size = 500

            for i in range(3):
                source = write_source(tmp_path, f"{i}.jpg", 300)
                await cache.cache_image(f"https://x/{i}.jpg", str(source))
                cache.metadata.entries[
                    cache.generate_cache_key(f"https://x/{i}.jpg")
                ].timestamp = i

            # 0 and 1 (600 bytes) exceeded the budget when 2 was written
            oldest_key = cache.generate_cache_key("https://x/0.jpg")
            assert cache.metadata.get_entry(oldest_key) is None
            assert cache.metadata.total_size == 600
            assert_size_invariant(cache)

    @pytest.mark.asyncio
    async def test_failed_delete_keeps_entry(self, tmp_path):
        source = write_source(tmp_path, "a.jpg", 100)

        async with make_cache(tmp_path) as cache:
            url = "https://x/a.jpg"
            await cache.cache_image(url, str(source))

            with patch.object(
                cache._blob_store, "delete", AsyncMock(side_effect=OSError("busy"))
            ):
                await cache.remove_cached_image(url)

            assert cache.metadata.get_entry(cache.generate_cache_key(url)) is not None
            assert cache.metadata.total_size == 100


class TestRemoveAndClear:
    @pytest.mark.asyncio
    async def test_remove_cached_image(self, tmp_path):
        source = write_source(tmp_path, "a.jpg", 100)

        async with make_cache(tmp_path) as cache:
            url = "https://x/a.jpg"
            path = await cache.cache_image(url, str(source))

            await cache.remove_cached_image(url)

            assert not path.exists()
            assert await cache.get_cached_image(url) is None
            assert cache.metadata.total_size == 0

    @pytest.mark.asyncio
    async def test_remove_unknown_url_is_noop(self, tmp_path):
        async with make_cache(tmp_path) as cache:
            await cache.remove_cached_image("https://x/never.jpg")
            assert cache.metadata.total_size == 0

    @pytest.mark.asyncio
    async def test_clear_cache(self, tmp_path):
        async with make_cache(tmp_path) as cache:
            urls = ["https://x/a.jpg", "https://x/b.jpg"]
            for i, url in enumerate(urls):
                await cache.cache_image(url, str(write_source(tmp_path, f"{i}", 50)))

            await cache.clear_cache()

            assert cache.metadata.total_size == 0
            assert cache.metadata.entries == {}
            assert cache.cache_dir.is_dir()
            for url in urls:
                assert await cache.get_cached_image(url) is None

    @pytest.mark.asyncio
    async def test_stats(self, tmp_path):
        async with make_cache(tmp_path) as cache:
            await cache.cache_image(
                "https://x/a.jpg", str(write_source(tmp_path, "a", 256))
            )
            stats = await cache.get_cache_stats()

            assert stats.total_size == 256
            assert stats.entry_count == 1
            assert stats.max_size == cache.max_cache_size


class TestPersistence:
    @pytest.mark.asyncio
    async def test_metadata_survives_restart(self, tmp_path):
        source = write_source(tmp_path, "a.jpg", 1024)
        url = "https://x/a.jpg"

        async with make_cache(tmp_path) as cache:
            await cache.cache_image(url, str(source))

        async with make_cache(tmp_path) as reopened:
            assert reopened.metadata.total_size == 1024
            assert await reopened.get_cached_image(url) is not None

    @pytest.mark.asyncio
    async def test_snapshot_written_under_metadata_key(self, tmp_path):
        async with make_cache(tmp_path) as cache:
            await cache.cache_image(
                "https://x/a.jpg", str(write_source(tmp_path, "a", 64))
            )
            key = cache.generate_cache_key("https://x/a.jpg")

        with MetadataStore(tmp_path / "kv") as store:
            snapshot = json.loads(store.get_item("image_cache_metadata"))

        assert snapshot["totalSize"] == 64
        assert snapshot["entries"][key]["size"] == 64
        assert "lastCleanup" in snapshot

    @pytest.mark.asyncio
    async def test_corrupt_snapshot_starts_empty(self, tmp_path):
        with MetadataStore(tmp_path / "kv") as store:
            store.set_item("image_cache_metadata", "{not json")

        async with make_cache(tmp_path) as cache:
            assert cache.is_initialized
            assert cache.metadata.entries == {}
            assert cache.metadata.total_size == 0

    @pytest.mark.asyncio
    async def test_metadata_save_failure_is_not_raised(self, tmp_path):
        async with make_cache(tmp_path) as cache:
            with patch.object(
                cache._metadata_store, "set_item", side_effect=OSError("disk full")
            ):
                path = await cache.cache_image(
                    "https://x/a.jpg", str(write_source(tmp_path, "a", 10))
                )

            assert path.exists()
            assert cache.metadata.total_size == 10
