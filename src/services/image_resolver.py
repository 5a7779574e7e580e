"""Resolve remote image URLs to local cached copies for display."""

import asyncio
from typing import Iterable, List, Optional

import structlog

from src.models.session import is_remote_uri
from src.services.image_cache_service import ImageCacheService

logger = structlog.get_logger()


class ImageResolver:
    """Cache-backed URL resolution.

    resolve() never fails: on a miss it returns the original URL and
    starts caching it in the background, so the next lookup is local.
    Local paths and file:// URIs are already on the device and pass
    through untouched.
    """

    def __init__(self, cache: ImageCacheService):
        self.cache = cache
        self._pending: "set[asyncio.Task]" = set()

    async def resolve(self, url: str) -> str:
        """Return a local path for url if cached, else url itself."""
        if not is_remote_uri(url):
            return url

        try:
            cached = await self.cache.get_cached_image(url)
        except Exception as e:
            logger.warning("image_lookup_failed", url=url, error=str(e))
            return url

        if cached is not None:
            return str(cached)

        self._schedule(url)
        return url

    async def prefetch(self, urls: Iterable[str]) -> List[Optional[str]]:
        """Cache every remote URL concurrently.

        Empty entries, local paths and duplicates are skipped.

        Returns:
            Cache path per distinct remote URL, or None where caching failed.
        """
        unique = list(dict.fromkeys(u for u in urls if is_remote_uri(u)))
        results = await asyncio.gather(
            *(self._cache_one(url) for url in unique)
        )
        cached = sum(1 for r in results if r is not None)
        logger.info("images_prefetched", requested=len(unique), cached=cached)
        return list(results)

    async def wait_pending(self) -> None:
        """Wait for background caching started by resolve()."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _schedule(self, url: str) -> None:
        task = asyncio.create_task(self._cache_one(url))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _cache_one(self, url: str) -> Optional[str]:
        try:
            path = await self.cache.cache_image(url, url)
            return str(path)
        except Exception as e:
            logger.warning("image_cache_failed", url=url, error=str(e))
            return None
