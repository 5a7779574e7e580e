"""Local blob storage primitives for the image cache.

Provides the file operations the cache composes:
- copy(source_uri, dest): local path, file:// URI or http(s):// download
- stat(path): existence and size
- delete(path): idempotent removal of a file or directory tree
- mkdir(path): directory creation with intermediates

Blocking filesystem calls run in the default executor so they never stall
the event loop. Writes land in a ``.part`` sibling that is atomically
renamed over the destination, so a crash never leaves a truncated blob
under a valid key.
"""

import asyncio
import os
import shutil
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import Any, Callable, List, Optional, TypeVar
from urllib.parse import urlparse
from urllib.request import url2pathname

import aiohttp
import structlog

from src.utils.exceptions import StorageError

logger = structlog.get_logger()

T = TypeVar("T")

PARTIAL_SUFFIX = ".part"
CHUNK_SIZE = 64 * 1024


@dataclass
class BlobInfo:
    """Result of a stat() call."""

    exists: bool
    size: int = 0


def partial_path(dest: Path) -> Path:
    """Temporary path a write lands in before the atomic rename."""
    return dest.with_name(dest.name + PARTIAL_SUFFIX)


def resolve_local_source(source_uri: str) -> Optional[Path]:
    """Map a local path or file:// URI to a Path; None for remote URLs."""
    parsed = urlparse(source_uri)

    if parsed.scheme in ("http", "https"):
        return None

    if parsed.scheme == "file":
        path = url2pathname(parsed.path)
        # file://tmp/a.jpg puts the first segment in netloc
        if parsed.netloc and parsed.netloc != "localhost":
            path = "/" + parsed.netloc + path
        return Path(path)

    if parsed.scheme == "" or len(parsed.scheme) == 1:
        # Plain path (single-letter scheme is a Windows drive)
        return Path(source_uri)

    raise StorageError(f"Unsupported source scheme: {parsed.scheme}")


class BlobStore:
    """Filesystem primitives used by the image cache."""

    def __init__(self, download_timeout_seconds: int = 30):
        """Initialize blob store.

        Args:
            download_timeout_seconds: Total timeout for http(s) sources.
        """
        self.download_timeout_seconds = download_timeout_seconds
        self._session: Optional[aiohttp.ClientSession] = None

    async def _run_blocking(self, func: Callable[..., T], *args: Any) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(func, *args))

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.download_timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    async def close(self) -> None:
        """Close the aiohttp session."""
        if self._session and not self._session.closed:
            await self._session.close()

    # ==================== Primitives ====================

    async def copy(self, source_uri: str, dest: Path) -> None:
        """Copy the resource at source_uri to dest.

        Raises:
            StorageError: Source unreadable, download failed or write failed.
                Any partial file has been removed when this is raised.
        """
        tmp_path = partial_path(dest)
        local_source = resolve_local_source(source_uri)

        try:
            if local_source is None:
                await self._download(source_uri, tmp_path)
            else:
                await self._run_blocking(shutil.copyfile, local_source, tmp_path)
            await self._run_blocking(os.replace, tmp_path, dest)
        except StorageError:
            await self._discard(tmp_path)
            raise
        except (OSError, aiohttp.ClientError, asyncio.TimeoutError) as e:
            await self._discard(tmp_path)
            raise StorageError(f"Copy failed for {source_uri}: {e}") from e

    async def stat(self, path: Path) -> BlobInfo:
        """Report whether path exists and its size in bytes."""

        def _stat() -> BlobInfo:
            try:
                st = os.stat(path)
            except FileNotFoundError:
                return BlobInfo(exists=False)
            return BlobInfo(exists=True, size=st.st_size)

        return await self._run_blocking(_stat)

    async def delete(self, path: Path, idempotent: bool = True) -> None:
        """Delete a file or a directory tree.

        Raises:
            FileNotFoundError: path is absent and idempotent is False.
            OSError: The delete itself failed.
        """

        def _delete() -> None:
            if path.is_dir() and not path.is_symlink():
                shutil.rmtree(path)
                return
            try:
                path.unlink()
            except FileNotFoundError:
                if not idempotent:
                    raise

        await self._run_blocking(_delete)

    async def mkdir(self, path: Path, intermediates: bool = True) -> None:
        await self._run_blocking(
            partial(path.mkdir, parents=intermediates, exist_ok=True)
        )

    async def list_dir(self, path: Path) -> List[str]:
        """Names of the regular files directly inside path."""

        def _list() -> List[str]:
            if not path.is_dir():
                return []
            return [p.name for p in path.iterdir() if p.is_file()]

        return await self._run_blocking(_list)

    # ==================== Helpers ====================

    async def _download(self, url: str, output_path: Path) -> None:
        session = await self._get_session()
        async with session.get(url) as response:
            if response.status != 200:
                raise StorageError(f"HTTP {response.status} for {url}")

            total_bytes = 0
            f = await self._run_blocking(open, output_path, "wb")
            try:
                async for chunk in response.content.iter_chunked(CHUNK_SIZE):
                    total_bytes += len(chunk)
                    await self._run_blocking(f.write, chunk)
            finally:
                await self._run_blocking(f.close)

        logger.debug("blob_downloaded", url=url, size_bytes=total_bytes)

    async def _discard(self, path: Path) -> None:
        try:
            await self.delete(path, idempotent=True)
        except OSError:
            pass
