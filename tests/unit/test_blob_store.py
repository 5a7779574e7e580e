"""Unit tests for blob storage primitives"""

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from src.services.blob_store import (
    BlobStore,
    partial_path,
    resolve_local_source,
)
from src.utils.exceptions import StorageError


class TestResolveLocalSource:
    def test_plain_path(self):
        assert resolve_local_source("/tmp/a.jpg") == Path("/tmp/a.jpg")

    def test_file_uri(self):
        assert resolve_local_source("file:///tmp/a.jpg") == Path("/tmp/a.jpg")

    def test_file_uri_with_host_segment(self):
        assert resolve_local_source("file://tmp/a.jpg") == Path("/tmp/a.jpg")

    def test_http_is_remote(self):
        assert resolve_local_source("https://x/a.jpg") is None

    def test_unsupported_scheme(self):
        with pytest.raises(StorageError):
            resolve_local_source("ftp://x/a.jpg")


def test_partial_path():
    assert partial_path(Path("/c/key")) == Path("/c/key.part")


@pytest.mark.asyncio
async def test_copy_local_file(tmp_path):
    source = tmp_path / "src.jpg"
    source.write_bytes(b"x" * 1024)
    dest = tmp_path / "dest"

    store = BlobStore()
    await store.copy(str(source), dest)

    assert dest.read_bytes() == b"x" * 1024
    assert not partial_path(dest).exists()
    assert (await store.stat(dest)).size == 1024


@pytest.mark.asyncio
async def test_copy_missing_source_raises_and_leaves_nothing(tmp_path):
    dest = tmp_path / "dest"
    store = BlobStore()

    with pytest.raises(StorageError):
        await store.copy(str(tmp_path / "missing.jpg"), dest)

    assert not dest.exists()
    assert not partial_path(dest).exists()


@pytest.mark.asyncio
async def test_copy_keeps_existing_dest_on_failure(tmp_path):
    dest = tmp_path / "dest"
    dest.write_bytes(b"old")

    store = BlobStore()
    with pytest.raises(StorageError):
        await store.copy(str(tmp_path / "missing.jpg"), dest)

    assert dest.read_bytes() == b"old"


@pytest.mark.asyncio
async def test_copy_http_download(tmp_path):
    dest = tmp_path / "dest"

    async def chunks(_size):
        yield b"abc"
        yield b"def"

    response = MagicMock()
    response.status = 200
    response.content.iter_chunked = chunks
    context = MagicMock()
    context.__aenter__ = AsyncMock(return_value=response)
    context.__aexit__ = AsyncMock(return_value=None)
    session = MagicMock()
    session.get.return_value = context

    store = BlobStore()
    with patch.object(store, "_get_session", AsyncMock(return_value=session)):
        await store.copy("https://x/a.jpg", dest)

    assert dest.read_bytes() == b"abcdef"


@pytest.mark.asyncio
async def test_download_writes_run_in_executor(tmp_path):
    dest = tmp_path / "dest"

    async def chunks(_size):
        yield b"abc"
        yield b"def"

    response = MagicMock()
    response.status = 200
    response.content.iter_chunked = chunks
    context = MagicMock()
    context.__aenter__ = AsyncMock(return_value=response)
    context.__aexit__ = AsyncMock(return_value=None)
    session = MagicMock()
    session.get.return_value = context

    store = BlobStore()
    dispatched = []
    run_blocking = store._run_blocking

    async def recording_run_blocking(func, *args):
        dispatched.append(getattr(func, "__name__", None))
        return await run_blocking(func, *args)

    with patch.object(store, "_get_session", AsyncMock(return_value=session)):
        with patch.object(store, "_run_blocking", recording_run_blocking):
            await store.copy("https://x/a.jpg", dest)

    assert dest.read_bytes() == b"abcdef"
    assert dispatched.count("write") == 2
    assert "open" in dispatched
    assert "close" in dispatched


@pytest.mark.asyncio
async def test_copy_http_error_status(tmp_path):
    dest = tmp_path / "dest"

    response = MagicMock()
    response.status = 404
    context = MagicMock()
    context.__aenter__ = AsyncMock(return_value=response)
    context.__aexit__ = AsyncMock(return_value=None)
    session = MagicMock()
    session.get.return_value = context

    store = BlobStore()
    with patch.object(store, "_get_session", AsyncMock(return_value=session)):
        with pytest.raises(StorageError, match="404"):
            await store.copy("https://x/a.jpg", dest)

    assert not partial_path(dest).exists()


@pytest.mark.asyncio
async def test_stat_missing(tmp_path):
    info = await BlobStore().stat(tmp_path / "nope")
    assert info.exists is False
    assert info.size == 0


@pytest.mark.asyncio
async def test_delete_is_idempotent(tmp_path):
    await BlobStore().delete(tmp_path / "nope", idempotent=True)


@pytest.mark.asyncio
async def test_delete_non_idempotent_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        await BlobStore().delete(tmp_path / "nope", idempotent=False)


@pytest.mark.asyncio
async def test_delete_directory_tree(tmp_path):
    directory = tmp_path / "d"
    (directory / "sub").mkdir(parents=True)
    (directory / "sub" / "f").write_text("x")

    await BlobStore().delete(directory)
    assert not directory.exists()


@pytest.mark.asyncio
async def test_mkdir_and_list_dir(tmp_path):
    store = BlobStore()
    directory = tmp_path / "a" / "b"
    await store.mkdir(directory, intermediates=True)
    await store.mkdir(directory, intermediates=True)

    (directory / "f1").write_text("1")
    (directory / "nested").mkdir()

    assert await store.list_dir(directory) == ["f1"]
    assert await store.list_dir(tmp_path / "missing") == []
