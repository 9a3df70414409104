import asyncio
import hashlib
import os

import httpx
import pytest
from conftest import FaultInjectingTransport, make_token

from resumable_upload.client.local_cache import LocalSessionCache
from resumable_upload.client.orchestrator import UploadConfig
from resumable_upload.client.transport import ChunkTransport
from resumable_upload.client.uploader import ChunkedUploader, describe_error, read_range
from resumable_upload.core.exceptions import (
    ChunkRejected, SessionConflict, TransientTransportError, UploadCancelled
)
from resumable_upload.schemas.upload import UploadMetadata

FILE_SIZE = 10_000_000
CHUNK_SIZE = 1_500_000


@pytest.fixture
def big_file(tmp_path):
    path = tmp_path / "archive.zip"
    path.write_bytes(os.urandom(FILE_SIZE))
    return path


@pytest.fixture
def cache(tmp_path):
    return LocalSessionCache(tmp_path / "cache")


def _uploader(http_client, cache=None, **kwargs):
    transport = ChunkTransport(token=make_token(), client=http_client)
    config = UploadConfig(chunk_size=CHUNK_SIZE, concurrency=3, max_attempts=3, retry_base_delay=0)
    return ChunkedUploader(transport, config, cache=cache, **kwargs)


def _client(fault):
    return httpx.AsyncClient(transport=fault, base_url="http://testserver")


@pytest.mark.anyio
async def test_upload_with_transient_failures(big_file, cache):
    fault = FaultInjectingTransport(fail_chunks={5: 2})
    progress = []
    async with _client(fault) as http_client:
        uploader = _uploader(http_client, cache, on_progress=progress.append)
        result = await uploader.upload_file(big_file, UploadMetadata(title="Archive"))

        assert result.success, result.error
        assert result.archive_id
        assert result.download_url.endswith(f"/files/{result.archive_id}/download")
        assert len(fault.chunk_puts()) == 9
        assert progress[-1] == 100.0

        status = await uploader.transport.get_status(result.upload_id)
        assert status["status"] == "completed"
        assert status["archive_id"] == result.archive_id
        assert status["content_hash"] == hashlib.sha1(big_file.read_bytes()).hexdigest()

    assert cache.load(result.upload_id) is None


@pytest.mark.anyio
async def test_cancel_then_resume_sends_only_missing_chunks(big_file, cache):
    fault = FaultInjectingTransport()
    uploader = None
    cancelled = []

    def on_chunk_complete(index, total_chunks, completed_count):
        if completed_count == 3 and not cancelled:
            cancelled.append(index)
            uploader.cancel()

    async with _client(fault) as http_client:
        uploader = _uploader(http_client, cache, on_chunk_complete=on_chunk_complete)
        first = await uploader.upload_file(big_file)

        assert not first.success
        assert isinstance(first.exception, UploadCancelled)
        assert len(fault.chunk_puts()) == 3
        assert sorted(cache.load(first.upload_id).completed_chunks) == [0, 1, 2]

        status = await uploader.transport.get_status(first.upload_id)
        assert status["completed_chunks"] == [0, 1, 2]

        second = await uploader.resume_upload(first.upload_id, big_file)
        assert second.success, second.error
        assert len(fault.chunk_puts()) == 7

        status = await uploader.transport.get_status(first.upload_id)
        assert status["completed_chunks"] == list(range(7))
        assert status["status"] == "completed"


@pytest.mark.anyio
async def test_resume_without_local_cache_rehashes(big_file):
    fault = FaultInjectingTransport(fail_chunks={4: 100})
    async with _client(fault) as http_client:
        uploader = _uploader(http_client)
        first = await uploader.upload_file(big_file)
        assert not first.success
        assert first.failed_chunks == [4]

        fault.fail_chunks.clear()
        second = await uploader.resume_upload(first.upload_id, big_file)
        assert second.success, second.error


@pytest.mark.anyio
async def test_resume_with_a_different_file_is_rejected(big_file, tmp_path):
    other = tmp_path / "other.zip"
    other.write_bytes(os.urandom(FILE_SIZE))
    fault = FaultInjectingTransport(fail_chunks={0: 100})
    async with _client(fault) as http_client:
        uploader = _uploader(http_client)
        first = await uploader.upload_file(big_file)
        assert not first.success

        fault.fail_chunks.clear()
        result = await uploader.resume_upload(first.upload_id, other)
        assert not result.success
        assert isinstance(result.exception, SessionConflict)


@pytest.mark.anyio
async def test_resume_of_completed_upload_returns_same_archive(big_file):
    async with _client(FaultInjectingTransport()) as http_client:
        uploader = _uploader(http_client)
        first = await uploader.upload_file(big_file)
        again = await uploader.resume_upload(first.upload_id, big_file)
        assert again.success
        assert again.archive_id == first.archive_id


@pytest.mark.anyio
async def test_discard(big_file, cache):
    fault = FaultInjectingTransport(fail_chunks={1: 100})
    async with _client(fault) as http_client:
        uploader = _uploader(http_client, cache)
        result = await uploader.upload_file(big_file)
        assert cache.load(result.upload_id) is not None

        await uploader.discard(result.upload_id)
        assert cache.load(result.upload_id) is None
        resumed = await uploader.resume_upload(result.upload_id, big_file)
        assert not resumed.success


@pytest.mark.anyio
async def test_cancel_before_transfer_starts(big_file):
    fault = FaultInjectingTransport()
    async with _client(fault) as http_client:
        uploader = _uploader(http_client)
        task = asyncio.create_task(uploader.upload_file(big_file))
        # Let the upload reach the fingerprinting step, then cancel
        await asyncio.sleep(0)
        uploader.cancel()
        result = await task

        assert not result.success
        assert isinstance(result.exception, UploadCancelled)
        assert result.exception.remaining == list(range(7))
        assert fault.requests == []

        # A cancel only applies to the call it interrupted
        result = await uploader.upload_file(big_file)
        assert result.success, result.error
        assert len(fault.chunk_puts()) == 7


def test_validate_file(tmp_path):
    uploader = ChunkedUploader(ChunkTransport(), max_file_size=10)
    ok = tmp_path / "a.cbz"
    ok.write_bytes(b"12345")
    big = tmp_path / "b.cbz"
    big.write_bytes(b"x" * 11)
    script = tmp_path / "c.exe"
    script.write_bytes(b"x")

    assert uploader.validate_file(ok).valid
    assert not uploader.validate_file(big).valid
    assert "Unsupported" in uploader.validate_file(script).error
    assert not uploader.validate_file(tmp_path / "missing.zip").valid


def test_read_range(tmp_path):
    path = tmp_path / "data.bin"
    path.write_bytes(bytes(range(100)))
    assert read_range(path, 10, 20) == bytes(range(10, 20))
    assert read_range(path, 95, 100) == bytes(range(95, 100))


def test_describe_error():
    assert "too large" in describe_error(ChunkRejected(None, "too big", status_code=413))
    assert "Unsupported" in describe_error(ChunkRejected(None, "bad type", status_code=415))
    assert "timed out" in describe_error(TransientTransportError("HTTP 408: slow", status_code=408))
    assert "Network" in describe_error(TransientTransportError("connection reset"))
    assert describe_error(SessionConflict("up1", "mismatch")) == "Upload session up1 conflict: mismatch"
