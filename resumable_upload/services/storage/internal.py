import os
import shutil
import uuid
import asyncio
import logging
import concurrent.futures
from typing import Optional
from .base import BaseStorage
from resumable_upload.core.config import settings
from resumable_upload.core.exceptions import MissingChunks
from resumable_upload.services.fingerprint import new_digest

logger = logging.getLogger(__name__)

# Blocking file I/O runs here so request handlers never stall the event loop
thread_pool = concurrent.futures.ThreadPoolExecutor(max_workers=4)

COPY_BUFFER_SIZE = 1024 * 1024


class InternalStorage(BaseStorage):
    def _session_dir(self, upload_session_id: str) -> str:
        return os.path.join(settings.LOCAL_TEMP_CHUNK_PATH, str(upload_session_id))

    def _chunk_path(self, upload_session_id: str, chunk_index: int) -> str:
        return os.path.join(self._session_dir(upload_session_id), f"chunk_{chunk_index}")

    def _save_chunk_sync(self, upload_session_id: str, chunk_index: int, chunk_data: bytes) -> str:
        base_path = self._session_dir(upload_session_id)
        os.makedirs(base_path, exist_ok=True)
        chunk_path = self._chunk_path(upload_session_id, chunk_index)

        # A half-written chunk must never be visible under its final name
        tmp_path = f"{chunk_path}.{uuid.uuid4().hex}.part"
        try:
            with open(tmp_path, "wb") as f:
                f.write(chunk_data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, chunk_path)
        except OSError as e:
            logger.error(f"Error saving chunk {chunk_index} for session {upload_session_id}: {e}")
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

        logger.debug(f"Chunk saved successfully: {chunk_path} ({len(chunk_data)} bytes)")
        return chunk_path

    async def save_chunk(self, upload_session_id: str, chunk_index: int, chunk_data: bytes) -> str:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            thread_pool,
            self._save_chunk_sync,
            upload_session_id,
            chunk_index,
            chunk_data
        )

    async def chunk_exists(self, upload_session_id: str, chunk_index: int) -> bool:
        return await asyncio.to_thread(os.path.isfile, self._chunk_path(upload_session_id, chunk_index))

    def _merge_files_sync(self, upload_session_id: str, total_chunks: int, merged_file_path: str) -> dict:
        missing = [
            i for i in range(total_chunks)
            if not os.path.isfile(self._chunk_path(upload_session_id, i))
        ]
        if missing:
            raise MissingChunks(upload_session_id, missing)

        os.makedirs(os.path.dirname(merged_file_path), exist_ok=True)
        logger.info(f"Starting merge of {total_chunks} chunks for session {upload_session_id}")

        digest = new_digest()
        total_size = 0
        try:
            with open(merged_file_path, "wb") as merged:
                for i in range(total_chunks):
                    with open(self._chunk_path(upload_session_id, i), "rb") as chunk_file:
                        while True:
                            block = chunk_file.read(COPY_BUFFER_SIZE)
                            if not block:
                                break
                            merged.write(block)
                            digest.update(block)
                            total_size += len(block)
        except OSError:
            if os.path.exists(merged_file_path):
                os.remove(merged_file_path)
                logger.info(f"Removed incomplete output file: {merged_file_path}")
            raise

        logger.info(
            f"Merge completed for session {upload_session_id}: "
            f"{total_chunks} chunks, {total_size/1024/1024:.2f}MB -> {merged_file_path}"
        )
        return {
            "chunks_merged": total_chunks,
            "total_size": total_size,
            "content_hash": digest.hexdigest(),
        }

    async def merge_chunks(self, upload_session_id: str, total_chunks: int, merged_file_path: str) -> dict:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            thread_pool,
            self._merge_files_sync,
            upload_session_id,
            total_chunks,
            merged_file_path
        )

    async def upload_file(self, file_path: str, object_key: str) -> str:
        # For local, just move the file to its final location
        final_path = os.path.join(settings.PERSISTENT_LOCAL_STORAGE_PATH, "final", object_key)
        final_dir = os.path.dirname(final_path)
        await asyncio.to_thread(os.makedirs, final_dir, exist_ok=True)
        await asyncio.to_thread(shutil.move, file_path, final_path)
        return final_path

    async def delete_file(self, file_path_or_key: str, storage_type: Optional[str] = None) -> None:
        await asyncio.to_thread(self._delete_file, file_path_or_key)

    def _delete_file(self, file_path):
        if os.path.exists(file_path):
            os.remove(file_path)

    def _cleanup_session_sync(self, upload_session_id: str) -> Optional[dict]:
        base_path = self._session_dir(upload_session_id)
        if not os.path.exists(base_path):
            return None

        files = os.listdir(base_path)
        total_size = sum(os.path.getsize(os.path.join(base_path, f)) for f in files)
        shutil.rmtree(base_path)
        logger.info(
            f"Cleaned up chunk directory {base_path}: "
            f"{len(files)} files, {total_size/1024/1024:.2f}MB"
        )
        return {
            "files_removed": len(files),
            "total_size": total_size,
        }

    async def cleanup_session(self, upload_session_id: str) -> Optional[dict]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            thread_pool,
            self._cleanup_session_sync,
            upload_session_id
        )

    def local_path(self, location: str) -> Optional[str]:
        return location
