import asyncio
import logging
import os
from typing import Any, Dict, List, Optional

from resumable_upload.core.config import settings
from resumable_upload.core.exceptions import (
    ChunkOutOfRange, ChunkRejected, FileTooLarge, IntegrityError, MissingChunks,
    SessionNotFound, UploadValidationError
)
from resumable_upload.core.session import STATUS_COMPLETED, SessionStore, UploadSession, session_store
from resumable_upload.services.catalog import (
    ArtifactCatalog, ArtifactRecord, CatalogNotifier, catalog, catalog_notifier
)
from resumable_upload.services.fingerprint import is_digest
from resumable_upload.services.planner import chunk_length
from resumable_upload.services.storage.base import BaseStorage
from resumable_upload.services.storage.factory import get_storage

logger = logging.getLogger(__name__)


def _safe_file_name(file_name: str) -> str:
    return os.path.basename(file_name.replace("\\", "/")) or "file"


class UploadService:
    """Receiving side of the resumable upload protocol."""

    def __init__(
        self,
        store: Optional[SessionStore] = None,
        storage: Optional[BaseStorage] = None,
        artifact_catalog: Optional[ArtifactCatalog] = None,
        notifier: Optional[CatalogNotifier] = None,
    ):
        self.store = store or session_store
        self.storage = storage or get_storage()
        self.catalog = artifact_catalog or catalog
        self.notifier = notifier or catalog_notifier
        self._finalize_locks: Dict[str, asyncio.Lock] = {}

    async def _get_owned(self, upload_id: str, user_id: str) -> UploadSession:
        session = await asyncio.to_thread(self.store.status, upload_id)
        if session.user_id != user_id:
            raise SessionNotFound(upload_id)
        return session

    async def init_session(
        self,
        upload_id: str,
        user_id: str,
        file_name: str,
        file_size: int,
        content_hash: str,
        total_chunks: int,
        chunk_size: int,
    ) -> UploadSession:
        if file_size > settings.MAX_FILE_SIZE:
            raise FileTooLarge(file_size, settings.MAX_FILE_SIZE)
        if chunk_size > settings.MAX_CHUNK_SIZE:
            raise UploadValidationError(
                f"chunk_size {chunk_size} exceeds the {settings.MAX_CHUNK_SIZE} byte limit"
            )
        return await asyncio.to_thread(
            self.store.open,
            upload_id, file_name, file_size, content_hash, total_chunks, chunk_size, user_id
        )

    async def put_chunk(
        self,
        upload_id: str,
        user_id: str,
        chunk_index: int,
        total_chunks: int,
        chunk_data: bytes,
    ) -> UploadSession:
        session = await self._get_owned(upload_id, user_id)
        if total_chunks != session.total_chunks:
            raise ChunkRejected(
                chunk_index, f"total_chunks={total_chunks}, session expects {session.total_chunks}"
            )
        if chunk_index < 0 or chunk_index >= session.total_chunks:
            raise ChunkOutOfRange(chunk_index, session.total_chunks)

        # Accepted chunks are immutable; a re-send is acknowledged without touching storage
        if chunk_index in session.completed_chunks:
            logger.debug(f"Chunk {chunk_index} of session {upload_id} already accepted")
            return session

        expected = chunk_length(chunk_index, session.file_size, session.chunk_size)
        if len(chunk_data) != expected:
            raise ChunkRejected(chunk_index, f"expected {expected} bytes, received {len(chunk_data)}")

        await self.storage.save_chunk(upload_id, chunk_index, chunk_data)
        return await asyncio.to_thread(self.store.mark_chunk_complete, upload_id, chunk_index)

    async def get_status(self, upload_id: str, user_id: str) -> UploadSession:
        return await self._get_owned(upload_id, user_id)

    def _finalize_lock(self, upload_id: str) -> asyncio.Lock:
        lock = self._finalize_locks.get(upload_id)
        if lock is None:
            lock = self._finalize_locks[upload_id] = asyncio.Lock()
        return lock

    async def complete(
        self,
        upload_id: str,
        user_id: str,
        content_hash: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ArtifactRecord:
        """
        Assemble, verify and register the artifact of a fully uploaded session.

        Calling this again for a completed session returns the artifact that
        was registered the first time.
        """
        async with self._finalize_lock(upload_id):
            session = await self._get_owned(upload_id, user_id)

            newly_completed = True
            if session.status == STATUS_COMPLETED and session.archive_id:
                record = await asyncio.to_thread(self.catalog.get, session.archive_id)
                if record is not None:
                    logger.info(f"Session {upload_id} already completed as archive {record.archive_id}")
                    newly_completed = False

            if newly_completed:
                if not session.is_complete:
                    raise MissingChunks(upload_id, session.missing_chunks())

                # A previous attempt may have registered the artifact and crashed before marking the session
                record = await asyncio.to_thread(self.catalog.find_by_session, upload_id)
                if record is None:
                    record = await self._assemble_and_register(session, content_hash, metadata or {})

                await asyncio.to_thread(self.store.mark_completed, upload_id, record.archive_id)
                await self.storage.cleanup_session(upload_id)

        # A completed session is never mutated again, so its locks can go
        self._finalize_locks.pop(upload_id, None)
        self.store.release(upload_id)

        if newly_completed:
            await self.notifier.notify(record)
        return record

    async def _assemble_and_register(
        self, session: UploadSession, expected_hash: str, metadata: Dict[str, Any]
    ) -> ArtifactRecord:
        upload_id = session.id
        merged_file_path = os.path.join(
            settings.PERSISTENT_LOCAL_STORAGE_PATH, "assembling", upload_id, "merged_final_file"
        )
        try:
            result = await self.storage.merge_chunks(upload_id, session.total_chunks, merged_file_path)
        except MissingChunks as e:
            # Chunk files vanished from staging; forget them so a resume sends them again
            logger.error(f"Session {upload_id} lost staged chunks {e.missing}")
            await asyncio.to_thread(self.store.mark_chunks_lost, upload_id, e.missing, str(e))
            raise
        except OSError as e:
            logger.error(f"Assembly failed for session {upload_id}: {e}")
            await asyncio.to_thread(self.store.mark_failed, upload_id, f"assembly failed: {e}")
            raise

        actual_hash = result["content_hash"]
        mismatch = None
        if result["total_size"] != session.file_size:
            mismatch = f"size {result['total_size']} != {session.file_size}"
        elif is_digest(expected_hash):
            if actual_hash != expected_hash.lower():
                mismatch = f"hash {actual_hash} != {expected_hash}"
        elif not is_digest(session.content_hash) and expected_hash == session.content_hash:
            logger.warning(
                f"Session {upload_id} was opened with a fallback key instead of a digest, skipping hash verification"
            )
        else:
            mismatch = f"{expected_hash!r} is not a digest of the session content"

        if mismatch:
            await self.storage.delete_file(merged_file_path, storage_type="local")
            await asyncio.to_thread(self.store.mark_failed, upload_id, f"integrity check failed: {mismatch}")
            raise IntegrityError(upload_id, expected_hash, actual_hash)

        object_key = f"{session.user_id}/{upload_id}/{_safe_file_name(session.file_name)}"
        location = await self.storage.upload_file(merged_file_path, object_key)
        return await asyncio.to_thread(
            self.catalog.register,
            upload_id,
            session.user_id,
            session.file_name,
            session.file_size,
            actual_hash,
            location,
            metadata,
        )

    async def cancel(self, upload_id: str, user_id: str) -> None:
        await self._get_owned(upload_id, user_id)
        await self.storage.cleanup_session(upload_id)
        await asyncio.to_thread(self.store.close, upload_id)
        self._finalize_locks.pop(upload_id, None)
        logger.info(f"Cancelled upload session {upload_id}")

    async def list_sessions(self, user_id: str, status: Optional[str] = None) -> List[UploadSession]:
        return await asyncio.to_thread(self.store.list_sessions, user_id, status)

    async def list_artifacts(self, user_id: str) -> List[ArtifactRecord]:
        return await asyncio.to_thread(self.catalog.list_for_user, user_id)

    async def get_artifact(self, archive_id: str, user_id: str) -> Optional[ArtifactRecord]:
        record = await asyncio.to_thread(self.catalog.get, archive_id)
        if record is None or record.user_id != user_id:
            return None
        return record


upload_service = UploadService()
