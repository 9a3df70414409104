"""
Authoritative upload session records.

Each session is one JSON document under SESSION_STORE_PATH. Every mutation is
written to a temp file, fsynced and atomically renamed before the call
returns, so an acknowledged chunk survives a crash of the service.
"""
import json
import logging
import os
import re
import threading
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Set

from resumable_upload.core.config import settings
from resumable_upload.core.exceptions import (
    ChunkOutOfRange, SessionConflict, SessionNotFound, UploadValidationError
)
from resumable_upload.services.planner import plan

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_UPLOADING = "uploading"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

_UPLOAD_ID = re.compile(r"^[A-Za-z0-9_-]{1,128}$")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def is_valid_upload_id(upload_id: str) -> bool:
    return bool(_UPLOAD_ID.match(upload_id or ""))


@dataclass
class UploadSession:
    id: str
    user_id: str
    file_name: str
    file_size: int
    content_hash: str
    chunk_size: int
    total_chunks: int
    completed_chunks: Set[int] = field(default_factory=set)
    status: str = STATUS_PENDING
    archive_id: Optional[str] = None
    error: Optional[str] = None
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)

    @property
    def is_complete(self) -> bool:
        return len(self.completed_chunks) == self.total_chunks

    def missing_chunks(self) -> List[int]:
        return [i for i in range(self.total_chunks) if i not in self.completed_chunks]

    def to_dict(self) -> dict:
        data = asdict(self)
        data["completed_chunks"] = sorted(self.completed_chunks)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "UploadSession":
        data = dict(data)
        data["completed_chunks"] = set(data.get("completed_chunks", []))
        return cls(**data)


class SessionStore:
    """File-backed session records with a single writer per upload id."""

    def __init__(self, base_path: Optional[str] = None):
        self.base_path = base_path or settings.SESSION_STORE_PATH
        self._locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    def lock(self, upload_id: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(upload_id)
            if lock is None:
                lock = self._locks[upload_id] = threading.RLock()
            return lock

    def _path(self, upload_id: str) -> str:
        return os.path.join(self.base_path, f"{upload_id}.json")

    def _read(self, upload_id: str) -> Optional[UploadSession]:
        if not is_valid_upload_id(upload_id):
            return None
        path = self._path(upload_id)
        if not os.path.exists(path):
            return None
        with open(path, "r", encoding="utf-8") as f:
            return UploadSession.from_dict(json.load(f))

    def _require(self, upload_id: str) -> UploadSession:
        session = self._read(upload_id)
        if session is None:
            raise SessionNotFound(upload_id)
        return session

    def _write(self, session: UploadSession) -> None:
        os.makedirs(self.base_path, exist_ok=True)
        session.updated_at = _now()
        path = self._path(session.id)
        tmp_path = f"{path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(session.to_dict(), f)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)

    def open(
        self,
        upload_id: str,
        file_name: str,
        file_size: int,
        content_hash: str,
        total_chunks: int,
        chunk_size: int,
        user_id: str,
    ) -> UploadSession:
        """
        Create a session, or return the existing one when every parameter
        matches. Any mismatch with an existing session is a conflict.
        """
        if not is_valid_upload_id(upload_id):
            raise UploadValidationError(f"Invalid upload id: {upload_id!r}")
        try:
            expected_chunks = plan(file_size, chunk_size)
        except ValueError as e:
            raise UploadValidationError(str(e))
        if total_chunks != expected_chunks:
            raise UploadValidationError(
                f"total_chunks={total_chunks} does not match ceil({file_size}/{chunk_size})={expected_chunks}"
            )

        with self.lock(upload_id):
            existing = self._read(upload_id)
            if existing is not None:
                requested = {
                    "user_id": user_id,
                    "file_name": file_name,
                    "file_size": file_size,
                    "content_hash": content_hash,
                    "total_chunks": total_chunks,
                    "chunk_size": chunk_size,
                }
                mismatched = [k for k, v in requested.items() if getattr(existing, k) != v]
                if mismatched:
                    raise SessionConflict(upload_id, f"mismatched {', '.join(mismatched)}")
                logger.debug(f"Session {upload_id} already open, reusing it")
                return existing

            session = UploadSession(
                id=upload_id,
                user_id=user_id,
                file_name=file_name,
                file_size=file_size,
                content_hash=content_hash,
                chunk_size=chunk_size,
                total_chunks=total_chunks,
            )
            self._write(session)
            logger.info(f"Opened upload session {upload_id} for {file_name} ({total_chunks} chunks)")
            return session

    def mark_chunk_complete(self, upload_id: str, index: int) -> UploadSession:
        with self.lock(upload_id):
            session = self._require(upload_id)
            if index < 0 or index >= session.total_chunks:
                raise ChunkOutOfRange(index, session.total_chunks)
            if index in session.completed_chunks:
                return session
            session.completed_chunks.add(index)
            if session.status in (STATUS_PENDING, STATUS_FAILED):
                session.status = STATUS_UPLOADING
                session.error = None
            self._write(session)
            logger.debug(
                f"Chunk {index} recorded for session {upload_id} "
                f"({len(session.completed_chunks)}/{session.total_chunks})"
            )
            return session

    def status(self, upload_id: str) -> UploadSession:
        return self._require(upload_id)

    def mark_completed(self, upload_id: str, archive_id: str) -> UploadSession:
        with self.lock(upload_id):
            session = self._require(upload_id)
            session.status = STATUS_COMPLETED
            session.archive_id = archive_id
            session.error = None
            self._write(session)
            logger.info(f"Session {upload_id} completed as archive {archive_id}")
            return session

    def mark_failed(self, upload_id: str, reason: str) -> UploadSession:
        with self.lock(upload_id):
            session = self._require(upload_id)
            session.status = STATUS_FAILED
            session.error = reason
            self._write(session)
            logger.warning(f"Session {upload_id} marked as failed: {reason}")
            return session

    def mark_chunks_lost(self, upload_id: str, indices: Iterable[int], reason: str) -> UploadSession:
        with self.lock(upload_id):
            session = self._require(upload_id)
            session.completed_chunks.difference_update(indices)
            session.status = STATUS_FAILED
            session.error = reason
            self._write(session)
            logger.warning(
                f"Session {upload_id} needs chunks {session.missing_chunks()} again: {reason}"
            )
            return session

    def close(self, upload_id: str) -> None:
        if not is_valid_upload_id(upload_id):
            return
        with self.lock(upload_id):
            path = self._path(upload_id)
            if os.path.exists(path):
                os.remove(path)
                logger.info(f"Closed upload session {upload_id}")
        self.release(upload_id)

    def release(self, upload_id: str) -> None:
        """Forget the lock of a session that will not be mutated again."""
        with self._locks_guard:
            self._locks.pop(upload_id, None)

    def list_sessions(self, user_id: Optional[str] = None, status: Optional[str] = None) -> List[UploadSession]:
        if not os.path.isdir(self.base_path):
            return []
        sessions = []
        for name in os.listdir(self.base_path):
            if not name.endswith(".json"):
                continue
            session = self._read(name[:-len(".json")])
            if session is None:
                continue
            if user_id is not None and session.user_id != user_id:
                continue
            if status is not None and session.status != status:
                continue
            sessions.append(session)
        return sorted(sessions, key=lambda s: s.created_at, reverse=True)


session_store = SessionStore()
