"""
Registry of finalized artifacts.

Every record is a JSON document named after its archive id. A second index,
keyed by upload session id, guarantees that one session never registers more
than one artifact even if finalization is retried after a crash.
"""
import json
import logging
import os
import threading
import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx

from resumable_upload.core.config import settings

logger = logging.getLogger(__name__)


@dataclass
class ArtifactRecord:
    archive_id: str
    session_id: str
    user_id: str
    file_name: str
    file_size: int
    content_hash: str
    location: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> dict:
        return asdict(self)


class ArtifactCatalog:
    def __init__(self, base_path: Optional[str] = None):
        self.base_path = base_path or settings.CATALOG_PATH
        self._lock = threading.Lock()

    def _record_path(self, archive_id: str) -> str:
        return os.path.join(self.base_path, f"{archive_id}.json")

    def _index_path(self, session_id: str) -> str:
        return os.path.join(self.base_path, "sessions", session_id)

    def _write_json(self, path: str, data: dict) -> None:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        tmp_path = f"{path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)

    def get(self, archive_id: str) -> Optional[ArtifactRecord]:
        try:
            uuid.UUID(hex=archive_id)
        except ValueError:
            return None
        path = self._record_path(archive_id)
        if not os.path.exists(path):
            return None
        with open(path, "r", encoding="utf-8") as f:
            return ArtifactRecord(**json.load(f))

    def find_by_session(self, session_id: str) -> Optional[ArtifactRecord]:
        path = self._index_path(session_id)
        if not os.path.exists(path):
            return None
        with open(path, "r", encoding="utf-8") as f:
            return self.get(f.read().strip())

    def register(
        self,
        session_id: str,
        user_id: str,
        file_name: str,
        file_size: int,
        content_hash: str,
        location: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ArtifactRecord:
        with self._lock:
            existing = self.find_by_session(session_id)
            if existing is not None:
                logger.info(f"Session {session_id} already registered as archive {existing.archive_id}")
                return existing

            record = ArtifactRecord(
                archive_id=uuid.uuid4().hex,
                session_id=session_id,
                user_id=user_id,
                file_name=file_name,
                file_size=file_size,
                content_hash=content_hash,
                location=location,
                metadata=metadata or {},
            )
            self._write_json(self._record_path(record.archive_id), record.to_dict())
            # The index is written last: a record without index is invisible to retries
            os.makedirs(os.path.dirname(self._index_path(session_id)), exist_ok=True)
            with open(self._index_path(session_id), "w", encoding="utf-8") as f:
                f.write(record.archive_id)
                f.flush()
                os.fsync(f.fileno())
            logger.info(f"Registered archive {record.archive_id} for session {session_id}")
            return record

    def list_for_user(self, user_id: str) -> List[ArtifactRecord]:
        if not os.path.isdir(self.base_path):
            return []
        records = []
        for name in os.listdir(self.base_path):
            if not name.endswith(".json"):
                continue
            record = self.get(name[:-len(".json")])
            if record is not None and record.user_id == user_id:
                records.append(record)
        return sorted(records, key=lambda r: r.created_at, reverse=True)


class CatalogNotifier:
    """Hands a finalized artifact to the downstream task system."""

    def __init__(self, url: Optional[str] = None, timeout: float = 10.0):
        self.url = url if url is not None else settings.CATALOG_NOTIFY_URL
        self.timeout = timeout

    async def notify(self, record: ArtifactRecord) -> bool:
        if not self.url:
            logger.debug(f"No catalog notify URL configured, skipping archive {record.archive_id}")
            return False
        try:
            async with httpx.AsyncClient() as client:
                response = await client.post(self.url, json=record.to_dict(), timeout=self.timeout)
                response.raise_for_status()
        except httpx.HTTPError as e:
            # The artifact is already registered; downstream can pick it up from the catalog
            logger.error(f"Failed to notify catalog about archive {record.archive_id}: {e}")
            return False
        logger.info(f"Catalog notified about archive {record.archive_id}")
        return True


catalog = ArtifactCatalog()
catalog_notifier = CatalogNotifier()
