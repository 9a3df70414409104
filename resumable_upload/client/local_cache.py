"""
Advisory on-disk mirror of upload sessions.

It only remembers what is needed to resume without re-hashing the source
file. The server's session status always wins over anything stored here.
"""
import json
import logging
import os
import time
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Iterable, List, Optional, Union

logger = logging.getLogger(__name__)

DEFAULT_MAX_AGE = 24 * 60 * 60


@dataclass
class CachedSession:
    upload_id: str
    file_name: str
    file_size: int
    content_hash: str
    total_chunks: int
    chunk_size: int
    completed_chunks: List[int] = field(default_factory=list)
    status: str = "pending"
    created_at: float = field(default_factory=time.time)


class LocalSessionCache:
    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)

    def _path(self, upload_id: str) -> Path:
        return self.directory / f"upload_{upload_id}.json"

    def save(self, entry: CachedSession) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self._path(entry.upload_id)
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(asdict(entry)), encoding="utf-8")
        os.replace(tmp_path, path)

    def load(self, upload_id: str) -> Optional[CachedSession]:
        path = self._path(upload_id)
        if not path.exists():
            return None
        try:
            return CachedSession(**json.loads(path.read_text(encoding="utf-8")))
        except (ValueError, TypeError) as e:
            logger.warning(f"Corrupted upload session data detected: {path} ({e})")
            return None

    def update_completed(self, upload_id: str, completed_chunks: Iterable[int], status: Optional[str] = None) -> None:
        entry = self.load(upload_id)
        if entry is None:
            return
        entry.completed_chunks = sorted(set(completed_chunks))
        if status is not None:
            entry.status = status
        elif len(entry.completed_chunks) == entry.total_chunks:
            entry.status = "completed"
        else:
            entry.status = "uploading"
        self.save(entry)

    def remove(self, upload_id: str) -> None:
        path = self._path(upload_id)
        if path.exists():
            path.unlink()

    def cleanup_expired(self, max_age: float = DEFAULT_MAX_AGE, now: Optional[float] = None) -> List[str]:
        """Drop entries that are expired, completed or unreadable. Returns the removed upload ids."""
        if not self.directory.is_dir():
            return []
        now = time.time() if now is None else now
        removed = []
        for path in self.directory.glob("upload_*.json"):
            upload_id = path.stem[len("upload_"):]
            entry = self.load(upload_id)
            if entry is None or entry.status == "completed" or now - entry.created_at > max_age:
                path.unlink()
                removed.append(upload_id)
        if removed:
            logger.info(f"Removed {len(removed)} stale upload session(s) from {self.directory}")
        return removed
