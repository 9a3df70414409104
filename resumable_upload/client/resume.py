import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Set

from resumable_upload.client.local_cache import LocalSessionCache
from resumable_upload.client.transport import ChunkTransport

logger = logging.getLogger(__name__)


def remaining(total_chunks: int, completed_chunks: Iterable[int]) -> List[int]:
    """Sorted indices in [0, total_chunks) that are not yet accepted."""
    done = set(completed_chunks)
    return [i for i in range(total_chunks) if i not in done]


@dataclass
class ResumePlan:
    upload_id: str
    file_name: str
    file_size: int
    chunk_size: int
    content_hash: str
    total_chunks: int
    completed: Set[int]
    remaining: List[int]
    status: str
    archive_id: Optional[str] = None


class ResumeController:
    """Computes the outstanding work of a session from the server's view of it."""

    def __init__(self, transport: ChunkTransport, cache: Optional[LocalSessionCache] = None):
        self.transport = transport
        self.cache = cache

    async def reconcile(self, upload_id: str) -> ResumePlan:
        status = await self.transport.get_status(upload_id)
        completed = set(status["completed_chunks"])
        total_chunks = status["total_chunks"]

        if self.cache is not None:
            hint = self.cache.load(upload_id)
            if hint is not None and set(hint.completed_chunks) != completed:
                logger.info(
                    f"Local cache for {upload_id} lists {len(hint.completed_chunks)} chunks, "
                    f"server has {len(completed)}; using the server's view"
                )
            if hint is not None:
                self.cache.update_completed(upload_id, completed, status["status"])

        plan = ResumePlan(
            upload_id=upload_id,
            file_name=status["file_name"],
            file_size=status["file_size"],
            chunk_size=status["chunk_size"],
            content_hash=status["content_hash"],
            total_chunks=total_chunks,
            completed=completed,
            remaining=remaining(total_chunks, completed),
            status=status["status"],
            archive_id=status.get("archive_id"),
        )
        logger.debug(f"Session {upload_id}: {len(completed)}/{total_chunks} chunks accepted, {len(plan.remaining)} remaining")
        return plan
