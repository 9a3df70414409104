"""
Batched, retrying chunk transmission.

Missing chunks are sent in batches of `concurrency`; a batch fully settles
before the next one starts. Transient failures are retried per chunk with
exponential backoff, and chunks that exhaust their attempts get exactly one
more pass once the whole list has been processed.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, List, Optional, Set

from resumable_upload.client.resume import remaining
from resumable_upload.client.transport import ChunkTransport
from resumable_upload.core.constants import CHUNK_SIZE
from resumable_upload.core.exceptions import (
    ChunkUploadFailed, TransientTransportError, UploadCancelled, UploadValidationError
)
from resumable_upload.services.planner import progress_percent

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]
ChunkCompleteCallback = Callable[[int, int, int], None]
ErrorCallback = Callable[[BaseException, Optional[int]], None]
ReadChunk = Callable[[int], Awaitable[bytes]]


@dataclass
class UploadConfig:
    chunk_size: int = CHUNK_SIZE
    concurrency: int = 3
    max_attempts: int = 3
    retry_base_delay: float = 1.0
    chunk_timeout: float = 60.0

    def __post_init__(self):
        if self.chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        if self.concurrency <= 0:
            raise ValueError("concurrency must be positive")
        if self.max_attempts <= 0:
            raise ValueError("max_attempts must be positive")
        if self.retry_base_delay < 0:
            raise ValueError("retry_base_delay must not be negative")


@dataclass
class ChunkAttempt:
    index: int
    retry_count: int = 0
    last_error: Optional[BaseException] = None
    accepted: bool = False


class UploadOrchestrator:
    def __init__(
        self,
        transport: ChunkTransport,
        config: Optional[UploadConfig] = None,
        on_progress: Optional[ProgressCallback] = None,
        on_chunk_complete: Optional[ChunkCompleteCallback] = None,
        on_error: Optional[ErrorCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ):
        self.transport = transport
        self.config = config or UploadConfig()
        self.on_progress = on_progress
        self.on_chunk_complete = on_chunk_complete
        self.on_error = on_error
        self._cancel_event = cancel_event or asyncio.Event()

        self._upload_id = ""
        self._file_size = 0
        self._chunk_size = self.config.chunk_size
        self._total_chunks = 0
        self._completed: Set[int] = set()
        self._read_chunk: Optional[ReadChunk] = None

    def cancel(self) -> None:
        """Stop before the next batch. Chunks already in flight are allowed to finish."""
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    @property
    def completed(self) -> Set[int]:
        return set(self._completed)

    @property
    def progress(self) -> float:
        return progress_percent(self._completed, self._file_size, self._chunk_size)

    def _report_progress(self) -> None:
        if self.on_progress is not None:
            self.on_progress(self.progress)

    async def run(
        self,
        upload_id: str,
        file_size: int,
        total_chunks: int,
        indices: Iterable[int],
        read_chunk: ReadChunk,
        completed: Iterable[int] = (),
        chunk_size: Optional[int] = None,
    ) -> Set[int]:
        """
        Send every index in `indices` and return the accepted set, including
        `completed`. Raises ChunkUploadFailed when chunks still fail after the
        reconciliation pass and UploadCancelled when cancelled between batches.
        """
        self._upload_id = upload_id
        self._file_size = file_size
        self._chunk_size = chunk_size or self.config.chunk_size
        self._total_chunks = total_chunks
        self._completed = set(completed)
        self._read_chunk = read_chunk
        self._report_progress()

        failed = await self._run_pass(sorted(set(indices)))
        if failed:
            logger.warning(
                f"Retrying {len(failed)} failed chunk(s) of upload {upload_id}: {sorted(failed)}"
            )
            failed = await self._run_pass(sorted(failed))
            if failed:
                raise ChunkUploadFailed(upload_id, failed)

        return set(self._completed)

    async def _run_pass(self, indices: List[int]) -> Set[int]:
        failed: Set[int] = set()
        step = self.config.concurrency
        for start in range(0, len(indices), step):
            if self._cancel_event.is_set():
                logger.info(f"Upload {self._upload_id} cancelled before batch starting at chunk {indices[start]}")
                raise UploadCancelled(
                    self._upload_id, self._completed, remaining(self._total_chunks, self._completed)
                )

            batch = indices[start:start + step]
            attempts: List[ChunkAttempt] = await asyncio.gather(
                *(self._send_with_retry(index) for index in batch)
            )

            rejected: List[ChunkAttempt] = []
            for attempt in attempts:
                if attempt.accepted:
                    self._completed.add(attempt.index)
                elif isinstance(attempt.last_error, UploadValidationError):
                    rejected.append(attempt)
                else:
                    failed.add(attempt.index)
            self._report_progress()

            if rejected:
                # Validation errors are never retried, they go straight to the caller
                raise rejected[0].last_error
        return failed

    async def _send_with_retry(self, index: int) -> ChunkAttempt:
        attempt = ChunkAttempt(index=index)
        try:
            chunk_data = await self._read_chunk(index)
        except OSError as e:
            logger.error(f"Failed to read chunk {index} of upload {self._upload_id}: {e}")
            attempt.last_error = e
            self._report_error(e, index)
            return attempt

        while True:
            try:
                ack = await self.transport.send_chunk(
                    self._upload_id, index, self._total_chunks, chunk_data, timeout=self.config.chunk_timeout
                )
            except TransientTransportError as e:
                attempt.last_error = e
                if attempt.retry_count + 1 >= self.config.max_attempts:
                    logger.error(
                        f"Chunk {index} of upload {self._upload_id} failed after "
                        f"{attempt.retry_count + 1} attempts: {e}"
                    )
                    self._report_error(e, index)
                    return attempt
                delay = self.config.retry_base_delay * (2 ** attempt.retry_count)
                attempt.retry_count += 1
                logger.warning(
                    f"Chunk {index} of upload {self._upload_id} failed ({e}), "
                    f"retry #{attempt.retry_count} in {delay:.2f}s"
                )
                await asyncio.sleep(delay)
            except UploadValidationError as e:
                logger.error(f"Chunk {index} of upload {self._upload_id} rejected: {e}")
                attempt.last_error = e
                self._report_error(e, index)
                return attempt
            else:
                attempt.accepted = True
                attempt.last_error = None
                if self.on_chunk_complete is not None:
                    self.on_chunk_complete(index, self._total_chunks, ack.get("completed_count", 0))
                return attempt

    def _report_error(self, error: BaseException, index: Optional[int]) -> None:
        if self.on_error is not None:
            self.on_error(error, index)
