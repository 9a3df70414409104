"""
Initiating side of a resumable upload.

    async with ChunkTransport(base_url, token=token) as transport:
        uploader = ChunkedUploader(transport, cache=LocalSessionCache("~/.cache/uploads"))
        result = await uploader.upload_file("volume-01.cbz", UploadMetadata(title="Volume 1"))
        if not result.success:
            result = await uploader.resume_upload(result.upload_id, "volume-01.cbz")
"""
import asyncio
import functools
import logging
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional, Set, Union

from resumable_upload.client.local_cache import CachedSession, LocalSessionCache
from resumable_upload.client.orchestrator import (
    ChunkCompleteCallback, ErrorCallback, ProgressCallback, UploadConfig, UploadOrchestrator
)
from resumable_upload.client.resume import ResumeController, ResumePlan
from resumable_upload.client.transport import ChunkTransport
from resumable_upload.core.constants import MAX_FILE_SIZE, SUPPORTED_EXTENSIONS
from resumable_upload.core.exceptions import (
    SessionConflict, TransientTransportError, UploadCancelled, UploadError
)
from resumable_upload.schemas.upload import UploadMetadata
from resumable_upload.services.fingerprint import fingerprint_or_fallback, is_digest
from resumable_upload.services.planner import plan, range_of

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


@dataclass
class ValidationResult:
    valid: bool
    error: Optional[str] = None


@dataclass
class UploadResult:
    success: bool
    upload_id: Optional[str] = None
    archive_id: Optional[str] = None
    download_url: Optional[str] = None
    error: Optional[str] = None
    failed_chunks: List[int] = field(default_factory=list)
    exception: Optional[BaseException] = None


def read_range(path: PathLike, start: int, end: int) -> bytes:
    with open(path, "rb") as f:
        f.seek(start)
        return f.read(end - start)


def describe_error(exc: BaseException) -> str:
    """Message suitable for showing to the person who started the upload."""
    status_code = getattr(exc, "status_code", None)
    if status_code == 413:
        return "File is too large, please choose a smaller file"
    if status_code == 415:
        return "Unsupported file format"
    if status_code == 408 or (isinstance(exc, TransientTransportError) and "Timeout" in str(exc)):
        return "Upload timed out, check the network connection or try a smaller file"
    if isinstance(exc, TransientTransportError):
        return "Network connection failed, check the network and retry"
    return str(exc) or "Upload failed, please retry later"


class ChunkedUploader:
    def __init__(
        self,
        transport: ChunkTransport,
        config: Optional[UploadConfig] = None,
        cache: Optional[LocalSessionCache] = None,
        on_progress: Optional[ProgressCallback] = None,
        on_chunk_complete: Optional[ChunkCompleteCallback] = None,
        on_error: Optional[ErrorCallback] = None,
        max_file_size: int = MAX_FILE_SIZE,
        supported_extensions: Iterable[str] = SUPPORTED_EXTENSIONS,
    ):
        self.transport = transport
        self.config = config or UploadConfig()
        self.cache = cache
        self.on_progress = on_progress
        self.on_chunk_complete = on_chunk_complete
        self.on_error = on_error
        self.max_file_size = max_file_size
        self.supported_extensions = {ext.lower() for ext in supported_extensions}
        self.resume = ResumeController(transport, cache)
        self._orchestrator: Optional[UploadOrchestrator] = None
        self._cancel_event: Optional[asyncio.Event] = None

    def validate_file(self, path: PathLike) -> ValidationResult:
        path = Path(path)
        if not path.is_file():
            return ValidationResult(False, f"File not found: {path}")
        if path.stat().st_size > self.max_file_size:
            return ValidationResult(
                False, f"File size must not exceed {self.max_file_size // (1024 * 1024)}MB"
            )
        extension = path.suffix.lower().lstrip(".")
        if extension not in self.supported_extensions:
            return ValidationResult(
                False,
                f"Unsupported file format: {extension or '(none)'}. "
                f"Supported formats: {', '.join(sorted(self.supported_extensions))}"
            )
        return ValidationResult(True)

    def cancel(self) -> None:
        """Cooperatively stop the running upload; the session stays resumable."""
        if self._cancel_event is not None:
            self._cancel_event.set()

    @property
    def progress(self) -> float:
        return self._orchestrator.progress if self._orchestrator is not None else 0.0

    async def upload_file(
        self,
        path: PathLike,
        metadata: Optional[UploadMetadata] = None,
        content_hash: Optional[str] = None,
        upload_id: Optional[str] = None,
    ) -> UploadResult:
        self._cancel_event = asyncio.Event()
        path = Path(path)
        validation = self.validate_file(path)
        if not validation.valid:
            return UploadResult(False, error=validation.error)

        file_size = path.stat().st_size
        if content_hash is None:
            content_hash = await asyncio.to_thread(fingerprint_or_fallback, path)
        chunk_size = self.config.chunk_size
        total_chunks = plan(file_size, chunk_size)
        upload_id = upload_id or uuid.uuid4().hex

        try:
            self._check_cancelled(upload_id, (), range(total_chunks))
            await self.transport.init_session(
                upload_id, path.name, file_size, content_hash, total_chunks, chunk_size
            )
            if self.cache is not None:
                self.cache.save(CachedSession(
                    upload_id=upload_id,
                    file_name=path.name,
                    file_size=file_size,
                    content_hash=content_hash,
                    total_chunks=total_chunks,
                    chunk_size=chunk_size,
                ))
            logger.info(f"Started upload {upload_id} for {path.name} ({total_chunks} chunks)")
            return await self._transfer(upload_id, path, content_hash, metadata)
        except UploadError as e:
            return self._failed(upload_id, e)

    async def resume_upload(
        self,
        upload_id: str,
        path: PathLike,
        metadata: Optional[UploadMetadata] = None,
    ) -> UploadResult:
        """
        Continue an interrupted upload. Only chunks the server has not
        accepted are sent; the local cache merely spares re-hashing the file.
        """
        self._cancel_event = asyncio.Event()
        path = Path(path)
        try:
            resume_plan = await self.resume.reconcile(upload_id)
            content_hash = await self._verify_local_file(upload_id, path, resume_plan)
            logger.info(
                f"Resuming upload {upload_id}: {len(resume_plan.remaining)} of "
                f"{resume_plan.total_chunks} chunks remaining"
            )
            return await self._transfer(upload_id, path, content_hash, metadata, resume_plan)
        except UploadError as e:
            return self._failed(upload_id, e)
        except OSError as e:
            logger.error(f"Cannot read {path} to resume upload {upload_id}: {e}")
            return UploadResult(False, upload_id=upload_id, error=str(e), exception=e)

    async def discard(self, upload_id: str) -> None:
        """Delete the session on the server and forget it locally."""
        try:
            await self.transport.cancel(upload_id)
        finally:
            if self.cache is not None:
                self.cache.remove(upload_id)

    def _check_cancelled(self, upload_id: str, completed: Iterable[int], remaining_chunks: Iterable[int]) -> None:
        if self._cancel_event is not None and self._cancel_event.is_set():
            raise UploadCancelled(upload_id, completed, remaining_chunks)

    async def _verify_local_file(self, upload_id: str, path: Path, resume_plan: ResumePlan) -> str:
        file_size = path.stat().st_size
        if file_size != resume_plan.file_size:
            raise SessionConflict(
                upload_id, f"local file has {file_size} bytes, session expects {resume_plan.file_size}"
            )

        cached = self.cache.load(upload_id) if self.cache is not None else None
        if cached is not None and cached.content_hash == resume_plan.content_hash and cached.file_size == file_size:
            return cached.content_hash

        local_hash = await asyncio.to_thread(fingerprint_or_fallback, path)
        if is_digest(resume_plan.content_hash) and local_hash != resume_plan.content_hash.lower():
            raise SessionConflict(upload_id, "local file does not match the session's content hash")
        return resume_plan.content_hash

    async def _read_chunk(self, path: Path, file_size: int, chunk_size: int, index: int) -> bytes:
        start, end = range_of(index, file_size, chunk_size)
        return await asyncio.to_thread(read_range, path, start, end)

    def _track_chunks(self, upload_id: str, already_completed: Set[int]) -> ChunkCompleteCallback:
        accepted = set(already_completed)

        def on_chunk_complete(index: int, total_chunks: int, completed_count: int) -> None:
            accepted.add(index)
            if self.cache is not None:
                self.cache.update_completed(upload_id, accepted)
            if self.on_chunk_complete is not None:
                self.on_chunk_complete(index, total_chunks, completed_count)

        return on_chunk_complete

    async def _transfer(
        self,
        upload_id: str,
        path: Path,
        content_hash: str,
        metadata: Optional[UploadMetadata],
        resume_plan: Optional[ResumePlan] = None,
    ) -> UploadResult:
        if resume_plan is None:
            resume_plan = await self.resume.reconcile(upload_id)
        self._check_cancelled(upload_id, resume_plan.completed, resume_plan.remaining)

        self._orchestrator = UploadOrchestrator(
            self.transport,
            self.config,
            on_progress=self.on_progress,
            on_chunk_complete=self._track_chunks(upload_id, resume_plan.completed),
            on_error=self.on_error,
            cancel_event=self._cancel_event,
        )
        await self._orchestrator.run(
            upload_id,
            resume_plan.file_size,
            resume_plan.total_chunks,
            resume_plan.remaining,
            functools.partial(self._read_chunk, path, resume_plan.file_size, resume_plan.chunk_size),
            completed=resume_plan.completed,
            chunk_size=resume_plan.chunk_size,
        )

        data = await self.transport.complete(
            upload_id, content_hash, (metadata or UploadMetadata()).model_dump()
        )
        if self.cache is not None:
            self.cache.remove(upload_id)
        logger.info(f"Upload {upload_id} finalized as archive {data['archive_id']}")
        return UploadResult(
            True,
            upload_id=upload_id,
            archive_id=data["archive_id"],
            download_url=data.get("file_download_url"),
        )

    def _failed(self, upload_id: str, e: UploadError) -> UploadResult:
        if isinstance(e, UploadCancelled):
            logger.info(f"Upload {upload_id} cancelled, {len(e.remaining)} chunk(s) left for a resume")
        else:
            logger.error(f"Upload {upload_id} failed: {e}")
        return UploadResult(
            False,
            upload_id=upload_id,
            error=describe_error(e),
            failed_chunks=list(getattr(e, "failed_indices", [])),
            exception=e,
        )
