from typing import Iterable, List, Optional


class UploadError(Exception):
    """Base class for every error raised by the upload subsystem."""


class UploadValidationError(UploadError):
    """Bad input or a state conflict. Never retried automatically."""


class SessionNotFound(UploadValidationError):
    def __init__(self, upload_id: str):
        self.upload_id = upload_id
        super().__init__(f"Upload session {upload_id} not found.")


class SessionConflict(UploadValidationError):
    def __init__(self, upload_id: str, reason: str = "parameters do not match the existing session"):
        self.upload_id = upload_id
        self.reason = reason
        super().__init__(f"Upload session {upload_id} conflict: {reason}")


class ChunkOutOfRange(UploadValidationError):
    def __init__(self, index: int, total_chunks: int):
        self.index = index
        self.total_chunks = total_chunks
        super().__init__(f"Chunk index {index} is outside [0, {total_chunks}).")


class ChunkRejected(UploadValidationError):
    def __init__(self, index: Optional[int], reason: str, status_code: Optional[int] = None):
        self.index = index
        self.reason = reason
        self.status_code = status_code
        if index is None:
            super().__init__(f"Request rejected: {reason}")
        else:
            super().__init__(f"Chunk {index} rejected: {reason}")


class MissingChunks(UploadValidationError):
    def __init__(self, upload_id: str, missing: Iterable[int]):
        self.upload_id = upload_id
        self.missing: List[int] = sorted(missing)
        super().__init__(f"Upload session {upload_id} is missing chunks: {self.missing}")


class FileTooLarge(UploadValidationError):
    def __init__(self, file_size: int, limit: int):
        self.file_size = file_size
        self.limit = limit
        super().__init__(f"File size {file_size} exceeds the {limit} byte limit.")


class TransientTransportError(UploadError):
    """Timeouts, connection resets and 5xx answers. Retried per chunk."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class IntegrityError(UploadError):
    """The assembled content does not match the expected fingerprint."""

    def __init__(self, upload_id: str, expected: str, actual: str):
        self.upload_id = upload_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Content hash mismatch for upload {upload_id}: expected {expected}, got {actual}"
        )


class ChunkUploadFailed(UploadError):
    """Chunks that still failed after the reconciliation pass."""

    def __init__(self, upload_id: str, failed_indices: Iterable[int]):
        self.upload_id = upload_id
        self.failed_indices: List[int] = sorted(failed_indices)
        super().__init__(
            f"{len(self.failed_indices)} chunk(s) of upload {upload_id} still failing after retry: "
            f"{self.failed_indices}"
        )


class UploadCancelled(UploadError):
    def __init__(self, upload_id: str, completed: Iterable[int], remaining: Iterable[int]):
        self.upload_id = upload_id
        self.completed: List[int] = sorted(completed)
        self.remaining: List[int] = sorted(remaining)
        super().__init__(
            f"Upload {upload_id} cancelled with {len(self.remaining)} chunk(s) remaining."
        )
