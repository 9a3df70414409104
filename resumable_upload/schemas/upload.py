from pydantic import BaseModel, Field
from typing import List, Optional, TYPE_CHECKING

from resumable_upload.services.planner import progress_percent

if TYPE_CHECKING:
    from resumable_upload.core.session import UploadSession


class UploadMetadata(BaseModel):
    title: str = ""
    tags: str = ""
    summary: str = ""
    category_id: str = ""


class InitSessionRequest(BaseModel):
    upload_id: str = Field(..., min_length=1, max_length=128, pattern=r"^[A-Za-z0-9_-]+$")
    file_name: str = Field(..., min_length=1)
    file_size: int = Field(..., ge=0)
    content_hash: str = Field(..., min_length=1)
    total_chunks: int = Field(..., ge=0)
    chunk_size: int = Field(..., gt=0)


class SessionData(BaseModel):
    upload_id: str
    file_name: str
    file_size: int
    content_hash: str
    chunk_size: int
    total_chunks: int
    completed_chunks: List[int]
    status: str
    progress: float
    archive_id: Optional[str] = None
    error: Optional[str] = None
    created_at: str
    updated_at: str

    @classmethod
    def from_session(cls, session: "UploadSession") -> "SessionData":
        return cls(
            upload_id=session.id,
            file_name=session.file_name,
            file_size=session.file_size,
            content_hash=session.content_hash,
            chunk_size=session.chunk_size,
            total_chunks=session.total_chunks,
            completed_chunks=sorted(session.completed_chunks),
            status=session.status,
            progress=round(progress_percent(session.completed_chunks, session.file_size, session.chunk_size), 2),
            archive_id=session.archive_id,
            error=session.error,
            created_at=session.created_at,
            updated_at=session.updated_at,
        )


class InitSessionResponse(BaseModel):
    status: str = "success"
    message: str = "Upload session initialized."
    data: SessionData


class ChunkUploadResponseData(BaseModel):
    upload_id: str
    chunk_index: int
    total_chunks: int
    completed_count: int
    session_status: str


class ChunkUploadResponse(BaseModel):
    status: str = "success"
    message: str = "Chunk uploaded successfully."
    data: ChunkUploadResponseData


class SessionStatusResponse(BaseModel):
    status: str = "success"
    message: str = "Upload session status."
    data: SessionData


class SessionListResponse(BaseModel):
    status: str = "success"
    sessions: List[SessionData]


class CompleteSessionRequest(BaseModel):
    content_hash: str = Field(..., min_length=1)
    metadata: UploadMetadata = Field(default_factory=UploadMetadata)


class CompleteSessionResponseData(BaseModel):
    archive_id: str
    file_name: str
    file_size: int
    content_hash: str
    file_download_url: str


class CompleteSessionResponse(BaseModel):
    status: str = "success"
    message: str = "File upload completed and catalog notified."
    data: CompleteSessionResponseData


class CancelSessionResponse(BaseModel):
    status: str = "success"
    message: str = "Upload session cancelled."
    upload_id: str
