from pydantic import BaseModel
from typing import Any, Dict, List

from resumable_upload.core.config import settings
from resumable_upload.services.catalog import ArtifactRecord


def download_url(archive_id: str) -> str:
    return f"{settings.UPLOAD_SERVICE_BASE_URL}/files/{archive_id}/download"


class ArtifactData(BaseModel):
    archive_id: str
    session_id: str
    file_name: str
    file_size: int
    content_hash: str
    metadata: Dict[str, Any]
    created_at: str
    file_download_url: str

    @classmethod
    def from_record(cls, record: ArtifactRecord) -> "ArtifactData":
        return cls(
            archive_id=record.archive_id,
            session_id=record.session_id,
            file_name=record.file_name,
            file_size=record.file_size,
            content_hash=record.content_hash,
            metadata=record.metadata,
            created_at=record.created_at,
            file_download_url=download_url(record.archive_id),
        )


class ArtifactResponse(BaseModel):
    status: str = "success"
    data: ArtifactData


class ArtifactListResponse(BaseModel):
    status: str = "success"
    files: List[ArtifactData]
