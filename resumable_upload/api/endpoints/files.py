import os
import logging

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import FileResponse, RedirectResponse

from resumable_upload.core.security import get_current_user_id
from resumable_upload.schemas.file import ArtifactData, ArtifactListResponse, ArtifactResponse
from resumable_upload.services.upload_service import upload_service

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/", response_model=ArtifactListResponse)
async def list_files(user_id: str = Depends(get_current_user_id)):
    """
    GET /files - List the caller's finalized artifacts
    """
    records = await upload_service.list_artifacts(user_id)
    return ArtifactListResponse(files=[ArtifactData.from_record(r) for r in records])


@router.get("/{archive_id}", response_model=ArtifactResponse)
async def get_file(
    archive_id: str,
    user_id: str = Depends(get_current_user_id)
):
    record = await upload_service.get_artifact(archive_id, user_id)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="File not found.")
    return ArtifactResponse(data=ArtifactData.from_record(record))


@router.get("/{archive_id}/download")
async def download_file(
    archive_id: str,
    user_id: str = Depends(get_current_user_id)
):
    """
    GET /files/{archive_id}/download - Only the owner can download
    """
    record = await upload_service.get_artifact(archive_id, user_id)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="File not found.")

    file_path = upload_service.storage.local_path(record.location)
    if file_path is None:
        return RedirectResponse(upload_service.storage.public_url(record.location))

    if not os.path.isfile(file_path):
        logger.error(f"Archive {archive_id} is registered but {file_path} is missing")
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="File not found.")

    return FileResponse(
        path=file_path,
        filename=os.path.basename(file_path),
        media_type='application/octet-stream'
    )
