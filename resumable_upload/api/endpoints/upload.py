import logging
from typing import Optional

from fastapi import APIRouter, Depends, UploadFile, File, Form, HTTPException, status

from resumable_upload.core.exceptions import (
    ChunkOutOfRange, ChunkRejected, FileTooLarge, IntegrityError, MissingChunks,
    SessionConflict, SessionNotFound, UploadError, UploadValidationError
)
from resumable_upload.core.security import get_current_user_id
from resumable_upload.schemas.file import download_url
from resumable_upload.schemas.upload import (
    CancelSessionResponse, ChunkUploadResponse, ChunkUploadResponseData, CompleteSessionRequest,
    CompleteSessionResponse, CompleteSessionResponseData, InitSessionRequest, InitSessionResponse,
    SessionData, SessionListResponse, SessionStatusResponse
)
from resumable_upload.services.upload_service import upload_service

logger = logging.getLogger(__name__)

router = APIRouter()


def http_error(e: UploadError) -> HTTPException:
    """Translate a domain error into the HTTP answer the client transport understands."""
    if isinstance(e, SessionNotFound):
        return HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "not_found", "message": str(e)},
        )
    if isinstance(e, SessionConflict):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"error": "conflict", "message": str(e)},
        )
    if isinstance(e, MissingChunks):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"error": "missing_chunks", "message": str(e), "missing": e.missing},
        )
    if isinstance(e, IntegrityError):
        return HTTPException(
            status_code=422,
            detail={"error": "integrity", "message": str(e), "expected": e.expected, "actual": e.actual},
        )
    if isinstance(e, FileTooLarge):
        return HTTPException(
            status_code=413,
            detail={"error": "too_large", "message": str(e)},
        )
    if isinstance(e, (ChunkOutOfRange, ChunkRejected)):
        return HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "rejected", "message": str(e), "chunk_index": getattr(e, "index", None)},
        )
    if isinstance(e, UploadValidationError):
        return HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "invalid", "message": str(e)},
        )
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={"error": "internal", "message": str(e)},
    )


@router.post("/init", response_model=InitSessionResponse)
async def init_session(
    req: InitSessionRequest,
    user_id: str = Depends(get_current_user_id)
):
    """
    POST /upload/init - Open an upload session under a client-generated id.
    Repeating the call with identical parameters returns the existing session.
    """
    try:
        session = await upload_service.init_session(
            upload_id=req.upload_id,
            user_id=user_id,
            file_name=req.file_name,
            file_size=req.file_size,
            content_hash=req.content_hash,
            total_chunks=req.total_chunks,
            chunk_size=req.chunk_size,
        )
    except UploadError as e:
        raise http_error(e)
    return InitSessionResponse(data=SessionData.from_session(session))


@router.put("/{upload_id}/chunks/{chunk_index}", response_model=ChunkUploadResponse)
async def upload_chunk(
    upload_id: str,
    chunk_index: int,
    total_chunks: int = Form(...),
    chunk: UploadFile = File(...),
    user_id: str = Depends(get_current_user_id)
):
    chunk_data = await chunk.read()
    try:
        session = await upload_service.put_chunk(upload_id, user_id, chunk_index, total_chunks, chunk_data)
    except UploadError as e:
        raise http_error(e)
    except OSError as e:
        logger.error(f"Failed to save chunk {chunk_index} of session {upload_id}: {e}")
        raise HTTPException(status_code=500, detail={"error": "internal", "message": "Failed to save chunk."})

    return ChunkUploadResponse(
        data=ChunkUploadResponseData(
            upload_id=upload_id,
            chunk_index=chunk_index,
            total_chunks=session.total_chunks,
            completed_count=len(session.completed_chunks),
            session_status=session.status,
        )
    )


@router.get("/{upload_id}/status", response_model=SessionStatusResponse)
async def get_status(
    upload_id: str,
    user_id: str = Depends(get_current_user_id)
):
    try:
        session = await upload_service.get_status(upload_id, user_id)
    except UploadError as e:
        raise http_error(e)
    return SessionStatusResponse(data=SessionData.from_session(session))


@router.post("/{upload_id}/complete", response_model=CompleteSessionResponse)
async def complete_session(
    upload_id: str,
    req: CompleteSessionRequest,
    user_id: str = Depends(get_current_user_id)
):
    """
    POST /upload/{upload_id}/complete - Assemble, verify and register the file
    """
    try:
        record = await upload_service.complete(
            upload_id, user_id, req.content_hash, req.metadata.model_dump()
        )
    except UploadError as e:
        raise http_error(e)
    except Exception as e:
        logger.exception(f"File upload failed for session {upload_id}: {e}")
        raise HTTPException(status_code=500, detail={"error": "internal", "message": "File upload failed."})

    if upload_service.storage.local_path(record.location) is None:
        file_url = upload_service.storage.public_url(record.location)
    else:
        file_url = download_url(record.archive_id)

    return CompleteSessionResponse(
        data=CompleteSessionResponseData(
            archive_id=record.archive_id,
            file_name=record.file_name,
            file_size=record.file_size,
            content_hash=record.content_hash,
            file_download_url=file_url,
        )
    )


@router.delete("/{upload_id}", response_model=CancelSessionResponse)
async def cancel_session(
    upload_id: str,
    user_id: str = Depends(get_current_user_id)
):
    try:
        await upload_service.cancel(upload_id, user_id)
    except UploadError as e:
        raise http_error(e)
    return CancelSessionResponse(upload_id=upload_id)


@router.get("/sessions", response_model=SessionListResponse)
async def list_sessions(
    session_status: Optional[str] = None,
    user_id: str = Depends(get_current_user_id)
):
    sessions = await upload_service.list_sessions(user_id, session_status)
    return SessionListResponse(sessions=[SessionData.from_session(s) for s in sessions])
