from fastapi import APIRouter, Depends, File, Form, UploadFile, status
from typing import Optional
from uuid import UUID
from api_ingest.schema import (
    InitiateUploadRequest,
    BatchInitiateRequest,
    InitiateUploadResponse,
    ChunkUploadResponse,
    CompleteUploadRequest,
    CompleteUploadResponse,
    UploadStatusResponse,
    ResumeUploadResponse,
    CancelUploadResponse,
    MergedStatusResponse,
    MD5_PATTERN,
    ApiResponse
)
from api_ingest.dependencies import get_upload_manager, get_status_reporter
from api_ingest.services.upload_service import UploadSessionManager
from api_ingest.services.status_service import StatusReporter


router = APIRouter(prefix="/uploads", tags=["uploads"])


@router.post("/initiate", response_model=ApiResponse[InitiateUploadResponse], status_code=status.HTTP_201_CREATED)
async def initiate_upload(
    payload: InitiateUploadRequest,
    manager: UploadSessionManager = Depends(get_upload_manager),
):
    result = await manager.initiate(payload)
    return ApiResponse(
        success=True,
        message="Upload session created",
        data=result
    )


@router.post("/batch-initiate", response_model=ApiResponse[list[InitiateUploadResponse]], status_code=status.HTTP_201_CREATED)
async def batch_initiate_uploads(
    payload: BatchInitiateRequest,
    manager: UploadSessionManager = Depends(get_upload_manager),
):
    result = await manager.batch_initiate(payload.files)
    return ApiResponse(
        success=True,
        message=f"{len(result)} upload session(s) created",
        data=result
    )


@router.post("/chunk/{session_id}", response_model=ApiResponse[ChunkUploadResponse])
async def upload_chunk(
    session_id: UUID,
    chunk_index: int = Form(..., alias="chunkIndex"),
    chunk_hash: Optional[str] = Form(None, alias="chunkHash", pattern=MD5_PATTERN),
    file: UploadFile = File(...),
    manager: UploadSessionManager = Depends(get_upload_manager),
):
    data = await file.read()
    result = await manager.upload_chunk(session_id, chunk_index, data, chunk_hash)
    return ApiResponse(
        success=True,
        message="Chunk already received" if result.duplicate else "Chunk uploaded",
        data=result
    )


@router.post("/retry/{session_id}", response_model=ApiResponse[ChunkUploadResponse])
async def retry_chunk(
    session_id: UUID,
    chunk_index: int = Form(..., alias="chunkIndex"),
    chunk_hash: Optional[str] = Form(None, alias="chunkHash", pattern=MD5_PATTERN),
    file: UploadFile = File(...),
    manager: UploadSessionManager = Depends(get_upload_manager),
):
    data = await file.read()
    result = await manager.retry_chunk(session_id, chunk_index, data, chunk_hash)
    return ApiResponse(
        success=True,
        message="Chunk retried",
        data=result
    )


@router.post("/complete/{session_id}", response_model=ApiResponse[CompleteUploadResponse])
async def complete_upload(
    session_id: UUID,
    payload: CompleteUploadRequest,
    manager: UploadSessionManager = Depends(get_upload_manager),
):
    result = await manager.finalize(session_id, payload)
    return ApiResponse(
        success=True,
        message="Upload completed, processing queued",
        data=result
    )


@router.get("/status/{session_id}", response_model=ApiResponse[UploadStatusResponse])
async def upload_status(session_id: UUID, manager: UploadSessionManager = Depends(get_upload_manager)):
    return ApiResponse(
        success=True,
        message="Upload status retrieved",
        data=await manager.get_status(session_id)
    )


@router.post("/resume/{session_id}", response_model=ApiResponse[ResumeUploadResponse])
async def resume_upload(session_id: UUID, manager: UploadSessionManager = Depends(get_upload_manager)):
    return ApiResponse(
        success=True,
        message="Upload can be resumed",
        data=await manager.resume(session_id)
    )


@router.post("/cancel/{session_id}", response_model=ApiResponse[CancelUploadResponse])
async def cancel_upload(session_id: UUID, manager: UploadSessionManager = Depends(get_upload_manager)):
    return ApiResponse(
        success=True,
        message="Upload cancelled",
        data=await manager.cancel(session_id)
    )


@router.get("/active", response_model=ApiResponse[list[UploadStatusResponse]])
async def list_active_uploads(manager: UploadSessionManager = Depends(get_upload_manager)):
    return ApiResponse(
        success=True,
        message="Active uploads retrieved",
        data=manager.list_active()
    )


@router.get("/progress/{session_id}", response_model=ApiResponse[MergedStatusResponse])
async def upload_progress(session_id: UUID, reporter: StatusReporter = Depends(get_status_reporter)):
    return ApiResponse(
        success=True,
        message="Progress retrieved",
        data=reporter.merged_status(session_id)
    )
