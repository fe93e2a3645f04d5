from fastapi import APIRouter, Depends, status
from uuid import UUID
from api_ingest.schema import (
    SubmitJobRequest,
    JobSchema,
    JobProgressResponse,
    JobDeleteResponse,
    QueueStatsResponse,
    ApiResponse
)
from api_ingest.dependencies import ServiceContainer, get_container, get_processing_service
from api_ingest.services.processing_service import ProcessingService


router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.post("", response_model=ApiResponse[JobSchema], status_code=status.HTTP_201_CREATED)
async def submit_job(
    payload: SubmitJobRequest,
    processing: ProcessingService = Depends(get_processing_service),
):
    job = await processing.submit(payload)
    return ApiResponse(
        success=True,
        message="Processing job queued",
        data=job
    )


@router.get("", response_model=ApiResponse[list[JobSchema]])
async def list_jobs(processing: ProcessingService = Depends(get_processing_service)):
    return ApiResponse(
        success=True,
        message="Jobs retrieved successfully",
        data=processing.list_jobs()
    )


@router.get("/stats", response_model=ApiResponse[QueueStatsResponse])
async def queue_stats(container: ServiceContainer = Depends(get_container)):
    return ApiResponse(
        success=True,
        message="Queue statistics retrieved",
        data=container.processing_service.queue_stats(container.worker_pool.active_jobs)
    )


@router.get("/failed", response_model=ApiResponse[list[JobSchema]])
async def list_failed_jobs(processing: ProcessingService = Depends(get_processing_service)):
    return ApiResponse(
        success=True,
        message="Failed jobs retrieved",
        data=processing.list_failed_jobs()
    )


@router.get("/{job_id}", response_model=ApiResponse[JobSchema])
async def get_job(job_id: UUID, processing: ProcessingService = Depends(get_processing_service)):
    return ApiResponse(
        success=True,
        message="Job retrieved successfully",
        data=processing.get_job(job_id)
    )


@router.get("/{job_id}/progress", response_model=ApiResponse[JobProgressResponse])
async def get_job_progress(job_id: UUID, processing: ProcessingService = Depends(get_processing_service)):
    return ApiResponse(
        success=True,
        message="Job progress retrieved",
        data=processing.get_progress(job_id)
    )


@router.post("/{job_id}/cancel", response_model=ApiResponse[JobSchema])
async def cancel_job(job_id: UUID, processing: ProcessingService = Depends(get_processing_service)):
    return ApiResponse(
        success=True,
        message="Job cancellation requested",
        data=processing.cancel_job(job_id)
    )


@router.post("/{job_id}/retry", response_model=ApiResponse[JobSchema])
async def retry_job(job_id: UUID, processing: ProcessingService = Depends(get_processing_service)):
    return ApiResponse(
        success=True,
        message="Job queued for retry",
        data=await processing.retry_job(job_id)
    )


@router.delete("/{job_id}", response_model=ApiResponse[JobDeleteResponse], status_code=status.HTTP_200_OK)
async def delete_job(job_id: UUID, processing: ProcessingService = Depends(get_processing_service)):
    processing.delete_job(job_id)
    return ApiResponse(
        success=True,
        message=f"Job {job_id} deleted successfully",
        data=JobDeleteResponse(job_id=job_id)
    )
