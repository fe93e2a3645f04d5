from fastapi import status, Request
from fastapi.responses import JSONResponse
from api_ingest.exceptions.exceptions import (
    InvalidArgument,
    SessionNotFound,
    JobNotFound,
    IncompleteUpload,
    IntegrityError,
    SessionTerminal,
    UnsupportedMedia,
    QueueUnavailable,
    StorageError,
)
from api_ingest.schema import ApiResponse
import logging

logger = logging.getLogger(__name__)


def _error(status_code: int, message: str, error: str, data=None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ApiResponse(
            success=False,
            message=message,
            data=data,
            error=error
        ).model_dump(mode="json")
    )


async def invalid_argument_handler(request: Request, exc: InvalidArgument):
    logger.warning(f"Invalid argument: {str(exc)}")
    return _error(status.HTTP_400_BAD_REQUEST, "Invalid request", str(exc))


async def session_not_found_handler(request: Request, exc: SessionNotFound):
    logger.warning(f"Session not found: {str(exc)}")
    return _error(status.HTTP_404_NOT_FOUND, "Upload session not found", str(exc))


async def job_not_found_handler(request: Request, exc: JobNotFound):
    logger.warning(f"Job not found: {str(exc)}")
    return _error(status.HTTP_404_NOT_FOUND, "Job not found", str(exc))


async def incomplete_upload_handler(request: Request, exc: IncompleteUpload):
    logger.info(f"Finalize rejected: {str(exc)}")
    return _error(
        status.HTTP_409_CONFLICT,
        "Upload is incomplete",
        str(exc),
        data={"missingIndices": exc.missing_indices},
    )


async def integrity_error_handler(request: Request, exc: IntegrityError):
    logger.warning(f"Integrity check failed: {str(exc)}")
    return _error(status.HTTP_422_UNPROCESSABLE_ENTITY, "Integrity check failed", str(exc))


async def session_terminal_handler(request: Request, exc: SessionTerminal):
    logger.info(f"Rejected mutation: {str(exc)}")
    return _error(
        status.HTTP_409_CONFLICT,
        "Upload session no longer accepts changes",
        str(exc),
        data={"status": exc.status},
    )


async def unsupported_media_handler(request: Request, exc: UnsupportedMedia):
    logger.warning(f"Unsupported media: {str(exc)}")
    return _error(status.HTTP_415_UNSUPPORTED_MEDIA_TYPE, "Unsupported media", str(exc))


async def queue_unavailable_handler(request: Request, exc: QueueUnavailable):
    logger.error(f"Queue unavailable: {str(exc)}", exc_info=True)
    return _error(
        status.HTTP_503_SERVICE_UNAVAILABLE,
        "Processing queue unavailable",
        "The job could not be queued. Please retry the request."
    )


async def storage_error_handler(request: Request, exc: StorageError):
    logger.error(f"Storage error: {str(exc)}", exc_info=True)
    return _error(
        status.HTTP_503_SERVICE_UNAVAILABLE,
        "Storage service unavailable",
        "Failed to access storage. Please try again."
    )


async def general_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {str(exc)}", exc_info=True)
    return _error(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "Internal server error",
        "An unexpected error occurred. Please try again."
    )


EXCEPTION_HANDLERS = {
    InvalidArgument: invalid_argument_handler,
    SessionNotFound: session_not_found_handler,
    JobNotFound: job_not_found_handler,
    IncompleteUpload: incomplete_upload_handler,
    IntegrityError: integrity_error_handler,
    SessionTerminal: session_terminal_handler,
    UnsupportedMedia: unsupported_media_handler,
    QueueUnavailable: queue_unavailable_handler,
    StorageError: storage_error_handler,
    Exception: general_exception_handler,
}
