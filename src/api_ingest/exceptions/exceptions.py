class IngestError(Exception):
    """Base class for upload and processing errors"""
    pass


class InvalidArgument(IngestError, ValueError):
    """Raised when initiate/finalize parameters violate configured limits"""
    pass


class SessionNotFound(IngestError):
    """Raised when an upload session ID is unknown"""
    pass


class JobNotFound(IngestError):
    """Raised when a processing job ID is unknown"""
    pass


class IncompleteUpload(IngestError):
    """Raised when finalize is called while chunks are still missing"""

    def __init__(self, missing_indices: list[int]):
        self.missing_indices = sorted(missing_indices)
        preview = ", ".join(str(i) for i in self.missing_indices[:20])
        if len(self.missing_indices) > 20:
            preview += ", ..."
        super().__init__(f"Missing {len(self.missing_indices)} chunk(s): [{preview}]")


class IntegrityError(IngestError):
    """Raised when a chunk or assembled file hash does not match"""
    pass


class SessionTerminal(IngestError):
    """Raised when a completed/cancelled/failed session is mutated"""

    def __init__(self, session_id, status: str, reason: str | None = None):
        self.session_id = session_id
        self.status = status
        message = f"Upload session {session_id} is {status}"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class UnsupportedMedia(IngestError):
    """Raised when probing finds no video stream"""
    pass


class PartialEncodeFailure(IngestError):
    """Raised when some, but not all, quality tiers failed to encode"""

    def __init__(self, succeeded: dict[str, str], failures: dict[str, str]):
        self.succeeded = succeeded
        self.failures = failures
        super().__init__(
            f"Encoding failed for {', '.join(sorted(failures))}; "
            f"kept {', '.join(sorted(succeeded))}"
        )


class ProcessingFailed(IngestError):
    """Raised when a job cannot produce any usable output"""
    pass


class QueueUnavailable(IngestError):
    """Raised when a job could not be durably enqueued"""
    pass


class StorageError(IngestError):
    """Raised when storage operations fail"""
    pass


class TranscodingError(IngestError):
    """Raised when ffmpeg or ffprobe exits unsuccessfully"""
    pass
