from enum import Enum
from pathlib import PurePosixPath


class StoragePaths(str, Enum):
    CHUNKS = "chunks"
    UPLOADS = "uploads"
    RENDITIONS = "renditions"
    THUMBNAILS = "thumbnails"
    HLS = "hls"
    DASH = "dash"


def generate_chunk_prefix(session_id) -> str:
    return f"{StoragePaths.CHUNKS.value}/{session_id}/"


def generate_chunk_object_name(session_id, chunk_index: int) -> str:
    return f"{generate_chunk_prefix(session_id)}chunk_{chunk_index:05d}"


def generate_source_object_name(session_id, file_name: str) -> str:
    extension = PurePosixPath(file_name).suffix.lower() or ".bin"
    return f"{StoragePaths.UPLOADS.value}/{session_id}/source{extension}"


def generate_rendition_object_name(job_id, quality: str) -> str:
    return f"{StoragePaths.RENDITIONS.value}/{job_id}/{quality}.mp4"


def generate_thumbnail_object_name(job_id, index: int) -> str:
    return f"{StoragePaths.THUMBNAILS.value}/{job_id}/thumb_{index:02d}.jpg"


def generate_manifest_prefix(kind: StoragePaths, job_id) -> str:
    return f"{kind.value}/{job_id}/"
