import hashlib
import os
import tempfile
from dataclasses import dataclass
from logging import getLogger

from api_ingest.exceptions.exceptions import IntegrityError, IncompleteUpload
from api_ingest.models import UploadChunk
from api_ingest.storage.chunk_store import ChunkStore, md5_hex
from api_ingest.storage.object_storage import ObjectStorage

logger = getLogger(__name__)


@dataclass
class AssembledAsset:
    asset_key: str
    size: int
    md5: str


class AssemblyService:
    """Concatenates verified chunks in index order into a single stored asset."""

    def __init__(self, chunk_store: ChunkStore, storage: ObjectStorage, work_dir: str | None = None):
        self.chunk_store = chunk_store
        self.storage = storage
        self.work_dir = work_dir

    def assemble(
        self,
        *,
        session_id,
        chunks: list[UploadChunk],
        total_chunks: int,
        asset_key: str,
        expected_size: int,
        final_hash: str | None = None,
    ) -> AssembledAsset:
        """
        Blocking; run it off the event loop. Nothing is written under
        `asset_key` unless every check passes.
        """
        indices = [c.chunk_index for c in chunks]
        if indices != list(range(total_chunks)):
            missing = sorted(set(range(total_chunks)) - set(indices))
            raise IncompleteUpload(missing)

        if self.work_dir:
            os.makedirs(self.work_dir, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=f"assemble_{session_id}_", dir=self.work_dir)
        digest = hashlib.md5()
        size = 0
        try:
            with os.fdopen(fd, "wb") as out:
                for chunk in chunks:
                    data = self.chunk_store.read(session_id, chunk.chunk_index)
                    if len(data) != chunk.size or md5_hex(data) != chunk.md5:
                        raise IntegrityError(
                            f"Stored chunk {chunk.chunk_index} of session {session_id} is corrupted"
                        )
                    digest.update(data)
                    out.write(data)
                    size += len(data)

            if size != expected_size:
                raise IntegrityError(f"Assembled size {size} does not match declared size {expected_size}")

            md5 = digest.hexdigest()
            if final_hash and md5 != final_hash.lower():
                raise IntegrityError(f"Final file hash mismatch: expected {final_hash}, got {md5}")

            self.storage.put_file(asset_key, tmp_path)
            logger.info(f"Assembled session {session_id} into {asset_key} ({size} bytes)")
            return AssembledAsset(asset_key=asset_key, size=size, md5=md5)
        finally:
            try:
                os.remove(tmp_path)
            except OSError as e:
                logger.warning(f"Could not remove assembly temp file {tmp_path}: {e}")
