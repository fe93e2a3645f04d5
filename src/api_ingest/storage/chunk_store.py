import hashlib
from logging import getLogger

from api_ingest.storage.object_storage import ObjectStorage
from api_ingest.storage.path_generator import generate_chunk_object_name, generate_chunk_prefix

logger = getLogger(__name__)


def md5_hex(data: bytes) -> str:
    return hashlib.md5(data).hexdigest()


class ChunkStore:
    """Staging area for the chunks of upload sessions, keyed by (session, index)."""

    def __init__(self, storage: ObjectStorage):
        self.storage = storage

    def write(self, session_id, chunk_index: int, data: bytes) -> str:
        key = generate_chunk_object_name(session_id, chunk_index)
        self.storage.put_bytes(key, data)
        return key

    def read(self, session_id, chunk_index: int) -> bytes:
        return self.storage.get_bytes(generate_chunk_object_name(session_id, chunk_index))

    def stored_indices(self, session_id) -> list[int]:
        prefix = generate_chunk_prefix(session_id)
        indices = []
        for key in self.storage.list(prefix):
            name = key[len(prefix):]
            if name.startswith("chunk_"):
                indices.append(int(name[len("chunk_"):]))
        return sorted(indices)

    def purge(self, session_id) -> int:
        removed = self.storage.delete_prefix(generate_chunk_prefix(session_id))
        logger.info(f"Purged {removed} chunk(s) of session {session_id}")
        return removed
