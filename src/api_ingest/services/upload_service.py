import asyncio
import math
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable
from uuid import uuid4
from logging import getLogger

from sqlalchemy.orm import Session, sessionmaker

from api_ingest.config.base_config import BaseConfig
from api_ingest.exceptions.exceptions import (
    InvalidArgument,
    IncompleteUpload,
    IntegrityError,
    SessionTerminal,
    StorageError,
)
from api_ingest.models import (
    UploadSession,
    SessionStatus,
    ACCEPTING_SESSION_STATES,
    TERMINAL_SESSION_STATES,
    as_utc,
    utcnow,
)
from api_ingest.schema import (
    InitiateUploadRequest,
    InitiateUploadResponse,
    ChunkUploadResponse,
    CompleteUploadRequest,
    CompleteUploadResponse,
    UploadStatusResponse,
    ResumeUploadResponse,
    CancelUploadResponse,
    SessionCreateSchema,
    ProcessingOptions,
)
from api_ingest.services.assembly_service import AssemblyService
from api_ingest.services.processing_service import ProcessingService
from api_ingest.services.session_service import SessionService
from api_ingest.services.status_service import build_upload_status, expected_chunk_size, upload_percentage
from api_ingest.storage.chunk_store import ChunkStore, md5_hex
from api_ingest.storage.path_generator import generate_source_object_name

logger = getLogger(__name__)

EXPIRED_REASON = "Upload session expired after inactivity"
MAX_BATCH_FILES = 50


@dataclass
class _SessionLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class UploadSessionManager:
    """
    Owns the lifecycle of chunked upload sessions.

    Every mutation of a session runs under that session's lock, so chunk
    writes, finalize and cancel never interleave within this process. The
    unique (session, index) constraint covers writers in other processes.
    Blocking storage work runs in a thread so the event loop stays free.
    """

    def __init__(
        self,
        *,
        session_factory: sessionmaker,
        session_service: SessionService,
        processing_service: ProcessingService,
        chunk_store: ChunkStore,
        assembler: AssemblyService,
        settings: BaseConfig,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.sessions = session_service
        self.processing = processing_service
        self.chunk_store = chunk_store
        self.assembler = assembler
        self.settings = settings
        self.clock = clock
        self._locks: dict[str, _SessionLock] = {}

    @asynccontextmanager
    async def _lock(self, session_id):
        # entries live only while someone holds or waits for them
        key = str(session_id).lower()
        entry = self._locks.get(key)
        if entry is None:
            entry = self._locks[key] = _SessionLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[key]

    def _plan(self, request: InitiateUploadRequest) -> tuple[int, int]:
        """Validate an initiate request and return its chunk size and chunk count."""
        s = self.settings
        if request.file_size <= 0:
            raise InvalidArgument("File size must be positive")
        if request.file_size > s.MAX_FILE_SIZE:
            raise InvalidArgument(f"File size {request.file_size} exceeds the limit of {s.MAX_FILE_SIZE} bytes")
        if not request.file_type.startswith(s.ALLOWED_MIME_PREFIX):
            raise InvalidArgument(f"File type {request.file_type} is not allowed")

        chunk_size = request.chunk_size or s.DEFAULT_CHUNK_SIZE
        chunk_size = min(max(chunk_size, s.MIN_CHUNK_SIZE), s.MAX_CHUNK_SIZE)
        return chunk_size, math.ceil(request.file_size / chunk_size)

    async def initiate(self, request: InitiateUploadRequest) -> InitiateUploadResponse:
        chunk_size, total_chunks = self._plan(request)
        with self.session_factory() as db:
            now = self.clock()
            session = self.sessions.create(db, obj_in=SessionCreateSchema(
                id=uuid4(),
                file_name=request.file_name,
                file_size=request.file_size,
                mime_type=request.file_type,
                chunk_size=chunk_size,
                total_chunks=total_chunks,
                upload_metadata=request.metadata.model_dump(mode="json", by_alias=True),
            ))
            session.created_at = now
            session.last_activity_at = now
            db.commit()
            logger.info(
                f"Initiated upload session {session.id} for {request.file_name} "
                f"({request.file_size} bytes in {total_chunks} chunk(s) of {chunk_size})"
            )
            return InitiateUploadResponse(
                session_id=session.id,
                total_chunks=total_chunks,
                chunk_size=chunk_size,
                status=session.status,
            )

    async def batch_initiate(self, requests: list[InitiateUploadRequest]) -> list[InitiateUploadResponse]:
        """Open one session per file. Nothing is created unless every file is acceptable."""
        if not requests:
            raise InvalidArgument("At least one file is required")
        if len(requests) > MAX_BATCH_FILES:
            raise InvalidArgument(f"A batch holds at most {MAX_BATCH_FILES} files")
        for position, request in enumerate(requests):
            try:
                self._plan(request)
            except InvalidArgument as e:
                raise InvalidArgument(f"File {position} ({request.file_name}): {e}") from e
        results = [await self.initiate(request) for request in requests]
        logger.info(f"Initiated {len(results)} upload session(s) in one batch")
        return results

    async def upload_chunk(
        self, session_id, chunk_index: int, data: bytes, chunk_hash: str | None = None
    ) -> ChunkUploadResponse:
        if chunk_hash is None and self.settings.REQUIRE_CHUNK_HASH:
            raise InvalidArgument("A chunk hash is required")
        computed = await asyncio.to_thread(md5_hex, data)

        async with self._lock(session_id):
            with self.session_factory() as db:
                session = await self._load_accepting(db, session_id)
                if not 0 <= chunk_index < session.total_chunks:
                    raise InvalidArgument(
                        f"Chunk index {chunk_index} is outside [0, {session.total_chunks - 1}]"
                    )
                expected = expected_chunk_size(session, chunk_index)
                if len(data) != expected:
                    raise InvalidArgument(f"Chunk {chunk_index} must be {expected} bytes, got {len(data)}")
                if chunk_hash is not None and computed != chunk_hash.lower():
                    raise IntegrityError(f"Hash mismatch for chunk {chunk_index}")

                now = self.clock()
                duplicate = self.sessions.has_chunk(db, session.id, chunk_index)
                if not duplicate:
                    key = await asyncio.to_thread(self.chunk_store.write, session.id, chunk_index, data)
                    duplicate = not self.sessions.add_chunk(
                        db,
                        session=session,
                        chunk_index=chunk_index,
                        size=len(data),
                        md5=computed,
                        storage_key=key,
                        now=now,
                    )
                if duplicate:
                    logger.debug(f"Session {session.id}: chunk {chunk_index} already received")
                    session.last_activity_at = now
                    db.commit()

                received = len(self.sessions.received_indices(db, session.id))
                return ChunkUploadResponse(
                    chunk_index=chunk_index,
                    received_chunks=received,
                    total_chunks=session.total_chunks,
                    percentage=upload_percentage(received, session.total_chunks),
                    duplicate=duplicate,
                )

    async def retry_chunk(
        self, session_id, chunk_index: int, data: bytes, chunk_hash: str | None = None
    ) -> ChunkUploadResponse:
        return await self.upload_chunk(session_id, chunk_index, data, chunk_hash)

    async def get_status(self, session_id) -> UploadStatusResponse:
        async with self._lock(session_id):
            with self.session_factory() as db:
                session = self.sessions.get_or_raise(db, session_id)
                await self._expire_if_inactive(db, session)
                return build_upload_status(session, self.sessions.received_indices(db, session.id))

    async def resume(self, session_id) -> ResumeUploadResponse:
        async with self._lock(session_id):
            with self.session_factory() as db:
                session = await self._load_accepting(db, session_id)
                status = build_upload_status(session, self.sessions.received_indices(db, session.id))
                missing = status.missing_indices
                logger.info(f"Resuming session {session.id}: {len(missing)} chunk(s) missing")
                return ResumeUploadResponse(
                    session_id=session.id,
                    missing_indices=missing,
                    next_chunk_index=missing[0] if missing else session.total_chunks,
                    chunk_size=session.chunk_size,
                    total_chunks=session.total_chunks,
                )

    async def finalize(self, session_id, request: CompleteUploadRequest) -> CompleteUploadResponse:
        async with self._lock(session_id):
            with self.session_factory() as db:
                session = self.sessions.get_or_raise(db, session_id)
                if session.status in (SessionStatus.COMPLETED, SessionStatus.HANDED_OFF) and session.job_id:
                    # repeated finalize; finish a hand-off that could not be enqueued earlier
                    if session.status == SessionStatus.COMPLETED:
                        await self._hand_off(db, session)
                    return self._complete_response(session)

                session = await self._load_accepting(db, session_id)
                if request.total_chunks != session.total_chunks:
                    raise InvalidArgument(
                        f"Session expects {session.total_chunks} chunks, finalize declared {request.total_chunks}"
                    )
                chunks = self.sessions.get_chunks(db, session.id)
                received = {c.chunk_index for c in chunks}
                missing = [i for i in range(session.total_chunks) if i not in received]
                if missing:
                    raise IncompleteUpload(missing)

                asset_key = generate_source_object_name(session.id, session.file_name)
                try:
                    asset = await asyncio.to_thread(
                        self.assembler.assemble,
                        session_id=session.id,
                        chunks=chunks,
                        total_chunks=session.total_chunks,
                        asset_key=asset_key,
                        expected_size=session.file_size,
                        final_hash=request.final_hash,
                    )
                except IntegrityError as e:
                    self.sessions.transition(db, session, SessionStatus.FAILED, now=self.clock(), error_message=str(e))
                    await self._discard_chunks(db, session)
                    raise

                metadata = session.upload_metadata or {}
                options = ProcessingOptions.model_validate(metadata.get("processingOptions", {}))
                now = self.clock()
                self.sessions.transition(
                    db,
                    session,
                    SessionStatus.COMPLETED,
                    now=now,
                    asset_key=asset.asset_key,
                    final_hash=asset.md5,
                    completed_at=now,
                )
                job = self.processing.create_job(
                    db,
                    source_key=asset.asset_key,
                    options=options,
                    target=metadata.get("targetEntityIds", {}),
                    session_id=session.id,
                )
                session.job_id = job.id
                db.commit()
                await self._hand_off(db, session)
                return self._complete_response(session)

    async def cancel(self, session_id) -> CancelUploadResponse:
        async with self._lock(session_id):
            with self.session_factory() as db:
                session = self.sessions.get_or_raise(db, session_id)
                if session.status in TERMINAL_SESSION_STATES:
                    return CancelUploadResponse(session_id=session.id, status=session.status)
                if session.status == SessionStatus.COMPLETED:
                    raise SessionTerminal(session.id, session.status.value, "already finalized")
                self.sessions.transition(db, session, SessionStatus.CANCELLED, now=self.clock())
                await self._discard_chunks(db, session)
                return CancelUploadResponse(session_id=session.id, status=session.status)

    def list_active(self) -> list[UploadStatusResponse]:
        with self.session_factory() as db:
            return [
                build_upload_status(s, self.sessions.received_indices(db, s.id))
                for s in self.sessions.list_active(db)
            ]

    async def expire_inactive(self) -> int:
        cutoff = self.clock() - timedelta(seconds=self.settings.SESSION_INACTIVITY_TIMEOUT)
        with self.session_factory() as db:
            candidates = [s.id for s in self.sessions.find_inactive(db, cutoff)]
        expired = 0
        for session_id in candidates:
            async with self._lock(session_id):
                with self.session_factory() as db:
                    session = self.sessions.get(db, id=session_id)
                    if session is not None and await self._expire_if_inactive(db, session):
                        expired += 1
        if expired:
            logger.info(f"Expired {expired} inactive upload session(s)")
        return expired

    async def purge_expired(self) -> int:
        """Remove terminal sessions, and anything they still hold, once retention has passed."""
        cutoff = self.clock() - timedelta(seconds=self.settings.SESSION_RETENTION)
        with self.session_factory() as db:
            purgeable = self.sessions.find_purgeable(db, cutoff)
            for session in purgeable:
                await asyncio.to_thread(self.chunk_store.purge, session.id)
                self.sessions.delete(db, id=session.id)
        if purgeable:
            logger.info(f"Purged {len(purgeable)} upload session(s) past retention")
        return len(purgeable)

    async def _load_accepting(self, db: Session, session_id) -> UploadSession:
        session = self.sessions.get_or_raise(db, session_id)
        await self._expire_if_inactive(db, session)
        if session.status not in ACCEPTING_SESSION_STATES:
            raise SessionTerminal(session.id, session.status.value, session.error_message)
        return session

    async def _expire_if_inactive(self, db: Session, session: UploadSession) -> bool:
        if session.status not in ACCEPTING_SESSION_STATES:
            return False
        idle_since = as_utc(session.last_activity_at)
        if idle_since + timedelta(seconds=self.settings.SESSION_INACTIVITY_TIMEOUT) > self.clock():
            return False
        self.sessions.transition(db, session, SessionStatus.FAILED, now=self.clock(), error_message=EXPIRED_REASON)
        await self._discard_chunks(db, session)
        return True

    async def _hand_off(self, db: Session, session: UploadSession) -> None:
        job = self.processing.jobs.get_or_raise(db, session.job_id)
        # QueueUnavailable propagates; the session stays completed so finalize can be retried
        await self.processing.enqueue(job)
        self.sessions.transition(db, session, SessionStatus.HANDED_OFF, now=self.clock())
        await self._discard_chunks(db, session)

    async def _discard_chunks(self, db: Session, session: UploadSession) -> None:
        try:
            await asyncio.to_thread(self.chunk_store.purge, session.id)
        except StorageError as e:
            # rows are kept so the retention purge retries
            logger.warning(f"Could not purge chunks of session {session.id}: {e}")
            return
        self.sessions.delete_chunk_rows(db, session.id)

    def _complete_response(self, session: UploadSession) -> CompleteUploadResponse:
        return CompleteUploadResponse(
            session_id=session.id,
            job_id=session.job_id,
            asset_key=session.asset_key,
            size=session.file_size,
        )
