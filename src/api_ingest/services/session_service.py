from datetime import datetime
from uuid import uuid4
from logging import getLogger

from sqlalchemy import exc as sa_exc
from sqlalchemy.orm import Session

from api_ingest.exceptions.exceptions import SessionNotFound, SessionTerminal
from api_ingest.models import (
    UploadSession,
    UploadChunk,
    SessionStatus,
    SESSION_TRANSITIONS,
    TERMINAL_SESSION_STATES,
    ACCEPTING_SESSION_STATES,
    as_utc,
)
from api_ingest.schema import SessionCreateSchema
from api_ingest.services.base_service import BaseService

logger = getLogger(__name__)


class SessionService(BaseService[UploadSession, SessionCreateSchema]):
    def __init__(self):
        super().__init__(UploadSession)

    def get_or_raise(self, db: Session, session_id) -> UploadSession:
        session = self.get(db, id=session_id)
        if session is None:
            raise SessionNotFound(f"Upload session {session_id} not found")
        return session

    def received_indices(self, db: Session, session_id) -> list[int]:
        rows = (
            db.query(UploadChunk.chunk_index)
            .filter(UploadChunk.session_id == session_id)
            .order_by(UploadChunk.chunk_index)
            .all()
        )
        return [row[0] for row in rows]

    def get_chunks(self, db: Session, session_id) -> list[UploadChunk]:
        return (
            db.query(UploadChunk)
            .filter(UploadChunk.session_id == session_id)
            .order_by(UploadChunk.chunk_index)
            .all()
        )

    def has_chunk(self, db: Session, session_id, chunk_index: int) -> bool:
        return (
            db.query(UploadChunk.id)
            .filter(UploadChunk.session_id == session_id, UploadChunk.chunk_index == chunk_index)
            .first()
            is not None
        )

    def add_chunk(
        self,
        db: Session,
        *,
        session: UploadSession,
        chunk_index: int,
        size: int,
        md5: str,
        storage_key: str,
        now: datetime,
    ) -> bool:
        """
        Record a received chunk. Returns False when the index was already
        recorded (another writer won the race), which callers treat as a duplicate.
        """
        db.add(UploadChunk(
            id=uuid4(),
            session_id=session.id,
            chunk_index=chunk_index,
            size=size,
            md5=md5,
            storage_key=storage_key,
            created_at=now,
        ))
        if session.status == SessionStatus.INITIATED:
            self._check_transition(session, SessionStatus.UPLOADING)
            session.status = SessionStatus.UPLOADING
        session.last_activity_at = now
        try:
            db.commit()
        except sa_exc.IntegrityError:
            db.rollback()
            return False
        return True

    def delete_chunk_rows(self, db: Session, session_id) -> None:
        db.query(UploadChunk).filter(UploadChunk.session_id == session_id).delete()
        db.commit()

    def transition(
        self, db: Session, session: UploadSession, status: SessionStatus, *, now: datetime, **fields
    ) -> UploadSession:
        self._check_transition(session, status)
        previous = session.status
        session.status = status
        session.last_activity_at = now
        for field, value in fields.items():
            setattr(session, field, value)
        db.add(session)
        db.commit()
        logger.info(f"Upload session {session.id}: {previous.value} -> {status.value}")
        return session

    def list_active(self, db: Session) -> list[UploadSession]:
        return (
            self.get_all(db)
            .filter(UploadSession.status.in_(list(ACCEPTING_SESSION_STATES)))
            .order_by(UploadSession.created_at)
            .all()
        )

    def find_inactive(self, db: Session, cutoff: datetime) -> list[UploadSession]:
        return [s for s in self.list_active(db) if as_utc(s.last_activity_at) < cutoff]

    def find_purgeable(self, db: Session, cutoff: datetime) -> list[UploadSession]:
        sessions = (
            self.get_all(db)
            .filter(UploadSession.status.in_(list(TERMINAL_SESSION_STATES)))
            .all()
        )
        return [s for s in sessions if as_utc(s.last_activity_at) < cutoff]

    @staticmethod
    def _check_transition(session: UploadSession, status: SessionStatus) -> None:
        if status not in SESSION_TRANSITIONS[session.status]:
            raise SessionTerminal(session.id, session.status.value, session.error_message)


session_service = SessionService()
