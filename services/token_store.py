"""
Token Store: durable sessionId -> SessionRecord mapping.

Single-key operations are atomic. The store does not lock across
read-compare-write sequences; the rotation arbiter holds a per-session
lease for that.
"""

import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional
from sqlalchemy import delete, select
from sqlalchemy.orm import Session
from models.sessions import AuthSession
from schemas.token_schemas import SessionRecord
from utils.logger import get_logger

logger = get_logger(__name__)


class TokenStore(ABC):
    """
    Contract every session backend implements.

    Records cross this boundary as immutable SessionRecord values; backends
    never hand out live ORM objects.
    """

    @abstractmethod
    def get(self, session_id: str) -> Optional[SessionRecord]:
        """
        Looks up one session.

        Args:
            session_id: Session to read

        Returns:
            The stored record, or None when the session is unknown
            (never created, signed out, revoked or purged)
        """

    @abstractmethod
    def put(self, record: SessionRecord) -> None:
        """
        Creates or replaces a session.

        Upsert: a rotation writes the same session id with the successor's
        hash, issue time and expiry.

        Args:
            record: Full session state to persist
        """

    @abstractmethod
    def delete(self, session_id: str) -> bool:
        """
        Removes one session (sign-out).

        Returns:
            True if a session was removed, False when there was nothing to delete
        """

    @abstractmethod
    def delete_all_for_subject(self, subject_id: str) -> int:
        """
        Removes every session of a subject (reuse detected, sign-out everywhere).

        Returns:
            Number of sessions removed; 0 on a repeated call
        """

    @abstractmethod
    def list_for_subject(self, subject_id: str) -> List[SessionRecord]:
        """
        Returns:
            The subject's sessions, oldest issue time first
        """

    @abstractmethod
    def purge_expired(self, now: datetime) -> int:
        """
        Deletes sessions whose refresh token expired at or before now.

        Args:
            now: Reference time (UTC), passed in so callers control the clock

        Returns:
            Number of sessions removed
        """

    def close(self) -> None:
        """Releases backend resources. Called once at shutdown."""


class InMemoryTokenStore(TokenStore):
    """Process-local reference store. Records are immutable, so reads hand out shared objects."""

    def __init__(self):
        self._sessions: Dict[str, SessionRecord] = {}
        self._mutex = threading.Lock()

    def get(self, session_id: str) -> Optional[SessionRecord]:
        with self._mutex:
            return self._sessions.get(session_id)

    def put(self, record: SessionRecord) -> None:
        with self._mutex:
            self._sessions[record.session_id] = record

    def delete(self, session_id: str) -> bool:
        with self._mutex:
            return self._sessions.pop(session_id, None) is not None

    def delete_all_for_subject(self, subject_id: str) -> int:
        with self._mutex:
            doomed = [sid for sid, rec in self._sessions.items() if rec.subject_id == subject_id]
            for sid in doomed:
                del self._sessions[sid]
            return len(doomed)

    def list_for_subject(self, subject_id: str) -> List[SessionRecord]:
        with self._mutex:
            records = [rec for rec in self._sessions.values() if rec.subject_id == subject_id]
        return sorted(records, key=lambda rec: rec.issued_at)

    def purge_expired(self, now: datetime) -> int:
        with self._mutex:
            doomed = [sid for sid, rec in self._sessions.items() if rec.expires_at <= now]
            for sid in doomed:
                del self._sessions[sid]
            return len(doomed)


def _as_utc(value: datetime) -> datetime:
    # SQLite drops tzinfo on the way back
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SqlAlchemyTokenStore(TokenStore):
    """
    Relational store on the auth_sessions table.

    Every call runs in its own short transaction so a single-key write is
    committed atomically before the call returns.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    @staticmethod
    def _to_record(row: AuthSession) -> SessionRecord:
        return SessionRecord(
            session_id=row.session_id,
            subject_id=row.subject_id,
            refresh_token_hash=row.refresh_token_hash,
            claims=dict(row.claims or {}),
            issued_at=_as_utc(row.issued_at),
            expires_at=_as_utc(row.expires_at),
        )

    def get(self, session_id: str) -> Optional[SessionRecord]:
        with self._session_factory() as db:
            row = db.get(AuthSession, session_id)
            return self._to_record(row) if row else None

    def put(self, record: SessionRecord) -> None:
        with self._session_factory() as db:
            # merge() selects by primary key, then INSERTs or UPDATEs
            db.merge(AuthSession(
                session_id=record.session_id,
                subject_id=record.subject_id,
                refresh_token_hash=record.refresh_token_hash,
                claims=dict(record.claims),
                issued_at=record.issued_at,
                expires_at=record.expires_at,
            ))
            db.commit()

    def delete(self, session_id: str) -> bool:
        with self._session_factory() as db:
            result = db.execute(delete(AuthSession).where(AuthSession.session_id == session_id))
            db.commit()
            return result.rowcount > 0

    def delete_all_for_subject(self, subject_id: str) -> int:
        with self._session_factory() as db:
            # One bulk DELETE; rowcount is 0 once the subject has no sessions left
            result = db.execute(delete(AuthSession).where(AuthSession.subject_id == subject_id))
            db.commit()
            return result.rowcount

    def list_for_subject(self, subject_id: str) -> List[SessionRecord]:
        with self._session_factory() as db:
            rows = db.scalars(
                select(AuthSession)
                .where(AuthSession.subject_id == subject_id)
                .order_by(AuthSession.issued_at)
            ).all()
            return [self._to_record(row) for row in rows]

    def purge_expired(self, now: datetime) -> int:
        with self._session_factory() as db:
            result = db.execute(delete(AuthSession).where(AuthSession.expires_at <= now))
            db.commit()
            removed = result.rowcount
        if removed:
            logger.debug("Expired sessions purged", extra={"removed": removed})
        return removed
