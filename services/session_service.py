import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
from core.exceptions import TokenLifecycleError
from schemas.token_schemas import SessionRecord, TokenPair
from services.lock_provider import SessionLeases
from services.rotation_cache import RotationCache
from services.token_service import TokenIssuer, utc_now
from services.token_store import TokenStore
from utils.hashing import hash_refresh_token
from utils.logger import get_logger, sanitize_log_data

logger = get_logger(__name__)


class SessionService:
    """
    Session lifecycle outside of rotation: sign-in, sign-out,
    subject-wide revocation, listing and the expiry sweep.
    """

    def __init__(
        self,
        issuer: TokenIssuer,
        store: TokenStore,
        leases: SessionLeases,
        cache: RotationCache,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.issuer = issuer
        self.store = store
        self.leases = leases
        self.cache = cache
        self._clock = clock

    def start_session(self, subject_id: str, claims: Optional[Dict[str, Any]] = None) -> TokenPair:
        """
        Creates a new session for an already-authenticated subject.

        Args:
            subject_id: Authenticated principal
            claims: Custom claims carried by every access token of the session

        Returns:
            The session's first token pair
        """
        session_id = str(uuid.uuid4())
        issued = self.issuer.issue(subject_id, session_id, claims)

        self.store.put(SessionRecord(
            session_id=session_id,
            subject_id=str(subject_id),
            refresh_token_hash=hash_refresh_token(issued.pair.refresh_token),
            claims=dict(claims or {}),
            issued_at=issued.refresh_claims.issued_at,
            expires_at=issued.refresh_claims.expires_at,
        ))

        logger.info(
            "Session started",
            extra=sanitize_log_data({
                "session_id": session_id,
                "subject_id": str(subject_id),
                "claims": dict(claims or {}),
            })
        )
        return issued.pair

    def sign_out(self, session_id: str, refresh_token: str) -> bool:
        """
        Deletes a session when the refresh token verifies and belongs to it.

        Idempotent: invalid tokens, foreign sessions and already deleted
        sessions are ignored.

        Returns:
            True if a session was deleted
        """
        try:
            claims = self.issuer.decode_refresh_token(refresh_token)
        except TokenLifecycleError:
            logger.debug("Sign-out with unusable token ignored", extra={"session_id": session_id})
            return False

        if claims.session_id != session_id:
            return False

        with self.leases.hold(session_id):
            record = self.store.get(session_id)
            if record is None or record.subject_id != claims.subject_id:
                return False
            deleted = self.store.delete(session_id)
            self.cache.forget(session_id)

        if deleted:
            logger.info("Session signed out", extra={"session_id": session_id})
        return deleted

    def revoke_all(self, subject_id: str) -> int:
        """
        Deletes every session of a subject. Safe to call repeatedly.

        Returns:
            Number of sessions removed (0 when none were left)
        """
        sessions = self.store.list_for_subject(subject_id)
        removed = self.store.delete_all_for_subject(subject_id)
        for record in sessions:
            self.cache.forget(record.session_id)

        logger.info(
            "All sessions revoked for subject",
            extra={"subject_id": subject_id, "revoked_count": removed}
        )
        return removed

    def list_sessions(self, subject_id: str) -> List[SessionRecord]:
        return self.store.list_for_subject(subject_id)

    def purge_expired(self) -> int:
        return self.store.purge_expired(self._clock())
