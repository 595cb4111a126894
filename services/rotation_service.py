from datetime import datetime, timedelta
from typing import Callable, NoReturn
from core.exceptions import CompromisedTokenError, InvalidTokenError, UnauthorizedError
from schemas.token_schemas import RefreshClaims, RefreshOutcome, SessionRecord
from services.lock_provider import SessionLeases
from services.rotation_cache import RotationCache
from services.token_service import TokenIssuer, utc_now
from services.token_store import TokenStore
from utils.hashing import hash_refresh_token, refresh_token_matches
from utils.logger import get_logger

logger = get_logger(__name__)


class RotationArbiter:
    """
    Decides the outcome of a refresh attempt.

    Outcomes, evaluated while holding the session's lease:
    - presented token is the current one: rotate (new pair, hash replaced)
    - superseded token replaced less than the leeway window ago: re-serve
      the latest pair without touching the store
    - superseded token replaced at least the leeway window ago: revoke every
      session of the subject and raise CompromisedTokenError

    The age of a superseded token is measured from the issue time of its
    successor (the stored record), not from its own issue time, so two
    clients racing with a long-lived token do not trip reuse detection.
    """

    def __init__(
        self,
        issuer: TokenIssuer,
        store: TokenStore,
        leases: SessionLeases,
        cache: RotationCache,
        leeway: timedelta,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.issuer = issuer
        self.store = store
        self.leases = leases
        self.cache = cache
        self.leeway = leeway
        self._clock = clock

    def refresh(self, session_id: str, refresh_token: str) -> RefreshOutcome:
        """
        Exchange a refresh token for a token pair.

        Raises:
            InvalidTokenError: Bad signature/type/expiry, or claims that do not
                match the session they are presented for
            UnauthorizedError: Unknown (deleted or revoked) session
            CompromisedTokenError: Stale token replayed outside the leeway window
            LockTimeoutError: Another attempt held the session too long; retryable
        """
        claims = self.issuer.decode_refresh_token(refresh_token)
        if claims.session_id != session_id:
            logger.warning(
                "Refresh token presented for a different session",
                extra={"session_id": session_id, "token_session_id": claims.session_id}
            )
            raise InvalidTokenError("Refresh token does not belong to this session")

        with self.leases.hold(session_id):
            record = self.store.get(session_id)
            if record is None:
                logger.info("Refresh for unknown session", extra={"session_id": session_id})
                raise UnauthorizedError("Session not found or revoked")

            # The stored subject is authoritative
            if record.subject_id != claims.subject_id:
                logger.warning(
                    "Refresh token subject does not match session",
                    extra={"session_id": session_id}
                )
                raise InvalidTokenError("Refresh token does not match session")

            if refresh_token_matches(refresh_token, record.refresh_token_hash):
                return self._rotate(record, claims)

            # Time since the presented token was superseded by the stored one
            age = self._clock() - record.issued_at
            if age < self.leeway:
                return self._reserve(record, age)

            self._revoke_subject(record, age)

    def _rotate(self, record: SessionRecord, claims: RefreshClaims) -> RefreshOutcome:
        issued = self.issuer.issue(
            record.subject_id,
            record.session_id,
            record.claims,
            not_before=max(record.issued_at, claims.issued_at),
        )
        self.store.put(record.model_copy(update={
            "refresh_token_hash": hash_refresh_token(issued.pair.refresh_token),
            "issued_at": issued.refresh_claims.issued_at,
            "expires_at": issued.refresh_claims.expires_at,
        }))
        self.cache.remember(issued.pair, self.leeway.total_seconds())

        logger.info(
            "Refresh token rotated",
            extra={"session_id": record.session_id, "subject_id": record.subject_id}
        )
        return RefreshOutcome(pair=issued.pair, rotated=True)

    def _reserve(self, record: SessionRecord, age: timedelta) -> RefreshOutcome:
        latest = self.cache.recall(record.session_id)
        if latest is None or not refresh_token_matches(latest.refresh_token, record.refresh_token_hash):
            logger.warning(
                "Superseded token inside leeway but no recent pair to re-serve",
                extra={"session_id": record.session_id, "age_seconds": age.total_seconds()}
            )
            raise UnauthorizedError("Session was refreshed by another request")

        access_token, expires_at = self.issuer.create_access_token(record.subject_id, record.claims)
        logger.info(
            "Superseded token inside leeway, re-serving latest pair",
            extra={"session_id": record.session_id, "age_seconds": age.total_seconds()}
        )
        return RefreshOutcome(
            pair=latest.model_copy(update={
                "access_token": access_token,
                "access_token_expires_at": expires_at,
            }),
            rotated=False,
        )

    def _revoke_subject(self, record: SessionRecord, age: timedelta) -> NoReturn:
        revoked = self.store.delete_all_for_subject(record.subject_id)
        self.cache.forget(record.session_id)

        logger.warning(
            "Refresh token reuse detected, all sessions revoked",
            extra={
                "session_id": record.session_id,
                "subject_id": record.subject_id,
                "age_seconds": age.total_seconds(),
                "revoked_count": revoked,
            }
        )
        raise CompromisedTokenError(record.subject_id, revoked)
