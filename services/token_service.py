import secrets
from datetime import datetime, timezone, timedelta
from typing import Any, Callable, Dict, Optional, Tuple
from jose import jwt, JWTError
from jose.constants import ALGORITHMS
from jose.exceptions import JOSEError
from core.exceptions import InvalidTokenError, SigningError
from schemas.token_schemas import AccessClaims, IssuedTokens, RefreshClaims, TokenPair
from utils.logger import get_logger

logger = get_logger(__name__)

# Claims the issuer owns; custom claims may not override them
RESERVED_CLAIMS = frozenset({"sub", "sid", "jti", "type", "iat", "exp"})


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _timestamp(moment: datetime) -> float:
    # Millisecond NumericDate so back-to-back rotations still get distinct iat values
    return round(moment.timestamp(), 3)


def _from_timestamp(value: float) -> datetime:
    return datetime.fromtimestamp(value, timezone.utc)


class TokenIssuer:
    """
    Mints and verifies signed access/refresh token pairs.

    Access tokens carry the subject and custom claims. Refresh tokens carry
    the subject, the session id and a unique jti; the session id is never
    put into access tokens so neither can stand in for the other.
    """

    def __init__(
        self,
        signing_key: str,
        algorithm: str,
        access_ttl: timedelta,
        refresh_ttl: timedelta,
        verification_key: Optional[str] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.algorithm = algorithm
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self._signing_key = signing_key
        self._verification_key = verification_key or signing_key
        self._clock = clock
        self._check_keys()

    def _check_keys(self):
        """
        Fail fast on a key/algorithm combination that cannot sign or verify.

        Raises:
            SigningError: If the key is absent or unusable
        """
        if not self._signing_key:
            raise SigningError("Signing key is not configured")
        if self.algorithm not in ALGORITHMS.SUPPORTED:
            raise SigningError(f"Unsupported signing algorithm: {self.algorithm}")
        try:
            probe = self._encode({"type": "probe"})
            jwt.decode(probe, self._verification_key, algorithms=[self.algorithm])
        except JOSEError as e:
            raise SigningError(f"Signing key cannot be used with {self.algorithm}: {e}")

    def _encode(self, payload: Dict[str, Any]) -> str:
        try:
            return jwt.encode(payload, self._signing_key, algorithm=self.algorithm)
        except JOSEError as e:
            logger.error(
                "Token signing failed",
                extra={"algorithm": self.algorithm, "error_type": type(e).__name__}
            )
            raise SigningError(f"Token signing failed: {e}")

    def _next_issued_at(self, not_before: Optional[datetime]) -> datetime:
        issued_at = _timestamp(self._clock())
        if not_before is not None:
            issued_at = max(issued_at, round(_timestamp(not_before) + 0.001, 3))
        return _from_timestamp(issued_at)

    def create_access_token(
        self,
        subject_id: str,
        claims: Optional[Dict[str, Any]] = None,
        issued_at: Optional[datetime] = None,
    ) -> Tuple[str, datetime]:
        """
        Creates a signed access token.

        Returns:
            Tuple of (access_token, expires_at)
        """
        if issued_at is None:
            issued_at = self._next_issued_at(None)
        expires_at = _from_timestamp(_timestamp(issued_at + self.access_ttl))

        payload = {k: v for k, v in (claims or {}).items() if k not in RESERVED_CLAIMS}
        payload.update({
            "sub": str(subject_id),
            "type": "access",
            "iat": _timestamp(issued_at),
            "exp": _timestamp(expires_at),
        })
        return self._encode(payload), expires_at

    def issue(
        self,
        subject_id: str,
        session_id: str,
        claims: Optional[Dict[str, Any]] = None,
        not_before: Optional[datetime] = None,
    ) -> IssuedTokens:
        """
        Mints a new access + refresh pair for a session.

        Args:
            subject_id: Authenticated principal
            session_id: Session the refresh token is bound to
            claims: Custom claims for the access token
            not_before: The new refresh token's iat is guaranteed to be
                strictly later than this (the predecessor's iat)
        """
        issued_at = self._next_issued_at(not_before)
        access_token, access_expires_at = self.create_access_token(subject_id, claims, issued_at)

        refresh_expires_at = _from_timestamp(_timestamp(issued_at + self.refresh_ttl))
        jti = secrets.token_urlsafe(32)
        refresh_token = self._encode({
            "sub": str(subject_id),
            "sid": session_id,
            "jti": jti,
            "type": "refresh",
            "iat": _timestamp(issued_at),
            "exp": _timestamp(refresh_expires_at),
        })

        return IssuedTokens(
            pair=TokenPair(
                access_token=access_token,
                refresh_token=refresh_token,
                access_token_expires_at=access_expires_at,
                session_id=session_id,
            ),
            refresh_claims=RefreshClaims(
                subject_id=str(subject_id),
                session_id=session_id,
                jti=jti,
                issued_at=issued_at,
                expires_at=refresh_expires_at,
            ),
        )

    def _decode(self, token: str, expected_type: str) -> Dict[str, Any]:
        try:
            # Expiry is checked against the issuer clock below
            payload = jwt.decode(
                token,
                self._verification_key,
                algorithms=[self.algorithm],
                options={"verify_exp": False},
            )
        except JWTError:
            raise InvalidTokenError("Invalid token")

        if payload.get("type") != expected_type:
            raise InvalidTokenError("Invalid token type")

        try:
            payload["iat"] = float(payload["iat"])
            payload["exp"] = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise InvalidTokenError("Invalid token payload")

        if not payload.get("sub"):
            raise InvalidTokenError("Invalid token payload")

        if payload["exp"] <= self._clock().timestamp():
            raise InvalidTokenError("Token expired")

        return payload

    def decode_refresh_token(self, token: str) -> RefreshClaims:
        """
        Verifies signature, type and expiry of a refresh token.

        Raises:
            InvalidTokenError: On any structural problem
        """
        payload = self._decode(token, "refresh")
        if not payload.get("sid") or not payload.get("jti"):
            raise InvalidTokenError("Invalid token payload")

        return RefreshClaims(
            subject_id=payload["sub"],
            session_id=payload["sid"],
            jti=payload["jti"],
            issued_at=_from_timestamp(payload["iat"]),
            expires_at=_from_timestamp(payload["exp"]),
        )

    def decode_access_token(self, token: str) -> AccessClaims:
        payload = self._decode(token, "access")
        if "sid" in payload:
            raise InvalidTokenError("Invalid token type")

        return AccessClaims(
            subject_id=payload["sub"],
            issued_at=_from_timestamp(payload["iat"]),
            expires_at=_from_timestamp(payload["exp"]),
            claims={k: v for k, v in payload.items() if k not in RESERVED_CLAIMS},
        )
