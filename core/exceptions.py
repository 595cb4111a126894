"""
Error kinds raised by the token lifecycle services.

Every kind carries the HTTP status it maps to so the app can render
all of them through a single exception handler.
"""

from starlette import status


class TokenLifecycleError(Exception):
    """Base class for all refresh-token lifecycle failures."""

    code = "TOKEN_ERROR"
    status_code = status.HTTP_401_UNAUTHORIZED
    retryable = False

    def __init__(self, detail: str = "Token error"):
        super().__init__(detail)
        self.detail = detail


class InvalidTokenError(TokenLifecycleError):
    """Malformed, wrongly signed, wrong-type or expired token."""

    code = "INVALID_TOKEN"


class UnauthorizedError(TokenLifecycleError):
    """Structurally valid token for a session the store does not know."""

    code = "UNAUTHORIZED"


class CompromisedTokenError(TokenLifecycleError):
    """
    A superseded refresh token was replayed outside the leeway window.

    Raised after every session of the subject has been revoked.
    """

    code = "TOKEN_REUSE_DETECTED"

    def __init__(self, subject_id: str, revoked_count: int,
                 detail: str = "Refresh token reuse detected. All sessions have been revoked."):
        super().__init__(detail)
        self.subject_id = subject_id
        self.revoked_count = revoked_count


class LockTimeoutError(TokenLifecycleError):
    code = "LOCK_TIMEOUT"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    retryable = True

    def __init__(self, key: str, waited_seconds: float,
                 detail: str = "Refresh already in progress, retry shortly"):
        super().__init__(detail)
        self.key = key
        self.waited_seconds = waited_seconds


class SigningError(TokenLifecycleError):
    """Signing key missing or unusable with the configured algorithm."""

    code = "SIGNING_ERROR"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
