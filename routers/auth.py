from fastapi import APIRouter, Depends, Request
from starlette import status
from schemas.auth_schemas import (StartSessionRequest, RefreshTokenRequest, RevokeTokenRequest,
                                  SessionInfo, SessionListResponse, RevokeAllResponse)
from schemas.token_schemas import TokenPair
from utils.deps import services_dependency, subject_dependency, verify_internal_api_key
from middleware.rate_limiter import limiter
from utils.logger import get_logger

# Setup logger
logger = get_logger(__name__)


router = APIRouter(
    prefix="/auth",
    tags=["auth"]
)


# Sync handlers run in the threadpool: store I/O and lease backoff block.

@router.post("/sessions", response_model=TokenPair, status_code=status.HTTP_201_CREATED,
             dependencies=[Depends(verify_internal_api_key)])
@limiter.limit("30/minute")
def start_session(request: Request, body: StartSessionRequest, services: services_dependency):
    """
    Start a session for a subject the identity provider has already authenticated.

    Called service-to-service with X-Internal-Api-Key. Every call opens a new,
    independent session (one per device or sign-in).

    Returns:
        The session's first token pair (201)
    """
    return services.sessions.start_session(body.subject_id, body.claims)


@router.post("/refresh", response_model=TokenPair)
@limiter.limit("10/minute")
def refresh_token(request: Request, body: RefreshTokenRequest, services: services_dependency):
    """
    Exchange a refresh token for a new token pair.

    Flow:
    1. Verify the token and that it names this session
    2. Take the session lease (concurrent refreshes queue here)
    3. Current token: rotate. Token superseded within the leeway window:
       return the pair the racing request received. Older: revoke all
       sessions of the subject

    Errors are rendered by the token error handler:
    - 401 INVALID_TOKEN: bad signature, wrong type, expired, wrong session
    - 401 UNAUTHORIZED: unknown or revoked session
    - 401 TOKEN_REUSE_DETECTED: stale token replayed, every session revoked
    - 503 LOCK_TIMEOUT: session busy, retry after Retry-After seconds
    """
    outcome = services.arbiter.refresh(body.session_id, body.refresh_token)

    if not outcome.rotated:
        # Client lost a race; it now holds the same pair as the winner
        logger.info("Refresh served from leeway window", extra={"session_id": body.session_id})

    return outcome.pair


@router.post("/logout", status_code=status.HTTP_200_OK)
@limiter.limit("10/minute")
def logout(request: Request, body: RevokeTokenRequest, services: services_dependency):
    """
    End one session. Always succeeds so repeated or stale logouts are harmless.

    The session is deleted only when the refresh token verifies and belongs
    to it. Other sessions of the subject are untouched.
    """
    services.sessions.sign_out(body.session_id, body.refresh_token)

    return {"message": "Logged out successfully"}


@router.post("/logout-all", response_model=RevokeAllResponse)
@limiter.limit("5/minute")
def logout_all(request: Request, subject: subject_dependency, services: services_dependency):
    """
    End every session of the calling subject (all devices).

    Requires a bearer access token. Access tokens already handed out stay
    valid until they expire; no further refresh succeeds.

    Returns:
        Number of sessions revoked (0 on a repeated call)
    """
    revoked = services.sessions.revoke_all(subject.subject_id)

    return RevokeAllResponse(message="All sessions revoked", revoked_count=revoked)


@router.get("/sessions", response_model=SessionListResponse)
@limiter.limit("30/minute")
def list_sessions(request: Request, subject: subject_dependency, services: services_dependency):
    """
    List the calling subject's active sessions, oldest first.

    Only ids and timestamps are returned; hashes never leave the service.
    """
    records = services.sessions.list_sessions(subject.subject_id)

    return SessionListResponse(
        subject_id=subject.subject_id,
        sessions=[
            SessionInfo(session_id=r.session_id, issued_at=r.issued_at, expires_at=r.expires_at)
            for r in records
        ],
    )
