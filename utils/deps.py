import secrets
from datetime import datetime, timedelta
from typing import Annotated, Callable, Optional
import redis
from fastapi import Depends, Header, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.engine import Engine
from starlette import status
from core.config import Settings, settings
from core.database import Base, SessionLocal, engine
from schemas.token_schemas import AccessClaims
from services.lock_provider import LocalLockProvider, RedisLockProvider, SessionLeases
from services.rotation_cache import InMemoryRotationCache, RedisRotationCache, RotationCache
from services.rotation_service import RotationArbiter
from services.session_service import SessionService
from services.token_service import TokenIssuer, utc_now
from services.token_store import InMemoryTokenStore, SqlAlchemyTokenStore, TokenStore
from utils.logger import get_logger

logger = get_logger(__name__)


class TokenServices:
    """
    Process-wide handle on the token lifecycle components.

    Built once at startup, shared by all requests, closed at shutdown.
    """

    def __init__(
        self,
        issuer: TokenIssuer,
        store: TokenStore,
        leases: SessionLeases,
        cache: RotationCache,
        arbiter: RotationArbiter,
        sessions: SessionService,
        engine: Optional[Engine] = None,
    ):
        self.issuer = issuer
        self.store = store
        self.leases = leases
        self.cache = cache
        self.arbiter = arbiter
        self.sessions = sessions
        # Set only when the database token store is in use
        self.engine = engine

    def close(self) -> None:
        self.store.close()
        self.leases.close()
        self.cache.close()
        if self.engine is not None:
            self.engine.dispose()
        logger.info("Token services closed")


def build_services(config: Settings = settings, clock: Callable[[], datetime] = utc_now) -> TokenServices:
    """
    Wire the issuer, store, leases, cache, arbiter and session service
    from configuration.

    Raises:
        SigningError: If the signing key is missing or unusable
    """
    issuer = TokenIssuer(
        signing_key=config.SECRET_KEY,
        algorithm=config.ALGORITHM,
        access_ttl=timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES),
        refresh_ttl=timedelta(days=config.REFRESH_TOKEN_EXPIRE_DAYS),
        verification_key=config.PUBLIC_KEY,
        clock=clock,
    )

    store_engine = None
    if config.TOKEN_STORE_BACKEND == "memory":
        store = InMemoryTokenStore()
    else:
        store_engine = engine
        Base.metadata.create_all(bind=engine)
        store = SqlAlchemyTokenStore(SessionLocal)

    if config.LOCK_BACKEND == "redis":
        redis_client = redis.Redis.from_url(config.REDIS_URL, decode_responses=True)
        provider = RedisLockProvider(redis_client)
        cache = RedisRotationCache(redis_client)
    else:
        provider = LocalLockProvider()
        cache = InMemoryRotationCache(clock=clock)

    leases = SessionLeases(
        provider,
        ttl_ms=config.LOCK_TTL_MS,
        timeout_seconds=config.LOCK_ACQUIRE_TIMEOUT_SECONDS,
        retry_base_ms=config.LOCK_RETRY_BASE_MS,
        retry_max_ms=config.LOCK_RETRY_MAX_MS,
    )
    arbiter = RotationArbiter(
        issuer,
        store,
        leases,
        cache,
        leeway=timedelta(seconds=config.REFRESH_LEEWAY_SECONDS),
        clock=clock,
    )
    sessions = SessionService(issuer, store, leases, cache, clock=clock)

    logger.info(
        "Token services ready",
        extra={
            "store_backend": config.TOKEN_STORE_BACKEND,
            "lock_backend": config.LOCK_BACKEND,
            "leeway_seconds": config.REFRESH_LEEWAY_SECONDS,
        }
    )
    return TokenServices(issuer, store, leases, cache, arbiter, sessions, engine=store_engine)


def get_services(request: Request) -> TokenServices:
    return request.app.state.services


services_dependency = Annotated[TokenServices, Depends(get_services)]


def get_current_subject(
    services: services_dependency,
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(HTTPBearer())],
) -> AccessClaims:
    # InvalidTokenError propagates to the token error handler (401)
    return services.issuer.decode_access_token(credentials.credentials)


subject_dependency = Annotated[AccessClaims, Depends(get_current_subject)]


def verify_internal_api_key(x_internal_api_key: Annotated[Optional[str], Header()] = None):
    """
    Service-to-service guard for endpoints called by the identity provider.
    """
    if not x_internal_api_key:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED,
                            detail="Internal API key required")

    if not secrets.compare_digest(x_internal_api_key, settings.INTERNAL_API_KEY):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED,
                            detail="Invalid internal API key")
