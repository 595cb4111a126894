"""
Lease-based mutual exclusion for refresh attempts.

A lease is a time-bounded grant that expires on its own, so a crashed
holder can delay other callers by at most the lease TTL.
"""

import random
import secrets
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, Optional, Tuple
import redis
from pydantic import BaseModel
from core.exceptions import LockTimeoutError
from utils.logger import get_logger

logger = get_logger(__name__)


class Lease(BaseModel):
    key: str
    token: str
    ttl_ms: int


class LockProvider(ABC):

    @abstractmethod
    def acquire(self, key: str, ttl_ms: int) -> Optional[Lease]:
        """Try once. Returns None when the key is held by someone else."""

    @abstractmethod
    def release(self, lease: Lease) -> None:
        """Release only if the lease is still ours; never raises for a lost lease."""

    def close(self) -> None:
        pass


class LocalLockProvider(LockProvider):
    """Leases for a single process. Expired leases are taken over on the next acquire."""

    def __init__(self, monotonic: Callable[[], float] = time.monotonic):
        self._held: Dict[str, Tuple[str, float]] = {}
        self._mutex = threading.Lock()
        self._monotonic = monotonic

    def acquire(self, key: str, ttl_ms: int) -> Optional[Lease]:
        now = self._monotonic()
        with self._mutex:
            current = self._held.get(key)
            if current is not None and current[1] > now:
                return None
            token = secrets.token_hex(16)
            self._held[key] = (token, now + ttl_ms / 1000.0)
        return Lease(key=key, token=token, ttl_ms=ttl_ms)

    def release(self, lease: Lease) -> None:
        with self._mutex:
            current = self._held.get(lease.key)
            if current is not None and current[0] == lease.token:
                del self._held[lease.key]


# Delete only if the stored token is still ours
RELEASE_SCRIPT = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
  return redis.call("DEL", KEYS[1])
else
  return 0
end
"""


class RedisLockProvider(LockProvider):
    """
    Distributed leases: SET key token NX PX ttl, released by a
    compare-and-delete script.
    """

    def __init__(self, client, key_prefix: str = "refresh-lock:"):
        self._client = client
        self._key_prefix = key_prefix
        self._release = client.register_script(RELEASE_SCRIPT)

    @classmethod
    def from_url(cls, url: str) -> "RedisLockProvider":
        return cls(redis.Redis.from_url(url, decode_responses=True))

    def acquire(self, key: str, ttl_ms: int) -> Optional[Lease]:
        token = secrets.token_hex(16)
        ok = self._client.set(self._key_prefix + key, token, nx=True, px=int(ttl_ms))
        if not ok:
            return None
        return Lease(key=key, token=token, ttl_ms=ttl_ms)

    def release(self, lease: Lease) -> None:
        released = self._release(keys=[self._key_prefix + lease.key], args=[lease.token])
        if not released:
            logger.warning(
                "Lease expired before release",
                extra={"lock_key": lease.key, "ttl_ms": lease.ttl_ms}
            )

    def close(self) -> None:
        self._client.close()


@contextmanager
def hold_lease(
    provider: LockProvider,
    key: str,
    ttl_ms: int,
    timeout_seconds: float,
    retry_base_ms: int = 20,
    retry_max_ms: int = 250,
    sleep: Callable[[float], None] = time.sleep,
    monotonic: Callable[[], float] = time.monotonic,
) -> Iterator[Lease]:
    """
    Acquire a lease with jittered exponential backoff, hold it for the
    body of the with-block and always release it afterwards.

    Raises:
        LockTimeoutError: If the lease could not be obtained within timeout_seconds
    """
    started = monotonic()
    deadline = started + timeout_seconds
    delay_ms = retry_base_ms
    attempts = 0

    while True:
        attempts += 1
        lease = provider.acquire(key, ttl_ms)
        if lease is not None:
            break

        remaining = deadline - monotonic()
        if remaining <= 0:
            waited = monotonic() - started
            logger.warning(
                "Lease acquisition timed out",
                extra={"lock_key": key, "attempts": attempts, "waited_seconds": round(waited, 3)}
            )
            raise LockTimeoutError(key, waited)

        pause = min(random.uniform(delay_ms / 2, delay_ms) / 1000.0, remaining)
        logger.debug("Lease busy, backing off", extra={"lock_key": key, "pause_ms": round(pause * 1000)})
        sleep(pause)
        delay_ms = min(delay_ms * 2, retry_max_ms)

    try:
        yield lease
    finally:
        provider.release(lease)


class SessionLeases:
    """Per-session lease policy shared by everything that writes a session."""

    def __init__(
        self,
        provider: LockProvider,
        ttl_ms: int = 5000,
        timeout_seconds: float = 2.0,
        retry_base_ms: int = 20,
        retry_max_ms: int = 250,
    ):
        self.provider = provider
        self.ttl_ms = ttl_ms
        self.timeout_seconds = timeout_seconds
        self.retry_base_ms = retry_base_ms
        self.retry_max_ms = retry_max_ms

    def hold(self, session_id: str):
        return hold_lease(
            self.provider,
            session_id,
            ttl_ms=self.ttl_ms,
            timeout_seconds=self.timeout_seconds,
            retry_base_ms=self.retry_base_ms,
            retry_max_ms=self.retry_max_ms,
        )

    def close(self) -> None:
        self.provider.close()
