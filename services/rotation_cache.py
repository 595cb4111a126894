"""
Short-lived cache of the pair most recently issued for each session.

Entries live for the leeway window only. They let a caller that lost a
refresh race receive the winner's credentials instead of an error. This is
the only place a raw refresh token is kept; the token store holds hashes.
"""

import math
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Tuple
from schemas.token_schemas import TokenPair
from services.token_service import utc_now


class RotationCache(ABC):

    @abstractmethod
    def remember(self, pair: TokenPair, ttl_seconds: float) -> None:
        ...

    @abstractmethod
    def recall(self, session_id: str) -> Optional[TokenPair]:
        ...

    @abstractmethod
    def forget(self, session_id: str) -> None:
        ...

    def close(self) -> None:
        pass


class InMemoryRotationCache(RotationCache):

    def __init__(self, clock: Callable[[], datetime] = utc_now):
        self._entries: Dict[str, Tuple[TokenPair, datetime]] = {}
        self._mutex = threading.Lock()
        self._clock = clock

    def remember(self, pair: TokenPair, ttl_seconds: float) -> None:
        if ttl_seconds <= 0:
            return
        with self._mutex:
            self._entries[pair.session_id] = (pair, self._clock() + timedelta(seconds=ttl_seconds))

    def recall(self, session_id: str) -> Optional[TokenPair]:
        with self._mutex:
            entry = self._entries.get(session_id)
            if entry is None:
                return None
            if entry[1] <= self._clock():
                del self._entries[session_id]
                return None
            return entry[0]

    def forget(self, session_id: str) -> None:
        with self._mutex:
            self._entries.pop(session_id, None)


class RedisRotationCache(RotationCache):
    """
    Shares recently issued pairs between service instances.

    Entries hold the raw refresh token: re-serving the winner's pair to a
    client that lost a race needs the token itself, the stored hash cannot
    stand in for it. Entries expire with the leeway window (PX), which
    bounds how long the raw token is held. Point REDIS_URL at an instance
    that is not shared with untrusted consumers.
    """

    def __init__(self, client, key_prefix: str = "refresh-latest:"):
        self._client = client
        self._key_prefix = key_prefix

    def remember(self, pair: TokenPair, ttl_seconds: float) -> None:
        if ttl_seconds <= 0:
            return
        self._client.set(
            self._key_prefix + pair.session_id,
            pair.model_dump_json(),
            px=max(1, math.ceil(ttl_seconds * 1000)),
        )

    def recall(self, session_id: str) -> Optional[TokenPair]:
        raw = self._client.get(self._key_prefix + session_id)
        if raw is None:
            return None
        return TokenPair.model_validate_json(raw)

    def forget(self, session_id: str) -> None:
        self._client.delete(self._key_prefix + session_id)

    def close(self) -> None:
        self._client.close()
