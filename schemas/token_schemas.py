from datetime import datetime
from typing import Any, Dict
from pydantic import BaseModel, ConfigDict, Field


class TokenPair(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    access_token_expires_at: datetime
    session_id: str


class RefreshClaims(BaseModel):
    """Signature-verified claims of a refresh token."""
    model_config = ConfigDict(frozen=True)

    subject_id: str
    session_id: str
    jti: str
    issued_at: datetime
    expires_at: datetime


class AccessClaims(BaseModel):
    model_config = ConfigDict(frozen=True)

    subject_id: str
    issued_at: datetime
    expires_at: datetime
    claims: Dict[str, Any] = Field(default_factory=dict)


class IssuedTokens(BaseModel):
    """A freshly minted pair together with the refresh half's own claims."""
    pair: TokenPair
    refresh_claims: RefreshClaims


class SessionRecord(BaseModel):
    """
    Store-level view of a session. Backends convert to and from this.
    """
    model_config = ConfigDict(frozen=True)

    session_id: str
    subject_id: str
    refresh_token_hash: str
    claims: Dict[str, Any] = Field(default_factory=dict)
    issued_at: datetime
    expires_at: datetime


class RefreshOutcome(BaseModel):
    pair: TokenPair
    # False when the pair was re-served inside the leeway window
    rotated: bool
