from datetime import datetime
from typing import Any, Dict, List
from pydantic import BaseModel, Field, field_validator


def _not_blank(value: str, field_name: str) -> str:
    if not value or not value.strip():
        raise ValueError(f'{field_name} cannot be empty')
    return value


class StartSessionRequest(BaseModel):
    subject_id: str
    claims: Dict[str, Any] = Field(default_factory=dict)

    @field_validator('subject_id')
    @classmethod
    def validate_subject(cls, value):
        return _not_blank(value, 'Subject id')


class RefreshTokenRequest(BaseModel):
    session_id: str
    refresh_token: str

    @field_validator('session_id')
    @classmethod
    def validate_session(cls, value):
        return _not_blank(value, 'Session id')

    @field_validator('refresh_token')
    @classmethod
    def validate_token(cls, value):
        return _not_blank(value, 'Refresh token')


class RevokeTokenRequest(RefreshTokenRequest):
    pass


class SessionInfo(BaseModel):
    session_id: str
    issued_at: datetime
    expires_at: datetime


class SessionListResponse(BaseModel):
    subject_id: str
    sessions: List[SessionInfo]


class RevokeAllResponse(BaseModel):
    message: str
    revoked_count: int
