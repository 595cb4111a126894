from core.database import Base
from sqlalchemy import Column, DateTime, String, JSON
from models.mixins import CreatedAtMixin, UpdatedAtMixin


class AuthSession(Base, CreatedAtMixin, UpdatedAtMixin):
    """
    One logical login (one device or browser).

    Holds only the hash of the currently valid refresh token. Rotation
    overwrites refresh_token_hash in place, so a session never has more
    than one live token.
    """
    __tablename__ = "auth_sessions"

    #pk
    session_id = Column(String(64), primary_key=True)

    subject_id = Column(String(255), nullable=False, index=True)
    refresh_token_hash = Column(String(64), nullable=False)
    # Custom claims re-embedded into every access token minted for this session
    claims = Column(JSON, nullable=False, default=dict)
    issued_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
