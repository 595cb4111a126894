from slowapi import Limiter
from slowapi.util import get_remote_address
from fastapi import Request
from jose import jwt, JWTError
from core.config import settings


def get_subject_key(request: Request):
    """
    Rate-limit per authenticated subject when a bearer access token is
    present, otherwise per client address.
    """
    token = request.headers.get("Authorization")
    if token:
        try:
            token = token.replace("Bearer ", "")
            # Signature only; expiry does not matter for bucketing
            payload = jwt.decode(
                token,
                settings.PUBLIC_KEY or settings.SECRET_KEY,
                algorithms=[settings.ALGORITHM],
                options={"verify_exp": False},
            )
            subject_id = payload.get("sub")
            if subject_id and payload.get("type") == "access":
                return f"subject:{subject_id}"
        except JWTError:
            pass

    return get_remote_address(request)


limiter = Limiter(
    key_func=get_subject_key,
    default_limits=["200/hour"],
    enabled=settings.ENV != "testing",
)
