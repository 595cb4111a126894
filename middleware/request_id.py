"""
Request ID middleware.

Every request gets an id (client-supplied X-Request-ID or a new UUID).
It is echoed in the response headers and attached to every log record
emitted while the request is being handled, including from the
threadpool that runs sync routes.
"""

import uuid
import logging
from contextvars import ContextVar
from typing import Optional
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

_current_request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
_factory_installed = False


def _install_record_factory():
    global _factory_installed
    if _factory_installed:
        return
    old_factory = logging.getLogRecordFactory()

    def record_factory(*args, **kwargs):
        record = old_factory(*args, **kwargs)
        request_id = _current_request_id.get()
        # Outside a request the caller may still pass request_id via extra
        if request_id is not None:
            record.request_id = request_id
        return record

    logging.setLogRecordFactory(record_factory)
    _factory_installed = True


class RequestIDMiddleware(BaseHTTPMiddleware):

    def __init__(self, app):
        super().__init__(app)
        _install_record_factory()

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id

        reset_token = _current_request_id.set(request_id)
        try:
            response: Response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            return response
        finally:
            _current_request_id.reset(reset_token)


def get_request_id(request: Request) -> str:
    """
    Request id of the current request, or "no-request-id" outside the middleware.
    """
    return getattr(request.state, "request_id", "no-request-id")
