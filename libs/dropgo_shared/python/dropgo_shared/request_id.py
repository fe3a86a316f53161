import uuid
from contextvars import ContextVar

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

_rid_ctx: ContextVar[str] = ContextVar("request_id", default="")


def get_request_id() -> str:
    """Current request id, or an empty string outside of a request."""
    return _rid_ctx.get()


def _clean(raw: str | None) -> str:
    # Client supplied ids end up in logs; keep them short and printable.
    rid = (raw or "").strip()
    if not rid or len(rid) > 64 or not rid.isprintable():
        return uuid.uuid4().hex
    return rid


class RequestIDMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, header_name: str = "X-Request-ID"):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request: Request, call_next):
        token = _rid_ctx.set(_clean(request.headers.get(self.header_name)))
        try:
            response: Response = await call_next(request)
            response.headers.setdefault(self.header_name, _rid_ctx.get())
            return response
        finally:
            _rid_ctx.reset(token)
