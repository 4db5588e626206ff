import re
import time
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware

from plangate.core.logging import log_event, request_id_ctx_var

REQUEST_ID_HEADER = "x-request-id"

# Caller-supplied ids are echoed into logs and headers
_ACCEPTED_ID = re.compile(r"[A-Za-z0-9._:-]{1,128}")


def resolve_request_id(incoming) -> str:
    if incoming and _ACCEPTED_ID.fullmatch(incoming):
        return incoming
    return uuid4().hex


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Bind a request id for the duration of the request and log the outcome."""

    async def dispatch(self, request, call_next):
        rid = resolve_request_id(request.headers.get(REQUEST_ID_HEADER))
        request.state.request_id = rid
        token = request_id_ctx_var.set(rid)
        started = time.monotonic()
        try:
            response = await call_next(request)
            response.headers[REQUEST_ID_HEADER] = rid
            log_event(
                "info",
                f"[http] {request.method} {request.url.path} -> {response.status_code}",
                account_id=request.headers.get("x-user-id"),
                extra={"duration_ms": round((time.monotonic() - started) * 1000, 1)},
            )
            return response
        finally:
            request_id_ctx_var.reset(token)
