from dataclasses import dataclass

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

REQUEST_ID_HEADER = "x-request-id"


@dataclass
class RequestContext:
    """Per-request facts shared by the request logger and the work package routes."""

    request_id: str
    correlation_id: str
    user_id: str | None
    client_host: str | None


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = getattr(request.state, "correlation_id", None) or ""
        # user_id is filled in once the bearer token has been decoded.
        request.state.context = RequestContext(
            request_id=correlation_id,
            correlation_id=correlation_id,
            user_id=None,
            client_host=request.client.host if request.client else None,
        )
        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request.state.context.request_id
        return response
