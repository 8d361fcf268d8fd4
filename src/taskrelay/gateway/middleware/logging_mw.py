"""LoggingMiddleware -- 请求级 request_id 与访问日志

request_id 取自 X-Request-ID 请求头，缺省时生成 ULID，并在响应头中回传。
"""

import time

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response
from ulid import ULID

log = structlog.get_logger()

# 探活请求只记 debug
_QUIET_PATHS = frozenset({"/health", "/ready"})


class LoggingMiddleware(BaseHTTPMiddleware):
    """请求级日志中间件（位于 TraceMiddleware 之内）"""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        request_id = request.headers.get("x-request-id") or str(ULID())
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )
        quiet = request.url.path in _QUIET_PATHS
        started = time.monotonic()

        try:
            response = await call_next(request)
        except Exception:
            await log.aexception(
                "request_failed",
                duration_ms=int((time.monotonic() - started) * 1000),
            )
            raise

        if response.status_code >= 500:
            emit = log.awarning
        elif quiet:
            emit = log.adebug
        else:
            emit = log.ainfo
        await emit(
            "request_completed",
            status_code=response.status_code,
            duration_ms=int((time.monotonic() - started) * 1000),
        )

        response.headers["X-Request-ID"] = request_id
        return response
