"""Correlation ID middleware.

Tags every request with a correlation ID (taken from X-Correlation-ID or
generated) so log lines from the request, including those emitted by
notification delivery tasks it spawns, can be tied together.

Pure ASGI rather than BaseHTTPMiddleware, which misbehaves with asyncpg
connections.
"""

import time
import uuid

from starlette.types import ASGIApp, Message, Receive, Scope, Send

from linkloop.logging_config import account_id_ctx, correlation_id_ctx, get_logger

logger = get_logger(__name__)

CORRELATION_ID_HEADER = "X-Correlation-ID"

# Probes hit these every few seconds; keep them out of the request log
QUIET_PATHS = frozenset({"/health", "/health/live", "/health/ready"})


class CorrelationIdMiddleware:
    """Sets correlation_id_ctx for the request and echoes it in the response."""

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        headers = dict(scope.get("headers", []))
        correlation_id = headers.get(b"x-correlation-id", b"").decode() or str(
            uuid.uuid4()
        )
        correlation_token = correlation_id_ctx.set(correlation_id)
        # Filled in by the auth dependency once the caller is known
        account_token = account_id_ctx.set(None)

        method = scope.get("method", "")
        path = scope.get("path", "")
        quiet = path in QUIET_PATHS
        started = time.perf_counter()
        status_code: int | None = None

        async def send_with_header(message: Message) -> None:
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message.get("status")
                response_headers = list(message.get("headers", []))
                response_headers.append(
                    (CORRELATION_ID_HEADER.lower().encode(), correlation_id.encode())
                )
                message = {**message, "headers": response_headers}
            await send(message)

        try:
            await self.app(scope, receive, send_with_header)
            if not quiet:
                logger.info(
                    "Request completed",
                    method=method,
                    path=path,
                    status_code=status_code,
                    duration_ms=round((time.perf_counter() - started) * 1000, 2),
                )
        except Exception:
            logger.exception(
                "Request failed",
                method=method,
                path=path,
                duration_ms=round((time.perf_counter() - started) * 1000, 2),
            )
            raise
        finally:
            account_id_ctx.reset(account_token)
            correlation_id_ctx.reset(correlation_token)
