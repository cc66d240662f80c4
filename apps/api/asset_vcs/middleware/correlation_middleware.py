"""
Correlation ID middleware.

Extracts or generates a correlation id per request, exposes it through a
context variable and binds it into the structlog context so every log line
emitted while handling the request carries it.
"""

from __future__ import annotations

import time
import uuid
from contextvars import ContextVar
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from ..core.logging_config import bind_request_context, clear_request_context, get_logger

logger = get_logger(__name__)

correlation_id_ctx: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


class CorrelationMiddleware(BaseHTTPMiddleware):
    """Tracks a correlation id across request handling."""

    def __init__(
        self,
        app: ASGIApp,
        header_name: str = "X-Correlation-ID",
        generate_if_missing: bool = True,
        log_requests: bool = True,
    ):
        super().__init__(app)
        self.header_name = header_name
        self.generate_if_missing = generate_if_missing
        self.log_requests = log_requests

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()
        correlation_id = self._extract_correlation_id(request)
        token = correlation_id_ctx.set(correlation_id)
        bind_request_context(correlation_id=correlation_id)

        if self.log_requests:
            logger.info("request_started", method=request.method, path=request.url.path)

        try:
            response = await call_next(request)
            response.headers[self.header_name] = correlation_id
            if self.log_requests:
                logger.info(
                    "request_completed",
                    method=request.method,
                    path=request.url.path,
                    status_code=response.status_code,
                    duration_ms=round((time.time() - start_time) * 1000, 2),
                )
            return response
        except Exception as e:
            if self.log_requests:
                logger.error(
                    "request_failed",
                    method=request.method,
                    path=request.url.path,
                    error=str(e),
                    duration_ms=round((time.time() - start_time) * 1000, 2),
                )
            raise
        finally:
            correlation_id_ctx.reset(token)
            clear_request_context()

    def _extract_correlation_id(self, request: Request) -> str:
        correlation_id = request.headers.get(self.header_name.lower())
        if not correlation_id:
            for header in ("x-request-id", "x-trace-id"):
                correlation_id = request.headers.get(header)
                if correlation_id:
                    break
        if not correlation_id and self.generate_if_missing:
            correlation_id = str(uuid.uuid4())
        return correlation_id or "unknown"


def get_correlation_id() -> Optional[str]:
    """Correlation id of the request being handled, if any."""
    return correlation_id_ctx.get()
