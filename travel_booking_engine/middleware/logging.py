"""
Request/response logging middleware with request-id propagation.
"""

import contextvars
import logging
import time
from typing import Dict, Optional
from uuid import uuid4

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)

# Context variable for request ID
request_id_var: contextvars.ContextVar[str] = contextvars.ContextVar('request_id', default='no-request-id')

SLOW_REQUEST_SECONDS = 2.0


class LoggingMiddleware(BaseHTTPMiddleware):
    """Logs every request and response and tags them with a request id."""

    def __init__(
        self,
        app,
        log_requests: bool = True,
        log_responses: bool = True,
        sensitive_headers: Optional[list] = None
    ):
        super().__init__(app)
        self.log_requests = log_requests
        self.log_responses = log_responses
        self.sensitive_headers = sensitive_headers or [
            "authorization", "cookie", "x-api-key", "stripe-signature"
        ]

    async def dispatch(self, request: Request, call_next):
        # Honour an id assigned by an upstream proxy
        request_id = request.headers.get("x-request-id") or str(uuid4())
        request.state.request_id = request_id
        token = request_id_var.set(request_id)

        start_time = time.perf_counter()
        if self.log_requests:
            self._log_request(request)

        try:
            response = await call_next(request)
        except Exception as exc:
            logger.error(
                "Request exception: %s",
                type(exc).__name__,
                extra={
                    "exception_type": type(exc).__name__,
                    "process_time": time.perf_counter() - start_time,
                    "method": request.method,
                    "path": request.url.path,
                },
                exc_info=True
            )
            raise
        else:
            process_time = time.perf_counter() - start_time
            response.headers["X-Request-ID"] = request_id
            response.headers["X-Process-Time"] = f"{process_time:.4f}"
            if self.log_responses:
                self._log_response(request, response, process_time)
            return response
        finally:
            request_id_var.reset(token)

    def _log_request(self, request: Request) -> None:
        request_info = {
            "method": request.method,
            "path": request.url.path,
            "query_params": dict(request.query_params),
            "client_ip": self._get_client_ip(request),
            "user_agent": request.headers.get("user-agent"),
            "headers": self._sanitize_headers(dict(request.headers)),
        }

        if request.url.path in ("/health", "/", "/docs", "/redoc"):
            logger.debug("Health check: %s %s", request.method, request.url.path, extra=request_info)
        elif request.url.path.startswith("/api/v1/payments"):
            logger.info("Webhook request: %s %s", request.method, request.url.path, extra=request_info)
        else:
            logger.info("API request: %s %s", request.method, request.url.path, extra=request_info)

    def _log_response(self, request: Request, response: Response, process_time: float) -> None:
        response_info = {
            "status_code": response.status_code,
            "process_time": process_time,
            "response_size": response.headers.get("content-length"),
        }

        if response.status_code < 400:
            logger.info("Response: %s (%.4fs)", response.status_code, process_time, extra=response_info)
        elif response.status_code < 500:
            logger.warning("Client error: %s (%.4fs)", response.status_code, process_time, extra=response_info)
        else:
            logger.error("Server error: %s (%.4fs)", response.status_code, process_time, extra=response_info)

        if process_time > SLOW_REQUEST_SECONDS:
            logger.warning(
                "Slow request detected: %s %s took %.4fs",
                request.method, request.url.path, process_time,
                extra={"slow_request": True, "threshold": SLOW_REQUEST_SECONDS}
            )

    @staticmethod
    def _get_client_ip(request: Request) -> str:
        forwarded_for = request.headers.get("x-forwarded-for")
        if forwarded_for:
            return forwarded_for.split(",")[0].strip()
        return request.client.host if request.client else "unknown"

    def _sanitize_headers(self, headers: Dict[str, str]) -> Dict[str, str]:
        return {
            key: "***MASKED***" if key.lower() in self.sensitive_headers else value
            for key, value in headers.items()
        }
