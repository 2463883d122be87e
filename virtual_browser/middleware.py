"""
HTTP middleware for the control surface.

Provides:
- Security headers
- Request timing metrics
- CORS configuration
"""
import os
from typing import List

from fastapi import Request
from fastapi.responses import Response
from starlette.middleware.base import BaseHTTPMiddleware

from .logging_config import get_logger

logger = get_logger("virtual_browser.middleware")


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Adds security headers to all responses."""

    async def dispatch(self, request: Request, call_next) -> Response:
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"

        # Frames arrive as blobs over the WebSocket
        csp_directives = [
            "default-src 'self'",
            "img-src 'self' data: blob:",
            "connect-src 'self' ws: wss:",
            "frame-ancestors 'none'",
        ]
        response.headers["Content-Security-Policy"] = "; ".join(csp_directives)
        return response


class RequestMetricsMiddleware(BaseHTTPMiddleware):
    """Records request durations with the metrics service."""

    def __init__(self, app, metrics):
        super().__init__(app)
        self.metrics = metrics

    async def dispatch(self, request: Request, call_next) -> Response:
        end = self.metrics.track_request(request.method, request.url.path)
        try:
            response = await call_next(request)
        except Exception:
            end("error")
            raise
        end("success" if response.status_code < 500 else "error")
        return response


def get_cors_origins() -> List[str]:
    """
    Get allowed CORS origins from environment variable.

    Set VIRTUAL_BROWSER_CORS_ORIGINS to a comma-separated list of allowed origins.
    Defaults to localhost origins only.

    Examples:
        VIRTUAL_BROWSER_CORS_ORIGINS=https://viewer.example.com
        VIRTUAL_BROWSER_CORS_ORIGINS=*   (allow all - NOT recommended for production)
    """
    env_origins = os.environ.get("VIRTUAL_BROWSER_CORS_ORIGINS", "").strip()
    if env_origins:
        return [o.strip() for o in env_origins.split(",") if o.strip()]
    return [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]
