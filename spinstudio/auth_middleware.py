"""
Shared-secret authentication middleware for the spin service.

Pipeline, product and settings endpoints require a valid X-Service-Secret
header matching the SERVICE_SHARED_SECRET environment variable. The frontend
proxy attaches this header when forwarding requests.
"""

import os
import secrets

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

PROTECTED_PREFIXES = ("/pipeline", "/products", "/settings")


class ServiceAuthMiddleware(BaseHTTPMiddleware):
    """Reject unauthenticated requests to protected endpoints."""

    async def dispatch(self, request: Request, call_next):
        if not request.url.path.startswith(PROTECTED_PREFIXES):
            return await call_next(request)

        secret = os.environ.get("SERVICE_SHARED_SECRET", "")
        if not secret:
            # In development without the secret set, allow all traffic
            if os.environ.get("ENVIRONMENT", "development") == "development":
                return await call_next(request)
            return JSONResponse(
                status_code=500,
                content={"detail": "SERVICE_SHARED_SECRET not configured"},
            )

        provided = request.headers.get("X-Service-Secret", "")
        if not secrets.compare_digest(provided, secret):
            return JSONResponse(
                status_code=401,
                content={"detail": "Invalid or missing service secret"},
            )

        return await call_next(request)
