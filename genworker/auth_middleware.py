"""
Shared-secret authentication middleware for the worker.

  /callbacks/*  — providers; X-Callback-Secret header or ?token= query
                  matching CALLBACK_SECRET (the token rides in the webhook URL
                  we hand to the provider)
  /ops/*        — internal tooling; X-Worker-Secret header matching
                  WORKER_SHARED_SECRET

Everything else is reached through the app gateway, which sets X-Account-Id.
"""

import os
import secrets

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

# Constant-time compare avoids timing attacks
CALLBACK_SECRET = os.environ.get("CALLBACK_SECRET", "")
WORKER_SECRET = os.environ.get("WORKER_SHARED_SECRET", "")


def _is_development() -> bool:
    return os.environ.get("ENVIRONMENT", "development") == "development"


class SharedSecretMiddleware(BaseHTTPMiddleware):
    """Reject unauthenticated requests to provider and ops endpoints."""

    # Paths that are always public (health checks, etc.)
    PUBLIC_PATHS = {"/health", "/docs", "/openapi.json", "/redoc"}

    async def dispatch(self, request: Request, call_next):
        path = request.url.path

        if path in self.PUBLIC_PATHS:
            return await call_next(request)

        if path.startswith("/callbacks/"):
            expected, name = CALLBACK_SECRET, "CALLBACK_SECRET"
            provided = (
                request.headers.get("X-Callback-Secret")
                or request.query_params.get("token")
                or ""
            )
        elif path.startswith("/ops/"):
            expected, name = WORKER_SECRET, "WORKER_SHARED_SECRET"
            provided = request.headers.get("X-Worker-Secret", "")
        else:
            return await call_next(request)

        if not expected:
            # In development without the secret set, allow all traffic
            if _is_development():
                return await call_next(request)
            return JSONResponse(status_code=500, content={"detail": f"{name} not configured"})

        if not secrets.compare_digest(provided, expected):
            return JSONResponse(status_code=401, content={"detail": "Invalid or missing secret"})

        return await call_next(request)
