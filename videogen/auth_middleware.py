"""
Shared-secret authentication for the generation worker.

Every /generations path requires an X-Worker-Secret header matching
WORKER_SHARED_SECRET. The web app attaches it when forwarding a signed-in
user's request, so the user_id in the body can be trusted here.
"""

import os
import secrets
import logging
from typing import Optional

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)

WORKER_SECRET = os.environ.get("WORKER_SHARED_SECRET", "")
ENVIRONMENT = os.environ.get("ENVIRONMENT", "development")

PROTECTED_PREFIXES = ("/generations",)


class WorkerAuthMiddleware(BaseHTTPMiddleware):
    """Reject unauthenticated requests to the generation endpoints."""

    def __init__(self, app, secret: Optional[str] = None, environment: Optional[str] = None):
        super().__init__(app)
        self.secret = WORKER_SECRET if secret is None else secret
        self.environment = ENVIRONMENT if environment is None else environment

    async def dispatch(self, request: Request, call_next):
        if not request.url.path.startswith(PROTECTED_PREFIXES):
            return await call_next(request)

        if not self.secret:
            # Local development without a secret allows all traffic
            if self.environment == "development":
                return await call_next(request)
            logger.error("WORKER_SHARED_SECRET not configured, refusing generation traffic")
            return JSONResponse(status_code=500, content={"detail": "WORKER_SHARED_SECRET not configured"})

        provided = request.headers.get("X-Worker-Secret", "")
        if not secrets.compare_digest(provided, self.secret):
            return JSONResponse(status_code=401, content={"detail": "Invalid or missing worker secret"})

        return await call_next(request)
