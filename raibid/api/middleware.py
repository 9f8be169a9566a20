import os

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from raibid.config import Config

# Reachable without an API key
PUBLIC_PATHS = ("/health", "/docs", "/openapi.json")


class AuthMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, token: str = None):
        super().__init__(app)
        self.token = token

    async def dispatch(self, request: Request, call_next):
        if request.url.path.startswith(PUBLIC_PATHS):
            return await call_next(request)

        token = self.token or os.getenv("RAIBID_API_KEY") or Config.API_KEY
        if not token or request.headers.get("X-API-Key") != token:
            # Raising HTTPException here would surface as a 500
            return JSONResponse(status_code=403, content={"detail": "Unauthorized"})
        return await call_next(request)
