"""
Amora — core/errors.py
─────────────────────────────────────────────────────────────────
Error taxonomy shared by services, routes and the realtime gateway.

Every error carries a stable `code` (sent to clients) and an HTTP
`status`. Routes never build HTTPExceptions for domain failures,
they raise these and the handler below maps them.
─────────────────────────────────────────────────────────────────
"""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger("amora.errors")


class AmoraError(Exception):
    """Base domain exception."""
    code:   str = "error"
    status: int = 500

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__doc__ or self.code)
        self.message = message or (self.__class__.__doc__ or self.code).strip()

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class ValidationError(AmoraError):
    """Invalid input."""
    code   = "validation_error"
    status = 400

class AuthenticationError(AmoraError):
    """Not authenticated."""
    code   = "unauthenticated"
    status = 401

class ForbiddenError(AmoraError):
    """Not allowed to access this resource."""
    code   = "forbidden"
    status = 403

class NotFoundError(AmoraError):
    """Resource not found."""
    code   = "not_found"
    status = 404

class ConflictError(AmoraError):
    """Already processed."""
    code   = "already_processed"
    status = 409

class QuotaExceededError(AmoraError):
    """Daily message limit reached. Add coins to your account to send more messages."""
    code   = "quota_exceeded"
    status = 402

class ExternalServiceError(AmoraError):
    """External provider failed."""
    code   = "external_service_error"
    status = 502


# ─────────────────────────────────────────────
# FastAPI wiring
# ─────────────────────────────────────────────
def install_error_handlers(app: FastAPI):
    """Register JSON handlers for domain errors and unexpected failures."""

    @app.exception_handler(AmoraError)
    async def amora_error_handler(request: Request, exc: AmoraError):
        if exc.status >= 500:
            logger.error(f"{request.method} {request.url.path} → {exc.code}: {exc.message}")
        return JSONResponse(
            status_code = exc.status,
            content     = {"detail": exc.message, "code": exc.code},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled error: {exc}", exc_info=True)
        return JSONResponse(
            status_code = 500,
            content     = {"detail": "Internal server error.", "code": "internal_error"},
        )
