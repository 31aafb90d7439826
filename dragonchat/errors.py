"""
Error taxonomy shared by the chat core and the HTTP layer.

Every error that can reach a client is rendered as ``{"error": "<message>"}``
with the status carried by the exception class. ``ProviderError`` is the one
exception that never becomes an HTTP status: once a stream is open it is
reported in-band as an error frame. ``PersistenceError`` is only logged.
"""

from __future__ import annotations

from typing import Any, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Standard error payload: ``{"error": "..."}``."""

    error: str = Field(..., description="Human-readable error message")


class ChatError(Exception):
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(ChatError):
    """Malformed request: missing fields, bad role, empty content, unknown model."""

    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundError(ChatError):
    """Session id missing, malformed or owned by someone else."""

    status_code = status.HTTP_404_NOT_FOUND


class AuthenticationError(ChatError):
    status_code = status.HTTP_401_UNAUTHORIZED


class ProviderError(ChatError):
    """Upstream model call failed; normalized across vendors."""

    status_code = status.HTTP_502_BAD_GATEWAY

    def __init__(self, message: str, *, upstream_status: Optional[int] = None) -> None:
        super().__init__(message)
        # HTTP status reported by the vendor API, when there was one.
        self.upstream_status = upstream_status


class PersistenceError(ChatError):
    """Saving the transcript failed after the response was delivered."""


def _format_validation_errors(errors: list[dict[str, Any]]) -> str:
    parts: list[str] = []
    for err in errors:
        loc = [str(item) for item in err.get("loc", ()) if item != "body"]
        where = ".".join(loc)
        msg = err.get("msg", "invalid value")
        parts.append(f"{where}: {msg}" if where else msg)
    return "; ".join(parts) or "Invalid request body"


async def _chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
    headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, AuthenticationError) else None
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=exc.message).model_dump(),
        headers=headers,
    )


async def _request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=ErrorResponse(error=_format_validation_errors(exc.errors())).model_dump(),
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ChatError, _chat_error_handler)
    app.add_exception_handler(RequestValidationError, _request_validation_handler)


__all__ = [
    "AuthenticationError",
    "ChatError",
    "ErrorResponse",
    "NotFoundError",
    "PersistenceError",
    "ProviderError",
    "ValidationError",
    "register_exception_handlers",
]
