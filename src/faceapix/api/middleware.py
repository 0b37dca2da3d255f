"""Middleware: API key authentication and error-to-status mapping."""

from __future__ import annotations

import logging
import secrets
from typing import TYPE_CHECKING, Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from faceapix.errors import FaceApiError, InvalidImageInput, NetworkDisposed, NetworkNotLoaded

if TYPE_CHECKING:
    from fastapi import FastAPI

    from faceapix.config import Settings

logger = logging.getLogger(__name__)

_bearer_scheme = HTTPBearer(auto_error=False)


def _settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


async def verify_api_key(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(_bearer_scheme)],
) -> None:
    """Check the Bearer token against the configured API key.

    Without ``FACEAPIX_API_KEY`` every request passes; otherwise requests
    must send ``Authorization: Bearer <key>``.
    """
    api_key = _settings(request).api_key
    if api_key is None:
        return

    if credentials is None or not secrets.compare_digest(credentials.credentials.encode(), api_key.encode()):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
            headers={"WWW-Authenticate": "Bearer"},
        )


# ---------------------------------------------------------------------------
# Exception handlers
# ---------------------------------------------------------------------------


async def _invalid_image(request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content={"detail": str(exc)})


async def _inference_timeout(request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Inference queue is full, retry later"},
        headers={"Retry-After": "1"},
    )


async def _networks_unavailable(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Request hit an unavailable network: %s", exc)
    return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content={"detail": str(exc)})


async def _internal_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled faceapix error", exc_info=exc)
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"detail": str(exc)})


def register_exception_handlers(app: FastAPI) -> None:
    """Map library errors to HTTP responses."""
    app.add_exception_handler(InvalidImageInput, _invalid_image)
    app.add_exception_handler(TimeoutError, _inference_timeout)
    app.add_exception_handler(NetworkNotLoaded, _networks_unavailable)
    app.add_exception_handler(NetworkDisposed, _networks_unavailable)
    app.add_exception_handler(FaceApiError, _internal_error)
