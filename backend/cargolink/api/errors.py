"""Global error handlers ensuring request_id is included in JSON responses."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from cargolink.api.request_id import get_request_id
from cargolink.domain.chat.errors import (
    ChatError,
    ConversationNotFound,
    HistoryLoadFailure,
    ResolutionFailure,
    SendFailure,
    StoreError,
    StreamStateError,
)

_LOG = logging.getLogger(__name__)

_STATUS_BY_ERROR = (
    (ConversationNotFound, 404),
    (StreamStateError, 409),
    (ResolutionFailure, 503),
    (HistoryLoadFailure, 503),
    (SendFailure, 503),
    (StoreError, 503),
)


def status_for(exc: ChatError) -> int:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return 500


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(StarletteHTTPException)
    async def http_exc_handler(request: Request, exc: StarletteHTTPException):  # type: ignore[override]
        rid = get_request_id(request)
        payload = {"detail": exc.detail, "request_id": rid}
        return JSONResponse(status_code=exc.status_code, content=payload, headers={"X-Request-Id": rid})

    @app.exception_handler(RequestValidationError)
    async def validation_exc_handler(request: Request, exc: RequestValidationError):  # type: ignore[override]
        rid = get_request_id(request)
        errors = [{"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")} for err in exc.errors()]
        payload = {"detail": "validation_error", "errors": errors, "request_id": rid}
        return JSONResponse(status_code=422, content=payload, headers={"X-Request-Id": rid})

    @app.exception_handler(ChatError)
    async def chat_exc_handler(request: Request, exc: ChatError):  # type: ignore[override]
        rid = get_request_id(request)
        status_code = status_for(exc)
        if status_code >= 500:
            _LOG.warning("chat.request_failed", extra={"error": exc.code, "status": status_code})
        payload = {"detail": exc.code, "request_id": rid}
        return JSONResponse(status_code=status_code, content=payload, headers={"X-Request-Id": rid})

    @app.exception_handler(ValueError)
    async def value_exc_handler(request: Request, exc: ValueError):  # type: ignore[override]
        rid = get_request_id(request)
        payload = {"detail": str(exc) or "invalid_request", "request_id": rid}
        return JSONResponse(status_code=400, content=payload, headers={"X-Request-Id": rid})
