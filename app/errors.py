from __future__ import annotations

import logging
import uuid

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.datastructures import UploadFile
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.logging import set_request_id
from app.services.collections.errors import (
    AdapterMismatch,
    BatchAlreadyReconciled,
    BatchNotFound,
    ChargeNotFound,
    CollectionsError,
    ConfigurationError,
    ConsistencyError,
    FiscalIssuerUnavailable,
    RowError,
)
from app.services.object_storage import ObjectStorageError

logger = logging.getLogger(__name__)

# Checked in order; subclasses come before their bases.
_COLLECTIONS_STATUS = (
    (BatchNotFound, 404),
    (ChargeNotFound, 404),
    (BatchAlreadyReconciled, 409),
    (AdapterMismatch, 409),
    (ConfigurationError, 422),
    (FiscalIssuerUnavailable, 503),
    (ConsistencyError, 409),
    (RowError, 422),
)


def _error_payload(code: str, message: str, details: object, request_id: str | None):
    return {"code": code, "message": message, "details": details, "request_id": request_id}


def _request_id(request: Request) -> str:
    rid = getattr(request.state, "request_id", None)
    return str(rid) if rid else "unknown"


def _status_for(exc: CollectionsError) -> int:
    for error_cls, status_code in _COLLECTIONS_STATUS:
        if isinstance(exc, error_cls):
            return status_code
    return 500


def _sanitize_input(value):
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, UploadFile):
        return value.filename or "upload"
    if isinstance(value, dict):
        return {key: _sanitize_input(val) for key, val in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_sanitize_input(item) for item in value]
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)


def register_error_handlers(app) -> None:
    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        request.state.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        set_request_id(request.state.request_id)
        response = await call_next(request)
        response.headers["X-Request-ID"] = request.state.request_id
        return response

    async def _handle_http_exception(request: Request, status_code: int, detail: object):
        code = f"http_{status_code}"
        message = "Request failed"
        details = None
        if isinstance(detail, dict):
            code = detail.get("code", code)
            message = detail.get("message", message)
            details = detail.get("details")
        elif isinstance(detail, str):
            message = detail
        else:
            details = detail
        return JSONResponse(
            status_code=status_code,
            content=_error_payload(code, message, details, _request_id(request)),
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return await _handle_http_exception(request, exc.status_code, exc.detail)

    @app.exception_handler(StarletteHTTPException)
    async def starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        detail = exc.detail if getattr(exc, "detail", None) is not None else "Request failed"
        return await _handle_http_exception(request, exc.status_code, detail)

    @app.exception_handler(CollectionsError)
    async def collections_error_handler(request: Request, exc: CollectionsError):
        status_code = _status_for(exc)
        if status_code >= 500:
            logger.error(
                f"Collections error on {request.method} {request.url.path}: "
                f"{exc.code} {exc.message}"
            )
        return JSONResponse(
            status_code=status_code,
            content=_error_payload(
                exc.code, exc.message, _sanitize_input(exc.details), _request_id(request)
            ),
        )

    @app.exception_handler(ObjectStorageError)
    async def storage_error_handler(request: Request, exc: ObjectStorageError):
        logger.error(f"Batch storage failed on {request.url.path}: {exc}")
        return JSONResponse(
            status_code=502,
            content=_error_payload(
                "storage_error", "Batch file storage failed", None, _request_id(request)
            ),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = []
        for error in exc.errors():
            error_copy = dict(error)
            if "input" in error_copy:
                error_copy["input"] = _sanitize_input(error_copy.get("input"))
            if "ctx" in error_copy:
                error_copy["ctx"] = _sanitize_input(error_copy.get("ctx"))
            errors.append(error_copy)
        return JSONResponse(
            status_code=422,
            content=_error_payload(
                "validation_error", "Validation error", errors, _request_id(request)
            ),
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception(
            "Unhandled exception on %s %s",
            request.method,
            request.url.path,
            extra={"request_id": _request_id(request)},
        )
        return JSONResponse(
            status_code=500,
            content=_error_payload(
                "internal_error", "Internal server error", None, _request_id(request)
            ),
        )
