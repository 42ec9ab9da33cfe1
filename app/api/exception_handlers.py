# FILE: app/api/exception_handlers.py
from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.core.errors import PharmacyError

logger = logging.getLogger(__name__)


def error_response(status_code: int, code: str, msg: str, details: Optional[Any] = None) -> JSONResponse:
    """
    Every failure leaves the API in one shape:
    {"ok": false, "error": {"msg": ..., "code": ..., "details": ...}}
    """
    body = {"ok": False, "error": {"msg": msg, "code": code, "details": details}}
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body))


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(PharmacyError)
    async def pharmacy_error_handler(request: Request, exc: PharmacyError) -> JSONResponse:
        if exc.status_code == 409:
            logger.info("Conflict on %s %s: %s", request.method, request.url.path, exc.code)
        return error_response(exc.status_code, exc.code, exc.message, exc.details)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        # exc.detail can be str/dict/list
        msg = exc.detail if isinstance(exc.detail, str) else "Request failed"
        return error_response(exc.status_code, f"HTTP_{exc.status_code}", msg)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        # ctx may carry the raw exception object
        details = [{k: v for k, v in e.items() if k != "ctx"} for e in exc.errors()]
        return error_response(422, "VALIDATION_ERROR", "Validation error", details)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return error_response(500, "INTERNAL_ERROR", "Internal server error")
