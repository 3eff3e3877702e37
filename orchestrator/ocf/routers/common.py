"""
Response envelope and error mapping shared by both services.

Every endpoint answers with
    {"payload": {"kind": <type>, "object": <value>}, "error": null}
and every failure with
    {"payload": null, "error": {"category": <category>, "message": <text>}}
using the HTTP status of the error category.
"""

import logging
import tracemalloc
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from ..errors import ErrorCategory, OcfError
from ..schemas import Envelope, ErrorBody

logger = logging.getLogger(__name__)


def envelope(obj: Any, kind: Optional[str] = None) -> dict:
    return Envelope.of(obj, kind).model_dump(mode="json")


def error_response(category: ErrorCategory, message: str) -> JSONResponse:
    body = Envelope(error=ErrorBody(category=category.value, message=message))
    return JSONResponse(status_code=category.http_status, content=body.model_dump(mode="json"))


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(OcfError)
    async def ocf_error_handler(request: Request, exc: OcfError):
        if exc.category == ErrorCategory.INTERNAL:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return error_response(exc.category, exc.message)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return error_response(ErrorCategory.INVALID_REQUEST, str(exc.errors()))


def memory_snapshot(limit: int = 10) -> list:
    """Top allocation sites, when memory profiling is enabled."""
    if not tracemalloc.is_tracing():
        return []
    snapshot = tracemalloc.take_snapshot()
    return [str(stat) for stat in snapshot.statistics("lineno")[:limit]]
