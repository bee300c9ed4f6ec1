from __future__ import annotations

import logging

from fastapi import Request
from fastapi.responses import JSONResponse

from guide_reader.indexing import (
    GuideIndexError,
    GuideNotReadyError,
    NotFoundError,
    OutOfRangeError,
    ParseError,
    StaleReferenceError,
    StorageError,
    ValidationError,
)

logger = logging.getLogger(__name__)

STATUS_BY_ERROR = (
    (NotFoundError, 404),
    (GuideNotReadyError, 409),
    (StaleReferenceError, 409),
    (OutOfRangeError, 416),
    (ValidationError, 422),
    (ParseError, 422),
    (StorageError, 503),
)


def status_for(exc: GuideIndexError) -> int:
    for error_type, status in STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status
    return 500


async def guide_error_handler(request: Request, exc: GuideIndexError) -> JSONResponse:
    status = status_for(exc)
    if status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=status,
        content={"detail": exc.message, "error": type(exc).__name__, "context": _jsonable(exc.context)},
    )


def _jsonable(context: dict) -> dict:
    return {k: v if isinstance(v, (str, int, float, bool, type(None))) else str(v) for k, v in context.items()}
