"""
Domain error translation for the HTTP layer.

Maps each ErrorKind to a status code and exposes the stable reason code in
the response body so clients can branch on it.
"""

import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from src.domain.exceptions import DomainError, ErrorKind

logger = logging.getLogger(__name__)

STATUS_BY_KIND = {
    ErrorKind.VALIDATION: status.HTTP_400_BAD_REQUEST,
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.CONFLICT: status.HTTP_409_CONFLICT,
    ErrorKind.RATE_LIMITED: status.HTTP_429_TOO_MANY_REQUESTS,
}


async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
    logger.info("%s %s -> %s", request.method, request.url.path, exc.reason.value)
    return JSONResponse(
        status_code=STATUS_BY_KIND[exc.kind],
        content={"detail": exc.message, "reason": exc.reason.value},
    )


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(DomainError, domain_error_handler)
