# src/dpr/reporting/core/exception_handlers.py
from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from dpr.reporting.core.errors import (
    ActiveStatementsExceededError,
    DefinitionError,
    MissingTableError,
    ReportingError,
    UserAuthorisationError,
    ValidationError,
)

logger = logging.getLogger(__name__)

MISSING_TABLE_MESSAGE = "The stored report or dashboard was not found."
UNEXPECTED_ERROR_MESSAGE = "Unexpected error."


def error_body(status: int, user_message: str, developer_message: str) -> dict:
    return {
        "status": status,
        "userMessage": user_message,
        "developerMessage": developer_message,
    }


def _client_error(status: int, user_message: str | None = None):
    async def handler(request: Request, exc: ReportingError) -> JSONResponse:
        logger.info("%s %s -> %s: %s", request.method, request.url.path, status, exc)
        message = str(exc)
        return JSONResponse(
            status_code=status,
            content=error_body(status, user_message or message, message),
        )

    return handler


async def internal_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unexpected error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=error_body(500, UNEXPECTED_ERROR_MESSAGE, str(exc)),
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ValidationError, _client_error(400))
    app.add_exception_handler(UserAuthorisationError, _client_error(403))
    app.add_exception_handler(
        MissingTableError, _client_error(404, MISSING_TABLE_MESSAGE)
    )
    app.add_exception_handler(ActiveStatementsExceededError, _client_error(429))
    app.add_exception_handler(DefinitionError, internal_error_handler)
    app.add_exception_handler(ReportingError, internal_error_handler)
