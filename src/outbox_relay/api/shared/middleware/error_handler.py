"""
Global Error Handler Middleware

Catches exceptions and returns standardized error responses.
"""

import logging
import traceback

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from ....core.outbox.errors import StorageError
from ..error_codes import ErrorCode
from ..exceptions import APIException
from ..responses import ErrorBody, ErrorDetail
from .trace import get_trace_id

logger = logging.getLogger(__name__)


def _error_response(status_code: int, body: ErrorBody) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": body.model_dump(mode="json")}
    )


def register_error_handlers(app: FastAPI):
    """
    Register all error handlers on the FastAPI app.

    - APIException (custom API errors)
    - RequestValidationError (FastAPI validation)
    - StorageError (outbox store failures)
    - Generic Exception (catch-all for unexpected errors)
    """

    @app.exception_handler(APIException)
    async def api_exception_handler(request: Request, exc: APIException):
        trace_id = exc.trace_id or get_trace_id()

        logger.warning(
            f"API Error: {exc.code.value} - {exc.message}",
            extra={
                "error_code": exc.code.value,
                "path": request.url.path,
                "request_trace_id": trace_id,
            }
        )

        return _error_response(exc.status_code, ErrorBody(
            code=exc.code.value,
            message=exc.message,
            details=exc.details,
            trace_id=trace_id
        ))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        details = [
            ErrorDetail(
                field=".".join(str(loc) for loc in error["loc"]),
                message=error["msg"],
                code=error["type"]
            )
            for error in exc.errors()
        ]

        logger.warning(
            f"Validation Error: {len(details)} field(s)",
            extra={"path": request.url.path}
        )

        return _error_response(400, ErrorBody(
            code=ErrorCode.VALIDATION_ERROR.value,
            message="Request validation failed",
            details=details,
            trace_id=get_trace_id()
        ))

    @app.exception_handler(StorageError)
    async def storage_exception_handler(request: Request, exc: StorageError):
        trace_id = get_trace_id()
        logger.error(
            f"Storage Error on {request.url.path}: {exc}",
            extra={"request_trace_id": trace_id}
        )

        return _error_response(500, ErrorBody(
            code=ErrorCode.DATABASE_ERROR.value,
            message=f"Outbox {exc.operation} failed",
            trace_id=trace_id
        ))

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        trace_id = get_trace_id()

        logger.error(
            f"Unhandled Exception: {type(exc).__name__}: {exc}",
            extra={
                "path": request.url.path,
                "request_trace_id": trace_id,
                "traceback": traceback.format_exc()
            }
        )

        # Don't expose internal details
        return _error_response(500, ErrorBody(
            code=ErrorCode.INTERNAL_ERROR.value,
            message="An internal error occurred",
            trace_id=trace_id
        ))
