"""
Shared API Utilities

Error responses, exceptions and middleware for the operator API.
"""

from .responses import ErrorDetail, ErrorBody

from .error_codes import ErrorCode, get_status_code

from .exceptions import (
    APIException,
    ValidationError,
    NotFoundError,
)

from .middleware import (
    register_error_handlers,
    TraceMiddleware,
    get_trace_id,
    set_trace_id,
)

__all__ = [
    # Responses
    "ErrorDetail",
    "ErrorBody",
    # Error codes
    "ErrorCode",
    "get_status_code",
    # Exceptions
    "APIException",
    "ValidationError",
    "NotFoundError",
    # Middleware
    "register_error_handlers",
    "TraceMiddleware",
    "get_trace_id",
    "set_trace_id",
]
