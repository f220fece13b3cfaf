"""
Error handling middleware translating engine errors into HTTP responses.
"""

import logging
import traceback
from datetime import datetime, timezone
from uuid import uuid4

from fastapi import Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from sqlalchemy.exc import IntegrityError, OperationalError, TimeoutError as SQLTimeoutError
from pydantic import ValidationError as PydanticValidationError

from ..utils.exceptions import (
    BookingEngineError,
    ErrorCode,
    GatewayError,
    NotFoundError,
    ValidationError,
)

logger = logging.getLogger(__name__)


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Middleware for error handling and response formatting."""

    def __init__(self, app, debug: bool = False):
        super().__init__(app)
        self.debug = debug

    async def dispatch(self, request: Request, call_next):
        """Process request and handle any exceptions."""
        error_id = str(uuid4())

        try:
            response = await call_next(request)
            return response

        except Exception as exc:
            return await self._handle_exception(request, exc, error_id)

    async def _handle_exception(self, request: Request, exc: Exception, error_id: str) -> JSONResponse:
        """Handle different types of exceptions and return appropriate responses."""
        await self._log_error(request, exc, error_id)

        if isinstance(exc, BookingEngineError):
            return self._handle_engine_error(exc, error_id)
        elif isinstance(exc, PydanticValidationError):
            return self._handle_validation_error(exc, error_id)
        elif isinstance(exc, IntegrityError):
            return self._handle_integrity_error(exc, error_id)
        elif isinstance(exc, (OperationalError, SQLTimeoutError)):
            return self._handle_database_error(exc, error_id)
        else:
            return self._handle_unexpected_error(exc, error_id)

    def _handle_engine_error(self, exc: BookingEngineError, error_id: str) -> JSONResponse:
        status_code = self._get_status_code_for_error(exc)

        headers = {}
        if exc.retry_after:
            headers["Retry-After"] = str(exc.retry_after)

        return JSONResponse(
            status_code=status_code,
            content=self._body(exc, error_id),
            headers=headers
        )

    def _handle_validation_error(self, exc: PydanticValidationError, error_id: str) -> JSONResponse:
        field_errors = {}

        for error in exc.errors():
            field_path = ".".join(str(loc) for loc in error["loc"])
            field_errors.setdefault(field_path, []).append(error["msg"])

        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=self._body(ValidationError("Request validation failed", field_errors=field_errors), error_id)
        )

    def _handle_integrity_error(self, exc: IntegrityError, error_id: str) -> JSONResponse:
        """Constraint violations mean a concurrent writer got there first."""
        error_message = str(exc.orig) if hasattr(exc, "orig") else str(exc)

        if "unique" in error_message.lower():
            constraint_type = "unique"
        elif "foreign key" in error_message.lower():
            constraint_type = "foreign_key"
        elif "check" in error_message.lower():
            constraint_type = "check"
        else:
            constraint_type = "unknown"

        engine_error = BookingEngineError(
            "Data integrity constraint violation",
            error_code=ErrorCode.SEAT_CONFLICT,
            details={"constraint_type": constraint_type},
            suggestions=["Retry the request"]
        )

        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content=self._body(engine_error, error_id)
        )

    def _handle_database_error(self, exc: Exception, error_id: str) -> JSONResponse:
        engine_error = BookingEngineError(
            "Database service temporarily unavailable",
            error_code=ErrorCode.INTERNAL_ERROR,
            details={"error_type": type(exc).__name__},
            retry_after=30
        )

        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=self._body(engine_error, error_id),
            headers={"Retry-After": "30"}
        )

    def _handle_unexpected_error(self, exc: Exception, error_id: str) -> JSONResponse:
        engine_error = BookingEngineError(
            "An unexpected error occurred",
            error_code=ErrorCode.INTERNAL_ERROR,
            details={"error_type": type(exc).__name__} if self.debug else None
        )

        response_data = self._body(engine_error, error_id)

        # Include stack trace in debug mode
        if self.debug:
            response_data["debug"] = {
                "exception": str(exc),
                "traceback": traceback.format_exc()
            }

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=response_data
        )

    def _body(self, exc: BookingEngineError, error_id: str) -> dict:
        return {
            "error": exc.to_dict(),
            "error_id": error_id,
            "timestamp": self._get_timestamp()
        }

    @staticmethod
    def _get_status_code_for_error(exc: BookingEngineError) -> int:
        """Map error codes to HTTP status codes."""
        status_map = {
            ErrorCode.VALIDATION_ERROR: status.HTTP_400_BAD_REQUEST,
            ErrorCode.INVALID_LAYOUT: status.HTTP_400_BAD_REQUEST,
            ErrorCode.COUPON_INVALID: status.HTTP_400_BAD_REQUEST,
            ErrorCode.CALLBACK_VERIFICATION_FAILED: status.HTTP_400_BAD_REQUEST,
            ErrorCode.INVALID_TOKEN: status.HTTP_403_FORBIDDEN,
            ErrorCode.NOT_FOUND: status.HTTP_404_NOT_FOUND,
            ErrorCode.SEAT_CONFLICT: status.HTTP_409_CONFLICT,
            ErrorCode.SEAT_UNAVAILABLE: status.HTTP_409_CONFLICT,
            ErrorCode.TRIP_HAS_ACTIVE_BOOKINGS: status.HTTP_409_CONFLICT,
            ErrorCode.TRIP_COMPLETED: status.HTTP_409_CONFLICT,
            ErrorCode.INVALID_ORDER_STATE: status.HTTP_409_CONFLICT,
            ErrorCode.REFUND_INELIGIBLE: status.HTTP_409_CONFLICT,
            ErrorCode.GATEWAY_ERROR: status.HTTP_502_BAD_GATEWAY,
            ErrorCode.REFUND_GATEWAY_ERROR: status.HTTP_502_BAD_GATEWAY,
            ErrorCode.GATEWAY_TIMEOUT: status.HTTP_503_SERVICE_UNAVAILABLE,
            ErrorCode.GATEWAY_UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
        }

        return status_map.get(exc.error_code, status.HTTP_500_INTERNAL_SERVER_ERROR)

    async def _log_error(self, request: Request, exc: Exception, error_id: str):
        """Log error with request context."""
        request_info = {
            "method": request.method,
            "url": str(request.url),
            "client_ip": request.client.host if request.client else None,
            "user_agent": request.headers.get("user-agent"),
        }

        if isinstance(exc, BookingEngineError):
            extra = {
                "error_id": error_id,
                "error_code": exc.error_code.value,
                "request": request_info,
                "details": exc.details
            }
            if isinstance(exc, (ValidationError, NotFoundError)):
                logger.warning(f"Client error [{error_id}]: {exc.message}", extra=extra)
            elif isinstance(exc, GatewayError):
                logger.error(f"Gateway error [{error_id}]: {exc.message}", extra=extra)
            else:
                logger.info(f"Business error [{error_id}]: {exc.message}", extra=extra)
        else:
            logger.error(
                f"Unexpected error [{error_id}]: {str(exc)}",
                extra={
                    "error_id": error_id,
                    "error_type": type(exc).__name__,
                    "request": request_info,
                    "traceback": traceback.format_exc()
                }
            )

    @staticmethod
    def _get_timestamp() -> str:
        return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
