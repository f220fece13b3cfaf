"""
Common schemas for API responses and error handling.
"""

from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field


class ErrorDetail(BaseModel):
    """Schema for detailed error information."""

    error_code: str = Field(..., description="Error code for programmatic handling")
    message: str = Field(..., description="Human-readable error message")
    details: Optional[Dict[str, Any]] = Field(None, description="Additional error context")
    suggestions: Optional[List[str]] = Field(None, description="Helpful suggestions for resolving the error")
    retry_after: Optional[int] = Field(None, description="Seconds to wait before retrying")


class ErrorResponse(BaseModel):
    """Schema for API error responses."""

    error: ErrorDetail
    error_id: Optional[str] = None
    timestamp: Optional[str] = None

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "error": {
                        "error_code": "SEAT_UNAVAILABLE",
                        "message": "Seats unavailable: A1, A2 (already reserved or not sellable)",
                        "details": {
                            "seat_ids": [
                                "123e4567-e89b-12d3-a456-426614174000",
                                "123e4567-e89b-12d3-a456-426614174001"
                            ],
                            "labels": ["A1", "A2"]
                        },
                        "suggestions": ["Choose a different seat", "Refresh seat availability"]
                    }
                },
                {
                    "error": {
                        "error_code": "COUPON_INVALID",
                        "message": "Coupon SUMMER10 cannot be applied: expired",
                        "details": {"coupon_code": "SUMMER10", "reason": "expired"}
                    }
                }
            ]
        }
    }


class SuccessResponse(BaseModel):
    """Schema for simple success responses."""

    message: str = Field(..., description="Success message")
    data: Optional[Dict[str, Any]] = Field(None, description="Additional response data")
