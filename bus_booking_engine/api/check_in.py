"""
FastAPI route for boarding check-in.
"""

import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query

from .orders import _create_order_response
from ..schemas.common import ErrorResponse
from ..schemas.order import OrderEnvelope
from ..services.check_in_service import CheckInService
from ..utils.dependencies import get_check_in_service
from ..utils.exceptions import ValidationError

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/check-in", tags=["check-in"])


@router.get(
    "/{order_id}",
    response_model=OrderEnvelope,
    responses={
        400: {"model": ErrorResponse, "description": "Token missing"},
        403: {"model": ErrorResponse, "description": "Token does not match the order"},
        404: {"model": ErrorResponse, "description": "Order not found"},
    },
)
async def check_in(
    order_id: UUID,
    token: Optional[str] = Query(None, description="Check-in token printed on the ticket"),
    check_in_service: CheckInService = Depends(get_check_in_service)
):
    """Check in every confirmed ticket of an order."""
    if not token:
        raise ValidationError("Check-in token is required", field_errors={"token": ["missing"]})

    order = await check_in_service.check_in(order_id, token)
    return OrderEnvelope(order=_create_order_response(order), message="Checked in")
