"""
Pydantic schemas for payment gateway callbacks.
"""

from uuid import UUID

from pydantic import BaseModel

from ..models.order import OrderStatus
from ..models.payment import PaymentStatus


class CallbackResponse(BaseModel):
    """Acknowledgement returned to the browser or gateway after a callback."""

    order_id: UUID
    merchant_order_ref: str
    payment_status: PaymentStatus
    order_status: OrderStatus
    replayed: bool = False
