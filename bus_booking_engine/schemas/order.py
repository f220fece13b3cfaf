"""
Pydantic schemas for order-related API requests and responses.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, EmailStr, Field, field_validator

from ..models.order import OrderStatus
from ..models.payment import PaymentStatus
from ..models.ticket import TicketStatus


class OrderCreateRequest(BaseModel):
    """Schema for creating a new order."""

    seat_ids: List[UUID] = Field(..., description="Seats to buy; all on the same trip")
    payment_method_code: str = Field(..., min_length=1, max_length=30, description="cash, vnpay, momo or zalopay")
    coupon_code: Optional[str] = Field(None, max_length=50, description="Optional coupon code")

    user_id: Optional[UUID] = Field(None, description="Registered purchaser")
    guest_email: Optional[EmailStr] = Field(None, description="Guest purchaser email")
    guest_name: Optional[str] = Field(None, max_length=255, description="Guest purchaser name")
    guest_phone: Optional[str] = Field(None, max_length=50, description="Guest purchaser phone")

    additional_data: Optional[Dict[str, Any]] = Field(
        None,
        description="Gateway extras such as return_url, bank_code or locale"
    )

    @field_validator("coupon_code")
    @classmethod
    def normalize_coupon_code(cls, v):
        """Blank coupon codes mean no coupon."""
        if v is not None:
            v = v.strip()
        return v or None


class OrderCancelRequest(BaseModel):
    """Schema for cancelling a pending order."""

    reason: Optional[str] = Field(None, max_length=500, description="Optional cancellation reason")


class RefundRequestBody(BaseModel):
    """Schema for refunding tickets of a paid order."""

    order_id: UUID = Field(..., description="Order the tickets belong to")
    ticket_ids: List[UUID] = Field(..., description="Tickets to refund")
    refund_reason: Optional[str] = Field(None, max_length=500, description="Reason recorded with the refund")


class TicketCancelRequest(BaseModel):
    """Schema for cancelling some tickets of an order."""

    order_id: UUID = Field(..., description="Order the tickets belong to")
    ticket_ids: List[UUID] = Field(..., description="Tickets to cancel")
    reason: Optional[str] = Field(None, max_length=500, description="Optional cancellation reason")


class TicketResponse(BaseModel):
    """Schema for ticket information in responses."""

    id: UUID
    seat_id: UUID
    seat_number: Optional[str] = None
    base_price: Decimal
    final_price: Decimal
    status: TicketStatus

    model_config = {"from_attributes": True}


class PaymentResponse(BaseModel):
    """Schema for the payment attached to an online order."""

    id: UUID
    payment_method_code: str
    total_amount: Decimal
    refunded_amount: Decimal
    merchant_order_ref: str
    gateway_transaction_no: Optional[str] = None
    status: PaymentStatus
    expired_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class OrderResponse(BaseModel):
    """Schema for order responses."""

    id: UUID
    user_id: Optional[UUID] = None
    guest_email: Optional[str] = None
    guest_name: Optional[str] = None
    guest_phone: Optional[str] = None
    total_base_price: Decimal
    total_discount: Decimal
    total_final_price: Decimal
    status: OrderStatus
    created_at: datetime
    updated_at: datetime

    tickets: List[TicketResponse] = []
    payment: Optional[PaymentResponse] = None

    model_config = {"from_attributes": True}


class CreateOrderResponse(BaseModel):
    """Response for successful order creation."""

    order: OrderResponse
    payment_url: Optional[str] = Field(None, description="Redirect URL for online payment methods")
    message: str = "Order created successfully"


class OrderEnvelope(BaseModel):
    """Response wrapping a single order."""

    order: OrderResponse
    message: Optional[str] = None


class OrderListResponse(BaseModel):
    """Response for order lookups."""

    orders: List[OrderResponse]
    total: int
    limit: int
    offset: int
