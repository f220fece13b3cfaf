"""
FastAPI routes for order creation, lookup, cancellation and refunds.
"""

import logging
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, status

from ..models.order import Order, OrderStatus
from ..schemas.order import (
    CreateOrderResponse,
    OrderCancelRequest,
    OrderCreateRequest,
    OrderEnvelope,
    OrderListResponse,
    OrderResponse,
    PaymentResponse,
    RefundRequestBody,
    TicketCancelRequest,
    TicketResponse,
)
from ..schemas.common import ErrorResponse
from ..services.pricing_service import Purchaser
from ..services.refund_service import RefundService
from ..services.settlement_service import SettlementService
from ..utils.dependencies import get_refund_service, get_settlement_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/orders", tags=["orders"])


def _create_order_response(order: Order) -> OrderResponse:
    """Create an OrderResponse from an order loaded with tickets and payment."""
    tickets = [
        TicketResponse(
            id=ticket.id,
            seat_id=ticket.seat_id,
            seat_number=ticket.seat.number if ticket.seat else None,
            base_price=ticket.base_price,
            final_price=ticket.final_price,
            status=ticket.status,
        )
        for ticket in order.tickets
    ]

    return OrderResponse(
        id=order.id,
        user_id=order.user_id,
        guest_email=order.guest_email,
        guest_name=order.guest_name,
        guest_phone=order.guest_phone,
        total_base_price=order.total_base_price,
        total_discount=order.total_discount,
        total_final_price=order.total_final_price,
        status=order.status,
        created_at=order.created_at,
        updated_at=order.updated_at,
        tickets=tickets,
        payment=PaymentResponse.model_validate(order.payment) if order.payment else None,
    )


def _order_list_response(orders: List[Order], limit: int, offset: int) -> OrderListResponse:
    return OrderListResponse(
        orders=[_create_order_response(order) for order in orders],
        total=len(orders),
        limit=limit,
        offset=offset,
    )


def _client_ip(request: Request) -> str:
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    return request.client.host if request.client else "127.0.0.1"


@router.post(
    "",
    response_model=CreateOrderResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        400: {"model": ErrorResponse, "description": "Bad purchaser, coupon or payment method"},
        404: {"model": ErrorResponse, "description": "Unknown seat"},
        409: {"model": ErrorResponse, "description": "Seat already taken"},
        502: {"model": ErrorResponse, "description": "Gateway refused to start the payment"},
    },
)
async def create_order(
    order_data: OrderCreateRequest,
    request: Request,
    settlement_service: SettlementService = Depends(get_settlement_service)
):
    """
    Create an order for a set of seats.

    Cash orders are paid immediately. Online orders are returned PENDING with
    a `payment_url`; the seats stay held until the gateway calls back or the
    reservation window lapses.
    """
    additional_data = dict(order_data.additional_data or {})
    additional_data.setdefault("client_ip", _client_ip(request))

    result = await settlement_service.create_order(
        seat_ids=order_data.seat_ids,
        purchaser=Purchaser(
            user_id=order_data.user_id,
            guest_email=str(order_data.guest_email) if order_data.guest_email else None,
            guest_name=order_data.guest_name,
            guest_phone=order_data.guest_phone,
        ),
        payment_method_code=order_data.payment_method_code,
        coupon_code=order_data.coupon_code,
        additional_data=additional_data,
    )

    logger.info(f"Order {result.order.id} created via {order_data.payment_method_code}")
    return CreateOrderResponse(
        order=_create_order_response(result.order),
        payment_url=result.payment_url,
    )


@router.post(
    "/refund",
    response_model=OrderEnvelope,
    responses={
        404: {"model": ErrorResponse, "description": "Unknown order or ticket"},
        409: {"model": ErrorResponse, "description": "Tickets not refundable"},
        502: {"model": ErrorResponse, "description": "Gateway refund failed"},
    },
)
async def refund_tickets(
    refund_data: RefundRequestBody,
    request: Request,
    refund_service: RefundService = Depends(get_refund_service)
):
    """Refund confirmed tickets of a paid order and put their seats back on sale."""
    order = await refund_service.refund_tickets(
        refund_data.order_id,
        refund_data.ticket_ids,
        reason=refund_data.refund_reason,
        client_ip=_client_ip(request),
    )
    return OrderEnvelope(order=_create_order_response(order), message="Tickets refunded successfully")


@router.post(
    "/cancel-tickets",
    response_model=OrderEnvelope,
    responses={
        404: {"model": ErrorResponse, "description": "Unknown order or ticket"},
        409: {"model": ErrorResponse, "description": "Tickets not cancellable or trip completed"},
        502: {"model": ErrorResponse, "description": "Gateway refund failed"},
    },
)
async def cancel_tickets(
    cancel_data: TicketCancelRequest,
    request: Request,
    refund_service: RefundService = Depends(get_refund_service)
):
    """
    Cancel some tickets of an order.

    Tickets of a paid order are refunded; tickets of a pending order are
    voided and their seats released.
    """
    order = await refund_service.cancel_tickets(
        cancel_data.order_id,
        cancel_data.ticket_ids,
        reason=cancel_data.reason,
        client_ip=_client_ip(request),
    )
    return OrderEnvelope(order=_create_order_response(order), message="Tickets cancelled successfully")


@router.get("/users/{user_id}", response_model=OrderListResponse)
async def list_user_orders(
    user_id: UUID,
    order_status: Optional[OrderStatus] = Query(None, alias="status", description="Only orders in this status"),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    settlement_service: SettlementService = Depends(get_settlement_service)
):
    """List the orders of a registered user, newest first."""
    orders = await settlement_service.list_user_orders(user_id, status=order_status, limit=limit, offset=offset)
    return _order_list_response(orders, limit, offset)


@router.get(
    "/guest",
    response_model=OrderListResponse,
    responses={400: {"model": ErrorResponse, "description": "Neither email nor phone given"}},
)
async def list_guest_orders(
    email: Optional[str] = Query(None, description="Email the guest ordered with"),
    phone: Optional[str] = Query(None, description="Phone the guest ordered with"),
    order_status: Optional[OrderStatus] = Query(None, alias="status", description="Only orders in this status"),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    settlement_service: SettlementService = Depends(get_settlement_service)
):
    """List guest orders by email and/or phone; every value given must match."""
    orders = await settlement_service.list_guest_orders(
        email=email, phone=phone, status=order_status, limit=limit, offset=offset
    )
    return _order_list_response(orders, limit, offset)


@router.get(
    "/{order_id}",
    response_model=OrderEnvelope,
    responses={404: {"model": ErrorResponse, "description": "Order not found"}},
)
async def get_order(
    order_id: UUID,
    settlement_service: SettlementService = Depends(get_settlement_service)
):
    """Get an order with its tickets and payment."""
    order = await settlement_service.get_order(order_id)
    return OrderEnvelope(order=_create_order_response(order))


@router.post(
    "/{order_id}/cancel",
    response_model=OrderEnvelope,
    responses={
        404: {"model": ErrorResponse, "description": "Order not found"},
        409: {"model": ErrorResponse, "description": "Order is not pending"},
    },
)
async def cancel_order(
    order_id: UUID,
    cancel_data: OrderCancelRequest | None = None,
    settlement_service: SettlementService = Depends(get_settlement_service)
):
    """Cancel a pending order and release its seats."""
    reason = cancel_data.reason if cancel_data else None
    order = await settlement_service.cancel_order(order_id, reason=reason)
    return OrderEnvelope(order=_create_order_response(order), message="Order cancelled successfully")
