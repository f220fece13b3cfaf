"""
Order loading and audit helpers shared by the order lifecycle services.
"""

import logging
from typing import Iterable, List, Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from ..models.order import Order, OrderStatus
from ..models.order_history import OrderHistory, OrderAction
from ..models.ticket import Ticket, TicketStatus
from ..utils.exceptions import OrderNotFoundError
from ..utils.logging_config import log_business_event

logger = logging.getLogger(__name__)


def _order_with_details():
    return select(Order).options(
        selectinload(Order.tickets).selectinload(Ticket.seat),
        selectinload(Order.payment),
        selectinload(Order.coupon_usage),
    )


async def load_order(session: AsyncSession, order_id: UUID, for_update: bool = False) -> Order:
    """
    Load an order with tickets, seats, payment and coupon usage, refreshing
    any stale copy already in the session.

    Raises:
        OrderNotFoundError: When the order does not exist
    """
    query = (
        _order_with_details()
        .where(Order.id == order_id)
        .execution_options(populate_existing=True)
    )
    if for_update:
        query = query.with_for_update(of=Order)

    order = (await session.execute(query)).scalar_one_or_none()
    if order is None:
        raise OrderNotFoundError(str(order_id))
    return order


async def find_orders(
    session: AsyncSession,
    *conditions,
    status: Optional[OrderStatus] = None,
    limit: int = 50,
    offset: int = 0,
) -> List[Order]:
    """Orders matching the conditions with their details, newest first."""
    query = _order_with_details().where(*conditions)
    if status is not None:
        query = query.where(Order.status == status)
    query = query.order_by(Order.created_at.desc(), Order.id).limit(limit).offset(offset)
    return list((await session.execute(query)).scalars().all())


async def set_ticket_status(
    session: AsyncSession,
    order_id: UUID,
    from_status: TicketStatus,
    to_status: TicketStatus,
    ticket_ids: Optional[Iterable[UUID]] = None,
    seat_ids: Optional[Iterable[UUID]] = None,
) -> int:
    """Guarded bulk ticket transition within one order."""
    conditions = [Ticket.order_id == order_id, Ticket.status == from_status]
    if ticket_ids is not None:
        conditions.append(Ticket.id.in_(list(ticket_ids)))
    if seat_ids is not None:
        conditions.append(Ticket.seat_id.in_(list(seat_ids)))

    result = await session.execute(
        update(Ticket)
        .where(*conditions)
        .values(status=to_status)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


def add_order_history(
    session: AsyncSession,
    order_id: UUID,
    action: OrderAction,
    details: str,
    performed_by: Optional[str] = None,
) -> OrderHistory:
    """Append an audit entry and emit the matching business event."""
    history = OrderHistory(
        order_id=order_id,
        action=action,
        details=details,
        performed_by=performed_by,
    )
    session.add(history)
    log_business_event(
        f"order_{action.value}",
        {"details": details, "performed_by": performed_by},
        order_id=str(order_id),
    )
    return history
