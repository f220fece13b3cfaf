"""
Reservation expiry sweeper: returns seats held by unpaid orders to sale once
their hold has lapsed.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..models.order import Order, OrderStatus
from ..models.order_history import OrderAction
from ..models.payment import Payment, PaymentStatus
from ..models.seat import Seat, SeatStatus
from ..models.ticket import LIVE_TICKET_STATUSES, Ticket, TicketStatus
from .order_records import add_order_history, set_ticket_status
from ..utils.clock import Clock, utc_now

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    """Summary of one sweep run."""

    seats_scanned: int = 0
    seats_released: int = 0
    orders_expired: int = 0
    failed_orders: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, object]:
        return {
            "seats_scanned": self.seats_scanned,
            "seats_released": self.seats_released,
            "orders_expired": self.orders_expired,
            "failed_orders": list(self.failed_orders),
        }


class ReservationExpirySweeper:
    """
    Releases RESERVED seats whose ``reserved_until`` has passed.

    Seats are scanned in batches and grouped by owning order; each order is
    settled in its own transaction so one failure never blocks the rest.
    Every write is guarded on the state it expects, so a sweep racing a
    payment callback leaves whichever change committed first untouched.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        batch_size: int = 200,
        clock: Clock = utc_now,
    ):
        self.session_factory = session_factory
        self.batch_size = batch_size
        self.clock = clock

    async def sweep(self) -> SweepReport:
        report = SweepReport()
        now = self.clock()
        skipped: Set[UUID] = set()

        while True:
            holds = await self._scan(now, skipped)
            if not holds:
                break

            report.seats_scanned += sum(len(seat_ids) for seat_ids in holds.values())

            for order_id, seat_ids in holds.items():
                try:
                    released, expired = await self._expire_order(order_id, seat_ids, now)
                except Exception as e:
                    logger.error(f"Failed to expire reservation of order {order_id}: {e}", exc_info=True)
                    report.failed_orders.append(str(order_id))
                    skipped.add(order_id)
                    continue

                if released == 0:
                    skipped.add(order_id)
                report.seats_released += released
                report.orders_expired += int(expired)

        if report.seats_released or report.failed_orders:
            logger.info(f"Expiry sweep finished: {report.to_dict()}")
        else:
            logger.debug("Expiry sweep found nothing to release")
        return report

    async def _scan(self, now, skipped: Set[UUID]) -> Dict[UUID, List[UUID]]:
        query = (
            select(Seat.id, Seat.reserved_by)
            .where(
                Seat.status == SeatStatus.RESERVED,
                Seat.reserved_until.is_not(None),
                Seat.reserved_until < now,
            )
            .order_by(Seat.reserved_until)
            .limit(self.batch_size)
        )
        if skipped:
            query = query.where(Seat.reserved_by.not_in(skipped))

        async with self.session_factory() as session:
            rows = (await session.execute(query)).all()

        holds: Dict[UUID, List[UUID]] = defaultdict(list)
        for seat_id, order_id in rows:
            holds[order_id].append(seat_id)
        return dict(holds)

    async def _expire_order(self, order_id: UUID, seat_ids: List[UUID], now) -> tuple[int, bool]:
        async with self.session_factory() as session:
            try:
                order: Optional[Order] = (await session.execute(
                    select(Order).where(Order.id == order_id).with_for_update()
                )).scalar_one_or_none()

                if order is not None and order.status != OrderStatus.PENDING:
                    logger.warning(
                        f"Order {order_id} is {order.status.value} but still holds "
                        f"{len(seat_ids)} reserved seats; releasing them"
                    )

                released = (await session.execute(
                    update(Seat)
                    .where(
                        Seat.id.in_(seat_ids),
                        Seat.status == SeatStatus.RESERVED,
                        Seat.reserved_by == order_id,
                        Seat.reserved_until < now,
                    )
                    .values(status=SeatStatus.AVAILABLE, reserved_by=None, reserved_until=None)
                    .execution_options(synchronize_session=False)
                )).rowcount

                expired = False
                if order is not None and released:
                    await set_ticket_status(
                        session, order_id, TicketStatus.RESERVED, TicketStatus.CANCELLED, seat_ids=seat_ids
                    )
                    expired = await self._expire_if_empty(session, order, released)

                await session.commit()
            except Exception:
                await session.rollback()
                raise

        logger.info(f"Released {released} expired seats of order {order_id}{' (order expired)' if expired else ''}")
        return released, expired

    async def _expire_if_empty(self, session: AsyncSession, order: Order, released: int) -> bool:
        live = (await session.execute(
            select(Ticket.id).where(Ticket.order_id == order.id, Ticket.status.in_(LIVE_TICKET_STATUSES)).limit(1)
        )).first()
        if live is not None:
            return False

        result = await session.execute(
            update(Order)
            .where(Order.id == order.id, Order.status == OrderStatus.PENDING)
            .values(status=OrderStatus.EXPIRED)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            return False

        await session.execute(
            update(Payment)
            # A PROCESSING payment waits for the gateway's final answer
            .where(Payment.order_id == order.id, Payment.status == PaymentStatus.PENDING)
            .values(status=PaymentStatus.EXPIRED)
            .execution_options(synchronize_session=False)
        )
        add_order_history(
            session,
            order.id,
            OrderAction.EXPIRED,
            f"reservation lapsed; {released} seats released",
            performed_by="expiry_sweeper",
        )
        return True
