"""
Refund service: returns paid tickets, gives the money back through the
original gateway and puts the seats back on sale.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, List, Optional, Sequence
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..models.order import Order, OrderStatus
from ..models.order_history import OrderAction
from ..models.payment import OPEN_PAYMENT_STATUSES, Payment, PaymentStatus
from ..models.seat import Seat, SeatStatus
from ..models.ticket import LIVE_TICKET_STATUSES, Ticket, TicketStatus
from ..models.trip import Trip, TripStatus
from .gateways import GatewayRegistry, RefundRequest, call_gateway
from .order_records import add_order_history, load_order, set_ticket_status
from .pricing_service import PricingService, to_money
from .seat_inventory import SeatInventory
from ..utils.clock import Clock, utc_now
from ..utils.exceptions import (
    GatewayError,
    InvalidOrderStateError,
    RefundGatewayError,
    RefundIneligibleError,
    TicketNotFoundError,
    TripCompletedError,
    ValidationError,
)

logger = logging.getLogger(__name__)


@dataclass
class RefundPolicy:
    """Refund the tickets' final price minus a percentage fee."""

    fee_percent: float = 0.0

    def refundable_amount(self, tickets: Iterable[Ticket]) -> Decimal:
        paid = sum((Decimal(ticket.final_price) for ticket in tickets), Decimal("0.00"))
        fee = paid * Decimal(str(self.fee_percent)) / Decimal("100")
        return max(to_money(paid - fee), Decimal("0.00"))


class RefundService:
    """Refunds confirmed tickets of a paid order."""

    def __init__(
        self,
        session: AsyncSession,
        gateways: GatewayRegistry,
        policy: Optional[RefundPolicy] = None,
        gateway_timeout: float = 10.0,
        gateway_failure_threshold: int = 5,
        gateway_recovery_timeout: int = 60,
        clock: Clock = utc_now,
    ):
        self.session = session
        self.gateways = gateways
        self.policy = policy or RefundPolicy()
        self.gateway_timeout = gateway_timeout
        self.gateway_failure_threshold = gateway_failure_threshold
        self.gateway_recovery_timeout = gateway_recovery_timeout
        self.clock = clock
        self.inventory = SeatInventory(session)
        self.pricing = PricingService(session, clock=clock)

    async def refund_tickets(
        self,
        order_id: UUID,
        ticket_ids: Sequence[UUID],
        reason: Optional[str] = None,
        requested_by: str = "system",
        client_ip: str = "127.0.0.1",
    ) -> Order:
        """
        Refund some or all tickets of a paid order.

        The gateway is asked first; only when it accepts are tickets marked
        REFUNDED, their seats made AVAILABLE and the order totals reduced.
        Refunding the last live ticket moves the order to REFUNDED and gives
        back its coupon use.

        Raises:
            ValidationError: No ticket ids given
            OrderNotFoundError: Unknown order
            TicketNotFoundError: Ticket ids that are not part of the order
            TripCompletedError: A ticket's trip has already run
            RefundIneligibleError: Tickets not CONFIRMED or order not PAID
            RefundGatewayError: The gateway rejected or failed the refund
        """
        if not ticket_ids:
            raise ValidationError("At least one ticket must be refunded", field_errors={"ticket_ids": ["empty"]})

        reason = reason or "customer request"
        try:
            order = await load_order(self.session, order_id, for_update=True)
            tickets = self._select_tickets(order, ticket_ids)
            await self._ensure_trips_not_completed(tickets)

            if order.status != OrderStatus.PAID:
                raise RefundIneligibleError(
                    [str(ticket.id) for ticket in tickets],
                    reason=f"order is {order.status.value}",
                )

            ineligible = [ticket for ticket in tickets if ticket.status != TicketStatus.CONFIRMED]
            if ineligible:
                raise RefundIneligibleError(
                    [str(ticket.id) for ticket in ineligible],
                    reason=", ".join(sorted({ticket.status.value for ticket in ineligible})),
                )

            amount = self.policy.refundable_amount(tickets)
            if order.payment is not None and amount > 0:
                await self._refund_through_gateway(order.payment, amount, reason, requested_by, client_ip)

            await self._apply_refund(order, tickets, amount, reason, requested_by)

            await self.session.flush()
            order = await load_order(self.session, order_id)
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        logger.info(f"Refunded {len(tickets)} tickets of order {order_id} ({amount}); order is {order.status.value}")
        return order

    async def cancel_tickets(
        self,
        order_id: UUID,
        ticket_ids: Sequence[UUID],
        reason: Optional[str] = None,
        requested_by: str = "purchaser",
        client_ip: str = "127.0.0.1",
    ) -> Order:
        """
        Cancel tickets of an order, refunding them when the order is paid.

        Paid orders go through refund_tickets. Tickets of a PENDING order are
        voided instead: marked CANCELLED with their seats released and the
        order totals reduced. Voiding the last live ticket cancels the order
        and its open payment. A payment already started with a gateway keeps
        the amount it was started with.

        Raises:
            ValidationError: No ticket ids given
            OrderNotFoundError: Unknown order
            TicketNotFoundError: Ticket ids that are not part of the order
            TripCompletedError: A ticket's trip has already run
            InvalidOrderStateError: Order neither PENDING nor paid, or tickets not RESERVED
        """
        if not ticket_ids:
            raise ValidationError("At least one ticket must be cancelled", field_errors={"ticket_ids": ["empty"]})

        try:
            order = await load_order(self.session, order_id, for_update=True)
            tickets = self._select_tickets(order, ticket_ids)
            await self._ensure_trips_not_completed(tickets)

            paid = order.status == OrderStatus.PAID or (
                order.payment is not None and order.payment.status == PaymentStatus.COMPLETED
            )
            if not paid:
                if order.status != OrderStatus.PENDING:
                    raise InvalidOrderStateError(str(order_id), order.status.value, OrderStatus.PENDING.value)
                await self._void_tickets(order, tickets, reason or "cancelled by purchaser", requested_by)
                await self.session.flush()
                order = await load_order(self.session, order_id)
                await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        if paid:
            return await self.refund_tickets(
                order_id, ticket_ids, reason=reason, requested_by=requested_by, client_ip=client_ip
            )

        logger.info(f"Voided {len(tickets)} tickets of order {order_id}; order is {order.status.value}")
        return order

    async def _ensure_trips_not_completed(self, tickets: List[Ticket]) -> None:
        completed_trip_seats = set((await self.session.execute(
            select(Seat.id)
            .join(Trip, Trip.id == Seat.trip_id)
            .where(Seat.id.in_([ticket.seat_id for ticket in tickets]), Trip.status == TripStatus.COMPLETED)
        )).scalars().all())
        if completed_trip_seats:
            raise TripCompletedError(
                [str(ticket.id) for ticket in tickets if ticket.seat_id in completed_trip_seats]
            )

    async def _void_tickets(self, order: Order, tickets: List[Ticket], reason: str, requested_by: str) -> None:
        not_reserved = [ticket for ticket in tickets if ticket.status != TicketStatus.RESERVED]
        if not_reserved:
            raise InvalidOrderStateError(
                str(order.id),
                ", ".join(sorted({ticket.status.value for ticket in not_reserved})),
                TicketStatus.RESERVED.value,
            )

        ticket_ids = [ticket.id for ticket in tickets]
        voided = await set_ticket_status(
            self.session, order.id, TicketStatus.RESERVED, TicketStatus.CANCELLED, ticket_ids=ticket_ids
        )
        if voided != len(tickets):
            raise InvalidOrderStateError(str(order.id), "changed concurrently", TicketStatus.RESERVED.value)

        released = await self.inventory.release(
            [ticket.seat_id for ticket in tickets], owner_order_id=order.id, expected_status=SeatStatus.RESERVED
        )

        base = sum((Decimal(ticket.base_price) for ticket in tickets), Decimal("0.00"))
        final = sum((Decimal(ticket.final_price) for ticket in tickets), Decimal("0.00"))
        order.total_base_price = to_money(Decimal(order.total_base_price) - base)
        order.total_discount = to_money(Decimal(order.total_discount) - (base - final))
        order.total_final_price = to_money(Decimal(order.total_final_price) - final)

        remaining = [
            ticket for ticket in order.tickets
            if ticket.id not in set(ticket_ids) and ticket.status in LIVE_TICKET_STATUSES
        ]
        if remaining:
            action = OrderAction.TICKETS_CANCELLED
            if order.payment is not None and order.payment.status in OPEN_PAYMENT_STATUSES:
                logger.warning(
                    f"Payment {order.payment.merchant_order_ref} still asks for {order.payment.total_amount}; "
                    f"order {order.id} now totals {order.total_final_price}"
                )
        else:
            action = OrderAction.CANCELLED
            order.status = OrderStatus.CANCELLED
            if order.payment is not None:
                await self.session.execute(
                    update(Payment)
                    .where(Payment.id == order.payment.id, Payment.status.in_(OPEN_PAYMENT_STATUSES))
                    .values(status=PaymentStatus.CANCELLED)
                    .execution_options(synchronize_session=False)
                )

        add_order_history(
            self.session,
            order.id,
            action,
            f"{len(tickets)} tickets voided, {released} seats released: {reason}",
            performed_by=requested_by,
        )

    @staticmethod
    def _select_tickets(order: Order, ticket_ids: Sequence[UUID]) -> List[Ticket]:
        by_id = {ticket.id: ticket for ticket in order.tickets}
        wanted = list(dict.fromkeys(ticket_ids))
        missing = [str(ticket_id) for ticket_id in wanted if ticket_id not in by_id]
        if missing:
            raise TicketNotFoundError(str(order.id), missing)
        return [by_id[ticket_id] for ticket_id in wanted]

    async def _refund_through_gateway(
        self,
        payment: Payment,
        amount: Decimal,
        reason: str,
        requested_by: str,
        client_ip: str,
    ) -> None:
        adapter = self.gateways.get(payment.payment_method_code)
        if adapter.settles_immediately:
            return

        if payment.status != PaymentStatus.COMPLETED:
            raise RefundIneligibleError([], reason=f"payment is {payment.status.value}")

        request = RefundRequest(
            merchant_order_ref=payment.merchant_order_ref,
            transaction_no=payment.gateway_transaction_no,
            amount=amount,
            total_amount=payment.total_amount,
            reason=reason,
            transaction_date=payment.updated_at or payment.created_at,
            client_ip=client_ip,
            requested_by=requested_by,
        )
        try:
            result = await call_gateway(
                adapter,
                "refund",
                request,
                timeout=self.gateway_timeout,
                failure_threshold=self.gateway_failure_threshold,
                recovery_timeout=self.gateway_recovery_timeout,
            )
        except GatewayError as e:
            logger.error(f"Refund of {amount} for payment {payment.merchant_order_ref} failed at {adapter.code}: {e.message}")
            raise RefundGatewayError(adapter.code, e.message) from e

        if not result.success:
            logger.error(f"{adapter.code} declined refund for payment {payment.merchant_order_ref}: {result.message}")
            raise RefundGatewayError(adapter.code, result.message or "refund declined")

        logger.info(f"{adapter.code} accepted refund {result.refund_reference} of {amount} for {payment.merchant_order_ref}")

    async def _apply_refund(
        self,
        order: Order,
        tickets: List[Ticket],
        amount: Decimal,
        reason: str,
        requested_by: str,
    ) -> None:
        ticket_ids = [ticket.id for ticket in tickets]
        seat_ids = [ticket.seat_id for ticket in tickets]

        refunded = await set_ticket_status(
            self.session, order.id, TicketStatus.CONFIRMED, TicketStatus.REFUNDED, ticket_ids=ticket_ids
        )
        if refunded != len(tickets):
            raise RefundIneligibleError([str(ticket_id) for ticket_id in ticket_ids], reason="tickets changed concurrently")

        released = await self.inventory.release(seat_ids, owner_order_id=order.id, expected_status=SeatStatus.BOOKED)
        if released != len(seat_ids):
            logger.warning(f"Only {released} of {len(seat_ids)} seats of order {order.id} were still BOOKED")

        base = sum((Decimal(ticket.base_price) for ticket in tickets), Decimal("0.00"))
        final = sum((Decimal(ticket.final_price) for ticket in tickets), Decimal("0.00"))
        order.total_base_price = to_money(Decimal(order.total_base_price) - base)
        order.total_discount = to_money(Decimal(order.total_discount) - (base - final))
        order.total_final_price = to_money(Decimal(order.total_final_price) - final)

        if order.payment is not None:
            order.payment.refunded_amount = to_money(Decimal(order.payment.refunded_amount) + amount)

        remaining = [
            ticket for ticket in order.tickets
            if ticket.id not in set(ticket_ids) and ticket.status in LIVE_TICKET_STATUSES
        ]
        if remaining:
            action = OrderAction.PARTIALLY_REFUNDED
        else:
            action = OrderAction.REFUNDED
            order.status = OrderStatus.REFUNDED
            await self.pricing.revert_usage(order.id)

        add_order_history(
            self.session,
            order.id,
            action,
            f"{len(tickets)} tickets refunded ({amount}): {reason}",
            performed_by=requested_by,
        )
