"""
Settlement service: creates orders and drives them to PAID, CANCELLED or
EXPIRED from gateway outcomes.
"""

import logging
import secrets
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, List, Mapping, Optional, Sequence
from uuid import UUID, uuid4

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..models.coupon import Coupon
from ..models.order import Order, OrderStatus
from ..models.order_history import OrderAction
from ..models.payment import OPEN_PAYMENT_STATUSES, Payment, PaymentStatus
from ..models.seat import SeatStatus
from ..models.ticket import Ticket, TicketStatus
from .gateways import (
    CallbackVerification,
    GatewayRegistry,
    PaymentGatewayAdapter,
    PaymentInitiationRequest,
    call_gateway,
)
from .order_records import add_order_history, find_orders, load_order, set_ticket_status
from .pricing_service import PriceQuote, PricingService, Purchaser
from .reservation_coordinator import ReservationCoordinator, ReservationHold
from .seat_inventory import SeatInventory
from ..utils.clock import Clock, utc_now
from ..utils.exceptions import (
    CallbackVerificationError,
    InvalidOrderStateError,
    PaymentNotFoundError,
    SeatConflictError,
    ValidationError,
)
from ..utils.logging_config import log_security_event

logger = logging.getLogger(__name__)

FAILED_PAYMENT_STATUSES = (PaymentStatus.FAILED, PaymentStatus.CANCELLED, PaymentStatus.EXPIRED)


def generate_merchant_order_ref(clock: Clock = utc_now) -> str:
    """Unique reference sent to the gateway, e.g. ``ORD1718000000123042817``."""
    millis = int(clock().timestamp() * 1000)
    return f"ORD{millis}{secrets.randbelow(1_000_000):06d}"


@dataclass
class OrderCreationResult:
    order: Order
    payment_url: Optional[str] = None


@dataclass
class CallbackOutcome:
    """What a gateway callback did to its payment and order."""

    order_id: UUID
    merchant_order_ref: str
    payment_status: PaymentStatus
    order_status: OrderStatus
    replayed: bool = False


class SettlementService:
    """Order creation, lookup, gateway callbacks and explicit cancellation."""

    def __init__(
        self,
        session: AsyncSession,
        gateways: GatewayRegistry,
        reservation_window: timedelta = timedelta(minutes=15),
        max_seats_per_order: int = 10,
        gateway_timeout: float = 10.0,
        gateway_failure_threshold: int = 5,
        gateway_recovery_timeout: int = 60,
        clock: Clock = utc_now,
    ):
        self.session = session
        self.gateways = gateways
        self.gateway_timeout = gateway_timeout
        self.gateway_failure_threshold = gateway_failure_threshold
        self.gateway_recovery_timeout = gateway_recovery_timeout
        self.clock = clock
        self.inventory = SeatInventory(session)
        self.coordinator = ReservationCoordinator(
            session,
            inventory=self.inventory,
            reservation_window=reservation_window,
            max_seats_per_order=max_seats_per_order,
            clock=clock,
        )
        self.pricing = PricingService(session, clock=clock)

    async def create_order(
        self,
        seat_ids: Sequence[UUID],
        purchaser: Purchaser,
        payment_method_code: str,
        coupon_code: Optional[str] = None,
        additional_data: Optional[Mapping[str, Any]] = None,
    ) -> OrderCreationResult:
        """
        Hold seats, price them and open the order in a single transaction.

        Cash orders (and orders discounted to zero) are paid immediately with
        their seats BOOKED. Online orders stay PENDING with their seats held
        until the gateway reports back or the hold expires. Any failure,
        including the gateway refusing to create a payment, rolls everything
        back so no seat is left held.

        Raises:
            ValidationError: Bad purchaser, unsupported method or bad seat set
            SeatNotFoundError: Unknown seat ids
            SeatUnavailableError: Any seat could not be held
            CouponInvalidError: Coupon rejected
            GatewayError: The gateway could not start the payment
        """
        self._validate_purchaser(purchaser)
        adapter = self.gateways.get(payment_method_code)
        additional_data = additional_data or {}
        order_id = uuid4()

        logger.info(
            f"Creating order {order_id} for {len(seat_ids)} seats "
            f"via {adapter.code} ({'guest' if purchaser.is_guest else f'user {purchaser.user_id}'})"
        )

        try:
            hold = await self.coordinator.reserve(seat_ids, order_id)
            quote = await self.pricing.evaluate(hold.seats, coupon_code, purchaser)

            order = Order(
                id=order_id,
                user_id=purchaser.user_id,
                guest_email=purchaser.guest_email,
                guest_name=purchaser.guest_name,
                guest_phone=purchaser.guest_phone,
                total_base_price=quote.total_base_price,
                total_discount=quote.total_discount,
                total_final_price=quote.total_final_price,
                coupon_id=quote.coupon.id if quote.coupon else None,
                status=OrderStatus.PENDING,
            )
            self.session.add(order)
            await self.session.flush()

            settle_now = adapter.settles_immediately or quote.total_final_price == 0
            ticket_status = TicketStatus.CONFIRMED if settle_now else TicketStatus.RESERVED
            for price in quote.ticket_prices:
                self.session.add(Ticket(
                    order_id=order_id,
                    seat_id=price.seat_id,
                    base_price=price.base_price,
                    final_price=price.final_price,
                    status=ticket_status,
                ))

            if settle_now:
                await self.pricing.record_usage(quote.coupon, order_id, purchaser, quote.total_discount)
            add_order_history(
                self.session,
                order_id,
                OrderAction.CREATED,
                f"{len(hold.seats)} seats via {adapter.code}, total {quote.total_final_price}",
                performed_by=str(purchaser.user_id) if purchaser.user_id else purchaser.guest_email,
            )

            payment_url = None
            if settle_now:
                await self._settle_immediately(order, hold, adapter)
            else:
                payment_url = await self._start_online_payment(order, hold, quote, adapter, additional_data)

            await self.session.flush()
            order = await load_order(self.session, order_id)
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            logger.info(f"Order {order_id} creation rolled back")
            raise

        logger.info(f"Order {order_id} created with status {order.status.value}")
        return OrderCreationResult(order=order, payment_url=payment_url)

    async def handle_gateway_callback(self, method_code: str, payload: Mapping[str, Any]) -> CallbackOutcome:
        """
        Apply a gateway notification to its payment and order.

        The signature is verified before anything is read. Callbacks for a
        payment that is no longer open are acknowledged without effect, so
        gateways may retry freely.

        Raises:
            ValidationError: Unknown method code
            CallbackVerificationError: Bad signature, wrong gateway or amount mismatch
            PaymentNotFoundError: Reference does not match any payment
        """
        adapter = self.gateways.get(method_code)
        try:
            verification = await adapter.verify(payload)
        except CallbackVerificationError as e:
            log_security_event(
                "gateway_callback_rejected",
                {"gateway": adapter.code, "reason": e.message},
                severity="WARNING",
            )
            raise

        try:
            outcome = await self._apply_verification(adapter, verification)
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        return outcome

    async def cancel_order(self, order_id: UUID, reason: Optional[str] = None) -> Order:
        """
        Abandon a PENDING order: release its seats and close its payment.

        Raises:
            OrderNotFoundError: When the order does not exist
            InvalidOrderStateError: When the order is not PENDING
        """
        try:
            order = await load_order(self.session, order_id, for_update=True)
            if order.status != OrderStatus.PENDING:
                raise InvalidOrderStateError(str(order_id), order.status.value, OrderStatus.PENDING.value)

            await self._close_unpaid_order(
                order,
                payment_status=PaymentStatus.CANCELLED,
                details=reason or "cancelled by purchaser",
                performed_by="purchaser",
            )
            await self.session.flush()
            order = await load_order(self.session, order_id)
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        return order

    async def get_order(self, order_id: UUID) -> Order:
        """
        Raises:
            OrderNotFoundError: When the order does not exist
        """
        return await load_order(self.session, order_id)

    async def list_user_orders(
        self,
        user_id: UUID,
        status: Optional[OrderStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Order]:
        """Orders placed by a registered user, newest first."""
        return await find_orders(self.session, Order.user_id == user_id, status=status, limit=limit, offset=offset)

    async def list_guest_orders(
        self,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        status: Optional[OrderStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Order]:
        """
        Guest orders matching every contact detail given, newest first.

        Raises:
            ValidationError: When neither email nor phone is given
        """
        conditions = [Order.user_id.is_(None)]
        if email:
            conditions.append(func.lower(Order.guest_email) == email.strip().lower())
        if phone:
            conditions.append(Order.guest_phone == phone.strip())
        if len(conditions) == 1:
            raise ValidationError(
                "Guest orders are looked up by email or phone",
                field_errors={"email": ["email or phone required"], "phone": ["email or phone required"]},
            )
        return await find_orders(self.session, *conditions, status=status, limit=limit, offset=offset)

    @staticmethod
    def _validate_purchaser(purchaser: Purchaser) -> None:
        """Exactly one of a registered user or a guest; a guest needs at least an email."""
        guest_fields = {
            "guest_email": purchaser.guest_email,
            "guest_name": purchaser.guest_name,
            "guest_phone": purchaser.guest_phone,
        }

        if purchaser.user_id is not None:
            given = [name for name, value in guest_fields.items() if value]
            if given:
                raise ValidationError(
                    "An order is placed by a registered user or a guest, not both",
                    field_errors={name: ["not allowed together with user_id"] for name in given},
                )
            return

        if not purchaser.guest_email:
            raise ValidationError(
                "Guest orders need an email",
                field_errors={"guest_email": ["required for guest orders"]},
            )

    async def _settle_immediately(self, order: Order, hold: ReservationHold, adapter: PaymentGatewayAdapter) -> None:
        booked = await self.inventory.mark_booked(order.id)
        if booked != len(hold.seats):
            raise SeatConflictError(
                ",".join(str(seat_id) for seat_id in hold.seat_ids),
                SeatStatus.RESERVED.name,
                message=f"Only {booked} of {len(hold.seats)} held seats could be booked",
            )

        order.status = OrderStatus.PAID
        add_order_history(
            self.session,
            order.id,
            OrderAction.PAID,
            "settled at purchase" if adapter.settles_immediately else "nothing to charge",
            performed_by=adapter.code,
        )

    async def _start_online_payment(
        self,
        order: Order,
        hold: ReservationHold,
        quote: PriceQuote,
        adapter: PaymentGatewayAdapter,
        additional_data: Mapping[str, Any],
    ) -> Optional[str]:
        payment = Payment(
            order_id=order.id,
            payment_method_code=adapter.code,
            total_amount=quote.total_final_price,
            refunded_amount=0,
            merchant_order_ref=generate_merchant_order_ref(self.clock),
            status=PaymentStatus.PENDING,
            expired_at=hold.reserved_until,
        )
        self.session.add(payment)
        await self.session.flush()

        request = PaymentInitiationRequest(
            merchant_order_ref=payment.merchant_order_ref,
            amount=quote.total_final_price,
            order_info=f"Bus tickets {', '.join(seat.number for seat in hold.seats)}",
            expires_at=hold.reserved_until,
            return_url=additional_data.get("return_url"),
            client_ip=additional_data.get("client_ip") or "127.0.0.1",
            locale=additional_data.get("locale") or "vn",
            bank_code=additional_data.get("bank_code"),
            extra=dict(additional_data),
        )
        result = await call_gateway(
            adapter,
            "initiate",
            request,
            timeout=self.gateway_timeout,
            failure_threshold=self.gateway_failure_threshold,
            recovery_timeout=self.gateway_recovery_timeout,
        )

        payment.gateway_response_data = result.raw or None
        logger.info(f"Payment {payment.merchant_order_ref} started with {adapter.code} for order {order.id}")
        return result.payment_url

    async def _apply_verification(
        self,
        adapter: PaymentGatewayAdapter,
        verification: CallbackVerification,
    ) -> CallbackOutcome:
        ref = verification.merchant_order_ref
        order_id = (await self.session.execute(
            select(Payment.order_id).where(Payment.merchant_order_ref == ref)
        )).scalar_one_or_none()
        if order_id is None:
            raise PaymentNotFoundError(ref)

        # Lock the order before touching its payment, same order as the sweeper
        order = await load_order(self.session, order_id, for_update=True)
        payment = order.payment

        if payment.payment_method_code != adapter.code:
            raise CallbackVerificationError(adapter.code, f"payment {ref} belongs to {payment.payment_method_code}")

        if payment.status not in OPEN_PAYMENT_STATUSES:
            if verification.status == PaymentStatus.COMPLETED and payment.status != PaymentStatus.COMPLETED:
                logger.warning(
                    f"Gateway {adapter.code} reports payment {ref} completed but it is already "
                    f"{payment.status.value}; order {order.id} needs a manual refund"
                )
            else:
                logger.info(f"Replayed {adapter.code} callback for payment {ref} ignored")
            return self._outcome(order, payment, replayed=True)

        if verification.status == PaymentStatus.COMPLETED:
            if verification.amount is not None and verification.amount != payment.total_amount:
                raise CallbackVerificationError(
                    adapter.code,
                    f"amount {verification.amount} does not match {payment.total_amount}",
                )
            await self._confirm_payment(order, payment, adapter, verification)
        elif verification.status in FAILED_PAYMENT_STATUSES:
            await self._record_payment_data(payment, verification, verification.status)
            if order.status != OrderStatus.PENDING:
                logger.info(f"Payment {ref} {verification.status.value} for order {order.id} already {order.status.value}")
            else:
                await self._close_unpaid_order(
                    order,
                    payment_status=verification.status,
                    details=f"payment {verification.status.value} at {adapter.code}",
                    performed_by=adapter.code,
                )
        else:
            await self._record_payment_data(payment, verification, PaymentStatus.PROCESSING)

        await self.session.flush()
        order = await load_order(self.session, order.id)
        return self._outcome(order, order.payment)

    async def _confirm_payment(
        self,
        order: Order,
        payment: Payment,
        adapter: PaymentGatewayAdapter,
        verification: CallbackVerification,
    ) -> None:
        await self._record_payment_data(payment, verification, PaymentStatus.COMPLETED)

        result = await self.session.execute(
            update(Order)
            .where(Order.id == order.id, Order.status == OrderStatus.PENDING)
            .values(status=OrderStatus.PAID)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            logger.warning(f"Payment {payment.merchant_order_ref} completed for order {order.id} in state {order.status.value}")
            return

        booked = await self.inventory.mark_booked(order.id)
        confirmed = await set_ticket_status(self.session, order.id, TicketStatus.RESERVED, TicketStatus.CONFIRMED)
        add_order_history(
            self.session,
            order.id,
            OrderAction.PAID,
            f"transaction {verification.transaction_no or '-'}, {booked} seats booked, {confirmed} tickets confirmed",
            performed_by=adapter.code,
        )
        await self._record_coupon_usage(order)

    async def _record_coupon_usage(self, order: Order) -> None:
        """Count the coupon of an order paid online, past its cap if need be."""
        if order.coupon_id is None or order.coupon_usage is not None:
            return
        coupon = await self.session.get(Coupon, order.coupon_id)
        if coupon is None:
            return
        if coupon.is_limited and coupon.current_usage_count >= coupon.max_usage:
            logger.warning(f"Coupon {coupon.code} exceeds its usage limit with paid order {order.id}")
        await self.pricing.record_usage(
            coupon,
            order.id,
            Purchaser(user_id=order.user_id, guest_email=order.guest_email),
            order.total_discount,
            enforce_cap=False,
        )

    async def _record_payment_data(
        self,
        payment: Payment,
        verification: CallbackVerification,
        status: PaymentStatus,
    ) -> None:
        await self.session.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.status.in_(OPEN_PAYMENT_STATUSES))
            .values(
                status=status,
                gateway_transaction_no=verification.transaction_no or payment.gateway_transaction_no,
                gateway_response_data=verification.raw or payment.gateway_response_data,
            )
            .execution_options(synchronize_session=False)
        )

    async def _close_unpaid_order(
        self,
        order: Order,
        payment_status: PaymentStatus,
        details: str,
        performed_by: str,
        order_status: OrderStatus = OrderStatus.CANCELLED,
        action: OrderAction = OrderAction.CANCELLED,
    ) -> None:
        """Move a PENDING order to a closed state and give back everything it held."""
        await self.session.execute(
            update(Order)
            .where(Order.id == order.id, Order.status == OrderStatus.PENDING)
            .values(status=order_status)
            .execution_options(synchronize_session=False)
        )
        if order.payment is not None:
            await self.session.execute(
                update(Payment)
                .where(Payment.id == order.payment.id, Payment.status.in_(OPEN_PAYMENT_STATUSES))
                .values(status=payment_status)
                .execution_options(synchronize_session=False)
            )

        released = await self.coordinator.release_hold(order.id, [ticket.seat_id for ticket in order.tickets])
        await set_ticket_status(self.session, order.id, TicketStatus.RESERVED, TicketStatus.CANCELLED)
        add_order_history(
            self.session,
            order.id,
            action,
            f"{details}; {released} seats released",
            performed_by=performed_by,
        )

    @staticmethod
    def _outcome(order: Order, payment: Payment, replayed: bool = False) -> CallbackOutcome:
        return CallbackOutcome(
            order_id=order.id,
            merchant_order_ref=payment.merchant_order_ref,
            payment_status=payment.status,
            order_status=order.status,
            replayed=replayed,
        )
