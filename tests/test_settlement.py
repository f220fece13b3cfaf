"""
Tests for order creation, gateway callbacks and cancellation.
"""

import uuid
from decimal import Decimal

import pytest
from sqlalchemy import select

from bus_booking_engine.models import (
    Coupon,
    CouponType,
    CouponUsage,
    Order,
    OrderAction,
    OrderHistory,
    OrderStatus,
    Payment,
    PaymentStatus,
    Seat,
    SeatStatus,
    TicketStatus,
)
from bus_booking_engine.services.pricing_service import Purchaser
from bus_booking_engine.services.settlement_service import SettlementService, generate_merchant_order_ref
from bus_booking_engine.utils.exceptions import (
    CallbackVerificationError,
    CouponInvalidError,
    GatewayError,
    InvalidOrderStateError,
    OrderNotFoundError,
    PaymentNotFoundError,
    ValidationError,
)

from .conftest import callback_payload, create_coupon


async def _seat_states(session_factory, seat_ids):
    async with session_factory() as session:
        seats = (await session.execute(select(Seat).where(Seat.id.in_(seat_ids)))).scalars().all()
        return {seat.id: seat.status for seat in seats}


async def _get_order(session_factory, order_id, gateways):
    async with session_factory() as session:
        return await SettlementService(session, gateways).get_order(order_id)


async def _history(session_factory, order_id):
    async with session_factory() as session:
        rows = (await session.execute(
            select(OrderHistory.action).where(OrderHistory.order_id == order_id)
        )).scalars().all()
        return list(rows)


async def _online_order(session_factory, gateways, guest, seat_ids, coupon_code=None):
    async with session_factory() as session:
        return await SettlementService(session, gateways).create_order(
            seat_ids, guest, "fakepay", coupon_code=coupon_code
        )


async def _callback(session_factory, gateways, payload):
    async with session_factory() as session:
        return await SettlementService(session, gateways).handle_gateway_callback("fakepay", payload)


class TestMerchantOrderRef:
    def test_format(self):
        ref = generate_merchant_order_ref()
        assert ref.startswith("ORD")
        assert ref[3:].isdigit()
        assert len(ref) == 3 + 13 + 6

    def test_unique(self):
        assert len({generate_merchant_order_ref() for _ in range(50)}) == 50


class TestCashOrders:
    """Test orders settled at creation."""

    async def test_cash_order_is_paid_and_booked(self, session_factory, trip, gateways, guest):
        async with session_factory() as session:
            result = await SettlementService(session, gateways).create_order(trip.seat_ids[:2], guest, "cash")

        order = result.order
        assert result.payment_url is None
        assert order.status == OrderStatus.PAID
        assert order.payment is None
        assert order.total_final_price == Decimal("300000.00")
        assert [ticket.status for ticket in order.tickets] == [TicketStatus.CONFIRMED] * 2
        assert {ticket.seat.number for ticket in order.tickets} == {"A1", "A2"}

        states = await _seat_states(session_factory, trip.seat_ids[:2])
        assert set(states.values()) == {SeatStatus.BOOKED}
        assert sorted(a.value for a in await _history(session_factory, order.id)) == ["created", "paid"]

    async def test_payment_method_code_is_case_insensitive(self, session_factory, trip, gateways, guest):
        async with session_factory() as session:
            result = await SettlementService(session, gateways).create_order(trip.seat_ids[:1], guest, "CASH")
        assert result.order.status == OrderStatus.PAID

    async def test_registered_user_order(self, session_factory, trip, gateways):
        user_id = uuid.uuid4()
        async with session_factory() as session:
            result = await SettlementService(session, gateways).create_order(
                trip.seat_ids[:1], Purchaser(user_id=user_id), "cash"
            )

        assert result.order.user_id == user_id
        assert result.order.guest_email is None

    async def test_guest_email_required(self, session_factory, trip, gateways):
        guest = Purchaser(guest_name="Rider", guest_phone="0900000000")
        async with session_factory() as session:
            with pytest.raises(ValidationError) as exc_info:
                await SettlementService(session, gateways).create_order(trip.seat_ids[:1], guest, "cash")

        assert "guest_email" in exc_info.value.field_errors
        states = await _seat_states(session_factory, trip.seat_ids[:1])
        assert set(states.values()) == {SeatStatus.AVAILABLE}

    async def test_guest_with_only_email(self, session_factory, trip, gateways):
        async with session_factory() as session:
            result = await SettlementService(session, gateways).create_order(
                trip.seat_ids[:1], Purchaser(guest_email="only@example.com"), "cash"
            )

        assert result.order.status == OrderStatus.PAID
        assert result.order.guest_email == "only@example.com"
        assert result.order.guest_name is None
        assert result.order.guest_phone is None

    @pytest.mark.parametrize("field", ["guest_email", "guest_name", "guest_phone"])
    async def test_user_and_guest_together_rejected(self, session_factory, trip, gateways, field):
        purchaser = Purchaser(user_id=uuid.uuid4())
        setattr(purchaser, field, "rider@example.com" if field == "guest_email" else "x")
        async with session_factory() as session:
            with pytest.raises(ValidationError) as exc_info:
                await SettlementService(session, gateways).create_order(trip.seat_ids[:1], purchaser, "cash")

        assert field in exc_info.value.field_errors
        states = await _seat_states(session_factory, trip.seat_ids[:1])
        assert set(states.values()) == {SeatStatus.AVAILABLE}

    async def test_unknown_payment_method(self, session_factory, trip, gateways, guest):
        async with session_factory() as session:
            with pytest.raises(ValidationError):
                await SettlementService(session, gateways).create_order(trip.seat_ids[:1], guest, "bitcoin")

    async def test_invalid_coupon_rolls_back_hold(self, session_factory, trip, gateways, guest):
        async with session_factory() as session:
            with pytest.raises(CouponInvalidError):
                await SettlementService(session, gateways).create_order(
                    trip.seat_ids[:2], guest, "cash", coupon_code="MISSING"
                )

        states = await _seat_states(session_factory, trip.seat_ids[:2])
        assert set(states.values()) == {SeatStatus.AVAILABLE}
        async with session_factory() as session:
            assert (await session.execute(select(Order))).scalars().all() == []

    async def test_coupon_applied_and_counted(self, session_factory, trip, gateways, guest):
        coupon_id = await create_coupon(session_factory, "SAVE10")
        async with session_factory() as session:
            result = await SettlementService(session, gateways).create_order(
                trip.seat_ids[:2], guest, "cash", coupon_code="SAVE10"
            )

        assert result.order.total_discount == Decimal("30000.00")
        assert result.order.total_final_price == Decimal("270000.00")
        assert result.order.coupon_usage is not None
        async with session_factory() as session:
            coupon = await session.get(Coupon, coupon_id)
        assert coupon.current_usage_count == 1


class TestOnlineOrders:
    """Test orders paid through a redirect gateway."""

    async def test_online_order_stays_pending_with_payment_url(self, session_factory, trip, gateways, guest, fake_gateway):
        result = await _online_order(session_factory, gateways, guest, trip.seat_ids[:2])

        order = result.order
        assert order.status == OrderStatus.PENDING
        assert result.payment_url == f"https://pay.example.test/{order.payment.merchant_order_ref}"
        assert order.payment.status == PaymentStatus.PENDING
        assert order.payment.total_amount == Decimal("300000.00")
        assert order.payment.expired_at is not None
        assert [ticket.status for ticket in order.tickets] == [TicketStatus.RESERVED] * 2
        assert fake_gateway.initiated[0].amount == Decimal("300000.00")

        states = await _seat_states(session_factory, trip.seat_ids[:2])
        assert set(states.values()) == {SeatStatus.RESERVED}

    async def test_gateway_failure_rolls_back_everything(self, session_factory, trip, gateways, guest, fake_gateway):
        fake_gateway.fail_initiate = True

        with pytest.raises(GatewayError):
            await _online_order(session_factory, gateways, guest, trip.seat_ids[:2])

        states = await _seat_states(session_factory, trip.seat_ids[:2])
        assert set(states.values()) == {SeatStatus.AVAILABLE}
        async with session_factory() as session:
            assert (await session.execute(select(Order))).scalars().all() == []
            assert (await session.execute(select(Payment))).scalars().all() == []

    async def test_free_order_settles_without_gateway(self, session_factory, trip, gateways, guest, fake_gateway):
        """An order discounted to zero is paid at once even on an online method."""
        await create_coupon(session_factory, "FREE", type=CouponType.FIXED, value=Decimal("1000000"))

        result = await _online_order(session_factory, gateways, guest, trip.seat_ids[:1], coupon_code="FREE")

        assert result.order.status == OrderStatus.PAID
        assert result.order.total_final_price == Decimal("0.00")
        assert result.order.payment is None
        assert result.payment_url is None
        assert fake_gateway.initiated == []


class TestGatewayCallbacks:
    """Test applying gateway notifications."""

    async def test_completed_callback_pays_order(self, session_factory, trip, gateways, guest):
        created = await _online_order(session_factory, gateways, guest, trip.seat_ids[:2])
        ref = created.order.payment.merchant_order_ref

        outcome = await _callback(session_factory, gateways, callback_payload(ref, amount=Decimal("300000")))

        assert outcome.order_id == created.order.id
        assert outcome.payment_status == PaymentStatus.COMPLETED
        assert outcome.order_status == OrderStatus.PAID
        assert outcome.replayed is False

        order = await _get_order(session_factory, created.order.id, gateways)
        assert order.payment.gateway_transaction_no == "TXN-1"
        assert [ticket.status for ticket in order.tickets] == [TicketStatus.CONFIRMED] * 2
        states = await _seat_states(session_factory, trip.seat_ids[:2])
        assert set(states.values()) == {SeatStatus.BOOKED}

    async def test_replayed_callback_changes_nothing(self, session_factory, trip, gateways, guest):
        created = await _online_order(session_factory, gateways, guest, trip.seat_ids[:1])
        payload = callback_payload(created.order.payment.merchant_order_ref)

        await _callback(session_factory, gateways, payload)
        replay = await _callback(session_factory, gateways, payload)

        assert replay.replayed is True
        assert replay.order_status == OrderStatus.PAID
        assert (await _history(session_factory, created.order.id)).count(OrderAction.PAID) == 1

    async def test_coupon_counted_when_paid(self, session_factory, trip, gateways, guest):
        coupon_id = await create_coupon(session_factory, "SAVE10")
        created = await _online_order(session_factory, gateways, guest, trip.seat_ids[:1], coupon_code="SAVE10")

        async with session_factory() as session:
            assert (await session.get(Coupon, coupon_id)).current_usage_count == 0

        await _callback(session_factory, gateways, callback_payload(created.order.payment.merchant_order_ref))

        async with session_factory() as session:
            assert (await session.get(Coupon, coupon_id)).current_usage_count == 1
            usage = (await session.execute(select(CouponUsage))).scalar_one()
        assert usage.order_id == created.order.id
        assert usage.discount_amount == Decimal("15000.00")

    async def test_paid_orders_count_past_coupon_cap(self, session_factory, trip, gateways, guest):
        coupon_id = await create_coupon(session_factory, "LAST", max_usage=1)
        other = Purchaser(guest_email="second@example.com", guest_name="Second", guest_phone="0922222222")
        first = await _online_order(session_factory, gateways, guest, trip.seat_ids[:1], coupon_code="LAST")
        second = await _online_order(session_factory, gateways, other, trip.seat_ids[1:2], coupon_code="LAST")

        for created in (first, second):
            await _callback(session_factory, gateways, callback_payload(created.order.payment.merchant_order_ref))

        async with session_factory() as session:
            assert (await session.get(Coupon, coupon_id)).current_usage_count == 2

    async def test_failed_callback_cancels_and_releases(self, session_factory, trip, gateways, guest):
        coupon_id = await create_coupon(session_factory, "SAVE10")
        created = await _online_order(session_factory, gateways, guest, trip.seat_ids[:2], coupon_code="SAVE10")

        outcome = await _callback(
            session_factory, gateways, callback_payload(created.order.payment.merchant_order_ref, status="FAILED")
        )

        assert outcome.payment_status == PaymentStatus.FAILED
        assert outcome.order_status == OrderStatus.CANCELLED
        order = await _get_order(session_factory, created.order.id, gateways)
        assert [ticket.status for ticket in order.tickets] == [TicketStatus.CANCELLED] * 2
        states = await _seat_states(session_factory, trip.seat_ids[:2])
        assert set(states.values()) == {SeatStatus.AVAILABLE}

        async with session_factory() as session:
            assert (await session.get(Coupon, coupon_id)).current_usage_count == 0
            assert (await session.execute(select(CouponUsage))).scalars().all() == []

    async def test_late_success_after_failure_is_ignored(self, session_factory, trip, gateways, guest):
        created = await _online_order(session_factory, gateways, guest, trip.seat_ids[:1])
        ref = created.order.payment.merchant_order_ref

        await _callback(session_factory, gateways, callback_payload(ref, status="CANCELLED"))
        late = await _callback(session_factory, gateways, callback_payload(ref))

        assert late.replayed is True
        assert late.order_status == OrderStatus.CANCELLED
        assert late.payment_status == PaymentStatus.CANCELLED

    async def test_processing_callback_keeps_order_pending(self, session_factory, trip, gateways, guest):
        created = await _online_order(session_factory, gateways, guest, trip.seat_ids[:1])

        outcome = await _callback(
            session_factory, gateways, callback_payload(created.order.payment.merchant_order_ref, status="PROCESSING")
        )

        assert outcome.payment_status == PaymentStatus.PROCESSING
        assert outcome.order_status == OrderStatus.PENDING

    async def test_bad_signature_is_rejected(self, session_factory, trip, gateways, guest):
        created = await _online_order(session_factory, gateways, guest, trip.seat_ids[:1])

        with pytest.raises(CallbackVerificationError):
            await _callback(
                session_factory, gateways,
                callback_payload(created.order.payment.merchant_order_ref, signature="forged"),
            )

        order = await _get_order(session_factory, created.order.id, gateways)
        assert order.status == OrderStatus.PENDING

    async def test_amount_mismatch_is_rejected(self, session_factory, trip, gateways, guest):
        created = await _online_order(session_factory, gateways, guest, trip.seat_ids[:1])

        with pytest.raises(CallbackVerificationError):
            await _callback(
                session_factory, gateways,
                callback_payload(created.order.payment.merchant_order_ref, amount=Decimal("1000")),
            )

        order = await _get_order(session_factory, created.order.id, gateways)
        assert order.status == OrderStatus.PENDING
        assert order.payment.status == PaymentStatus.PENDING

    async def test_unknown_reference(self, session_factory, gateways):
        with pytest.raises(PaymentNotFoundError):
            await _callback(session_factory, gateways, callback_payload("ORD000"))


class TestCancellation:
    """Test purchaser cancellation of pending orders."""

    async def test_cancel_pending_order(self, session_factory, trip, gateways, guest):
        created = await _online_order(session_factory, gateways, guest, trip.seat_ids[:2])

        async with session_factory() as session:
            order = await SettlementService(session, gateways).cancel_order(created.order.id, reason="changed plans")

        assert order.status == OrderStatus.CANCELLED
        assert order.payment.status == PaymentStatus.CANCELLED
        assert [ticket.status for ticket in order.tickets] == [TicketStatus.CANCELLED] * 2
        states = await _seat_states(session_factory, trip.seat_ids[:2])
        assert set(states.values()) == {SeatStatus.AVAILABLE}
        assert OrderAction.CANCELLED in await _history(session_factory, order.id)

    async def test_cancel_paid_order_is_refused(self, session_factory, trip, gateways, guest):
        async with session_factory() as session:
            created = await SettlementService(session, gateways).create_order(trip.seat_ids[:1], guest, "cash")

        async with session_factory() as session:
            with pytest.raises(InvalidOrderStateError):
                await SettlementService(session, gateways).cancel_order(created.order.id)

    async def test_cancel_unknown_order(self, session_factory, gateways):
        async with session_factory() as session:
            with pytest.raises(OrderNotFoundError):
                await SettlementService(session, gateways).cancel_order(uuid.uuid4())

    async def test_released_seats_can_be_bought_again(self, session_factory, trip, gateways, guest):
        created = await _online_order(session_factory, gateways, guest, trip.seat_ids[:1])
        async with session_factory() as session:
            await SettlementService(session, gateways).cancel_order(created.order.id)

        async with session_factory() as session:
            result = await SettlementService(session, gateways).create_order(trip.seat_ids[:1], guest, "cash")
        assert result.order.status == OrderStatus.PAID


class TestOrderLookup:
    """Test listing orders by purchaser."""

    async def _cash_order(self, session_factory, gateways, seat_id, purchaser):
        async with session_factory() as session:
            result = await SettlementService(session, gateways).create_order([seat_id], purchaser, "cash")
        return result.order

    async def test_user_orders(self, session_factory, trip, gateways, guest):
        user_id = uuid.uuid4()
        mine = [
            await self._cash_order(session_factory, gateways, seat_id, Purchaser(user_id=user_id))
            for seat_id in trip.seat_ids[:2]
        ]
        await self._cash_order(session_factory, gateways, trip.seat_ids[2], Purchaser(user_id=uuid.uuid4()))
        await self._cash_order(session_factory, gateways, trip.seat_ids[3], guest)

        async with session_factory() as session:
            orders = await SettlementService(session, gateways).list_user_orders(user_id)

        assert {order.id for order in orders} == {order.id for order in mine}
        assert all(len(order.tickets) == 1 for order in orders)

    async def test_user_orders_by_status(self, session_factory, trip, gateways):
        user_id = uuid.uuid4()
        await self._cash_order(session_factory, gateways, trip.seat_ids[0], Purchaser(user_id=user_id))
        async with session_factory() as session:
            pending = (await SettlementService(session, gateways).create_order(
                trip.seat_ids[1:2], Purchaser(user_id=user_id), "fakepay"
            )).order

        async with session_factory() as session:
            orders = await SettlementService(session, gateways).list_user_orders(user_id, status=OrderStatus.PENDING)

        assert [order.id for order in orders] == [pending.id]

    async def test_guest_orders_by_email_or_phone(self, session_factory, trip, gateways, guest):
        order = await self._cash_order(session_factory, gateways, trip.seat_ids[0], guest)
        await self._cash_order(
            session_factory, gateways, trip.seat_ids[1], Purchaser(guest_email="other@example.com")
        )

        async with session_factory() as session:
            service = SettlementService(session, gateways)
            by_email = await service.list_guest_orders(email="Rider@Example.com")
            by_phone = await service.list_guest_orders(phone="0900000000")
            by_both = await service.list_guest_orders(email="rider@example.com", phone="0911111111")

        assert [o.id for o in by_email] == [order.id]
        assert [o.id for o in by_phone] == [order.id]
        assert by_both == []

    async def test_guest_lookup_needs_email_or_phone(self, session_factory, gateways):
        async with session_factory() as session:
            with pytest.raises(ValidationError) as exc_info:
                await SettlementService(session, gateways).list_guest_orders()

        assert set(exc_info.value.field_errors) == {"email", "phone"}
