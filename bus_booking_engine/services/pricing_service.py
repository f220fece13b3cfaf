"""
Pricing and coupon evaluation for a set of held seats.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP
from typing import List, Optional, Sequence
from uuid import UUID

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..models.coupon import Coupon, CouponType, CouponUsage
from ..models.seat import Seat
from ..utils.clock import Clock, ensure_aware, utc_now
from ..utils.exceptions import CouponInvalidError, ValidationError

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


@dataclass
class Purchaser:
    """Registered user or guest placing an order."""

    user_id: Optional[UUID] = None
    guest_email: Optional[str] = None
    guest_name: Optional[str] = None
    guest_phone: Optional[str] = None

    @property
    def is_guest(self) -> bool:
        return self.user_id is None


@dataclass
class TicketPrice:
    seat_id: UUID
    base_price: Decimal
    final_price: Decimal


@dataclass
class PriceQuote:
    """Outcome of pricing a seat set, with the coupon that produced the discount."""

    total_base_price: Decimal
    total_discount: Decimal
    total_final_price: Decimal
    ticket_prices: List[TicketPrice] = field(default_factory=list)
    coupon: Optional[Coupon] = None


def to_money(value: Decimal) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


class PricingService:
    """Computes order totals and validates coupons without side effects."""

    def __init__(self, session: AsyncSession, clock: Clock = utc_now):
        self.session = session
        self.clock = clock

    async def evaluate(
        self,
        seats: Sequence[Seat],
        coupon_code: Optional[str] = None,
        purchaser: Optional[Purchaser] = None,
    ) -> PriceQuote:
        """
        Price a set of seats, optionally applying a coupon.

        Each seat costs its trip's fixed price. The discount is spread across
        tickets in proportion to their base price, with the rounding remainder
        on the last ticket, so ticket final prices add up to the order total.

        Raises:
            ValidationError: When a seat has no priced trip
            CouponInvalidError: When the coupon is unknown or not applicable
        """
        base_prices = []
        for seat in seats:
            if seat.trip is None or seat.trip.price is None or seat.trip.price <= 0:
                raise ValidationError(f"Seat {seat.number} has no valid trip price")
            base_prices.append(to_money(seat.trip.price))

        total_base = sum(base_prices, Decimal("0.00"))
        coupon = None
        total_discount = Decimal("0.00")

        if coupon_code:
            coupon = await self._validate_coupon(coupon_code, purchaser)
            total_discount = self._discount_for(coupon, total_base)

        allocations = self._allocate_discount(base_prices, total_discount)
        ticket_prices = [
            TicketPrice(seat_id=seat.id, base_price=base, final_price=base - share)
            for seat, base, share in zip(seats, base_prices, allocations)
        ]

        return PriceQuote(
            total_base_price=total_base,
            total_discount=total_discount,
            total_final_price=total_base - total_discount,
            ticket_prices=ticket_prices,
            coupon=coupon,
        )

    async def record_usage(
        self,
        coupon: Optional[Coupon],
        order_id: UUID,
        purchaser: Purchaser,
        discount_amount: Decimal,
        enforce_cap: bool = True
    ) -> Optional[CouponUsage]:
        """
        Consume a coupon for a paid order.

        The usage counter is incremented with a guarded update so two orders
        cannot both take the last use of a capped coupon. With enforce_cap
        off the use is counted even past the cap, for orders whose payment
        already completed at the gateway.
        """
        if coupon is None:
            return None

        query = update(Coupon).where(Coupon.id == coupon.id)
        if enforce_cap:
            query = query.where(
                or_(
                    Coupon.max_usage.is_(None),
                    Coupon.max_usage == 0,
                    Coupon.current_usage_count < Coupon.max_usage,
                )
            )
        result = await self.session.execute(
            query
            .values(current_usage_count=Coupon.current_usage_count + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise CouponInvalidError(coupon.code, "usage limit reached")

        usage = CouponUsage(
            coupon_id=coupon.id,
            order_id=order_id,
            user_id=purchaser.user_id,
            guest_email=None if purchaser.user_id else purchaser.guest_email,
            discount_amount=discount_amount,
        )
        self.session.add(usage)
        logger.info(f"Coupon {coupon.code} applied to order {order_id} (discount {discount_amount})")
        return usage

    async def revert_usage(self, order_id: UUID) -> bool:
        """Give back the coupon use of a fully refunded order."""
        usage = (await self.session.execute(
            select(CouponUsage).where(CouponUsage.order_id == order_id)
        )).scalar_one_or_none()
        if usage is None:
            return False

        await self.session.execute(
            update(Coupon)
            .where(Coupon.id == usage.coupon_id, Coupon.current_usage_count > 0)
            .values(current_usage_count=Coupon.current_usage_count - 1)
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(
            delete(CouponUsage)
            .where(CouponUsage.id == usage.id)
            .execution_options(synchronize_session=False)
        )
        logger.info(f"Coupon usage reverted for order {order_id}")
        return True

    async def _validate_coupon(self, code: str, purchaser: Optional[Purchaser]) -> Coupon:
        coupon = (await self.session.execute(
            select(Coupon).where(Coupon.code == code)
        )).scalar_one_or_none()

        if coupon is None:
            raise CouponInvalidError(code, "not found")
        if not coupon.is_active:
            raise CouponInvalidError(code, "inactive")

        now = self.clock()
        if coupon.start_period and ensure_aware(coupon.start_period) > now:
            raise CouponInvalidError(code, "not yet valid")
        if coupon.end_period and ensure_aware(coupon.end_period) < now:
            raise CouponInvalidError(code, "expired")
        if coupon.is_limited and coupon.current_usage_count >= coupon.max_usage:
            raise CouponInvalidError(code, "usage limit reached")

        if purchaser is not None and await self._already_used(coupon, purchaser):
            raise CouponInvalidError(code, "already used")

        return coupon

    async def _already_used(self, coupon: Coupon, purchaser: Purchaser) -> bool:
        query = select(func.count(CouponUsage.id)).where(CouponUsage.coupon_id == coupon.id)
        if purchaser.user_id is not None:
            query = query.where(CouponUsage.user_id == purchaser.user_id)
        elif purchaser.guest_email:
            query = query.where(CouponUsage.guest_email == purchaser.guest_email)
        else:
            return False

        return (await self.session.execute(query)).scalar_one() > 0

    @staticmethod
    def _discount_for(coupon: Coupon, total_base: Decimal) -> Decimal:
        if coupon.type == CouponType.PERCENTAGE:
            discount = total_base * Decimal(coupon.value) / Decimal(100)
        else:
            discount = Decimal(coupon.value)
        return to_money(min(discount, total_base))

    @staticmethod
    def _allocate_discount(base_prices: List[Decimal], total_discount: Decimal) -> List[Decimal]:
        if not base_prices:
            return []
        total_base = sum(base_prices, Decimal("0.00"))
        if total_discount <= 0 or total_base <= 0:
            return [Decimal("0.00")] * len(base_prices)

        shares = [
            (total_discount * base / total_base).quantize(CENT, rounding=ROUND_DOWN)
            for base in base_prices[:-1]
        ]
        shares.append(total_discount - sum(shares, Decimal("0.00")))

        # Rounding can push the last share past its base; spill onto earlier tickets
        excess = shares[-1] - base_prices[-1]
        if excess > 0:
            shares[-1] = base_prices[-1]
            for index in range(len(shares) - 1):
                room = min(base_prices[index] - shares[index], excess)
                shares[index] += room
                excess -= room
        return shares
