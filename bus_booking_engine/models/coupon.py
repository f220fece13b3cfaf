"""
Coupon and coupon usage models.
"""

import enum
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional, TYPE_CHECKING

from sqlalchemy import Boolean, CheckConstraint, DateTime, Enum, ForeignKey, Integer, Numeric, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base

if TYPE_CHECKING:
    from .order import Order


class CouponType(enum.Enum):
    """Enumeration for coupon discount types."""
    FIXED = "fixed"
    PERCENTAGE = "percentage"


class Coupon(Base):
    """Coupon rules, maintained outside the engine."""

    __tablename__ = "coupons"

    code: Mapped[str] = mapped_column(String(50), nullable=False, unique=True, index=True)
    type: Mapped[CouponType] = mapped_column(Enum(CouponType), nullable=False)
    value: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    # None or 0 means unlimited
    max_usage: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    current_usage_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    start_period: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    end_period: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (
        CheckConstraint("value >= 0", name="ck_coupons_value_non_negative"),
        CheckConstraint("current_usage_count >= 0", name="ck_coupons_usage_non_negative"),
    )

    @property
    def is_limited(self) -> bool:
        return bool(self.max_usage)

    def __repr__(self) -> str:
        return f"<Coupon(id={self.id}, code='{self.code}', type={self.type.value}, value={self.value})>"


class CouponUsage(Base):
    """Record of a coupon consumed by one order."""

    __tablename__ = "coupon_usages"

    coupon_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("coupons.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), nullable=True, index=True)
    guest_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)

    discount_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    order: Mapped["Order"] = relationship("Order", back_populates="coupon_usage")
    coupon: Mapped["Coupon"] = relationship("Coupon")

    __table_args__ = (
        UniqueConstraint("coupon_id", "order_id", name="uq_coupon_usages_coupon_order"),
    )

    def __repr__(self) -> str:
        return f"<CouponUsage(id={self.id}, coupon_id={self.coupon_id}, order_id={self.order_id})>"
