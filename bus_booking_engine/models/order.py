"""
Order model: aggregate root for one purchase.
"""

import enum
import uuid
from decimal import Decimal
from typing import List, Optional, TYPE_CHECKING

from sqlalchemy import CheckConstraint, Enum, ForeignKey, Numeric, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base

if TYPE_CHECKING:
    from .ticket import Ticket
    from .payment import Payment
    from .coupon import CouponUsage
    from .order_history import OrderHistory


class OrderStatus(enum.Enum):
    """Enumeration for order status."""
    PENDING = "pending"
    PAID = "paid"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    EXPIRED = "expired"


class Order(Base):
    """Order placed by a registered user or a guest."""

    __tablename__ = "orders"

    # Purchaser: registered user id or guest contact details
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), nullable=True, index=True)
    guest_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    guest_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    guest_phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    total_base_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    total_discount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    total_final_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))

    # Coupon applied to the price; its usage is recorded once the order is paid
    coupon_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("coupons.id", ondelete="SET NULL"),
        nullable=True
    )

    status: Mapped[OrderStatus] = mapped_column(
        Enum(OrderStatus),
        default=OrderStatus.PENDING,
        nullable=False,
        index=True
    )

    tickets: Mapped[List["Ticket"]] = relationship(
        "Ticket",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="Ticket.created_at"
    )

    payment: Mapped[Optional["Payment"]] = relationship(
        "Payment",
        back_populates="order",
        uselist=False
    )

    coupon_usage: Mapped[Optional["CouponUsage"]] = relationship(
        "CouponUsage",
        back_populates="order",
        uselist=False
    )

    history: Mapped[List["OrderHistory"]] = relationship(
        "OrderHistory",
        back_populates="order",
        cascade="all, delete-orphan"
    )

    __table_args__ = (
        CheckConstraint("total_base_price >= 0", name="ck_orders_base_price_non_negative"),
        CheckConstraint("total_discount >= 0", name="ck_orders_discount_non_negative"),
        CheckConstraint("total_final_price >= 0", name="ck_orders_final_price_non_negative"),
        CheckConstraint(
            "total_final_price = total_base_price - total_discount",
            name="ck_orders_final_price_consistent"
        ),
        CheckConstraint(
            "(user_id IS NOT NULL AND guest_email IS NULL) OR (user_id IS NULL AND guest_email IS NOT NULL)",
            name="ck_orders_single_purchaser"
        ),
    )

    @property
    def is_guest(self) -> bool:
        return self.user_id is None

    def __repr__(self) -> str:
        return (
            f"<Order(id={self.id}, status={self.status.value}, "
            f"total_final_price={self.total_final_price})>"
        )
