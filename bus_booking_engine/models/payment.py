"""
Payment model tracking an order's online payment through its gateway.
"""

import enum
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional, TYPE_CHECKING

from sqlalchemy import CheckConstraint, DateTime, Enum, ForeignKey, JSON, Numeric, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base

if TYPE_CHECKING:
    from .order import Order


class PaymentStatus(enum.Enum):
    """Enumeration for payment status."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


OPEN_PAYMENT_STATUSES = (PaymentStatus.PENDING, PaymentStatus.PROCESSING)


class Payment(Base):
    """Payment record; never deleted, only moved forward."""

    __tablename__ = "payments"

    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        unique=True
    )

    payment_method_code: Mapped[str] = mapped_column(String(30), nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    refunded_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))

    # Idempotency key sent to the gateway
    merchant_order_ref: Mapped[str] = mapped_column(String(64), nullable=False, unique=True, index=True)
    gateway_transaction_no: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    gateway_response_data: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)

    status: Mapped[PaymentStatus] = mapped_column(
        Enum(PaymentStatus),
        default=PaymentStatus.PENDING,
        nullable=False,
        index=True
    )

    expired_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    order: Mapped["Order"] = relationship("Order", back_populates="payment")

    __table_args__ = (
        CheckConstraint("total_amount >= 0", name="ck_payments_total_amount_non_negative"),
        CheckConstraint("refunded_amount >= 0", name="ck_payments_refunded_amount_non_negative"),
    )

    @property
    def is_open(self) -> bool:
        """Check if the payment still awaits a gateway outcome."""
        return self.status in OPEN_PAYMENT_STATUSES

    def __repr__(self) -> str:
        return (
            f"<Payment(id={self.id}, order_id={self.order_id}, method={self.payment_method_code}, "
            f"ref={self.merchant_order_ref}, status={self.status.value})>"
        )
