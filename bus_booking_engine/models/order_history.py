"""
OrderHistory model for tracking the order audit trail.
"""

import enum
import uuid
from typing import Optional, TYPE_CHECKING

from sqlalchemy import Enum, ForeignKey, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base

if TYPE_CHECKING:
    from .order import Order


class OrderAction(enum.Enum):
    """Enumeration for order actions."""
    CREATED = "created"
    PAID = "paid"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"
    TICKETS_CANCELLED = "tickets_cancelled"
    CHECKED_IN = "checked_in"


class OrderHistory(Base):
    """OrderHistory model for tracking the order audit trail."""

    __tablename__ = "order_history"

    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    action: Mapped[OrderAction] = mapped_column(
        Enum(OrderAction),
        nullable=False,
        index=True
    )

    details: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Actor that triggered the change (gateway code, "sweeper", "check-in")
    performed_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    order: Mapped["Order"] = relationship("Order", back_populates="history")

    def __repr__(self) -> str:
        return (
            f"<OrderHistory(id={self.id}, order_id={self.order_id}, "
            f"action={self.action.value}, created_at={self.created_at})>"
        )
