"""
Ticket model: one seat sold within an order.
"""

import enum
import uuid
from decimal import Decimal
from typing import Optional, TYPE_CHECKING

from sqlalchemy import CheckConstraint, Enum, ForeignKey, Numeric, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base

if TYPE_CHECKING:
    from .order import Order
    from .seat import Seat


class TicketStatus(enum.Enum):
    """Enumeration for ticket status."""
    RESERVED = "reserved"
    CONFIRMED = "confirmed"
    CHECKED_IN = "checked_in"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


LIVE_TICKET_STATUSES = (TicketStatus.RESERVED, TicketStatus.CONFIRMED, TicketStatus.CHECKED_IN)


class Ticket(Base):
    """Ticket whose status moves together with its seat's status."""

    __tablename__ = "tickets"

    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    seat_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("seats.id"),
        nullable=False,
        index=True
    )

    base_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    final_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    status: Mapped[TicketStatus] = mapped_column(
        Enum(TicketStatus),
        default=TicketStatus.RESERVED,
        nullable=False,
        index=True
    )

    order: Mapped["Order"] = relationship("Order", back_populates="tickets")
    seat: Mapped[Optional["Seat"]] = relationship("Seat")

    __table_args__ = (
        CheckConstraint("final_price >= 0", name="ck_tickets_final_price_non_negative"),
        CheckConstraint("final_price <= base_price", name="ck_tickets_final_price_within_base"),
    )

    @property
    def is_live(self) -> bool:
        """A ticket that still occupies its seat."""
        return self.status in LIVE_TICKET_STATUSES

    def __repr__(self) -> str:
        return (
            f"<Ticket(id={self.id}, order_id={self.order_id}, seat_id={self.seat_id}, "
            f"status={self.status.value})>"
        )
