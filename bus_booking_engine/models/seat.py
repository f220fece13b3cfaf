"""
Seat model holding the inventory state of one physical seat on a trip.
"""

import enum
import uuid
from datetime import datetime
from typing import Optional, TYPE_CHECKING

from sqlalchemy import CheckConstraint, DateTime, Enum, ForeignKey, Integer, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base

if TYPE_CHECKING:
    from .trip import Trip


class SeatStatus(enum.Enum):
    """Enumeration for seat status."""
    AVAILABLE = "available"
    RESERVED = "reserved"
    BOOKED = "booked"
    MAINTENANCE = "maintenance"
    DISABLED = "disabled"


OWNED_STATUSES = (SeatStatus.RESERVED, SeatStatus.BOOKED)


class Seat(Base):
    """Seat model for a trip's generated seat map."""

    __tablename__ = "seats"

    # Cleared when the trip is deleted; the seat row survives
    trip_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("trips.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )

    number: Mapped[str] = mapped_column(String(20), nullable=False)
    row: Mapped[int] = mapped_column(Integer, nullable=False)
    column: Mapped[int] = mapped_column(Integer, nullable=False)
    floor: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    status: Mapped[SeatStatus] = mapped_column(
        Enum(SeatStatus),
        default=SeatStatus.AVAILABLE,
        nullable=False,
        index=True
    )

    # Owning order; plain column so a hold can be taken before the order row exists
    reserved_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), nullable=True, index=True)
    reserved_until: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True, index=True)

    trip: Mapped[Optional["Trip"]] = relationship("Trip", back_populates="seats")

    __table_args__ = (
        UniqueConstraint("trip_id", "number", name="uq_seats_trip_number"),
        CheckConstraint(
            "(status IN ('RESERVED', 'BOOKED') AND reserved_by IS NOT NULL) "
            "OR (status NOT IN ('RESERVED', 'BOOKED') AND reserved_by IS NULL)",
            name="ck_seats_owner_matches_status"
        ),
    )

    @property
    def is_available(self) -> bool:
        """Check if the seat can be reserved."""
        return self.status == SeatStatus.AVAILABLE

    def __repr__(self) -> str:
        return (
            f"<Seat(id={self.id}, trip_id={self.trip_id}, number='{self.number}', "
            f"status={self.status.value}, reserved_by={self.reserved_by})>"
        )
