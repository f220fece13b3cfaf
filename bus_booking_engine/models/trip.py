"""
Trip model: the slice of trip master data that booking depends on.
"""

import enum
import uuid
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, TYPE_CHECKING

from sqlalchemy import CheckConstraint, DateTime, Enum, Numeric, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base

if TYPE_CHECKING:
    from .seat import Seat


class TripStatus(enum.Enum):
    """Enumeration for trip status."""
    SCHEDULED = "scheduled"
    DEPARTED = "departed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Trip(Base):
    """A scheduled departure whose seats are sold by the engine."""

    __tablename__ = "trips"

    # Route and vehicle are owned by master data
    route_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), nullable=True, index=True)
    vehicle_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), nullable=True)

    departure_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)

    # Price is fixed at creation as route price + vehicle type price
    route_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    vehicle_type_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    status: Mapped[TripStatus] = mapped_column(
        Enum(TripStatus),
        default=TripStatus.SCHEDULED,
        nullable=False,
        index=True
    )

    seats: Mapped[List["Seat"]] = relationship("Seat", back_populates="trip", passive_deletes=True)

    __table_args__ = (
        CheckConstraint("price > 0", name="ck_trips_price_positive"),
        CheckConstraint("route_price >= 0", name="ck_trips_route_price_non_negative"),
        CheckConstraint("vehicle_type_price >= 0", name="ck_trips_vehicle_type_price_non_negative"),
    )

    @property
    def is_bookable(self) -> bool:
        """Check if seats on this trip can still be sold."""
        return self.status == TripStatus.SCHEDULED

    def __repr__(self) -> str:
        return (
            f"<Trip(id={self.id}, departure_time={self.departure_time}, "
            f"price={self.price}, status={self.status.value})>"
        )
