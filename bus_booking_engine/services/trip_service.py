"""
Trip provisioning: creating a trip with its seat map and retiring it.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from ..models.seat import OWNED_STATUSES, Seat, SeatStatus
from ..models.trip import Trip, TripStatus
from .pricing_service import to_money
from .seat_inventory import SeatInventory, SeatLayout
from ..utils.exceptions import TripHasActiveBookingsError, TripNotFoundError, ValidationError

logger = logging.getLogger(__name__)


class TripService:
    """Service class for trip lifecycle operations."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.inventory = SeatInventory(session)

    async def create_trip(
        self,
        departure_time: datetime,
        route_price: Decimal,
        layout: SeatLayout,
        vehicle_type_price: Decimal = Decimal("0.00"),
        route_id: Optional[UUID] = None,
        vehicle_id: Optional[UUID] = None,
    ) -> Trip:
        """
        Create a SCHEDULED trip and generate its seats in one transaction.

        Raises:
            ValidationError: Negative prices or a zero total price
            InvalidLayoutError: The layout cannot produce seats
        """
        route_price = to_money(route_price)
        vehicle_type_price = to_money(vehicle_type_price or 0)
        if route_price < 0 or vehicle_type_price < 0:
            raise ValidationError(
                "Trip prices must not be negative",
                field_errors={"route_price": [str(route_price)], "vehicle_type_price": [str(vehicle_type_price)]}
            )

        price = route_price + vehicle_type_price
        if price <= 0:
            raise ValidationError("Trip price must be positive", field_errors={"route_price": ["total price is zero"]})

        try:
            trip = Trip(
                route_id=route_id,
                vehicle_id=vehicle_id,
                departure_time=departure_time,
                route_price=route_price,
                vehicle_type_price=vehicle_type_price,
                price=price,
                status=TripStatus.SCHEDULED,
            )
            self.session.add(trip)
            await self.session.flush()

            await self.inventory.generate_seats(trip.id, layout)
            trip = await self._load_trip(trip.id)
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        logger.info(f"Created trip {trip.id} departing {departure_time} at {price} with {len(trip.seats)} seats")
        return trip

    async def get_trip(self, trip_id: UUID) -> Trip:
        return await self._load_trip(trip_id)

    async def list_seats(self, trip_id: UUID) -> List[Seat]:
        """
        Seats of a trip in floor, row, column order.

        Raises:
            TripNotFoundError: When the trip does not exist
        """
        exists = (await self.session.execute(select(Trip.id).where(Trip.id == trip_id))).scalar_one_or_none()
        if exists is None:
            raise TripNotFoundError(str(trip_id))

        result = await self.session.execute(
            select(Seat)
            .where(Seat.trip_id == trip_id)
            .order_by(func.coalesce(Seat.floor, 0), Seat.row, Seat.column)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def delete_trip(self, trip_id: UUID) -> None:
        """
        Delete a trip that has no held or sold seats.

        Its seats are released and detached rather than deleted, so tickets
        that reference them stay intact.

        Raises:
            TripNotFoundError: When the trip does not exist
            TripHasActiveBookingsError: While any seat is RESERVED or BOOKED
        """
        try:
            trip = (await self.session.execute(
                select(Trip).where(Trip.id == trip_id).with_for_update()
            )).scalar_one_or_none()
            if trip is None:
                raise TripNotFoundError(str(trip_id))

            active = (await self.session.execute(
                select(func.count(Seat.id)).where(Seat.trip_id == trip_id, Seat.status.in_(OWNED_STATUSES))
            )).scalar_one()
            if active:
                raise TripHasActiveBookingsError(str(trip_id), active)

            detached = (await self.session.execute(
                update(Seat)
                .where(Seat.trip_id == trip_id)
                .values(trip_id=None, status=SeatStatus.AVAILABLE, reserved_by=None, reserved_until=None)
                .execution_options(synchronize_session=False)
            )).rowcount

            await self.session.execute(
                delete(Trip).where(Trip.id == trip_id).execution_options(synchronize_session=False)
            )
            self.session.expunge(trip)
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        logger.info(f"Deleted trip {trip_id}; {detached} seats detached")

    async def _load_trip(self, trip_id: UUID) -> Trip:
        trip = (await self.session.execute(
            select(Trip)
            .options(selectinload(Trip.seats))
            .where(Trip.id == trip_id)
            .execution_options(populate_existing=True)
        )).scalar_one_or_none()
        if trip is None:
            raise TripNotFoundError(str(trip_id))
        return trip
