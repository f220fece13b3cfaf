"""
Reservation coordinator: all-or-nothing seat holds for a new order.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Sequence
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from ..models.seat import Seat, SeatStatus
from ..models.trip import TripStatus
from .seat_inventory import SeatInventory
from ..utils.clock import Clock, utc_now
from ..utils.exceptions import (
    SeatConflictError,
    SeatNotFoundError,
    SeatUnavailableError,
    ValidationError,
)

logger = logging.getLogger(__name__)


@dataclass
class ReservationHold:
    """Seats held for one order until ``reserved_until``."""

    order_id: UUID
    trip_id: UUID
    seats: List[Seat]
    reserved_until: datetime

    @property
    def seat_ids(self) -> List[UUID]:
        return [seat.id for seat in self.seats]


class ReservationCoordinator:
    """Holds a set of seats for an order, or none of them."""

    def __init__(
        self,
        session: AsyncSession,
        inventory: SeatInventory | None = None,
        reservation_window: timedelta = timedelta(minutes=15),
        max_seats_per_order: int = 10,
        clock: Clock = utc_now,
    ):
        self.session = session
        self.inventory = inventory or SeatInventory(session)
        self.reservation_window = reservation_window
        self.max_seats_per_order = max_seats_per_order
        self.clock = clock

    async def reserve(self, seat_ids: Sequence[UUID], order_id: UUID) -> ReservationHold:
        """
        Move every requested seat from AVAILABLE to RESERVED for ``order_id``.

        Seats are transitioned in id order. When any of them cannot be taken,
        the seats already reserved in this attempt are released again before
        SeatUnavailableError is raised, naming every seat that failed.

        Raises:
            ValidationError: Empty, oversized or duplicate seat sets, or seats from several trips
            SeatNotFoundError: When a seat id is unknown
            SeatUnavailableError: When any seat cannot be held
        """
        seats = await self._load_seats(seat_ids)
        trip = self._single_trip(seats)

        reserved_until = self.clock() + self.reservation_window
        reserved: List[Seat] = []
        conflicts: List[Seat] = []

        for seat in sorted(seats, key=lambda s: str(s.id)):
            try:
                await self.inventory.transition(
                    seat.id,
                    SeatStatus.AVAILABLE,
                    SeatStatus.RESERVED,
                    owner_order_id=order_id,
                    reserved_until=reserved_until,
                )
                reserved.append(seat)
            except SeatConflictError:
                conflicts.append(seat)

        if conflicts:
            await self.release_hold(order_id, [seat.id for seat in reserved])
            logger.info(
                f"Reservation for order {order_id} failed: "
                f"{len(conflicts)} of {len(seats)} seats already taken"
            )
            raise SeatUnavailableError(
                [str(seat.id) for seat in conflicts],
                labels=[seat.number for seat in conflicts],
                reason="already reserved or not sellable",
            )

        logger.info(f"Reserved {len(reserved)} seats on trip {trip} for order {order_id} until {reserved_until}")
        return ReservationHold(
            order_id=order_id,
            trip_id=trip,
            seats=sorted(seats, key=lambda s: (s.floor or 0, s.row, s.column)),
            reserved_until=reserved_until,
        )

    async def release_hold(self, order_id: UUID, seat_ids: Sequence[UUID]) -> int:
        """Release seats this order still holds as RESERVED."""
        return await self.inventory.release(
            seat_ids,
            owner_order_id=order_id,
            expected_status=SeatStatus.RESERVED,
        )

    async def _load_seats(self, seat_ids: Sequence[UUID]) -> List[Seat]:
        if not seat_ids:
            raise ValidationError("At least one seat must be selected", field_errors={"seat_ids": ["empty"]})

        if len(set(seat_ids)) != len(seat_ids):
            duplicates = sorted({str(s) for s in seat_ids if list(seat_ids).count(s) > 1})
            raise ValidationError(
                f"Duplicate seats in request: {', '.join(duplicates)}",
                field_errors={"seat_ids": [f"duplicate {seat_id}" for seat_id in duplicates]}
            )

        if len(seat_ids) > self.max_seats_per_order:
            raise ValidationError(
                f"Cannot reserve more than {self.max_seats_per_order} seats in one order",
                field_errors={"seat_ids": ["too many seats"]}
            )

        result = await self.session.execute(
            select(Seat)
            .options(selectinload(Seat.trip))
            .where(Seat.id.in_(seat_ids))
        )
        seats = list(result.scalars().all())

        missing = set(seat_ids) - {seat.id for seat in seats}
        if missing:
            raise SeatNotFoundError(sorted(str(seat_id) for seat_id in missing))

        return seats

    def _single_trip(self, seats: List[Seat]) -> UUID:
        detached = [seat for seat in seats if seat.trip_id is None]
        if detached:
            raise SeatUnavailableError(
                [str(seat.id) for seat in detached],
                labels=[seat.number for seat in detached],
                reason="seat no longer belongs to a trip",
            )

        trip_ids = {seat.trip_id for seat in seats}
        if len(trip_ids) > 1:
            raise ValidationError(
                "All seats in an order must belong to the same trip",
                field_errors={"seat_ids": [f"trip {trip_id}" for trip_id in sorted(map(str, trip_ids))]}
            )

        trip = seats[0].trip
        if trip.status != TripStatus.SCHEDULED:
            raise SeatUnavailableError(
                [str(seat.id) for seat in seats],
                labels=[seat.number for seat in seats],
                reason=f"trip is {trip.status.value}",
            )
        return trip.id
