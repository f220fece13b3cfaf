"""
Seat inventory: seat map generation and conditional seat status transitions.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional, Sequence
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from ..models.seat import Seat, SeatStatus, OWNED_STATUSES
from ..utils.exceptions import InvalidLayoutError, SeatConflictError

logger = logging.getLogger(__name__)

DEFAULT_TOTAL_FLOORS = 1
DEFAULT_TOTAL_COLUMNS = 4


@dataclass
class SeatLayout:
    """Vehicle type layout used to materialize a trip's seats."""

    total_seats: Optional[int] = None
    total_floors: Optional[int] = None
    total_columns: Optional[int] = None
    rows_per_floor: Optional[int] = None
    # seats_per_floor[floor][row][column] is truthy where a seat exists
    seats_per_floor: Optional[Sequence[Sequence[Sequence[bool]]]] = None


def row_letter(row_index: int) -> str:
    """Spreadsheet-style row label: 0 -> A, 25 -> Z, 26 -> AA."""
    letters = ""
    n = row_index + 1
    while n > 0:
        n, remainder = divmod(n - 1, 26)
        letters = chr(ord("A") + remainder) + letters
    return letters


def seat_label(row_index: int, column_index: int, floor: Optional[int] = None) -> str:
    """Label a seat as ``{row-letter}{column}``, prefixed ``F{floor}-`` on multi-floor vehicles."""
    label = f"{row_letter(row_index)}{column_index + 1}"
    if floor is not None:
        return f"F{floor}-{label}"
    return label


class SeatInventory:
    """Owns the seat rows of trips and every change to their status."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def generate_seats(self, trip_id: UUID, layout: SeatLayout) -> List[Seat]:
        """
        Create the AVAILABLE seats of a trip from its vehicle layout.

        Raises:
            InvalidLayoutError: When total_seats is missing or not positive
        """
        if not layout.total_seats or layout.total_seats <= 0:
            raise InvalidLayoutError(
                "Vehicle layout must define a positive total_seats",
                details={"total_seats": layout.total_seats}
            )

        if layout.seats_per_floor:
            seats = self._seats_from_matrix(trip_id, layout)
        else:
            seats = self._seats_from_grid(trip_id, layout)

        self.session.add_all(seats)
        await self.session.flush()

        logger.info(f"Generated {len(seats)} seats for trip {trip_id}")
        return seats

    def _seats_from_matrix(self, trip_id: UUID, layout: SeatLayout) -> List[Seat]:
        multi_floor = len(layout.seats_per_floor) > 1 or (layout.total_floors or 1) > 1
        seats: List[Seat] = []

        for floor_index, floor_rows in enumerate(layout.seats_per_floor):
            if layout.rows_per_floor and len(floor_rows) != layout.rows_per_floor:
                logger.warning(
                    f"Trip {trip_id}: floor {floor_index + 1} has {len(floor_rows)} rows, "
                    f"layout declares {layout.rows_per_floor}"
                )

            floor = floor_index + 1 if multi_floor else None
            for row_index, row_cells in enumerate(floor_rows):
                for column_index, present in enumerate(row_cells):
                    if not present:
                        continue
                    seats.append(Seat(
                        trip_id=trip_id,
                        number=seat_label(row_index, column_index, floor),
                        row=row_index + 1,
                        column=column_index + 1,
                        floor=floor,
                        status=SeatStatus.AVAILABLE,
                    ))

        if len(seats) != layout.total_seats:
            logger.warning(
                f"Trip {trip_id}: seat matrix yields {len(seats)} seats, "
                f"layout declares {layout.total_seats}"
            )
        return seats

    def _seats_from_grid(self, trip_id: UUID, layout: SeatLayout) -> List[Seat]:
        total_seats = layout.total_seats
        total_floors = layout.total_floors or DEFAULT_TOTAL_FLOORS
        total_columns = layout.total_columns or DEFAULT_TOTAL_COLUMNS
        multi_floor = total_floors > 1

        seats_per_floor = math.ceil(total_seats / total_floors)
        seats: List[Seat] = []

        for floor_number in range(1, total_floors + 1):
            if floor_number < total_floors:
                seats_on_floor = seats_per_floor
            else:
                # Remainder lands on the last floor
                seats_on_floor = total_seats - seats_per_floor * (total_floors - 1)
            if seats_on_floor <= 0:
                continue

            rows = layout.rows_per_floor or math.ceil(seats_on_floor / total_columns)
            columns = math.ceil(seats_on_floor / rows)
            floor = floor_number if multi_floor else None

            placed = 0
            for row_index in range(rows):
                for column_index in range(columns):
                    if placed >= seats_on_floor:
                        break
                    seats.append(Seat(
                        trip_id=trip_id,
                        number=seat_label(row_index, column_index, floor),
                        row=row_index + 1,
                        column=column_index + 1,
                        floor=floor,
                        status=SeatStatus.AVAILABLE,
                    ))
                    placed += 1

        return seats

    async def transition(
        self,
        seat_id: UUID,
        from_status: SeatStatus,
        to_status: SeatStatus,
        owner_order_id: Optional[UUID] = None,
        reserved_until: Optional[datetime] = None,
    ) -> None:
        """
        Move one seat between statuses only if it is still in ``from_status``.

        Leaving RESERVED/BOOKED also requires the seat to be owned by
        ``owner_order_id`` when one is given. Entering RESERVED/BOOKED sets the
        owner; any other target clears owner and expiry.

        Raises:
            SeatConflictError: When no row matched the guard
        """
        conditions = [Seat.id == seat_id, Seat.status == from_status]
        if from_status in OWNED_STATUSES and owner_order_id is not None:
            conditions.append(Seat.reserved_by == owner_order_id)

        if to_status in OWNED_STATUSES:
            if owner_order_id is None:
                raise ValueError(f"Transition to {to_status.value} requires an owning order")
            values = {
                "status": to_status,
                "reserved_by": owner_order_id,
                "reserved_until": reserved_until if to_status == SeatStatus.RESERVED else None,
            }
        else:
            values = {"status": to_status, "reserved_by": None, "reserved_until": None}

        result = await self.session.execute(
            update(Seat)
            .where(*conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

        if result.rowcount == 0:
            raise SeatConflictError(str(seat_id), from_status.name)

    async def release(
        self,
        seat_ids: Iterable[UUID],
        owner_order_id: Optional[UUID] = None,
        expected_status: Optional[SeatStatus] = None,
    ) -> int:
        """
        Force seats back to AVAILABLE and clear owner and expiry.

        Optional guards restrict the release to seats still owned by
        ``owner_order_id`` and/or still in ``expected_status``.

        Returns:
            Number of seats released
        """
        seat_ids = list(seat_ids)
        if not seat_ids:
            return 0

        conditions = [Seat.id.in_(seat_ids)]
        if owner_order_id is not None:
            conditions.append(Seat.reserved_by == owner_order_id)
        if expected_status is not None:
            conditions.append(Seat.status == expected_status)

        result = await self.session.execute(
            update(Seat)
            .where(*conditions)
            .values(status=SeatStatus.AVAILABLE, reserved_by=None, reserved_until=None)
            .execution_options(synchronize_session=False)
        )

        logger.debug(f"Released {result.rowcount} of {len(seat_ids)} seats")
        return result.rowcount

    async def mark_booked(self, order_id: UUID) -> int:
        """Promote every seat held by an order from RESERVED to BOOKED."""
        result = await self.session.execute(
            update(Seat)
            .where(Seat.reserved_by == order_id, Seat.status == SeatStatus.RESERVED)
            .values(status=SeatStatus.BOOKED, reserved_until=None)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount
