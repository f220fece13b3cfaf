"""
FastAPI routes for trip provisioning and seat maps.
"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, status

from ..models.seat import SeatStatus
from ..schemas.common import ErrorResponse, SuccessResponse
from ..schemas.trip import SeatMapResponse, SeatResponse, TripCreateRequest, TripResponse
from ..services.seat_inventory import SeatLayout
from ..services.trip_service import TripService
from ..utils.dependencies import get_trip_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/trips", tags=["trips"])


@router.post(
    "",
    response_model=TripResponse,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse, "description": "Invalid prices or layout"}},
)
async def create_trip(
    trip_data: TripCreateRequest,
    trip_service: TripService = Depends(get_trip_service)
):
    """Create a scheduled trip and generate its seats from the vehicle layout."""
    layout = SeatLayout(**trip_data.layout.model_dump())
    trip = await trip_service.create_trip(
        departure_time=trip_data.departure_time,
        route_price=trip_data.route_price,
        vehicle_type_price=trip_data.vehicle_type_price,
        layout=layout,
        route_id=trip_data.route_id,
        vehicle_id=trip_data.vehicle_id,
    )

    response = TripResponse.model_validate(trip)
    response.seat_count = len(trip.seats)
    return response


@router.get(
    "/{trip_id}/seats",
    response_model=SeatMapResponse,
    responses={404: {"model": ErrorResponse, "description": "Trip not found"}},
)
async def list_seats(
    trip_id: UUID,
    trip_service: TripService = Depends(get_trip_service)
):
    """Get the seat map of a trip."""
    seats = await trip_service.list_seats(trip_id)

    def count(seat_status: SeatStatus) -> int:
        return sum(1 for seat in seats if seat.status == seat_status)

    return SeatMapResponse(
        trip_id=trip_id,
        seats=[SeatResponse.model_validate(seat) for seat in seats],
        total_seats=len(seats),
        available_seats=count(SeatStatus.AVAILABLE),
        reserved_seats=count(SeatStatus.RESERVED),
        booked_seats=count(SeatStatus.BOOKED),
    )


@router.delete(
    "/{trip_id}",
    response_model=SuccessResponse,
    responses={
        404: {"model": ErrorResponse, "description": "Trip not found"},
        409: {"model": ErrorResponse, "description": "Trip still has held or sold seats"},
    },
)
async def delete_trip(
    trip_id: UUID,
    trip_service: TripService = Depends(get_trip_service)
):
    """Delete a trip with no active bookings; its seats are detached, not deleted."""
    await trip_service.delete_trip(trip_id)
    return SuccessResponse(message="Trip deleted successfully", data={"trip_id": str(trip_id)})
