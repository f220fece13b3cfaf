"""
Pydantic schemas for trip provisioning and seat maps.
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from ..models.seat import SeatStatus
from ..models.trip import TripStatus


class SeatLayoutRequest(BaseModel):
    """Vehicle type layout the seat map is generated from."""

    total_seats: int = Field(..., description="Number of seats to create")
    total_floors: Optional[int] = Field(None, ge=1, description="Floors; defaults to 1")
    total_columns: Optional[int] = Field(None, ge=1, description="Columns per row; defaults to 4")
    rows_per_floor: Optional[int] = Field(None, ge=1, description="Rows expected on each floor")
    seats_per_floor: Optional[List[List[List[bool]]]] = Field(
        None,
        description="Per floor, per row, per column: true where a seat exists"
    )


class TripCreateRequest(BaseModel):
    """Schema for creating a trip with its seats."""

    departure_time: datetime = Field(..., description="Scheduled departure")
    route_price: Decimal = Field(..., ge=0, description="Route base price")
    vehicle_type_price: Decimal = Field(Decimal("0"), ge=0, description="Vehicle type surcharge")
    route_id: Optional[UUID] = Field(None, description="External route reference")
    vehicle_id: Optional[UUID] = Field(None, description="External vehicle reference")
    layout: SeatLayoutRequest


class SeatResponse(BaseModel):
    """Schema for seat responses."""

    id: UUID
    trip_id: Optional[UUID] = None
    number: str
    row: int
    column: int
    floor: Optional[int] = None
    status: SeatStatus
    reserved_until: Optional[datetime] = None

    model_config = {"from_attributes": True}


class TripResponse(BaseModel):
    """Schema for trip responses."""

    id: UUID
    route_id: Optional[UUID] = None
    vehicle_id: Optional[UUID] = None
    departure_time: datetime
    route_price: Decimal
    vehicle_type_price: Decimal
    price: Decimal
    status: TripStatus
    seat_count: int = 0

    model_config = {"from_attributes": True}


class SeatMapResponse(BaseModel):
    """Schema for a trip's seat map."""

    trip_id: UUID
    seats: List[SeatResponse]
    total_seats: int
    available_seats: int
    reserved_seats: int
    booked_seats: int
