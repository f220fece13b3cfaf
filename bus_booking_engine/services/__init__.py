"""Booking and settlement services for the Bus Booking Engine."""

from .seat_inventory import SeatInventory, SeatLayout
from .pricing_service import PricingService, PriceQuote, Purchaser
from .reservation_coordinator import ReservationCoordinator, ReservationHold
from .settlement_service import SettlementService, OrderCreationResult, CallbackOutcome
from .expiry_sweeper import ReservationExpirySweeper, SweepReport
from .refund_service import RefundService, RefundPolicy
from .check_in_service import CheckInService
from .trip_service import TripService

__all__ = [
    "SeatInventory",
    "SeatLayout",
    "PricingService",
    "PriceQuote",
    "Purchaser",
    "ReservationCoordinator",
    "ReservationHold",
    "SettlementService",
    "OrderCreationResult",
    "CallbackOutcome",
    "ReservationExpirySweeper",
    "SweepReport",
    "RefundService",
    "RefundPolicy",
    "CheckInService",
    "TripService",
]
