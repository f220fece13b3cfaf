"""
Database models for the Bus Booking Engine.
"""

from .base import Base
from .trip import Trip, TripStatus
from .seat import Seat, SeatStatus
from .order import Order, OrderStatus
from .ticket import Ticket, TicketStatus
from .payment import Payment, PaymentStatus
from .coupon import Coupon, CouponType, CouponUsage
from .order_history import OrderHistory, OrderAction

__all__ = [
    "Base",
    "Trip",
    "TripStatus",
    "Seat",
    "SeatStatus",
    "Order",
    "OrderStatus",
    "Ticket",
    "TicketStatus",
    "Payment",
    "PaymentStatus",
    "Coupon",
    "CouponType",
    "CouponUsage",
    "OrderHistory",
    "OrderAction",
]
