"""Booking and settlement engine for bus ticket sales."""

__version__ = "1.0.0"
