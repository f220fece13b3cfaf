"""
FastAPI dependencies wiring services to the request's database session.
"""

from datetime import timedelta

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import Settings, get_settings
from ..database import get_db
from ..services.check_in_service import CheckInService
from ..services.gateways import GatewayRegistry, get_gateway_registry
from ..services.refund_service import RefundPolicy, RefundService
from ..services.settlement_service import SettlementService
from ..services.trip_service import TripService


async def get_settlement_service(
    db: AsyncSession = Depends(get_db),
    gateways: GatewayRegistry = Depends(get_gateway_registry),
    settings: Settings = Depends(get_settings)
) -> SettlementService:
    """Settlement service configured from settings."""
    return SettlementService(
        db,
        gateways,
        reservation_window=timedelta(minutes=settings.reservation_window_minutes),
        max_seats_per_order=settings.max_seats_per_order,
        gateway_timeout=settings.gateway_timeout_seconds,
        gateway_failure_threshold=settings.gateway_failure_threshold,
        gateway_recovery_timeout=settings.gateway_recovery_timeout,
    )


async def get_refund_service(
    db: AsyncSession = Depends(get_db),
    gateways: GatewayRegistry = Depends(get_gateway_registry),
    settings: Settings = Depends(get_settings)
) -> RefundService:
    """Refund service configured from settings."""
    return RefundService(
        db,
        gateways,
        policy=RefundPolicy(fee_percent=settings.refund_fee_percent),
        gateway_timeout=settings.gateway_timeout_seconds,
        gateway_failure_threshold=settings.gateway_failure_threshold,
        gateway_recovery_timeout=settings.gateway_recovery_timeout,
    )


async def get_check_in_service(
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings)
) -> CheckInService:
    return CheckInService(db, secret=settings.check_in_secret)


async def get_trip_service(db: AsyncSession = Depends(get_db)) -> TripService:
    return TripService(db)
