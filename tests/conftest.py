"""Pytest configuration and shared fixtures."""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional
from uuid import UUID

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bus_booking_engine.database import create_database_engine, create_session_factory
from bus_booking_engine.models import Base, Coupon, CouponType, PaymentStatus, Trip, TripStatus
from bus_booking_engine.services.gateways import (
    CallbackVerification,
    CashGateway,
    GatewayRegistry,
    PaymentInitiationRequest,
    PaymentInitiationResult,
    RefundRequest,
    RefundResult,
)
from bus_booking_engine.services.pricing_service import Purchaser
from bus_booking_engine.services.seat_inventory import SeatLayout
from bus_booking_engine.services.trip_service import TripService
from bus_booking_engine.utils.circuit_breaker import reset_circuit_breakers
from bus_booking_engine.utils.exceptions import CallbackVerificationError, GatewayError

TRIP_PRICE = Decimal("150000")
CHECK_IN_SECRET = "test-check-in-secret"


@pytest_asyncio.fixture
async def engine(tmp_path):
    """File-backed SQLite engine whose transactions take the write lock up front."""
    engine = create_database_engine(f"sqlite+aiosqlite:///{tmp_path / 'bus_booking_test.db'}")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest.fixture(autouse=True)
def clear_circuit_breakers():
    reset_circuit_breakers()
    yield
    reset_circuit_breakers()


@dataclass
class FakeGateway:
    """
    Online gateway double.

    Callbacks are plain dicts ``{"ref", "status", "amount", "txn", "signature"}``
    and verify only when ``signature == "valid"``.
    """

    code: str = "fakepay"
    settles_immediately: bool = False
    fail_initiate: bool = False
    refund_success: bool = True
    fail_refund: bool = False
    initiated: List[PaymentInitiationRequest] = field(default_factory=list)
    refunds: List[RefundRequest] = field(default_factory=list)

    async def initiate(self, request: PaymentInitiationRequest) -> PaymentInitiationResult:
        if self.fail_initiate:
            raise GatewayError(self.code, "gateway refused the payment")
        self.initiated.append(request)
        return PaymentInitiationResult(
            payment_url=f"https://pay.example.test/{request.merchant_order_ref}",
            gateway_reference=request.merchant_order_ref,
        )

    async def verify(self, payload: Mapping[str, Any]) -> CallbackVerification:
        if payload.get("signature") != "valid":
            raise CallbackVerificationError(self.code)
        return CallbackVerification(
            merchant_order_ref=payload["ref"],
            status=PaymentStatus[payload.get("status", "COMPLETED")],
            transaction_no=payload.get("txn", "TXN-1"),
            amount=Decimal(str(payload["amount"])) if payload.get("amount") is not None else None,
            raw=dict(payload),
        )

    async def refund(self, request: RefundRequest) -> RefundResult:
        if self.fail_refund:
            raise GatewayError(self.code, "refund endpoint down")
        self.refunds.append(request)
        return RefundResult(success=self.refund_success, refund_reference="RF-1", message="ok")


def callback_payload(ref: str, status: str = "COMPLETED", amount: Optional[Decimal] = None, signature: str = "valid") -> Dict[str, Any]:
    payload: Dict[str, Any] = {"ref": ref, "status": status, "signature": signature, "txn": "TXN-1"}
    if amount is not None:
        payload["amount"] = str(amount)
    return payload


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def gateways(fake_gateway) -> GatewayRegistry:
    registry = GatewayRegistry()
    registry.register(CashGateway())
    registry.register(fake_gateway)
    return registry


@pytest.fixture
def guest() -> Purchaser:
    return Purchaser(guest_email="rider@example.com", guest_name="Rider", guest_phone="0900000000")


@dataclass
class SeededTrip:
    trip_id: UUID
    seat_ids: List[UUID]
    labels: Dict[UUID, str]


async def create_trip(
    session_factory,
    total_seats: int = 8,
    total_columns: int = 4,
    route_price: Decimal = TRIP_PRICE,
    vehicle_type_price: Decimal = Decimal("0"),
) -> SeededTrip:
    async with session_factory() as session:
        trip = await TripService(session).create_trip(
            departure_time=datetime.now(timezone.utc) + timedelta(days=1),
            route_price=route_price,
            vehicle_type_price=vehicle_type_price,
            layout=SeatLayout(total_seats=total_seats, total_floors=1, total_columns=total_columns),
        )
        seats = sorted(trip.seats, key=lambda s: (s.row, s.column))
        return SeededTrip(
            trip_id=trip.id,
            seat_ids=[seat.id for seat in seats],
            labels={seat.id: seat.number for seat in seats},
        )


@pytest_asyncio.fixture
async def trip(session_factory) -> SeededTrip:
    return await create_trip(session_factory)


async def create_coupon(session_factory, code: str = "SAVE10", **overrides) -> UUID:
    values = {
        "code": code,
        "type": CouponType.PERCENTAGE,
        "value": Decimal("10"),
        "max_usage": None,
        "current_usage_count": 0,
        "is_active": True,
    }
    values.update(overrides)
    async with session_factory() as session:
        coupon = Coupon(**values)
        session.add(coupon)
        await session.commit()
        return coupon.id


async def complete_trip(session_factory, trip_id: UUID) -> None:
    async with session_factory() as session:
        (await session.get(Trip, trip_id)).status = TripStatus.COMPLETED
        await session.commit()
