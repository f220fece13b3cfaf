"""
Tests for the HTTP API.
"""

import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import httpx
import pytest
import pytest_asyncio

from bus_booking_engine.config import Settings, get_settings
from bus_booking_engine.database import get_db
from bus_booking_engine.main import app
from bus_booking_engine.services.check_in_service import CheckInService
from bus_booking_engine.services.gateways import get_gateway_registry

from .conftest import CHECK_IN_SECRET, complete_trip


@pytest_asyncio.fixture
async def client(session_factory, gateways):
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_gateway_registry] = lambda: gateways
    app.dependency_overrides[get_settings] = lambda: Settings(check_in_secret=CHECK_IN_SECRET)

    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def api_trip(client):
    response = await client.post("/api/v1/trips", json={
        "departure_time": (datetime.now(timezone.utc) + timedelta(days=2)).isoformat(),
        "route_price": "150000",
        "layout": {"total_seats": 4, "total_columns": 2},
    })
    assert response.status_code == 201
    trip = response.json()

    seat_map = (await client.get(f"/api/v1/trips/{trip['id']}/seats")).json()
    return {"id": trip["id"], "seats": {seat["number"]: seat["id"] for seat in seat_map["seats"]}}


def _order_body(seat_ids, method="cash", **overrides):
    body = {
        "seat_ids": seat_ids,
        "payment_method_code": method,
        "guest_email": "rider@example.com",
        "guest_name": "Rider",
        "guest_phone": "0900000000",
    }
    body.update(overrides)
    return body


class TestHealth:
    async def test_health(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert "X-Request-ID" in response.headers

    async def test_request_id_is_echoed(self, client):
        response = await client.get("/health", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"


class TestTripEndpoints:
    """Test trip provisioning over HTTP."""

    async def test_seat_map(self, client, api_trip):
        response = await client.get(f"/api/v1/trips/{api_trip['id']}/seats")

        body = response.json()
        assert response.status_code == 200
        assert [seat["number"] for seat in body["seats"]] == ["A1", "A2", "B1", "B2"]
        assert body["total_seats"] == 4
        assert body["available_seats"] == 4

    async def test_invalid_layout(self, client):
        response = await client.post("/api/v1/trips", json={
            "departure_time": datetime.now(timezone.utc).isoformat(),
            "route_price": "150000",
            "layout": {"total_seats": 0},
        })

        assert response.status_code == 400
        assert response.json()["error"]["error_code"] == "INVALID_LAYOUT"

    async def test_unknown_trip(self, client):
        response = await client.get(f"/api/v1/trips/{uuid.uuid4()}/seats")
        assert response.status_code == 404

    async def test_delete_trip_with_sold_seats(self, client, api_trip):
        await client.post("/api/v1/orders", json=_order_body([api_trip["seats"]["A1"]]))

        response = await client.delete(f"/api/v1/trips/{api_trip['id']}")

        assert response.status_code == 409
        assert response.json()["error"]["error_code"] == "TRIP_HAS_ACTIVE_BOOKINGS"

    async def test_delete_empty_trip(self, client, api_trip):
        response = await client.delete(f"/api/v1/trips/{api_trip['id']}")

        assert response.status_code == 200
        assert response.json()["data"] == {"trip_id": api_trip["id"]}


class TestOrderEndpoints:
    """Test order creation, lookup, cancellation and refunds over HTTP."""

    async def test_cash_order(self, client, api_trip):
        response = await client.post("/api/v1/orders", json=_order_body([api_trip["seats"]["A1"], api_trip["seats"]["A2"]]))

        assert response.status_code == 201
        order = response.json()["order"]
        assert order["status"] == "paid"
        assert Decimal(order["total_final_price"]) == Decimal("300000")
        assert sorted(ticket["seat_number"] for ticket in order["tickets"]) == ["A1", "A2"]

        fetched = await client.get(f"/api/v1/orders/{order['id']}")
        assert fetched.status_code == 200
        assert fetched.json()["order"]["id"] == order["id"]

    async def test_taken_seat_conflicts(self, client, api_trip):
        await client.post("/api/v1/orders", json=_order_body([api_trip["seats"]["A1"]]))

        response = await client.post("/api/v1/orders", json=_order_body([api_trip["seats"]["A1"], api_trip["seats"]["B1"]]))

        assert response.status_code == 409
        error = response.json()["error"]
        assert error["error_code"] == "SEAT_UNAVAILABLE"
        assert error["details"]["labels"] == ["A1"]

        seat_map = (await client.get(f"/api/v1/trips/{api_trip['id']}/seats")).json()
        assert seat_map["available_seats"] == 3

    async def test_guest_with_only_email(self, client, api_trip):
        response = await client.post(
            "/api/v1/orders",
            json=_order_body([api_trip["seats"]["A1"]], guest_name=None, guest_phone=None),
        )

        assert response.status_code == 201
        order = response.json()["order"]
        assert order["guest_email"] == "rider@example.com"
        assert order["guest_name"] is None

    async def test_guest_without_email(self, client, api_trip):
        response = await client.post("/api/v1/orders", json=_order_body([api_trip["seats"]["A1"]], guest_email=None))

        assert response.status_code == 400
        assert "guest_email" in response.json()["error"]["details"]["field_errors"]

    async def test_user_and_guest_together(self, client, api_trip):
        response = await client.post(
            "/api/v1/orders",
            json=_order_body([api_trip["seats"]["A1"]], user_id=str(uuid.uuid4())),
        )

        assert response.status_code == 400
        field_errors = response.json()["error"]["details"]["field_errors"]
        assert set(field_errors) == {"guest_email", "guest_name", "guest_phone"}

        seat_map = (await client.get(f"/api/v1/trips/{api_trip['id']}/seats")).json()
        assert seat_map["available_seats"] == 4

    async def test_unknown_order(self, client):
        response = await client.get(f"/api/v1/orders/{uuid.uuid4()}")

        assert response.status_code == 404
        assert response.json()["error"]["error_code"] == "NOT_FOUND"

    async def test_online_order_and_cancel(self, client, api_trip):
        created = await client.post("/api/v1/orders", json=_order_body([api_trip["seats"]["B2"]], method="fakepay"))

        assert created.status_code == 201
        body = created.json()
        assert body["payment_url"].startswith("https://pay.example.test/")
        assert body["order"]["status"] == "pending"
        assert body["order"]["payment"]["status"] == "pending"

        cancelled = await client.post(f"/api/v1/orders/{body['order']['id']}/cancel", json={"reason": "changed plans"})

        assert cancelled.status_code == 200
        assert cancelled.json()["order"]["status"] == "cancelled"

        again = await client.post(f"/api/v1/orders/{body['order']['id']}/cancel")
        assert again.status_code == 409

    async def test_refund(self, client, api_trip):
        created = (await client.post("/api/v1/orders", json=_order_body([api_trip["seats"]["A1"], api_trip["seats"]["A2"]]))).json()
        ticket_id = created["order"]["tickets"][0]["id"]

        response = await client.post("/api/v1/orders/refund", json={
            "order_id": created["order"]["id"],
            "ticket_ids": [ticket_id],
            "refund_reason": "plans changed",
        })

        assert response.status_code == 200
        order = response.json()["order"]
        assert order["status"] == "paid"
        assert Decimal(order["total_final_price"]) == Decimal("150000")
        statuses = {ticket["id"]: ticket["status"] for ticket in order["tickets"]}
        assert statuses[ticket_id] == "refunded"

        repeat = await client.post("/api/v1/orders/refund", json={
            "order_id": created["order"]["id"],
            "ticket_ids": [ticket_id],
        })
        assert repeat.status_code == 409
        assert repeat.json()["error"]["error_code"] == "REFUND_INELIGIBLE"

    async def test_cancel_tickets_of_pending_order(self, client, api_trip):
        created = (await client.post(
            "/api/v1/orders",
            json=_order_body([api_trip["seats"]["A1"], api_trip["seats"]["A2"]], method="fakepay"),
        )).json()
        ticket_id = created["order"]["tickets"][0]["id"]

        response = await client.post("/api/v1/orders/cancel-tickets", json={
            "order_id": created["order"]["id"],
            "ticket_ids": [ticket_id],
            "reason": "one rider less",
        })

        assert response.status_code == 200
        order = response.json()["order"]
        assert order["status"] == "pending"
        statuses = {ticket["id"]: ticket["status"] for ticket in order["tickets"]}
        assert statuses[ticket_id] == "cancelled"
        seat_map = (await client.get(f"/api/v1/trips/{api_trip['id']}/seats")).json()
        assert seat_map["available_seats"] == 3

    async def test_cancel_tickets_of_paid_order_refunds(self, client, api_trip):
        created = (await client.post("/api/v1/orders", json=_order_body([api_trip["seats"]["B1"]]))).json()

        response = await client.post("/api/v1/orders/cancel-tickets", json={
            "order_id": created["order"]["id"],
            "ticket_ids": [created["order"]["tickets"][0]["id"]],
        })

        assert response.status_code == 200
        assert response.json()["order"]["status"] == "refunded"

    async def test_cancel_tickets_of_completed_trip(self, client, api_trip, session_factory):
        created = (await client.post("/api/v1/orders", json=_order_body([api_trip["seats"]["B1"]]))).json()
        await complete_trip(session_factory, uuid.UUID(api_trip["id"]))

        body = {"order_id": created["order"]["id"], "ticket_ids": [created["order"]["tickets"][0]["id"]]}
        cancelled = await client.post("/api/v1/orders/cancel-tickets", json=body)
        refunded = await client.post("/api/v1/orders/refund", json=body)

        assert cancelled.status_code == 409
        assert cancelled.json()["error"]["error_code"] == "TRIP_COMPLETED"
        assert refunded.status_code == 409
        assert refunded.json()["error"]["error_code"] == "TRIP_COMPLETED"

    async def test_user_orders(self, client, api_trip):
        user_id = str(uuid.uuid4())
        created = (await client.post("/api/v1/orders", json={
            "seat_ids": [api_trip["seats"]["A1"]],
            "payment_method_code": "cash",
            "user_id": user_id,
        })).json()
        await client.post("/api/v1/orders", json=_order_body([api_trip["seats"]["A2"]]))

        response = await client.get(f"/api/v1/orders/users/{user_id}")

        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 1
        assert body["orders"][0]["id"] == created["order"]["id"]

        pending_only = await client.get(f"/api/v1/orders/users/{user_id}", params={"status": "pending"})
        assert pending_only.json()["orders"] == []

    async def test_guest_orders(self, client, api_trip):
        created = (await client.post("/api/v1/orders", json=_order_body([api_trip["seats"]["A1"]]))).json()

        by_email = await client.get("/api/v1/orders/guest", params={"email": "rider@example.com"})
        by_phone = await client.get("/api/v1/orders/guest", params={"phone": "0900000000"})

        assert by_email.status_code == 200
        assert [order["id"] for order in by_email.json()["orders"]] == [created["order"]["id"]]
        assert [order["id"] for order in by_phone.json()["orders"]] == [created["order"]["id"]]

    async def test_guest_orders_need_email_or_phone(self, client):
        response = await client.get("/api/v1/orders/guest")

        assert response.status_code == 400
        assert response.json()["error"]["error_code"] == "VALIDATION_ERROR"


class TestPaymentCallbacks:
    """Test gateway callbacks over HTTP."""

    async def _online_order(self, client, api_trip):
        created = (await client.post("/api/v1/orders", json=_order_body([api_trip["seats"]["A1"]], method="fakepay"))).json()
        return created["order"]

    async def test_json_callback_pays_order(self, client, api_trip):
        order = await self._online_order(client, api_trip)
        payload = {"ref": order["payment"]["merchant_order_ref"], "status": "COMPLETED", "signature": "valid"}

        response = await client.post("/api/v1/payments/fakepay/callback", json=payload)

        assert response.status_code == 200
        assert response.json()["payment_status"] == "completed"
        assert response.json()["order_status"] == "paid"
        assert response.json()["replayed"] is False

        replay = await client.post("/api/v1/payments/fakepay/callback", json=payload)
        assert replay.status_code == 200
        assert replay.json()["replayed"] is True

    async def test_query_string_callback(self, client, api_trip):
        order = await self._online_order(client, api_trip)

        response = await client.get("/api/v1/payments/fakepay/callback", params={
            "ref": order["payment"]["merchant_order_ref"],
            "status": "FAILED",
            "signature": "valid",
        })

        assert response.status_code == 200
        assert response.json()["order_status"] == "cancelled"

    async def test_form_callback(self, client, api_trip):
        order = await self._online_order(client, api_trip)

        response = await client.post("/api/v1/payments/fakepay/callback", data={
            "ref": order["payment"]["merchant_order_ref"],
            "status": "COMPLETED",
            "signature": "valid",
        })

        assert response.status_code == 200
        assert response.json()["order_status"] == "paid"

    async def test_form_callback_with_invalid_utf8(self, client):
        response = await client.post(
            "/api/v1/payments/fakepay/callback",
            content=b"ref=ORD1&status=\xff\xfe",
            headers={"content-type": "application/x-www-form-urlencoded"},
        )

        assert response.status_code == 400
        assert response.json()["error"]["error_code"] == "VALIDATION_ERROR"

    async def test_forged_callback(self, client, api_trip):
        order = await self._online_order(client, api_trip)

        response = await client.post("/api/v1/payments/fakepay/callback", json={
            "ref": order["payment"]["merchant_order_ref"],
            "status": "COMPLETED",
            "signature": "forged",
        })

        assert response.status_code == 400
        assert response.json()["error"]["error_code"] == "CALLBACK_VERIFICATION_FAILED"


class TestCheckInEndpoint:
    """Test check-in over HTTP."""

    async def test_check_in(self, client, api_trip):
        order = (await client.post("/api/v1/orders", json=_order_body([api_trip["seats"]["A1"]]))).json()["order"]
        token = CheckInService(None, secret=CHECK_IN_SECRET).issue_token(order["id"])

        response = await client.get(f"/api/v1/check-in/{order['id']}", params={"token": token})

        assert response.status_code == 200
        assert response.json()["order"]["tickets"][0]["status"] == "checked_in"

    async def test_bad_token(self, client, api_trip):
        order = (await client.post("/api/v1/orders", json=_order_body([api_trip["seats"]["A1"]]))).json()["order"]

        response = await client.get(f"/api/v1/check-in/{order['id']}", params={"token": "0" * 64})

        assert response.status_code == 403
        assert response.json()["error"]["error_code"] == "INVALID_TOKEN"

    async def test_missing_token(self, client):
        response = await client.get(f"/api/v1/check-in/{uuid.uuid4()}")
        assert response.status_code == 400
