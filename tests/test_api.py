import hashlib
import hmac
import json
from unittest import mock

import httpx
import pytest

from busbooking.db.session import get_session
from busbooking.main import app
from busbooking.modules.payments import router as payments_router
from busbooking.services.auth import create_access_token
from busbooking.services.payment_gateway import PaymentOutcome
from busbooking.services.policy import Role

from conftest import SERVICE_DATE, VENDOR_ID

SANDBOX_SECRET = "sandbox-webhook-secret"


def _auth(caller_id, role):
    return {"Authorization": f"Bearer {create_access_token(caller_id, role)}"}


USER_A = _auth("user-a", Role.USER)
USER_B = _auth("user-b", Role.USER)
VENDOR = _auth(VENDOR_ID, Role.VENDOR)
ADMIN = _auth("admin-1", Role.ADMIN)


@pytest.fixture
async def client(lifecycle, sessions):
    async def _session():
        async with sessions() as session:
            yield session

    app.state.lifecycle = lifecycle
    app.dependency_overrides[get_session] = _session
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def idempotency():
    with mock.patch.object(payments_router, "mark_event_processed", mock.AsyncMock(return_value=True)) as mark, \
            mock.patch.object(payments_router, "clear_event", mock.AsyncMock()) as clear:
        yield mark, clear


def _booking_body(vehicle_id, seat_keys, method="CARD"):
    return {
        "vehicle_id": vehicle_id,
        "service_date": SERVICE_DATE.isoformat(),
        "seat_keys": seat_keys,
        "boarding_point_id": "kampala-park",
        "dropping_point_id": "gulu-stage",
        "payment_method": method,
    }


def _signed(payload):
    body = json.dumps(payload).encode()
    sig = hmac.new(SANDBOX_SECRET.encode(), body, hashlib.sha256).hexdigest()
    return body, {"x-signature": sig, "content-type": "application/json"}


async def test_health(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert "x-trace-id" in resp.headers


async def test_create_requires_token(client, vehicle_id):
    resp = await client.post("/bookings", json=_booking_body(vehicle_id, ["A1"]))
    assert resp.status_code == 401
    resp = await client.post("/bookings", json=_booking_body(vehicle_id, ["A1"]), headers={"Authorization": "Bearer nope"})
    assert resp.status_code == 401


async def test_create_and_read_booking(client, vehicle_id):
    resp = await client.post("/bookings", json=_booking_body(vehicle_id, ["A1", "A2"]), headers=USER_A)
    assert resp.status_code == 201, resp.text
    data = resp.json()
    assert data["booking"]["status"] == "AWAITING_PAYMENT"
    assert data["booking"]["seat_keys"] == ["A1", "A2"]
    assert data["client_secret"]
    booking_id = data["booking"]["id"]

    resp = await client.get(f"/bookings/{booking_id}", headers=USER_A)
    assert resp.status_code == 200
    assert resp.json()["final_amount"] == "1000.00"

    resp = await client.get(f"/bookings/{booking_id}", headers=USER_B)
    assert resp.status_code == 403
    assert resp.json()["error"] == "forbidden"

    resp = await client.get("/bookings", headers=USER_A)
    assert resp.json()["pagination"]["total"] == 1


async def test_conflict_is_reported_with_seats(client, vehicle_id):
    await client.post("/bookings", json=_booking_body(vehicle_id, ["A1"]), headers=USER_A)
    resp = await client.post("/bookings", json=_booking_body(vehicle_id, ["A1", "A2"]), headers=USER_B)
    assert resp.status_code == 409
    assert resp.json() == {
        "error": "seat_unavailable",
        "message": "Seats already taken: A1",
        "details": {"seat_keys": ["A1"]},
    }

    resp = await client.get(f"/bookings/vehicles/{vehicle_id}/unavailable", params={"date": SERVICE_DATE.isoformat()})
    assert resp.json()["seat_keys"] == ["A1"]


async def test_malformed_requests_rejected(client, vehicle_id):
    resp = await client.post("/bookings", json=_booking_body(vehicle_id, ["A1", "A1"]), headers=USER_A)
    assert resp.status_code == 422
    resp = await client.post("/bookings", json=_booking_body(vehicle_id, []), headers=USER_A)
    assert resp.status_code == 422
    resp = await client.post("/bookings", json=_booking_body(vehicle_id, ["Z9"]), headers=USER_A)
    assert resp.status_code == 422
    assert resp.json()["error"] == "validation_error"


async def test_confirm_payment_endpoint(client, sandbox, vehicle_id):
    created = (await client.post("/bookings", json=_booking_body(vehicle_id, ["A3"]), headers=USER_A)).json()["booking"]
    sandbox.settle(created["payment_intent_ref"], PaymentOutcome.SUCCEEDED)

    resp = await client.post(
        f"/bookings/{created['id']}/confirm-payment",
        json={"payment_intent_ref": created["payment_intent_ref"]},
        headers=USER_A,
    )
    assert resp.status_code == 200
    assert resp.json()["status"] == "CONFIRMED"
    assert resp.json()["payment_status"] == "PAID"


async def test_cash_flow_and_cancel(client, vehicle_id):
    created = (await client.post("/bookings", json=_booking_body(vehicle_id, ["U1"], method="CASH"), headers=USER_A)).json()["booking"]
    assert created["status"] == "PENDING"

    resp = await client.post(f"/bookings/{created['id']}/confirm-cash", headers=USER_A)
    assert resp.status_code == 403
    resp = await client.post(f"/bookings/{created['id']}/confirm-cash", headers=VENDOR)
    assert resp.json()["status"] == "CONFIRMED"

    resp = await client.post(
        f"/bookings/{created['id']}/cancel",
        json={"reason": "sick", "cancellation_charge": "100", "refund_amount": "700"},
        headers=USER_A,
    )
    assert resp.status_code == 200
    assert resp.json()["status"] == "CANCELLED"
    assert resp.json()["payment_status"] == "REFUNDED"

    resp = await client.post(f"/bookings/{created['id']}/complete", headers=VENDOR)
    assert resp.status_code == 409
    assert resp.json()["error"] == "invalid_state"


async def test_seat_map_is_public(client, vehicle_id):
    await client.post("/bookings", json=_booking_body(vehicle_id, ["U2"]), headers=USER_A)
    resp = await client.get(f"/bookings/vehicles/{vehicle_id}/seats", params={"date": SERVICE_DATE.isoformat()})
    assert resp.status_code == 200
    seats = {s["seat_key"]: s["available"] for s in resp.json()["seats"]}
    assert seats["U2"] is False
    assert seats["U1"] is True

    resp = await client.get("/bookings/vehicles/missing/seats", params={"date": SERVICE_DATE.isoformat()})
    assert resp.status_code == 404


async def test_webhook_confirms_booking(client, sandbox, vehicle_id, idempotency):
    mark, clear = idempotency
    created = (await client.post("/bookings", json=_booking_body(vehicle_id, ["A4"]), headers=USER_A)).json()["booking"]
    sandbox.settle(created["payment_intent_ref"], PaymentOutcome.SUCCEEDED)

    body, headers = _signed({"id": "evt_1", "data": {"transaction_id": created["payment_intent_ref"], "status": "succeeded"}})
    resp = await client.post("/payments/webhook/sandbox", content=body, headers=headers)
    assert resp.status_code == 200
    assert resp.json() == {"received": True, "booking_id": created["id"]}
    mark.assert_awaited_once_with("sandbox", "evt_1")
    clear.assert_not_awaited()

    booking = (await client.get(f"/bookings/{created['id']}", headers=USER_A)).json()
    assert booking["status"] == "CONFIRMED"


async def test_webhook_replay_is_acknowledged_without_work(client, vehicle_id, idempotency):
    mark, _ = idempotency
    mark.return_value = False
    body, headers = _signed({"id": "evt_1", "data": {"transaction_id": "sbx_whatever"}})
    resp = await client.post("/payments/webhook/sandbox", content=body, headers=headers)
    assert resp.json() == {"received": True, "booking_id": None}


async def test_webhook_rejects_bad_signature_and_missing_id(client, idempotency):
    body, headers = _signed({"id": "evt_1"})
    resp = await client.post("/payments/webhook/sandbox", content=body, headers={"x-signature": "forged"})
    assert resp.status_code == 400

    body, headers = _signed({"data": {"transaction_id": "sbx_1"}})
    resp = await client.post("/payments/webhook/sandbox", content=body, headers=headers)
    assert resp.status_code == 400

    resp = await client.post("/payments/webhook/stripe", content=body, headers=headers)
    assert resp.status_code == 404


async def test_webhook_failure_clears_event_for_retry(client, sandbox, vehicle_id, idempotency):
    _, clear = idempotency
    created = (await client.post("/bookings", json=_booking_body(vehicle_id, ["A5"]), headers=USER_A)).json()["booking"]
    sandbox.unavailable = True

    body, headers = _signed({"id": "evt_2", "data": {"transaction_id": created["payment_intent_ref"]}})
    resp = await client.post("/payments/webhook/sandbox", content=body, headers=headers)
    assert resp.status_code == 502
    clear.assert_awaited_once_with("sandbox", "evt_2")


async def test_admin_registers_inventory(client):
    layout = {
        "layout_name": "1x2 sleeper",
        "seater_price": "450",
        "sleeper_price": "900",
        "seats": [
            {"seat_number": "1", "deck": "LOWER", "category": "SEATER"},
            {"seat_number": "2", "deck": "UPPER", "category": "SLEEPER"},
            {"seat_number": "3", "deck": "UPPER", "category": "SLEEPER", "price": "1200"},
        ],
    }
    resp = await client.post("/admin/layouts", json=layout, headers=USER_A)
    assert resp.status_code == 403
    resp = await client.post("/admin/layouts", json=layout, headers=ADMIN)
    assert resp.status_code == 201, resp.text
    layout_id = resp.json()["layout_id"]
    assert resp.json()["seat_count"] == 3

    resp = await client.post("/admin/layouts", json=layout, headers=ADMIN)
    assert resp.status_code == 409

    vehicle = {"vendor_id": VENDOR_ID, "vehicle_name": "Gulu Express", "vehicle_number": "UBB 777K", "layout_id": layout_id}
    resp = await client.post("/admin/vehicles", json={**vehicle, "vendor_id": "vendor-2"}, headers=VENDOR)
    assert resp.status_code == 403
    resp = await client.post("/admin/vehicles", json=vehicle, headers=VENDOR)
    assert resp.status_code == 201, resp.text
    vehicle_id = resp.json()["vehicle_id"]

    resp = await client.get(f"/bookings/vehicles/{vehicle_id}/seats", params={"date": SERVICE_DATE.isoformat()})
    prices = {s["seat_key"]: s["base_price"] for s in resp.json()["seats"]}
    assert prices == {"LOWER-1": "450.00", "UPPER-2": "900.00", "UPPER-3": "1200.00"}


async def test_admin_delete_and_expire(client, clock, vehicle_id):
    first = (await client.post("/bookings", json=_booking_body(vehicle_id, ["A1"]), headers=USER_A)).json()["booking"]
    second = (await client.post("/bookings", json=_booking_body(vehicle_id, ["A2"]), headers=USER_A)).json()["booking"]

    resp = await client.delete(f"/admin/bookings/{first['id']}", headers=VENDOR)
    assert resp.status_code == 403
    resp = await client.delete(f"/admin/bookings/{first['id']}", headers=ADMIN)
    assert resp.status_code == 204

    clock.advance(minutes=11)
    resp = await client.post("/admin/holds/expire", headers=ADMIN)
    assert resp.json() == {"released_holds": 1, "cancelled_bookings": [second["id"]]}
