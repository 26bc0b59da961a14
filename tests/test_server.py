import time

import httpx
import pytest

from tikiti import server
from tikiti.auth import session_cookie
from tikiti.model import payments
from tikiti.model.db import create_schema

from .factories import (
    ADMIN_CALLER, BUYER, SECURITY_CALLER, query_result, stk_callback,
)


class As:
    """Swappable caller behind the current_caller dependency."""
    caller = None

    def __call__(self):
        return self.caller


@pytest.fixture
async def app(tmp_path, gateway):
    app = server.create_app(f"sqlite:///{tmp_path / 'api.db'}",
                            gateway=gateway)
    async with app.state.db.engine.begin() as conn:
        await create_schema(conn)
    yield app
    await app.state.db.dispose()


@pytest.fixture
async def client(app):
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app),
                                 base_url="http://test") as c:
        yield c


@pytest.fixture
def login(app):
    who = As()
    app.dependency_overrides[server.current_caller] = who
    yield who
    app.dependency_overrides.clear()


async def _seed(client, login, quantity=2):
    login.caller = ADMIN_CALLER
    now = time.time()
    r = await client.post("/api/admin/events", json={
        "title": "Nairobi Jazz Night",
        "start_date": now + 3600,
        "end_date": now + 7200,
    })
    assert r.status_code == 200, r.text
    event_id = r.json()["event_id"]
    r = await client.post("/api/admin/categories", json={
        "event_id": event_id,
        "name": "Regular",
        "price": "1000.00",
        "quantity": quantity,
        "available_from": now - 60,
        "available_to": now + 3600,
    })
    assert r.status_code == 200, r.text
    return event_id, r.json()["ticket_category_id"]


async def _order(client, category_id, qty=1):
    return await client.post("/api/orders", json={
        "items": [{"ticket_category_id": category_id, "quantity": qty}],
        "total": str(1000 * qty),
    })


async def test_requires_session(client):
    r = await _order(client, 1)
    assert r.status_code == 401


async def test_unknown_event_is_404(client):
    r = await client.get("/api/events/99/availability")
    assert r.status_code == 404
    assert r.json() == {"detail": "Event not found"}


async def test_sold_out_is_409(client, login):
    event_id, category_id = await _seed(client, login, quantity=2)
    login.caller = BUYER
    assert (await _order(client, category_id, 2)).status_code == 200

    r = await _order(client, category_id)
    assert r.status_code == 409
    assert r.json()["remaining"] == 0

    r = await client.get(f"/api/events/{event_id}/availability")
    assert r.json()["categories"][0]["available"] == 0


async def test_buyer_cannot_use_admin_routes(client, login):
    login.caller = BUYER
    r = await client.post("/api/admin/events", json={
        "title": "x", "start_date": 1, "end_date": 2,
    })
    assert r.status_code == 403
    assert (await client.get("/api/admin/timings")).status_code == 403


async def test_purchase_flow(client, login):
    _, category_id = await _seed(client, login)
    login.caller = BUYER
    order = (await _order(client, category_id)).json()

    r = await client.post(f"/api/orders/{order['order_id']}/pay", json={
        "phone_number": "0712345678", "amount": "1000.00",
    })
    assert r.status_code == 200, r.text
    checkout_id = r.json()["checkout_request_id"]

    r = await client.post("/api/payments/mpesa-callback",
                          json=stk_callback(checkout_id))
    assert r.json() == {"ResultCode": 0,
                        "ResultDesc": "Callback processed successfully"}

    r = await client.get(f"/api/orders/{order['order_id']}")
    body = r.json()
    assert body["status"] == "completed"
    ticket = body["tickets"][0]

    login.caller = SECURITY_CALLER
    r = await client.post("/api/tickets/scan",
                          json={"qr_code": ticket["qr_code"]})
    assert r.json()["valid"] is True
    r = await client.post(f"/api/tickets/{ticket['ticket_id']}/check-in")
    assert r.status_code == 200
    assert r.json()["success"] is True
    r = await client.post(f"/api/tickets/{ticket['ticket_id']}/check-in")
    assert r.status_code == 409
    assert r.json()["checked_in_at"]

    login.caller = ADMIN_CALLER
    timings = (await client.get("/api/admin/timings")).json()
    assert timings["gateway.stkpush"]["n"] == 1
    assert timings["db.settle_payment"]["n"] == 1


async def test_gateway_failure_is_502(client, login, daraja):
    _, category_id = await _seed(client, login)
    login.caller = BUYER
    order = (await _order(client, category_id)).json()
    daraja.push_reply = (503, {"errorMessage": "System busy"})
    r = await client.post(f"/api/orders/{order['order_id']}/pay", json={
        "phone_number": "0712345678", "amount": "1000.00",
    })
    assert r.status_code == 502
    assert "try again" in r.json()["detail"]


async def test_callback_bad_structure(client):
    r = await client.post("/api/payments/mpesa-callback", json={"Body": {}})
    assert r.status_code == 400
    assert r.json()["ResultCode"] == 1
    r = await client.post("/api/payments/mpesa-callback", content=b"{nope",
                          headers={"content-type": "application/json"})
    assert r.status_code == 400


async def test_callback_unknown_checkout_is_acknowledged(client):
    r = await client.post("/api/payments/mpesa-callback",
                          json=stk_callback("ws_CO_missing"))
    assert r.status_code == 200
    assert r.json()["ResultCode"] == 1


async def test_callback_secret_key(client, monkeypatch):
    monkeypatch.setattr(server, "CALLBACK_SECRET_KEY", "s3cret")
    body = stk_callback("ws_CO_missing")
    r = await client.post("/api/payments/mpesa-callback", json=body)
    assert r.status_code == 403
    r = await client.post("/api/payments/mpesa-callback/wrong", json=body)
    assert r.status_code == 403
    r = await client.post("/api/payments/mpesa-callback/s3cret", json=body)
    assert r.status_code == 200


async def test_callback_ip_allowlist_in_production(client, monkeypatch):
    monkeypatch.setattr(server, "APP_ENV", "production")
    body = stk_callback("ws_CO_missing")
    r = await client.post("/api/payments/mpesa-callback", json=body,
                          headers={"x-forwarded-for": "10.1.2.3"})
    assert r.status_code == 403
    assert r.json()["ResultDesc"] == "IP not authorized"
    r = await client.post("/api/payments/mpesa-callback", json=body,
                          headers={"x-forwarded-for":
                                   "196.201.214.200, 10.0.0.1"})
    assert r.status_code == 200


async def test_callback_liveness(client):
    r = await client.get("/api/payments/mpesa-callback")
    assert r.status_code == 200
    assert r.json()["message"] == "M-PESA callback endpoint is active"


async def test_staff_login(client, monkeypatch):
    monkeypatch.setattr(server, "ADMIN_USERNAME", "admin")
    monkeypatch.setattr(server, "ADMIN_PASSWORD", "pw")
    r = await client.post("/admin/login",
                          data={"username": "admin", "password": "nope"})
    assert r.status_code == 401
    assert (await client.get("/api/admin/timings")).status_code == 401

    r = await client.post("/admin/login",
                          data={"username": "admin", "password": "pw"})
    assert r.status_code == 200
    assert r.json() == {"ok": True, "role": "admin"}
    assert (await client.get("/api/admin/timings")).status_code == 200

    await client.post("/admin/logout")
    assert (await client.get("/api/admin/timings")).status_code == 401


async def test_buyer_session_minted_by_identity_service(app, client, login):
    _, category_id = await _seed(client, login)
    app.dependency_overrides.clear()

    cookie = {"cookie": "session=" + session_cookie(BUYER.user_id,
                                                    server.SESSION_SECRET)}
    r = await client.post("/api/orders", headers=cookie, json={
        "items": [{"ticket_category_id": category_id, "quantity": 1}],
        "total": "1000",
    })
    assert r.status_code == 200, r.text
    order_id = r.json()["order_id"]
    r = await client.get(f"/api/orders/{order_id}", headers=cookie)
    assert r.status_code == 200
    r = await client.get("/api/admin/timings", headers=cookie)
    assert r.status_code == 403

    forged = {"cookie": "session=" + session_cookie(BUYER.user_id,
                                                    "not-the-secret")}
    r = await client.get(f"/api/orders/{order_id}", headers=forged)
    assert r.status_code == 401


async def test_expire_orders_reconciles_stale_pushes(client, login, daraja,
                                                     monkeypatch):
    event_id, category_id = await _seed(client, login)
    login.caller = BUYER
    order = (await _order(client, category_id)).json()
    r = await client.post(f"/api/orders/{order['order_id']}/pay", json={
        "phone_number": "0712345678", "amount": "1000.00",
    })
    assert r.status_code == 200, r.text

    assert (await client.post("/api/admin/expire-orders")).status_code == 403

    monkeypatch.setattr(payments, "RECONCILE_AFTER_SECONDS", 0)
    daraja.query_replies = [query_result(1032)]
    login.caller = ADMIN_CALLER
    r = await client.post("/api/admin/expire-orders")
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["expired"] == []
    assert body["reconciled"] == {"settled": ["ws_CO_0001"],
                                  "unresolved": [], "failed_orders": []}

    r = await client.get(f"/api/events/{event_id}/availability")
    assert r.json()["categories"][0]["available"] == 2
