"""Shared builders for the test-suite: callers, a fake Daraja, flows."""
from __future__ import annotations
import time
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import httpx

from tikiti.auth import ADMIN, MANAGER, SECURITY, Caller
from tikiti.model import catalog, orders, payments
from tikiti.mpesa import MpesaConfig, parse_callback

BUYER = Caller("user-1")
OTHER_BUYER = Caller("user-2")
ADMIN_CALLER = Caller("staff-1", ADMIN)
MANAGER_CALLER = Caller("staff-2", MANAGER)
SECURITY_CALLER = Caller("gate-1", SECURITY)

PHONE = "0712 345-678"
MSISDN = "254712345678"

DARAJA_CONFIG = MpesaConfig(
    consumer_key="ck",
    consumer_secret="cs",
    shortcode="174379",
    passkey="passkey",
    callback_url="http://test/api/payments/mpesa-callback",
)

STILL_PROCESSING = (500, {
    "requestId": "rq-1",
    "errorCode": "500.001.1001",
    "errorMessage": "The transaction is being processed",
})


def query_result(code: int, desc: str = "") -> Tuple[int, Dict[str, Any]]:
    return 200, {
        "ResponseCode": "0",
        "ResponseDescription": "The service request has been accepted",
        "ResultCode": str(code),
        "ResultDesc": desc or ("The service request is processed "
                               "successfully." if code == 0 else
                               "Request cancelled by user"),
    }


class FakeDaraja:
    """httpx.MockTransport handler speaking the Daraja endpoints we use."""

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.token_calls = 0
        self.push_reply: Optional[Tuple[int, Dict[str, Any]]] = None
        self.query_replies: List[Tuple[int, Dict[str, Any]]] = []
        self.query_error = False
        self._n = 0

    def pushes(self) -> List[httpx.Request]:
        return [r for r in self.requests
                if r.url.path == "/mpesa/stkpush/v1/processrequest"]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/oauth/v1/generate":
            self.token_calls += 1
            return httpx.Response(200, json={
                "access_token": f"tok-{self.token_calls}",
                "expires_in": "3599",
            })
        if path == "/mpesa/stkpush/v1/processrequest":
            if self.push_reply is not None:
                status, body = self.push_reply
                return httpx.Response(status, json=body)
            self._n += 1
            return httpx.Response(200, json={
                "MerchantRequestID": f"29115-{self._n}",
                "CheckoutRequestID": f"ws_CO_{self._n:04d}",
                "ResponseCode": "0",
                "ResponseDescription": "Success. Request accepted for "
                                       "processing",
                "CustomerMessage": "Success. Request accepted for "
                                   "processing",
            })
        if path == "/mpesa/stkpushquery/v1/query":
            if self.query_error:
                raise httpx.ConnectError("connection refused",
                                         request=request)
            status, body = (self.query_replies.pop(0)
                            if self.query_replies else STILL_PROCESSING)
            return httpx.Response(status, json=body)
        return httpx.Response(404, json={"errorMessage": "no such route"})


def stk_callback(checkout_request_id: str, code: int = 0,
                 receipt: str = "QKJ4ABC123") -> Dict[str, Any]:
    cb: Dict[str, Any] = {
        "MerchantRequestID": "29115-1",
        "CheckoutRequestID": checkout_request_id,
        "ResultCode": code,
        "ResultDesc": ("The service request is processed successfully."
                       if code == 0 else "Request cancelled by user"),
    }
    if code == 0:
        cb["CallbackMetadata"] = {"Item": [
            {"Name": "Amount", "Value": 1000.0},
            {"Name": "MpesaReceiptNumber", "Value": receipt},
            {"Name": "TransactionDate", "Value": 20251018143015},
            {"Name": "PhoneNumber", "Value": 254712345678},
        ]}
    return {"Body": {"stkCallback": cb}}


class RecordingSleep:
    def __init__(self) -> None:
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def category_form(event_id: int, **kw) -> catalog.CategoryForm:
    now = time.time()
    fields = dict(
        event_id=event_id,
        name="Regular",
        price="1000.00",
        quantity=10,
        available_from=now - 3600,
        available_to=now + 86400,
    )
    fields.update(kw)
    return catalog.CategoryForm(**fields)


async def seed_event(db, *, ended: bool = False, **category_kw):
    """Create an event with one category; returns (event_id, category_id)."""
    now = time.time()
    if ended:
        start, end = now - 7200, now - 3600
    else:
        start, end = now + 3600, now + 7200
    ev = await catalog.create_event(db, ADMIN_CALLER, "Nairobi Jazz Night",
                                    start_date=start, end_date=end)
    cat = await catalog.create_ticket_category(
        db, ADMIN_CALLER, category_form(ev["event_id"], **category_kw)
    )
    return ev["event_id"], cat["ticket_category_id"]


async def place_order(db, caller: Caller, category_id: int, qty: int = 1,
                      unit_price: str = "1000.00"):
    total = Decimal(unit_price) * qty
    return await orders.create_order(
        db, caller, [orders.OrderItem(category_id, qty)], total=str(total)
    )


async def buy_tickets(db, gateway, caller: Caller, category_id: int,
                      qty: int = 1, unit_price: str = "1000.00"):
    """Order, push and settle through the webhook; returns the order view."""
    order = await place_order(db, caller, category_id, qty, unit_price)
    push = await payments.send_stk_push(
        db, gateway, caller, PHONE, order["total"], order["order_id"]
    )
    await payments.process_mpesa_callback(
        db, parse_callback(stk_callback(push["checkout_request_id"],
                                        receipt=f"RCPT{order['order_id']}"))
    )
    return await orders.get_order(db, caller, order["order_id"])
