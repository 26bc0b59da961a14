"""
HTTP surface. Every route except the webhook, availability, category
listing and staff login needs a session; see tikiti.auth for how buyer
sessions are minted.
"""
from __future__ import annotations
import os
from datetime import datetime
from typing import Any, Dict, Optional

import httpx
import redis.asyncio as redis
from fastapi import Depends, FastAPI, Form, HTTPException, Request
from fastapi.responses import ORJSONResponse
from starlette.middleware.sessions import SessionMiddleware

from .auth import (
    ADMIN, Caller, GATE_ROLES, MANAGEMENT_ROLES, SESSION_COOKIE, require_role,
)
from .credentials import TICKET_SECRET_KEY, verify_ticket_qr
from .errors import (
    AlreadyCheckedInError, AuthorizationError, GatewayError, IntegrityError,
    InventoryExhausted, NotFoundError, TikitiError, ValidationError,
)
from .helpers import ct_equal, now_ts, to_iso
from .infra.sql import GatedAsyncSession, make_database
from .infra.timings import install_shutdown_flush, snapshot, timeit
from .model import catalog, checkin, orders, payments
from .model.db import create_schema
from .model.inventory import get_available_tickets
from .model.tokens import BACKEND as TOKEN_BACKEND, new_cache
from .mpesa import MpesaConfig, MpesaGateway, PaymentGateway, parse_callback

# ----------------------------
# Config & Constants
# ----------------------------
SESSION_SECRET = os.environ.get("SESSION_SECRET", "dev-secret-change-me")
ADMIN_USERNAME = os.environ.get("ADMIN_USERNAME", "admin")
ADMIN_PASSWORD = os.environ.get("ADMIN_PASSWORD", "supasecret")
RESERVATION_TTL_SECONDS = int(os.environ.get("RESERVATION_TTL_SECONDS",
                                             "900"))
CALLBACK_SECRET_KEY = os.environ.get("MPESA_CALLBACK_SECRET_KEY") or None
APP_ENV = os.environ.get("APP_ENV", "development")

# published Daraja callback sources
MPESA_CALLBACK_IPS = frozenset({
    "196.201.214.200", "196.201.214.206", "196.201.213.114",
    "196.201.214.207", "196.201.214.208", "196.201.213.44",
    "196.201.212.127", "196.201.212.138", "196.201.212.129",
    "196.201.212.136", "196.201.212.74", "196.201.212.69",
    "127.0.0.1", "::1",
})

ERROR_STATUS = {
    ValidationError: 400,
    IntegrityError: 400,
    AuthorizationError: 403,
    NotFoundError: 404,
    InventoryExhausted: 409,
    AlreadyCheckedInError: 409,
    GatewayError: 502,
}


# ----------------------------
# Dependencies
# ----------------------------
async def get_db(request: Request):
    async with request.app.state.db.open() as db:
        yield db


def get_gateway(request: Request) -> PaymentGateway:
    gateway = getattr(request.app.state, "gateway", None)
    if gateway is None:
        raise RuntimeError("payment gateway not initialized")
    return gateway


def current_caller(request: Request) -> Caller:
    caller = Caller.from_session(request.session)
    if caller is None:
        raise HTTPException(401, detail="Authentication required")
    return caller


# ----------------------------
# Payload helpers
# ----------------------------
def _field(payload: Dict[str, Any], name: str) -> Any:
    value = payload.get(name)
    if value is None or value == "":
        raise ValidationError(f"{name} is required")
    return value


def _int_field(payload: Dict[str, Any], name: str) -> int:
    value = _field(payload, name)
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer")


def _ts_field(payload: Dict[str, Any], name: str) -> float:
    value = _field(payload, name)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00")) \
            .timestamp()
    except ValueError:
        raise ValidationError(f"{name} must be a timestamp")


def _category_form(payload: Dict[str, Any]) -> catalog.CategoryForm:
    max_per_order = payload.get("max_per_order")
    return catalog.CategoryForm(
        event_id=_int_field(payload, "event_id"),
        name=str(_field(payload, "name")),
        price=_field(payload, "price"),
        quantity=_int_field(payload, "quantity"),
        available_from=_ts_field(payload, "available_from"),
        available_to=_ts_field(payload, "available_to"),
        description=payload.get("description"),
        is_vip=bool(payload.get("is_vip", False)),
        is_early_bird=bool(payload.get("is_early_bird", False)),
        max_per_order=None if max_per_order is None else
        _int_field(payload, "max_per_order"),
    )


def _callback_reply(code: int, desc: str, status: int = 200):
    return ORJSONResponse({"ResultCode": code, "ResultDesc": desc},
                          status_code=status)


def _client_ip(request: Request) -> Optional[str]:
    forwarded = (request.headers.get("x-forwarded-for")
                 or request.headers.get("x-real-ip"))
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


# ----------------------------
# App factory
# ----------------------------
def create_app(database_url: str,
               gateway: Optional[PaymentGateway] = None) -> FastAPI:
    database = make_database(database_url)

    app = FastAPI(
        title="Tikiti",
        default_response_class=ORJSONResponse,
    )
    app.add_middleware(SessionMiddleware, secret_key=SESSION_SECRET,
                       session_cookie=SESSION_COOKIE)
    app.state.db = database
    app.state.gateway = gateway
    app.state.http = None
    app.state.redis = None

    # shutdown handler trying to post our detailed timings
    install_shutdown_flush(app)

    # ---
    # startup / shutdown
    # ---
    @app.on_event("startup")
    async def _say_hello():
        print('=' * 50)
        print('Tikiti is starting up...')
        print(f'   - Database: {database.backend}')
        print(f'   - Gateway token cache: {TOKEN_BACKEND}')
        print('=' * 50)

    @app.on_event("startup")
    async def _db_init():
        async with database.engine.begin() as conn:
            await create_schema(conn)

    @app.on_event("startup")
    async def _gateway_start():
        if app.state.gateway is not None:
            return
        if TOKEN_BACKEND == "redis":
            app.state.redis = redis.from_url(
                os.getenv("REDIS_URL", "redis://127.0.0.1:6379"),
                decode_responses=True,
                socket_timeout=2.0,
                socket_connect_timeout=2.0,
                retry_on_timeout=True,
            )
        app.state.http = httpx.AsyncClient(
            timeout=30.0,
            limits=httpx.Limits(
                max_connections=64, max_keepalive_connections=64
            ),
        )
        app.state.gateway = MpesaGateway(
            app.state.http,
            MpesaConfig.from_env(),
            tokens=new_cache(r=app.state.redis),
        )

    @app.on_event("shutdown")
    async def _http_client_stop():
        http = app.state.http
        if http is not None:
            await http.aclose()
            app.state.http = None

    @app.on_event("shutdown")
    async def _redis_stop():
        r = app.state.redis
        if r is not None:
            await r.aclose()
            app.state.redis = None

    @app.on_event("shutdown")
    async def _engine_stop():
        await database.dispose()

    # ---
    # errors
    # ---
    @app.exception_handler(TikitiError)
    async def _tikiti_error(request: Request, exc: TikitiError):
        status = 500
        for cls in type(exc).__mro__:
            if cls in ERROR_STATUS:
                status = ERROR_STATUS[cls]
                break
        body: Dict[str, Any] = {"detail": exc.message}
        if isinstance(exc, InventoryExhausted):
            body["remaining"] = exc.remaining
        elif isinstance(exc, AlreadyCheckedInError):
            body["checked_in_at"] = to_iso(exc.checked_in_at)
        elif isinstance(exc, GatewayError):
            print(f"gateway error on {request.url.path}: {exc.message} "
                  f"(status={exc.status_code})")
            body["detail"] = ("Payment service is unavailable. "
                              "Please try again.")
        return ORJSONResponse(body, status_code=status)

    # ----------------------------
    # API: availability & orders
    # ----------------------------
    @app.get("/api/events/{event_id}/availability")
    async def api_availability(event_id: int,
                               db: GatedAsyncSession = Depends(get_db)):
        items = await get_available_tickets(db, event_id)
        return {"event_id": event_id, "categories": items}

    @app.post("/api/orders")
    async def api_create_order(
        payload: dict,
        caller: Caller = Depends(current_caller),
        db: GatedAsyncSession = Depends(get_db),
    ):
        raw_items = payload.get("items")
        if not isinstance(raw_items, list):
            raise ValidationError("items must be a list")
        items = []
        for it in raw_items:
            if not isinstance(it, dict):
                raise ValidationError("each item must be an object")
            items.append(orders.OrderItem(
                ticket_category_id=_int_field(it, "ticket_category_id"),
                quantity=_int_field(it, "quantity"),
                price=it.get("price"),
            ))
        return await orders.create_order(
            db, caller, items,
            total=_field(payload, "total"),
            tax=payload.get("tax"),
            discount=payload.get("discount"),
            currency=payload.get("currency") or "KES",
        )

    @app.get("/api/orders/{order_id}")
    async def api_get_order(order_id: int,
                            caller: Caller = Depends(current_caller),
                            db: GatedAsyncSession = Depends(get_db)):
        async with timeit("db.get_order"):
            return await orders.get_order(db, caller, order_id)

    @app.post("/api/orders/{order_id}/cancel")
    async def api_cancel_order(order_id: int,
                               caller: Caller = Depends(current_caller),
                               db: GatedAsyncSession = Depends(get_db)):
        return await orders.cancel_order(db, caller, order_id)

    @app.post("/api/orders/{order_id}/refund")
    async def api_refund_order(order_id: int,
                               caller: Caller = Depends(current_caller),
                               db: GatedAsyncSession = Depends(get_db)):
        return await orders.refund_order(db, caller, order_id)

    # ----------------------------
    # API: payments
    # ----------------------------
    @app.post("/api/orders/{order_id}/pay")
    async def api_pay_order(
        order_id: int,
        payload: dict,
        caller: Caller = Depends(current_caller),
        db: GatedAsyncSession = Depends(get_db),
        gw: PaymentGateway = Depends(get_gateway),
    ):
        return await payments.send_stk_push(
            db, gw, caller,
            phone=str(_field(payload, "phone_number")),
            amount=_field(payload, "amount"),
            order_id=order_id,
        )

    @app.get("/api/orders/{order_id}/payment-status")
    async def api_payment_status(order_id: int,
                                 caller: Caller = Depends(current_caller),
                                 db: GatedAsyncSession = Depends(get_db)):
        return await payments.check_payment_status(db, caller, order_id)

    @app.post("/api/payments/{checkout_request_id}/await")
    async def api_await_payment(
        checkout_request_id: str,
        caller: Caller = Depends(current_caller),
        db: GatedAsyncSession = Depends(get_db),
        gw: PaymentGateway = Depends(get_gateway),
    ):
        return await payments.await_payment(db, gw, caller,
                                            checkout_request_id)

    # ----------------------------
    # Webhook endpoint (gateway -> us)
    # ----------------------------
    async def _mpesa_callback(request: Request, key: Optional[str],
                              db: GatedAsyncSession):
        if APP_ENV == "production":
            ip = _client_ip(request)
            if ip not in MPESA_CALLBACK_IPS:
                print(f"Blocked callback from non-allowlisted IP: {ip}")
                return _callback_reply(1, "IP not authorized", 403)

        if CALLBACK_SECRET_KEY and (
                key is None or not ct_equal(key, CALLBACK_SECRET_KEY)):
            print(f"Invalid security key in callback URL: {key}")
            return _callback_reply(1, "Invalid security key", 403)

        try:
            body = await request.json()
            callback = parse_callback(body)
        except (ValueError, ValidationError):
            print("Invalid callback data structure")
            return _callback_reply(1, "Invalid callback data structure", 400)

        try:
            result = await payments.process_mpesa_callback(db, callback)
        except TikitiError as e:
            print(f"Failed to process callback "
                  f"{callback.checkout_request_id}: {e.message}")
            return _callback_reply(1, e.message)
        print(f"callback {callback.checkout_request_id}: {result['message']}")
        return _callback_reply(0, "Callback processed successfully")

    @app.post("/api/payments/mpesa-callback")
    async def api_mpesa_callback(request: Request,
                                 db: GatedAsyncSession = Depends(get_db)):
        return await _mpesa_callback(request, None, db)

    @app.post("/api/payments/mpesa-callback/{key}")
    async def api_mpesa_callback_keyed(key: str, request: Request,
                                       db: GatedAsyncSession = Depends(get_db)):
        return await _mpesa_callback(request, key, db)

    @app.get("/api/payments/mpesa-callback")
    async def api_mpesa_callback_alive():
        return {"message": "M-PESA callback endpoint is active",
                "timestamp": to_iso(now_ts())}

    # ----------------------------
    # API: gate
    # ----------------------------
    @app.get("/api/tickets/{ticket_id}/validate")
    async def api_validate_ticket(ticket_id: int,
                                  caller: Caller = Depends(current_caller),
                                  db: GatedAsyncSession = Depends(get_db)):
        result = await checkin.validate_ticket(db, caller, ticket_id)
        return result.as_dict()

    @app.post("/api/tickets/{ticket_id}/check-in")
    async def api_check_in(ticket_id: int,
                           caller: Caller = Depends(current_caller),
                           db: GatedAsyncSession = Depends(get_db)):
        result = await checkin.check_in_ticket(db, caller, ticket_id)
        return result.raise_for_status().as_dict()

    @app.post("/api/tickets/scan")
    async def api_scan(payload: dict,
                       caller: Caller = Depends(current_caller),
                       db: GatedAsyncSession = Depends(get_db)):
        result = await checkin.scan_ticket(
            db, caller, str(_field(payload, "qr_code")),
            check_in=bool(payload.get("check_in", False)),
        )
        return result.as_dict()

    @app.post("/api/tickets/verify-qr")
    async def api_verify_qr(payload: dict,
                            caller: Caller = Depends(current_caller)):
        require_role(caller, GATE_ROLES, "verify tickets")
        verified = verify_ticket_qr(str(_field(payload, "qr_code")),
                                    TICKET_SECRET_KEY)
        return {"is_valid": verified.is_valid,
                "ticket_data": verified.ticket_data}

    # ----------------------------
    # API: admin
    # ----------------------------
    @app.post("/api/admin/events")
    async def api_create_event(payload: dict,
                               caller: Caller = Depends(current_caller),
                               db: GatedAsyncSession = Depends(get_db)):
        return await catalog.create_event(
            db, caller,
            title=str(_field(payload, "title")),
            start_date=_ts_field(payload, "start_date"),
            end_date=_ts_field(payload, "end_date"),
            description=payload.get("description"),
        )

    @app.get("/api/events/{event_id}/categories")
    async def api_list_categories(event_id: int,
                                  db: GatedAsyncSession = Depends(get_db)):
        return {"items": await catalog.list_ticket_categories(db, event_id)}

    @app.post("/api/admin/categories")
    async def api_create_category(payload: dict,
                                  caller: Caller = Depends(current_caller),
                                  db: GatedAsyncSession = Depends(get_db)):
        return await catalog.create_ticket_category(
            db, caller, _category_form(payload)
        )

    @app.put("/api/admin/categories/{category_id}")
    async def api_update_category(category_id: int, payload: dict,
                                  caller: Caller = Depends(current_caller),
                                  db: GatedAsyncSession = Depends(get_db)):
        return await catalog.update_ticket_category(
            db, caller, category_id, _category_form(payload)
        )

    @app.delete("/api/admin/categories/{category_id}")
    async def api_delete_category(category_id: int,
                                  caller: Caller = Depends(current_caller),
                                  db: GatedAsyncSession = Depends(get_db)):
        return await catalog.delete_ticket_category(db, caller, category_id)

    @app.get("/api/admin/events/{event_id}/attendance")
    async def api_attendance(event_id: int,
                             caller: Caller = Depends(current_caller),
                             db: GatedAsyncSession = Depends(get_db)):
        return await checkin.get_event_attendance(db, caller, event_id)

    @app.post("/api/admin/expire-orders")
    async def api_expire_orders(caller: Caller = Depends(current_caller),
                                db: GatedAsyncSession = Depends(get_db),
                                gw: PaymentGateway = Depends(get_gateway)):
        require_role(caller, MANAGEMENT_ROLES, "expire orders")
        expired = await orders.expire_stale_orders(db,
                                                   RESERVATION_TTL_SECONDS)
        reconciled = await payments.reconcile_stale_payments(
            db, gw, payments.RECONCILE_AFTER_SECONDS
        )
        return {"expired": expired, "ttl_seconds": RESERVATION_TTL_SECONDS,
                "reconciled": reconciled}

    @app.get("/api/admin/timings")
    async def api_timings(prefix: str = "",
                          caller: Caller = Depends(current_caller)):
        require_role(caller, MANAGEMENT_ROLES, "view timings")
        return snapshot(prefix)

    # ----------------------------
    # Staff login
    # ----------------------------
    @app.post("/admin/login")
    async def admin_login_post(
        request: Request,
        username: str = Form(...),
        password: str = Form(...),
    ):
        ok_user = ct_equal(username.strip(), ADMIN_USERNAME)
        ok_pass = ct_equal(password, ADMIN_PASSWORD)
        if ok_user and ok_pass:
            request.session["user_id"] = f"staff:{username.strip()}"
            request.session["role"] = ADMIN
            return {"ok": True, "role": ADMIN}
        # auth failed
        return ORJSONResponse({"ok": False, "detail": "Invalid credentials."},
                              status_code=401)

    @app.post("/admin/logout")
    async def admin_logout(request: Request):
        request.session.clear()
        return {"ok": True}

    return app
