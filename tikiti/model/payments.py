# model/payments.py
"""
Order / payment state machine driven by mobile-money push payments.

  order:   pending -> processing -> completed | failed
           completed -> refunded,  pending -> cancelled
  payment: pending -> completed | failed,  completed -> refunded

Two triggers settle a payment: the gateway webhook and the polling
fallback. Both only *attempt* the transition: every write is a conditional
UPDATE from `pending`, so whichever arrives second sees a terminal payment
and does nothing.
"""
from __future__ import annotations
import asyncio
import os
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from sqlalchemy import text, bindparam, JSON

from ..auth import Caller, MANAGEMENT_ROLES, require_owner_or_role
from ..errors import AuthorizationError, GatewayError, NotFoundError, \
    ValidationError
from ..helpers import Money, from_cents, money_str, now_ts, to_cents, to_iso
from ..infra.sql import GatedAsyncSession
from ..infra.timings import timeit
from ..mpesa import CallbackResult, PaymentGateway, normalize_phone, \
    whole_units
from .db import (
    O_FAILED, O_PENDING, O_PROCESSING, P_COMPLETED, P_FAILED,
    P_PENDING, T_RESERVED,
)
from .inventory import release_order_units
from .tickets import finalize_tickets_after_payment

POLL_INTERVAL_SECONDS = float(os.getenv("POLL_INTERVAL_SECONDS", "5"))
POLL_MAX_ATTEMPTS = int(os.getenv("POLL_MAX_ATTEMPTS", "10"))
# 1032 "Request cancelled by user": keep polling, the webhook or a later
# query has the last word
POLL_RETRY_CODES = frozenset({1032})
# pending payments older than this are settled by asking the gateway once;
# well past the polling ceiling (attempts x interval)
RECONCILE_AFTER_SECONDS = int(os.getenv("PAYMENT_RECONCILE_AFTER_SECONDS",
                                        "120"))

# poll outcomes
COMPLETED = "completed"
FAILED = "failed"
TIMEOUT = "timeout"


# ------------------------------------------------------------------------------
# Initiation
# ------------------------------------------------------------------------------

async def send_stk_push(
    db: GatedAsyncSession,
    gateway: PaymentGateway,
    caller: Optional[Caller],
    phone: str,
    amount: Money,
    order_id: int,
) -> Dict[str, Any]:
    """
    Ask the gateway to prompt `phone` for `amount` against the order.
    The Payment row is written only after the gateway accepted the push.
    """
    if caller is None:
        raise AuthorizationError("Authentication required")
    msisdn = normalize_phone(phone)
    try:
        amount_cents = to_cents(amount)
    except ValueError:
        raise ValidationError(f"Invalid amount: {amount!r}")

    async with db.gated():
        async with db.session.begin():
            order = (await db.session.execute(text("""
                SELECT id, order_number, user_id, total, currency, status
                FROM orders WHERE id=:o
            """), {"o": order_id})).mappings().first()
    # buyers may only pay their own orders; same answer if it does not exist
    if order is None or not caller.owns(order["user_id"]):
        raise AuthorizationError("Not authorized to pay for this order")
    if order["status"] not in (O_PENDING, O_PROCESSING):
        raise ValidationError("Order is not awaiting payment")
    if amount_cents != order["total"]:
        raise ValidationError(
            f"Amount {money_str(amount_cents)} does not match order total "
            f"{money_str(order['total'])}"
        )

    result = await gateway.stk_push(
        phone=msisdn,
        amount=whole_units(from_cents(amount_cents)),
        account_reference=order["order_number"],
        description=f"Payment for order {order['order_number']}",
    )

    now = now_ts()
    async with timeit("db.record_payment"):
        async with db.gated():
            async with db.session.begin():
                payment_id = (await db.session.execute(text("""
                    INSERT INTO payments(order_id, amount, currency, status,
                        method, phone_number, checkout_request_id,
                        merchant_request_id, created_at, updated_at)
                    VALUES(:o, :a, :cur, :st, 'mpesa', :ph, :cr, :mr,
                           :now, :now)
                    RETURNING id
                """), {
                    "o": order_id,
                    "a": amount_cents,
                    "cur": order["currency"],
                    "st": P_PENDING,
                    "ph": msisdn,
                    "cr": result["CheckoutRequestID"],
                    "mr": result.get("MerchantRequestID"),
                    "now": now,
                })).scalar_one()
                await db.session.execute(text("""
                    UPDATE orders SET status=:proc, updated_at=:now
                    WHERE id=:o AND status=:pending
                """), {"proc": O_PROCESSING, "pending": O_PENDING,
                       "o": order_id, "now": now})

    return {
        "payment_id": payment_id,
        "order_id": order_id,
        "status": P_PENDING,
        "checkout_request_id": result["CheckoutRequestID"],
        "merchant_request_id": result.get("MerchantRequestID"),
        "customer_message": result.get("CustomerMessage"),
    }


# ------------------------------------------------------------------------------
# Settlement (shared by webhook and polling)
# ------------------------------------------------------------------------------

@dataclass
class Settlement:
    payment_id: int
    order_id: int
    status: str           # payment status after this call
    applied: bool         # False -> payment was already terminal (replay)
    tickets_issued: int = 0


async def _settle(
    db: GatedAsyncSession,
    checkout_request_id: str,
    success: bool,
    result_code: Optional[int],
    result_description: str,
    receipt_number: Optional[str] = None,
    transaction_date: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Settlement:
    now = now_ts()
    async with timeit("db.settle_payment"):
        async with db.gated():
            async with db.session.begin():
                s = db.session
                payment = (await s.execute(text("""
                    SELECT id, order_id, status FROM payments
                    WHERE checkout_request_id=:cr
                """), {"cr": checkout_request_id})).mappings().first()
                if payment is None:
                    raise NotFoundError(
                        "Payment record not found for CheckoutRequestID: "
                        f"{checkout_request_id}"
                    )
                pid, oid = payment["id"], payment["order_id"]

                # the guard: only a pending payment moves
                moved = (await s.execute(
                    text("""
                        UPDATE payments
                        SET status=:st, result_code=:rc,
                            result_description=:rd, receipt_number=:rn,
                            transaction_date=:td, callback_metadata=:meta,
                            paid_at=:paid, updated_at=:now
                        WHERE id=:id AND status=:pending
                        RETURNING id
                    """).bindparams(bindparam("meta", type_=JSON)),
                    {
                        "st": P_COMPLETED if success else P_FAILED,
                        "rc": result_code,
                        "rd": result_description,
                        "rn": receipt_number,
                        "td": transaction_date,
                        "meta": metadata,
                        "paid": now if success else None,
                        "now": now,
                        "id": pid,
                        "pending": P_PENDING,
                    },
                )).first()
                if moved is None:
                    current = (await s.execute(
                        text("SELECT status FROM payments WHERE id=:id"),
                        {"id": pid},
                    )).scalar_one()
                    return Settlement(pid, oid, current, applied=False)

                order_status = await _lock_order(s, oid, now)
                if success:
                    return await _settle_success(s, pid, oid, order_status,
                                                 now)
                return await _settle_failure(s, pid, oid, now)


# UN-GATED internal function
async def _lock_order(s, oid: int, now: float) -> str:
    """
    Row-lock the order for the rest of the transaction and return its
    committed status. Settlements of sibling payments of one order queue up
    here, so each one decides on what the previous one wrote.
    """
    return (await s.execute(text("""
        UPDATE orders SET updated_at=:now WHERE id=:o RETURNING status
    """), {"o": oid, "now": now})).scalar_one()


async def _settle_success(s, pid: int, oid: int, order_status: str,
                          now: float) -> Settlement:
    issued = None
    if order_status in (O_PENDING, O_PROCESSING):
        issued = await finalize_tickets_after_payment(s, oid)
    if issued is None:
        # another payment already settled this order (or it was
        # cancelled/refunded): keep a single completed payment per order
        await s.execute(text("""
            UPDATE payments SET status=:failed, result_description=:why,
                updated_at=:now
            WHERE id=:id
        """), {"failed": P_FAILED, "id": pid, "now": now,
               "why": f"Duplicate payment for {order_status} order; "
                      "refund required"})
        print(f"WARNING: payment {pid} settled against {order_status} "
              f"order {oid}; flagged for refund")
        return Settlement(pid, oid, P_FAILED, applied=True)

    return Settlement(pid, oid, P_COMPLETED, applied=True,
                      tickets_issued=len(issued))


async def _settle_failure(s, pid: int, oid: int, now: float) -> Settlement:
    # the order only fails when no other attempt is still in flight
    row = (await s.execute(text("""
        UPDATE orders SET status=:failed, updated_at=:now
        WHERE id=:o AND status IN ('pending', 'processing')
          AND NOT EXISTS (
              SELECT 1 FROM payments
              WHERE order_id=:o AND status='pending'
          )
        RETURNING id
    """), {"failed": O_FAILED, "now": now, "o": oid})).first()
    if row is not None:
        await release_order_units(s, oid, (T_RESERVED,), now)
    return Settlement(pid, oid, P_FAILED, applied=True)


async def process_mpesa_callback(
    db: GatedAsyncSession, callback: CallbackResult
) -> Dict[str, Any]:
    """
    Apply a gateway webhook. Replays of an already-settled payment are
    reported as idempotent and change nothing.
    Raises NotFoundError for an unknown CheckoutRequestID.
    """
    settled = await _settle(
        db,
        callback.checkout_request_id,
        success=callback.succeeded,
        result_code=callback.result_code,
        result_description=callback.result_description,
        receipt_number=callback.receipt_number,
        transaction_date=callback.transaction_date,
        metadata=callback.metadata,
    )
    outcome = "completed" if callback.succeeded else "failed"
    return {
        "success": True,
        "idempotent": not settled.applied,
        "message": f"Payment {outcome} successfully" if settled.applied
                   else f"Payment already {settled.status}",
        "order_id": settled.order_id,
        "payment_status": settled.status,
        "tickets_issued": settled.tickets_issued,
    }


# ------------------------------------------------------------------------------
# Polling fallback
# ------------------------------------------------------------------------------

@dataclass
class PollResult:
    status: str  # completed | failed | timeout
    attempts: int
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


async def stk_push_query_with_intervals(
    gateway: PaymentGateway,
    checkout_request_id: str,
    max_attempts: int = POLL_MAX_ATTEMPTS,
    interval: float = POLL_INTERVAL_SECONDS,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> PollResult:
    """
    Query the gateway until it reports a final result or attempts run out.
    A timeout is not a failure: the webhook may still settle the payment.
    """
    last_error = None
    data = None
    for attempt in range(1, max_attempts + 1):
        try:
            data = await gateway.stk_query(checkout_request_id)
        except GatewayError as e:
            last_error = e.message
            data = None
        else:
            code = data.get("ResultCode")
            if code == 0:
                return PollResult(COMPLETED, attempt, data)
            if code is not None and code not in POLL_RETRY_CODES:
                return PollResult(FAILED, attempt, data)
        if attempt < max_attempts:
            await sleep(interval)
    return PollResult(TIMEOUT, max_attempts, data,
                      error=last_error or "Max attempts reached")


async def await_payment(
    db: GatedAsyncSession,
    gateway: PaymentGateway,
    caller: Optional[Caller],
    checkout_request_id: str,
    max_attempts: int = POLL_MAX_ATTEMPTS,
    interval: float = POLL_INTERVAL_SECONDS,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> Dict[str, Any]:
    """Polling path: poll, then attempt the same transition as the webhook."""
    async with db.gated():
        async with db.session.begin():
            row = (await db.session.execute(text("""
                SELECT p.status, o.user_id FROM payments AS p
                JOIN orders AS o ON o.id = p.order_id
                WHERE p.checkout_request_id=:cr
            """), {"cr": checkout_request_id})).mappings().first()
    require_owner_or_role(caller, row["user_id"] if row else None,
                          MANAGEMENT_ROLES, "check this payment")
    if row is None:
        raise NotFoundError("Payment not found")
    if row["status"] != P_PENDING:
        return {"status": row["status"], "settled": False, "attempts": 0}

    polled = await stk_push_query_with_intervals(
        gateway, checkout_request_id, max_attempts, interval, sleep
    )
    if polled.status == TIMEOUT:
        return {"status": TIMEOUT, "settled": False,
                "attempts": polled.attempts, "error": polled.error}

    data = polled.data or {}
    settled = await _settle(
        db,
        checkout_request_id,
        success=polled.status == COMPLETED,
        result_code=data.get("ResultCode"),
        result_description=str(data.get("ResultDesc") or ""),
    )
    return {"status": settled.status, "settled": settled.applied,
            "attempts": polled.attempts}


# ------------------------------------------------------------------------------
# Reconciliation (stale `processing` orders)
# ------------------------------------------------------------------------------

async def reconcile_stale_payments(
    db: GatedAsyncSession,
    gateway: PaymentGateway,
    older_than: int = RECONCILE_AFTER_SECONDS,
) -> Dict[str, Any]:
    """
    Settle what neither the webhook nor polling did.

    Every payment still pending after `older_than` seconds gets one status
    query: code 0 completes it, any other code fails it (1032 included; the
    prompt is long gone). No answer yet leaves it pending for the next run.
    Then `processing` orders left with no pending payment are failed and
    their units released.
    """
    cutoff = now_ts() - older_than
    async with db.gated():
        async with db.session.begin():
            stale = (await db.session.execute(text("""
                SELECT checkout_request_id FROM payments
                WHERE status=:pending AND created_at < :cutoff
                ORDER BY id
            """), {"pending": P_PENDING, "cutoff": cutoff})).scalars().all()

    settled, unresolved = [], []
    for checkout_request_id in stale:
        try:
            data = await gateway.stk_query(checkout_request_id)
        except GatewayError as e:
            print(f"reconcile {checkout_request_id}: {e.message}")
            unresolved.append(checkout_request_id)
            continue
        code = data.get("ResultCode")
        if code is None:
            unresolved.append(checkout_request_id)
            continue
        await _settle(
            db,
            checkout_request_id,
            success=code == 0,
            result_code=code,
            result_description=str(data.get("ResultDesc") or ""),
        )
        settled.append(checkout_request_id)

    now = now_ts()
    async with timeit("db.fail_orphaned_orders"):
        async with db.gated():
            async with db.session.begin():
                rows = (await db.session.execute(text("""
                    UPDATE orders SET status=:failed, updated_at=:now
                    WHERE status=:proc AND updated_at < :cutoff
                      AND NOT EXISTS (
                          SELECT 1 FROM payments
                          WHERE payments.order_id = orders.id
                            AND payments.status=:pending
                      )
                    RETURNING id
                """), {"failed": O_FAILED, "proc": O_PROCESSING,
                       "pending": P_PENDING, "now": now,
                       "cutoff": cutoff})).all()
                failed_orders = [int(r[0]) for r in rows]
                for oid in failed_orders:
                    await release_order_units(db.session, oid,
                                              (T_RESERVED,), now)

    if settled or unresolved or failed_orders:
        print(f"reconciled {len(settled)} payment(s), "
              f"{len(unresolved)} unresolved, "
              f"{len(failed_orders)} orphaned order(s) failed")
    return {"settled": settled, "unresolved": unresolved,
            "failed_orders": failed_orders}


# ------------------------------------------------------------------------------
# Read APIs
# ------------------------------------------------------------------------------

async def check_payment_status(
    db: GatedAsyncSession, caller: Optional[Caller], order_id: int
) -> Dict[str, Any]:
    async with db.gated():
        async with db.session.begin():
            order = (await db.session.execute(text("""
                SELECT id, user_id, status FROM orders WHERE id=:o
            """), {"o": order_id})).mappings().first()
            require_owner_or_role(caller, order["user_id"] if order else None,
                                  MANAGEMENT_ROLES, "check this order")
            if order is None:
                raise NotFoundError("Order not found")
            payment = (await db.session.execute(text("""
                SELECT method, amount, currency, status, created_at,
                       updated_at, paid_at, receipt_number,
                       checkout_request_id, result_code, result_description
                FROM payments WHERE order_id=:o
                ORDER BY created_at DESC, id DESC
                LIMIT 1
            """), {"o": order_id})).mappings().first()

    if payment is None:
        return {
            "success": False,
            "message": "No payment found for this order",
            "status": "not_found",
            "order_status": order["status"],
        }
    return {
        "success": True,
        "status": payment["status"],
        "order_status": order["status"],
        "payment_details": {
            "method": payment["method"],
            "amount": money_str(payment["amount"]),
            "currency": payment["currency"],
            "created_at": to_iso(payment["created_at"]),
            "updated_at": to_iso(payment["updated_at"]),
            "payment_date": to_iso(payment["paid_at"]),
            "receipt_number": payment["receipt_number"],
            "checkout_request_id": payment["checkout_request_id"],
            "result_code": payment["result_code"],
            "result_description": payment["result_description"],
        },
    }