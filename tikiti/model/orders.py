# model/orders.py
from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import text

from ..auth import Caller, MANAGEMENT_ROLES, require_owner_or_role, \
    require_role
from ..credentials import generate_order_number
from ..errors import AuthorizationError, NotFoundError, ValidationError
from ..helpers import Money, now_ts, to_cents, to_iso, money_str
from ..infra.sql import GatedAsyncSession
from ..infra.timings import timeit
from .db import (
    O_CANCELLED, O_PENDING, O_REFUNDED, T_RESERVED, T_SOLD,
)
from .inventory import load_category, release_order_units, reserve_units


@dataclass(frozen=True)
class OrderItem:
    ticket_category_id: int
    quantity: int
    # price the buyer saw; must still be the category price
    price: Optional[Money] = None


def _check_items(items: Sequence[OrderItem]) -> None:
    if not items:
        raise ValidationError("An order needs at least one item")
    for it in items:
        if not isinstance(it.quantity, int) or isinstance(it.quantity, bool) \
                or it.quantity <= 0:
            raise ValidationError("Quantity must be a positive integer")


def _cents_or_raise(value: Money, what: str) -> int:
    try:
        cents = to_cents(value)
    except ValueError:
        raise ValidationError(f"Invalid {what}: {value!r}")
    if cents < 0:
        raise ValidationError(f"Invalid {what}: {value!r}")
    return cents


async def create_order(
    db: GatedAsyncSession,
    caller: Optional[Caller],
    items: Sequence[OrderItem],
    total: Money,
    tax: Optional[Money] = None,
    discount: Optional[Money] = None,
    currency: str = "KES",
) -> Dict[str, Any]:
    """
    Open a pending order and reserve one ticket per requested unit, all in
    one transaction. Nothing is written if any line item cannot be served.
    """
    if caller is None:
        raise AuthorizationError("Authentication required")
    _check_items(items)
    total_cents = _cents_or_raise(total, "total")
    tax_cents = None if tax is None else _cents_or_raise(tax, "tax")
    discount_cents = (
        None if discount is None else _cents_or_raise(discount, "discount")
    )

    now = now_ts()
    order_number = generate_order_number()
    async with timeit("db.create_order"):
        async with db.gated():
            async with db.session.begin():
                s = db.session
                categories = []
                expected = 0
                for it in items:
                    cat = await load_category(s, it.ticket_category_id)
                    if it.price is not None and \
                            _cents_or_raise(it.price, "price") != cat["price"]:
                        raise ValidationError(
                            f"Price for {cat['name']} has changed"
                        )
                    expected += cat["price"] * it.quantity
                    categories.append((cat, it.quantity))

                if total_cents != expected:
                    raise ValidationError(
                        f"Order total {money_str(total_cents)} does not "
                        f"match item total {money_str(expected)}"
                    )

                order_id = (await s.execute(text("""
                    INSERT INTO orders(order_number, user_id, total, tax,
                        discount, currency, status, created_at, updated_at)
                    VALUES(:num, :u, :t, :tax, :disc, :cur, :st, :now, :now)
                    RETURNING id
                """), {
                    "num": order_number,
                    "u": caller.user_id,
                    "t": total_cents,
                    "tax": tax_cents,
                    "disc": discount_cents,
                    "cur": currency,
                    "st": O_PENDING,
                    "now": now,
                })).scalar_one()

                tickets = []
                for cat, qty in categories:
                    ids = await reserve_units(s, cat, qty, order_id, now)
                    tickets.extend({
                        "ticket_id": tid,
                        "ticket_category_id": cat["id"],
                        "price": money_str(cat["price"]),
                        "status": T_RESERVED,
                    } for tid in ids)

    return {
        "order_id": order_id,
        "order_number": order_number,
        "status": O_PENDING,
        "total": money_str(total_cents),
        "currency": currency,
        "tickets": tickets,
    }


async def get_order(
    db: GatedAsyncSession, caller: Optional[Caller], order_id: int
) -> Dict[str, Any]:
    async with db.gated():
        async with db.session.begin():
            order = (await db.session.execute(text("""
                SELECT id, order_number, user_id, total, tax, discount,
                       currency, status, created_at, updated_at
                FROM orders WHERE id=:o
            """), {"o": order_id})).mappings().first()
            owner = order["user_id"] if order else None
            require_owner_or_role(caller, owner, MANAGEMENT_ROLES,
                                  "view this order")
            if order is None:
                raise NotFoundError("Order not found")
            tickets = (await db.session.execute(text("""
                SELECT id, event_id, ticket_category_id, seat_id, status,
                       price, qr_code, barcode, is_checked_in, checked_in_at
                FROM tickets WHERE order_id=:o ORDER BY id
            """), {"o": order_id})).mappings().all()

    return {
        "order_id": order["id"],
        "order_number": order["order_number"],
        "status": order["status"],
        "total": money_str(order["total"]),
        "tax": money_str(order["tax"]),
        "discount": money_str(order["discount"]),
        "currency": order["currency"],
        "created_at": to_iso(order["created_at"]),
        "updated_at": to_iso(order["updated_at"]),
        "tickets": [{
            "ticket_id": t["id"],
            "event_id": t["event_id"],
            "ticket_category_id": t["ticket_category_id"],
            "seat_id": t["seat_id"],
            "status": t["status"],
            "price": money_str(t["price"]),
            "qr_code": t["qr_code"],
            "barcode": t["barcode"],
            "is_checked_in": bool(t["is_checked_in"]),
            "checked_in_at": to_iso(t["checked_in_at"]),
        } for t in tickets],
    }


async def cancel_order(
    db: GatedAsyncSession, caller: Optional[Caller], order_id: int
) -> Dict[str, Any]:
    """pending -> cancelled; reserved units go back to the categories."""
    now = now_ts()
    async with timeit("db.cancel_order"):
        async with db.gated():
            async with db.session.begin():
                owner = (await db.session.execute(
                    text("SELECT user_id FROM orders WHERE id=:o"),
                    {"o": order_id},
                )).scalar_one_or_none()
                require_owner_or_role(caller, owner, MANAGEMENT_ROLES,
                                      "cancel this order")
                if owner is None:
                    raise NotFoundError("Order not found")
                row = (await db.session.execute(text("""
                    UPDATE orders SET status=:st, updated_at=:now
                    WHERE id=:o AND status=:pending
                    RETURNING id
                """), {"st": O_CANCELLED, "now": now, "o": order_id,
                       "pending": O_PENDING})).first()
                if row is None:
                    raise ValidationError(
                        "Only pending orders can be cancelled"
                    )
                released = await release_order_units(
                    db.session, order_id, (T_RESERVED,), now
                )
    return {"order_id": order_id, "status": O_CANCELLED,
            "released": released}


async def refund_order(
    db: GatedAsyncSession, caller: Optional[Caller], order_id: int
) -> Dict[str, Any]:
    """
    completed -> refunded. The settled payment is marked refunded and the
    tickets are cancelled. The money itself is returned outside this service.
    """
    require_role(caller, MANAGEMENT_ROLES, "refund orders")
    now = now_ts()
    async with timeit("db.refund_order"):
        async with db.gated():
            async with db.session.begin():
                s = db.session
                # row-locks the order's tickets: a concurrent check-in either
                # committed before this (and is seen) or waits and then
                # finds the ticket cancelled
                flags = (await s.execute(text("""
                    UPDATE tickets SET updated_at=:now
                    WHERE order_id=:o
                    RETURNING is_checked_in
                """), {"o": order_id, "now": now})).scalars().all()
                if any(flags):
                    raise ValidationError(
                        "Cannot refund an order with checked-in tickets"
                    )
                row = (await s.execute(text("""
                    UPDATE orders SET status=:st, updated_at=:now
                    WHERE id=:o AND status='completed'
                    RETURNING id
                """), {"st": O_REFUNDED, "now": now, "o": order_id})).first()
                if row is None:
                    raise ValidationError(
                        "Only completed orders can be refunded"
                    )
                await s.execute(text("""
                    UPDATE payments SET status='refunded', updated_at=:now
                    WHERE order_id=:o AND status='completed'
                """), {"o": order_id, "now": now})
                released = await release_order_units(
                    s, order_id, (T_SOLD,), now
                )
    return {"order_id": order_id, "status": O_REFUNDED,
            "released": released}


async def expire_stale_orders(
    db: GatedAsyncSession, ttl_seconds: int
) -> List[int]:
    """
    Cancel pending orders (no push sent yet) older than `ttl_seconds` and
    release their reservations. Returns the expired order ids.
    """
    now = now_ts()
    async with timeit("db.expire_orders"):
        async with db.gated():
            async with db.session.begin():
                rows = (await db.session.execute(text("""
                    UPDATE orders SET status=:st, updated_at=:now
                    WHERE status=:pending AND created_at < :cutoff
                    RETURNING id
                """), {"st": O_CANCELLED, "now": now, "pending": O_PENDING,
                       "cutoff": now - ttl_seconds})).all()
                expired = [int(r[0]) for r in rows]
                for oid in expired:
                    await release_order_units(
                        db.session, oid, (T_RESERVED,), now
                    )
    if expired:
        print(f"expired {len(expired)} stale pending order(s)")
    return expired
