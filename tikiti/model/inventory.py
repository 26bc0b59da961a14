# model/inventory.py
"""
Ticket category capacity.

- availability (quantity, reserved, sold, available, is_available_now)
- reserve: guarded UPDATE of the category's `committed` counter followed by
  one `reserved` ticket row per unit, in the caller's transaction
- release: give committed units back when tickets are cancelled

`committed` always equals the number of the category's tickets in status
reserved or sold. It only ever changes through the conditional UPDATEs
below, so two buyers racing for the last unit cannot both win.
"""

from __future__ import annotations
from typing import Any, Dict, List, Optional

from sqlalchemy import text, bindparam
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import InventoryExhausted, NotFoundError, ValidationError
from ..helpers import now_ts, to_iso, money_str
from ..infra.sql import GatedAsyncSession
from ..infra.timings import timeit
from .db import T_RESERVED


# ------------------------------------------------------------------------------
# Read APIs
# ------------------------------------------------------------------------------

async def get_available_tickets(
    db: GatedAsyncSession, event_id: int
) -> List[Dict[str, Any]]:
    """
    For every category of the event:
      {
        "ticket_category_id", "name", "price", "quantity",
        "reserved", "sold", "available", "is_available_now",
        "available_from", "available_to", "is_vip", "is_early_bird",
        "max_per_order"
      }
    """
    now = now_ts()
    async with timeit("db.availability"):
        async with db.gated():
            async with db.session.begin():
                event = (await db.session.execute(
                    text("SELECT id FROM events WHERE id=:e"),
                    {"e": event_id},
                )).first()
                if event is None:
                    raise NotFoundError("Event not found")

                rows = (await db.session.execute(text("""
                    SELECT c.id, c.name, c.price, c.quantity,
                           c.available_from, c.available_to,
                           c.is_vip, c.is_early_bird, c.max_per_order,
                           COALESCE(SUM(CASE WHEN t.status='reserved'
                                        THEN 1 ELSE 0 END), 0) AS reserved,
                           COALESCE(SUM(CASE WHEN t.status='sold'
                                        THEN 1 ELSE 0 END), 0) AS sold
                    FROM ticket_categories AS c
                    LEFT JOIN tickets AS t
                      ON t.ticket_category_id = c.id
                     AND t.status IN ('reserved', 'sold')
                    WHERE c.event_id = :e
                    GROUP BY c.id, c.name, c.price, c.quantity,
                             c.available_from, c.available_to,
                             c.is_vip, c.is_early_bird, c.max_per_order
                    ORDER BY c.is_vip, c.price, c.id
                """), {"e": event_id})).mappings().all()

    out = []
    for r in rows:
        reserved, sold = int(r["reserved"]), int(r["sold"])
        out.append({
            "ticket_category_id": r["id"],
            "name": r["name"],
            "price": money_str(r["price"]),
            "quantity": r["quantity"],
            "reserved": reserved,
            "sold": sold,
            "available": max(0, r["quantity"] - reserved - sold),
            "is_available_now": (
                r["available_from"] <= now <= r["available_to"]
            ),
            "available_from": to_iso(r["available_from"]),
            "available_to": to_iso(r["available_to"]),
            "is_vip": bool(r["is_vip"]),
            "is_early_bird": bool(r["is_early_bird"]),
            "max_per_order": r["max_per_order"],
        })
    return out


# ------------------------------------------------------------------------------
# Core logic (UN-GATED: run inside the caller's transaction)
# ------------------------------------------------------------------------------

async def load_category(db: AsyncSession,
                        category_id: int) -> Dict[str, Any]:
    row = (await db.execute(text("""
        SELECT id, event_id, name, price, quantity, committed,
               available_from, available_to, max_per_order
        FROM ticket_categories WHERE id=:id
    """), {"id": category_id})).mappings().first()
    if row is None:
        raise NotFoundError(f"Ticket category {category_id} not found")
    return dict(row)


async def reserve_units(
    db: AsyncSession,
    category: Dict[str, Any],
    qty: int,
    order_id: int,
    now: float,
) -> List[int]:
    """
    Reserve `qty` units of `category` for `order_id`: all of them or none.
    Returns the ids of the new reserved tickets.
    """
    if qty <= 0:
        raise ValidationError("Quantity must be a positive integer")
    cap = category.get("max_per_order")
    if cap is not None and qty > cap:
        raise ValidationError(f"Maximum {cap} tickets per order")
    if not (category["available_from"] <= now <= category["available_to"]):
        raise ValidationError(
            f"Ticket sales for {category['name']} are not open"
        )

    row = (await db.execute(text("""
        UPDATE ticket_categories
        SET committed = committed + :n, updated_at = :now
        WHERE id = :id AND committed + :n <= quantity
        RETURNING committed
    """), {"id": category["id"], "n": qty, "now": now})).first()

    if row is None:
        left = (await db.execute(text("""
            SELECT quantity - committed FROM ticket_categories WHERE id=:id
        """), {"id": category["id"]})).scalar_one()
        left = max(0, int(left))
        raise InventoryExhausted(
            f"Not enough tickets available for {category['name']}: "
            f"{left} left, {qty} requested",
            remaining=left,
        )

    ids = []
    for _ in range(qty):
        tid = (await db.execute(text("""
            INSERT INTO tickets(
                order_id, event_id, ticket_category_id, status, price,
                is_checked_in, purchase_date, created_at, updated_at)
            VALUES(:o, :e, :c, :s, :p, :f, :now, :now, :now)
            RETURNING id
        """), {
            "o": order_id,
            "e": category["event_id"],
            "c": category["id"],
            "s": T_RESERVED,
            "p": category["price"],
            "f": False,
            "now": now,
        })).scalar_one()
        ids.append(int(tid))
    return ids


async def release_order_units(
    db: AsyncSession,
    order_id: int,
    from_statuses: tuple,
    now: float,
) -> int:
    """
    Cancel the order's tickets that are in one of `from_statuses` and hand
    their units back to the categories. Returns the number released.
    """
    rows = (await db.execute(
        text("""
            UPDATE tickets
            SET status='cancelled', updated_at=:now
            WHERE order_id=:o AND status IN :st
            RETURNING id, ticket_category_id
        """).bindparams(bindparam("st", expanding=True)),
        {"o": order_id, "st": list(from_statuses), "now": now},
    )).all()

    per_category: Dict[Optional[int], int] = {}
    for _, cid in rows:
        per_category[cid] = per_category.get(cid, 0) + 1
    for cid, n in per_category.items():
        if cid is None:
            continue
        await db.execute(text("""
            UPDATE ticket_categories
            SET committed = committed - :n, updated_at = :now
            WHERE id = :id
        """), {"id": cid, "n": n, "now": now})
    return len(rows)
