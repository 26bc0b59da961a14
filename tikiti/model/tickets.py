# model/tickets.py
from __future__ import annotations
from typing import Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..credentials import (
    TICKET_SECRET_KEY, build_qr_data, generate_ticket_barcode,
    generate_ticket_qr,
)
from ..helpers import now_ts, to_js_iso
from .db import O_COMPLETED


# UN-GATED: runs inside the payment settlement transaction
async def finalize_tickets_after_payment(
    db: AsyncSession,
    order_id: int,
    secret: str = TICKET_SECRET_KEY,
) -> Optional[List[Dict[str, str]]]:
    """
    Issue QR + barcode credentials for every reserved ticket of the order,
    flip them to sold and the order to completed.

    The order transition comes first and is the gate: when the order is no
    longer pending or processing nothing is issued and None is returned.
    A ticket is only touched while it is still `reserved` and has no
    credential yet (the unique indexes on qr_code/barcode back this up).
    Returns [{"ticket_id", "qr_code", "barcode"}] for tickets issued now.
    """
    now = now_ts()
    claimed = (await db.execute(text("""
        UPDATE orders SET status=:done, updated_at=:now
        WHERE id=:o AND status IN ('pending', 'processing')
        RETURNING id
    """), {"done": O_COMPLETED, "now": now, "o": order_id})).first()
    if claimed is None:
        return None

    issued_at = to_js_iso(now)

    rows = (await db.execute(text("""
        SELECT id, event_id, ticket_category_id, seat_id
        FROM tickets
        WHERE order_id=:o AND status='reserved' AND qr_code IS NULL
        ORDER BY id
    """), {"o": order_id})).mappings().all()

    issued = []
    for r in rows:
        qr = generate_ticket_qr(build_qr_data(
            ticket_id=r["id"],
            event_id=r["event_id"],
            order_id=order_id,
            ticket_category_id=r["ticket_category_id"],
            seat_id=r["seat_id"],
            issued_at=issued_at,
        ), secret)
        barcode = generate_ticket_barcode()
        hit = (await db.execute(text("""
            UPDATE tickets
            SET qr_code=:qr, barcode=:bc, status='sold', purchase_date=:now,
                updated_at=:now
            WHERE id=:id AND status='reserved' AND qr_code IS NULL
            RETURNING id
        """), {"qr": qr, "bc": barcode, "now": now, "id": r["id"]})).first()
        if hit is not None:
            issued.append({"ticket_id": r["id"], "qr_code": qr,
                           "barcode": barcode})

    return issued
