# model/catalog.py
from __future__ import annotations
from dataclasses import dataclass, fields
from typing import Any, Dict, List, Optional

from sqlalchemy import text

from ..auth import Caller, MANAGEMENT_ROLES, require_role
from ..errors import NotFoundError, ValidationError
from ..helpers import Money, now_ts, to_cents, to_iso, money_str
from ..infra.sql import GatedAsyncSession

# locked once any ticket is reserved or sold against the category
PRICING_FIELDS = ("price", "quantity")


@dataclass
class CategoryForm:
    event_id: int
    name: str
    price: Money
    quantity: int
    available_from: float
    available_to: float
    description: Optional[str] = None
    is_vip: bool = False
    is_early_bird: bool = False
    max_per_order: Optional[int] = None

    def clean(self) -> Dict[str, Any]:
        if not self.name or len(self.name.strip()) < 2:
            raise ValidationError("Name must be at least 2 characters")
        try:
            price = to_cents(self.price)
        except ValueError:
            raise ValidationError(f"Invalid price: {self.price!r}")
        if price <= 0:
            raise ValidationError("Price must be greater than 0")
        if not isinstance(self.quantity, int) or self.quantity <= 0:
            raise ValidationError("Quantity must be a positive integer")
        if self.available_to <= self.available_from:
            raise ValidationError(
                "Sales window must end after it starts"
            )
        if self.max_per_order is not None and (
                not isinstance(self.max_per_order, int)
                or self.max_per_order <= 0):
            raise ValidationError(
                "Maximum per order must be a positive integer"
            )
        out = {f.name: getattr(self, f.name) for f in fields(self)}
        out["name"] = self.name.strip()
        out["price"] = price
        return out


def _category_out(r) -> Dict[str, Any]:
    return {
        "ticket_category_id": r["id"],
        "event_id": r["event_id"],
        "name": r["name"],
        "description": r["description"],
        "price": money_str(r["price"]),
        "quantity": r["quantity"],
        "committed": r["committed"],
        "available_from": to_iso(r["available_from"]),
        "available_to": to_iso(r["available_to"]),
        "is_vip": bool(r["is_vip"]),
        "is_early_bird": bool(r["is_early_bird"]),
        "max_per_order": r["max_per_order"],
    }


async def create_event(
    db: GatedAsyncSession,
    caller: Optional[Caller],
    title: str,
    start_date: float,
    end_date: float,
    description: Optional[str] = None,
    status: str = "published",
) -> Dict[str, Any]:
    require_role(caller, MANAGEMENT_ROLES, "create events")
    if not title or not title.strip():
        raise ValidationError("Title is required")
    if end_date <= start_date:
        raise ValidationError("Event must end after it starts")
    now = now_ts()
    async with db.gated():
        async with db.session.begin():
            event_id = (await db.session.execute(text("""
                INSERT INTO events(title, description, status, start_date,
                    end_date, created_by, created_at, updated_at)
                VALUES(:t, :d, :s, :sd, :ed, :by, :now, :now)
                RETURNING id
            """), {"t": title.strip(), "d": description, "s": status,
                   "sd": start_date, "ed": end_date, "by": caller.user_id,
                   "now": now})).scalar_one()
    return {"event_id": event_id, "title": title.strip(), "status": status,
            "start_date": to_iso(start_date), "end_date": to_iso(end_date)}


async def create_ticket_category(
    db: GatedAsyncSession, caller: Optional[Caller], form: CategoryForm
) -> Dict[str, Any]:
    require_role(caller, MANAGEMENT_ROLES, "create ticket categories")
    data = form.clean()
    now = now_ts()
    async with db.gated():
        async with db.session.begin():
            exists = (await db.session.execute(
                text("SELECT id FROM events WHERE id=:e"),
                {"e": data["event_id"]},
            )).first()
            if exists is None:
                raise NotFoundError("Event not found")
            row = (await db.session.execute(text("""
                INSERT INTO ticket_categories(
                    event_id, name, description, price, quantity, committed,
                    available_from, available_to, is_vip, is_early_bird,
                    max_per_order, created_at, updated_at)
                VALUES(:event_id, :name, :description, :price, :quantity, 0,
                    :available_from, :available_to, :is_vip, :is_early_bird,
                    :max_per_order, :now, :now)
                RETURNING *
            """), dict(data, now=now))).mappings().one()
    return _category_out(row)


async def update_ticket_category(
    db: GatedAsyncSession, caller: Optional[Caller], category_id: int,
    form: CategoryForm,
) -> Dict[str, Any]:
    require_role(caller, MANAGEMENT_ROLES, "update ticket categories")
    data = form.clean()
    now = now_ts()
    async with db.gated():
        async with db.session.begin():
            s = db.session
            cur = (await s.execute(text("""
                SELECT * FROM ticket_categories WHERE id=:id
            """), {"id": category_id})).mappings().first()
            if cur is None:
                raise NotFoundError("Ticket category not found")
            if data["event_id"] != cur["event_id"]:
                raise ValidationError(
                    "A ticket category cannot move to another event"
                )
            if cur["committed"] > 0:
                changed = [f for f in PRICING_FIELDS if data[f] != cur[f]]
                if changed:
                    raise ValidationError(
                        "Tickets were already sold against this category; "
                        f"{', '.join(changed)} can no longer change"
                    )
            row = (await s.execute(text("""
                UPDATE ticket_categories
                SET name=:name, description=:description, price=:price,
                    quantity=:quantity, available_from=:available_from,
                    available_to=:available_to, is_vip=:is_vip,
                    is_early_bird=:is_early_bird,
                    max_per_order=:max_per_order, updated_at=:now
                WHERE id=:id
                RETURNING *
            """), dict(data, now=now, id=category_id))).mappings().one()
    return _category_out(row)


async def delete_ticket_category(
    db: GatedAsyncSession, caller: Optional[Caller], category_id: int
) -> Dict[str, Any]:
    require_role(caller, MANAGEMENT_ROLES, "delete ticket categories")
    async with db.gated():
        async with db.session.begin():
            s = db.session
            event_id = (await s.execute(text("""
                SELECT event_id FROM ticket_categories WHERE id=:id
            """), {"id": category_id})).scalar_one_or_none()
            if event_id is None:
                raise NotFoundError("Ticket category not found")
            used = (await s.execute(text("""
                SELECT COUNT(*) FROM tickets WHERE ticket_category_id=:id
            """), {"id": category_id})).scalar_one()
            if used:
                raise ValidationError(
                    f"Ticket category has {used} ticket(s) and cannot be "
                    "deleted"
                )
            await s.execute(text("""
                DELETE FROM ticket_categories WHERE id=:id
            """), {"id": category_id})
    return {"ticket_category_id": category_id, "event_id": event_id,
            "deleted": True}


async def list_ticket_categories(
    db: GatedAsyncSession, event_id: int
) -> List[Dict[str, Any]]:
    async with db.gated():
        async with db.session.begin():
            rows = (await db.session.execute(text("""
                SELECT * FROM ticket_categories WHERE event_id=:e
                ORDER BY is_vip, price, id
            """), {"e": event_id})).mappings().all()
    return [_category_out(r) for r in rows]
