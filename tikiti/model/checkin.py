# model/checkin.py
"""
Door validation and check-in.

Per ticket: sold (not checked in) -> checked in. Every other starting state
is turned away. Outcomes are returned as results, not raised: a rejected
ticket at the gate is an everyday event.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..auth import Caller, GATE_ROLES, MANAGEMENT_ROLES, require_role
from ..credentials import TICKET_SECRET_KEY, verify_ticket_qr
from ..errors import AlreadyCheckedInError, NotFoundError, ValidationError
from ..helpers import now_ts, to_iso, money_str
from ..infra.sql import GatedAsyncSession
from ..infra.timings import timeit
from .db import T_SOLD

NOT_FOUND = "not_found"
ALREADY_CHECKED_IN = "already_checked_in"
NOT_SOLD = "not_sold"
EVENT_ENDED = "event_ended"
CREDENTIAL_MISMATCH = "credential_mismatch"
INVALID_CREDENTIAL = "invalid_credential"


@dataclass
class ValidationResult:
    valid: bool
    message: str
    reason: Optional[str] = None
    ticket: Dict[str, Any] = field(default_factory=dict)
    checked_in_at: Optional[float] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "message": self.message,
            "reason": self.reason,
            "ticket": self.ticket or None,
            "checked_in_at": to_iso(self.checked_in_at),
        }


@dataclass
class CheckInResult:
    success: bool
    message: str
    reason: Optional[str] = None
    ticket: Dict[str, Any] = field(default_factory=dict)
    checked_in_at: Optional[float] = None

    def raise_for_status(self) -> "CheckInResult":
        if self.success:
            return self
        if self.reason == ALREADY_CHECKED_IN:
            raise AlreadyCheckedInError(self.message, self.checked_in_at)
        if self.reason == NOT_FOUND:
            raise NotFoundError(self.message)
        raise ValidationError(self.message)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "reason": self.reason,
            "ticket": self.ticket or None,
            "checked_in_at": to_iso(self.checked_in_at),
        }


# UN-GATED internal function
async def _validate(db: AsyncSession, ticket_id: int,
                    now: float) -> ValidationResult:
    t = (await db.execute(text("""
        SELECT t.id, t.status, t.is_checked_in, t.checked_in_at, t.order_id,
               t.ticket_category_id, t.barcode, t.qr_code,
               e.id AS event_id, e.title, e.start_date, e.end_date,
               c.name AS category
        FROM tickets AS t
        JOIN events AS e ON e.id = t.event_id
        LEFT JOIN ticket_categories AS c ON c.id = t.ticket_category_id
        WHERE t.id=:id
    """), {"id": ticket_id})).mappings().first()

    if t is None:
        return ValidationResult(False, "Ticket not found", NOT_FOUND)
    if t["is_checked_in"]:
        return ValidationResult(
            False, "Ticket already used", ALREADY_CHECKED_IN,
            checked_in_at=t["checked_in_at"],
        )
    if t["status"] != T_SOLD:
        return ValidationResult(
            False, f"Ticket is not valid for entry (status: {t['status']})",
            NOT_SOLD,
        )
    if now > t["end_date"]:
        return ValidationResult(False, "Event has ended", EVENT_ENDED)

    return ValidationResult(True, "Ticket is valid", ticket={
        "ticket_id": t["id"],
        "order_id": t["order_id"],
        "category": t["category"],
        "barcode": t["barcode"],
        "qr_code": t["qr_code"],
        "event_id": t["event_id"],
        "event_title": t["title"],
        "event_date": to_iso(t["start_date"]),
    })


async def validate_ticket(
    db: GatedAsyncSession, caller: Optional[Caller], ticket_id: int
) -> ValidationResult:
    require_role(caller, GATE_ROLES, "validate tickets")
    async with timeit("db.validate_ticket"):
        async with db.gated():
            async with db.session.begin():
                return await _validate(db.session, ticket_id, now_ts())


async def check_in_ticket(
    db: GatedAsyncSession, caller: Optional[Caller], ticket_id: int
) -> CheckInResult:
    """
    Re-validate, then flip the flag with an UPDATE that only matches a sold
    ticket not yet checked in. Of two concurrent scans exactly one wins.
    """
    require_role(caller, GATE_ROLES, "check in tickets")
    async with timeit("db.check_in"):
        async with db.gated():
            async with db.session.begin():
                s = db.session
                now = now_ts()
                v = await _validate(s, ticket_id, now)
                if not v.valid:
                    return CheckInResult(False, v.message, v.reason,
                                         checked_in_at=v.checked_in_at)
                row = (await s.execute(text("""
                    UPDATE tickets
                    SET is_checked_in=:t, checked_in_at=:now, updated_at=:now
                    WHERE id=:id AND is_checked_in=:f AND status=:sold
                    RETURNING checked_in_at
                """), {"t": True, "f": False, "sold": T_SOLD, "now": now,
                       "id": ticket_id})).first()
                if row is None:
                    prev = (await s.execute(text("""
                        SELECT checked_in_at FROM tickets WHERE id=:id
                    """), {"id": ticket_id})).scalar_one_or_none()
                    return CheckInResult(False, "Ticket already used",
                                         ALREADY_CHECKED_IN,
                                         checked_in_at=prev)
    return CheckInResult(True, "Ticket checked in", ticket=v.ticket,
                         checked_in_at=now)


async def scan_ticket(
    db: GatedAsyncSession,
    caller: Optional[Caller],
    qr_payload: str,
    check_in: bool = False,
    secret: str = TICKET_SECRET_KEY,
):
    """Scanner flow: verify the credential, then validate or check in."""
    require_role(caller, GATE_ROLES, "scan tickets")
    verified = verify_ticket_qr(qr_payload, secret)
    if not verified.is_valid:
        if check_in:
            return CheckInResult(False, "Invalid QR code format",
                                 INVALID_CREDENTIAL)
        return ValidationResult(False, "Invalid QR code format",
                                INVALID_CREDENTIAL)

    ticket_id = verified.ticket_data["ticketId"]
    validated = await validate_ticket(db, caller, ticket_id)
    # a well-formed credential that is not the one on file (re-issued, or
    # forged with the shared secret) admits nobody
    if validated.valid and validated.ticket.get("qr_code") != qr_payload:
        validated = ValidationResult(False, "Credential does not match ticket",
                                     CREDENTIAL_MISMATCH)
    if not check_in:
        return validated
    if not validated.valid:
        return CheckInResult(False, validated.message, validated.reason,
                             checked_in_at=validated.checked_in_at)
    return await check_in_ticket(db, caller, ticket_id)


async def get_event_attendance(
    db: GatedAsyncSession, caller: Optional[Caller], event_id: int
) -> Dict[str, Any]:
    require_role(caller, MANAGEMENT_ROLES, "view attendance")
    async with db.gated():
        async with db.session.begin():
            event = (await db.session.execute(text("""
                SELECT id, title, start_date, end_date FROM events
                WHERE id=:e
            """), {"e": event_id})).mappings().first()
            if event is None:
                raise NotFoundError("Event not found")
            capacity = (await db.session.execute(text("""
                SELECT COALESCE(SUM(quantity), 0) FROM ticket_categories
                WHERE event_id=:e
            """), {"e": event_id})).scalar_one()
            stats = (await db.session.execute(text("""
                SELECT
                  COALESCE(SUM(CASE WHEN status='sold' THEN 1 ELSE 0 END), 0)
                    AS sold,
                  COALESCE(SUM(CASE WHEN status='reserved' THEN 1 ELSE 0 END),
                           0) AS reserved,
                  COALESCE(SUM(CASE WHEN is_checked_in=:t THEN 1 ELSE 0 END),
                           0) AS checked_in,
                  COALESCE(SUM(CASE WHEN status='sold' THEN price ELSE 0 END),
                           0) AS revenue
                FROM tickets WHERE event_id=:e
            """), {"e": event_id, "t": True})).mappings().one()

    sold = int(stats["sold"])
    checked_in = int(stats["checked_in"])
    return {
        "event_id": event["id"],
        "title": event["title"],
        "start_date": to_iso(event["start_date"]),
        "end_date": to_iso(event["end_date"]),
        "capacity": int(capacity),
        "sold": sold,
        "reserved": int(stats["reserved"]),
        "checked_in": checked_in,
        "attendance_rate": round(checked_in / sold * 100, 1) if sold else 0.0,
        "revenue": money_str(int(stats["revenue"])),
    }
