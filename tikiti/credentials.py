"""
Ticket credential formats.

QR credential:  base64url(JSON{ticketId, eventId, orderId, ticketCategoryId,
                               seatId, issuedAt, hash})
  hash = sha256(<compact JSON of the other fields> + "-" + secret), hex,
         first 8 characters.

Barcode:        TIX-<BASE36 MILLIS>-<10 RANDOM ALNUM>, uppercased
Order number:   ORD-<base36 millis>-<6 RANDOM ALNUM>
"""
from __future__ import annotations
import base64
import binascii
import hashlib
import hmac
import json
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional, TypedDict

from .helpers import base36_millis, random_alnum

TICKET_SECRET_KEY = os.environ.get("TICKET_SECRET_KEY", "default-secret")

TAG_LENGTH = 8
QR_FIELDS = (
    "ticketId", "eventId", "orderId", "ticketCategoryId", "seatId",
    "issuedAt",
)


class TicketQRData(TypedDict):
    ticketId: int
    eventId: int
    orderId: int
    ticketCategoryId: Optional[int]
    seatId: Optional[int]
    issuedAt: str


@dataclass(frozen=True)
class QRVerification:
    is_valid: bool
    ticket_data: Optional[TicketQRData] = None


def _canonical(data: Dict[str, Any]) -> str:
    return json.dumps(data, separators=(",", ":"), ensure_ascii=False)


def _tag(canonical: str, secret: str) -> str:
    digest = hashlib.sha256(f"{canonical}-{secret}".encode("utf-8"))
    return digest.hexdigest()[:TAG_LENGTH]


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64url_decode(text: str) -> bytes:
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


def build_qr_data(*, ticket_id: int, event_id: int, order_id: int,
                  ticket_category_id: Optional[int], seat_id: Optional[int],
                  issued_at: str) -> TicketQRData:
    # field order is part of the credential format
    return {
        "ticketId": ticket_id,
        "eventId": event_id,
        "orderId": order_id,
        "ticketCategoryId": ticket_category_id,
        "seatId": seat_id,
        "issuedAt": issued_at,
    }


def generate_ticket_qr(data: TicketQRData,
                       secret: str = TICKET_SECRET_KEY) -> str:
    payload = {k: data[k] for k in QR_FIELDS}
    signed = dict(payload, hash=_tag(_canonical(payload), secret))
    return _b64url_encode(_canonical(signed).encode("utf-8"))


def verify_ticket_qr(qr_payload: str,
                     secret: str = TICKET_SECRET_KEY) -> QRVerification:
    """Fails closed: nothing decoded is returned unless the tag matches."""
    if not isinstance(qr_payload, str) or not qr_payload:
        return QRVerification(False)
    try:
        raw = _b64url_decode(qr_payload)
        # reject alternative encodings of the same bytes
        if _b64url_encode(raw) != qr_payload:
            return QRVerification(False)
        decoded = json.loads(raw.decode("utf-8"))
    except (binascii.Error, ValueError):
        return QRVerification(False)

    if not isinstance(decoded, dict) or \
            tuple(decoded) != QR_FIELDS + ("hash",):
        return QRVerification(False)
    tag = decoded.pop("hash")
    if not isinstance(tag, str):
        return QRVerification(False)
    if not isinstance(decoded["ticketId"], int):
        return QRVerification(False)

    expected = _tag(_canonical(decoded), secret)
    if not hmac.compare_digest(tag, expected):
        return QRVerification(False)
    return QRVerification(True, decoded)


def generate_ticket_barcode() -> str:
    return f"TIX-{base36_millis().upper()}-{random_alnum(10).upper()}"


def generate_order_number() -> str:
    return f"ORD-{base36_millis()}-{random_alnum(6).upper()}"
