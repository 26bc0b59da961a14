from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_CEILING
from typing import Any, Dict, List, Optional, TypedDict
import base64
import os
import re

import httpx

from .errors import GatewayError, ValidationError
from .infra.timings import timeit

SANDBOX_URL = "https://sandbox.safaricom.co.ke"
LIVE_URL = "https://api.safaricom.co.ke"

# Daraja timestamps are East Africa Time
EAT = timezone(timedelta(hours=3), "EAT")

# stkpushquery answers with this errorCode while the buyer is still on the
# PIN prompt
STILL_PROCESSING_ERROR = "500.001.1001"

# refresh a bit before the gateway expires the token
TOKEN_SLACK_SECONDS = 60


@dataclass
class MpesaConfig:
    consumer_key: str
    consumer_secret: str
    shortcode: str
    passkey: str
    callback_url: str
    environment: str = "sandbox"

    @classmethod
    def from_env(cls) -> "MpesaConfig":
        public = os.environ.get("PUBLIC_API_URL", "http://localhost:8000")
        return cls(
            consumer_key=os.environ.get("MPESA_CONSUMER_KEY", ""),
            consumer_secret=os.environ.get("MPESA_CONSUMER_SECRET", ""),
            shortcode=os.environ.get("MPESA_SHORTCODE", ""),
            passkey=os.environ.get("MPESA_PASSKEY", ""),
            callback_url=os.environ.get(
                "MPESA_CALLBACK_URL",
                f"{public.rstrip('/')}/api/payments/mpesa-callback",
            ),
            environment=os.environ.get("MPESA_ENVIRONMENT", "sandbox"),
        )

    @property
    def base_url(self) -> str:
        return LIVE_URL if self.environment == "live" else SANDBOX_URL


class PushResult(TypedDict):
    CheckoutRequestID: str
    MerchantRequestID: str
    ResponseCode: str
    ResponseDescription: str
    CustomerMessage: str


# ----------------------------
# Wire helpers
# ----------------------------
def make_timestamp(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(tz=EAT)
    return now.astimezone(EAT).strftime("%Y%m%d%H%M%S")


def make_password(shortcode: str, passkey: str, timestamp: str) -> str:
    return base64.b64encode(
        f"{shortcode}{passkey}{timestamp}".encode()
    ).decode()


def normalize_phone(raw: str) -> str:
    """0712345678 / +254712345678 / 712345678 -> 254712345678"""
    phone = re.sub(r"[\s\-()]", "", raw or "")
    if phone.startswith("+"):
        phone = phone[1:]
    if phone.startswith("0"):
        phone = "254" + phone[1:]
    if not phone.startswith("254"):
        phone = "254" + phone
    if not re.fullmatch(r"254\d{9}", phone):
        raise ValidationError(f"Invalid M-PESA phone number: {raw!r}")
    return phone


def whole_units(amount: Decimal) -> int:
    # the gateway only charges whole shillings
    return int(amount.to_integral_value(rounding=ROUND_CEILING))


@dataclass
class CallbackResult:
    checkout_request_id: str
    result_code: int
    result_description: str
    metadata: Optional[Dict[str, Any]] = None
    items: Dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.result_code == 0

    @property
    def receipt_number(self) -> Optional[str]:
        v = self.items.get("MpesaReceiptNumber")
        return None if v is None else str(v)

    @property
    def transaction_date(self) -> Optional[str]:
        v = self.items.get("TransactionDate")
        return None if v is None else str(v)


def parse_callback(body: Any) -> CallbackResult:
    try:
        cb = body["Body"]["stkCallback"]
        checkout_id = cb["CheckoutRequestID"]
        code = int(cb["ResultCode"])
    except (KeyError, TypeError, ValueError):
        raise ValidationError("Invalid callback data structure")
    if not isinstance(checkout_id, str) or not checkout_id:
        raise ValidationError("Invalid callback data structure")

    metadata = cb.get("CallbackMetadata") or None
    items: Dict[str, Any] = {}
    item_list: List[Any] = (metadata or {}).get("Item") or []
    for item in item_list:
        if isinstance(item, dict) and "Name" in item:
            items[item["Name"]] = item.get("Value")
    return CallbackResult(
        checkout_request_id=checkout_id,
        result_code=code,
        result_description=str(cb.get("ResultDesc") or ""),
        metadata=metadata,
        items=items,
    )


# ----------------------------
# Payment Gateway Interface
# ----------------------------
class PaymentGateway(ABC):
    @abstractmethod
    async def stk_push(self, *, phone: str, amount: int,
                       account_reference: str,
                       description: str) -> PushResult: ...

    # {"ResultCode": ..., "ResultDesc": ...}; ResultCode None while pending
    @abstractmethod
    async def stk_query(self, checkout_request_id: str) -> Dict[str, Any]:
        ...


# ----------------------------
# Daraja implementation
# ----------------------------
class MpesaGateway(PaymentGateway):

    def __init__(self, http: httpx.AsyncClient, config: MpesaConfig,
                 tokens=None) -> None:
        self.http = http
        self.config = config
        self.tokens = tokens

    async def access_token(self) -> str:
        cache_key = self.config.consumer_key or "default"
        if self.tokens is not None:
            token = await self.tokens.get(cache_key)
            if token:
                return token

        async with timeit("gateway.token"):
            try:
                resp = await self.http.get(
                    f"{self.config.base_url}/oauth/v1/generate",
                    params={"grant_type": "client_credentials"},
                    auth=(self.config.consumer_key,
                          self.config.consumer_secret),
                )
            except httpx.HTTPError as e:
                raise GatewayError(f"token request failed: {e}")
        data = self._json_or_raise(resp, "token request")
        token = data.get("access_token")
        if not token:
            raise GatewayError("token response without access_token",
                               resp.status_code, data)

        if self.tokens is not None:
            ttl = int(data.get("expires_in") or 0) - TOKEN_SLACK_SECONDS
            await self.tokens.put(cache_key, token, ttl)
        return token

    async def stk_push(self, *, phone: str, amount: int,
                       account_reference: str,
                       description: str) -> PushResult:
        token = await self.access_token()
        timestamp = make_timestamp()
        shortcode = self.config.shortcode
        body = {
            "BusinessShortCode": shortcode,
            "Password": make_password(shortcode, self.config.passkey,
                                      timestamp),
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": amount,
            "PartyA": phone,
            "PartyB": shortcode,
            "PhoneNumber": phone,
            "CallBackURL": self.config.callback_url,
            "AccountReference": account_reference,
            "TransactionDesc": description,
        }
        async with timeit("gateway.stkpush"):
            try:
                resp = await self.http.post(
                    f"{self.config.base_url}/mpesa/stkpush/v1/processrequest",
                    json=body,
                    headers={"Authorization": f"Bearer {token}"},
                )
            except httpx.HTTPError as e:
                raise GatewayError(f"push request failed: {e}")
        data = self._json_or_raise(resp, "push request")
        if str(data.get("ResponseCode", "0")) != "0" or \
                not data.get("CheckoutRequestID"):
            raise GatewayError(
                data.get("ResponseDescription") or "push request rejected",
                resp.status_code, data,
            )
        return data

    async def stk_query(self, checkout_request_id: str) -> Dict[str, Any]:
        token = await self.access_token()
        timestamp = make_timestamp()
        shortcode = self.config.shortcode
        body = {
            "BusinessShortCode": shortcode,
            "Password": make_password(shortcode, self.config.passkey,
                                      timestamp),
            "Timestamp": timestamp,
            "CheckoutRequestID": checkout_request_id,
        }
        async with timeit("gateway.stkquery"):
            try:
                resp = await self.http.post(
                    f"{self.config.base_url}/mpesa/stkpushquery/v1/query",
                    json=body,
                    headers={"Authorization": f"Bearer {token}"},
                )
            except httpx.HTTPError as e:
                raise GatewayError(f"status query failed: {e}")

        if resp.is_error:
            data = _safe_json(resp)
            if isinstance(data, dict) and \
                    data.get("errorCode") == STILL_PROCESSING_ERROR:
                return {"ResultCode": None,
                        "ResultDesc": data.get("errorMessage", "")}
        data = self._json_or_raise(resp, "status query")
        code = data.get("ResultCode")
        return dict(data, ResultCode=None if code is None else int(code))

    @staticmethod
    def _json_or_raise(resp: httpx.Response, what: str) -> Dict[str, Any]:
        data = _safe_json(resp)
        if resp.is_error:
            msg = None
            if isinstance(data, dict):
                msg = data.get("errorMessage") or data.get("error_description")
            raise GatewayError(
                f"{what} failed with HTTP {resp.status_code}"
                + (f": {msg}" if msg else ""),
                resp.status_code, data,
            )
        if not isinstance(data, dict):
            raise GatewayError(f"{what}: unexpected response body",
                               resp.status_code, data)
        return data


def _safe_json(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except ValueError:
        return None
