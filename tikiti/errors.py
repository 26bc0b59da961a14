from __future__ import annotations
from typing import Any, Optional


class TikitiError(Exception):
    """Base class for every error the ticket/payment engine raises."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(TikitiError):
    """Malformed or inconsistent input (e.g. order total mismatch)."""


class AuthorizationError(TikitiError):
    """Caller lacks the required role or does not own the resource."""


class NotFoundError(TikitiError):
    pass


class InventoryExhausted(TikitiError):
    def __init__(self, message: str, remaining: int) -> None:
        super().__init__(message)
        self.remaining = remaining


class GatewayError(TikitiError):
    """Payment provider HTTP/network failure or non-success response."""

    def __init__(self, message: str, status_code: Optional[int] = None,
                 payload: Any = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload


class AlreadyCheckedInError(TikitiError):
    def __init__(self, message: str,
                 checked_in_at: Optional[float] = None) -> None:
        super().__init__(message)
        self.checked_in_at = checked_in_at


class IntegrityError(TikitiError):
    """Ticket credential failed its integrity check."""
