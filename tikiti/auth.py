"""
Who is calling.

The caller comes from the signed Starlette session cookie (`session`, JSON
`{"user_id": ..., "role": ...}` signed with SESSION_SECRET). Staff get one
from `POST /admin/login`; buyer accounts live in the identity service in
front of this API, which shares SESSION_SECRET and mints the cookie with
`session_cookie()`.
"""
from __future__ import annotations
import json
from base64 import b64encode
from dataclasses import dataclass
from typing import Optional

import itsdangerous

from .errors import AuthorizationError

# user | admin | manager | security | business_intelligence
ADMIN = "admin"
MANAGER = "manager"
SECURITY = "security"
USER = "user"

MANAGEMENT_ROLES = frozenset({ADMIN, MANAGER})
GATE_ROLES = frozenset({ADMIN, MANAGER, SECURITY})

SESSION_COOKIE = "session"


@dataclass(frozen=True)
class Caller:
    user_id: str
    role: str = USER

    @classmethod
    def from_session(cls, session: dict) -> Optional["Caller"]:
        user_id = session.get("user_id")
        if not user_id:
            return None
        return cls(user_id=str(user_id), role=session.get("role") or USER)

    def has_role(self, roles) -> bool:
        return self.role in roles

    def owns(self, owner_id: Optional[str]) -> bool:
        return owner_id is not None and owner_id == self.user_id


def require_role(caller: Optional[Caller], roles, action: str) -> Caller:
    if caller is None:
        raise AuthorizationError("Authentication required")
    if not caller.has_role(roles):
        raise AuthorizationError(
            f"Unauthorized: you do not have permission to {action}"
        )
    return caller


def require_owner_or_role(caller: Optional[Caller], owner_id: Optional[str],
                          roles, action: str) -> Caller:
    # same message whether or not the resource exists
    if caller is None:
        raise AuthorizationError("Authentication required")
    if caller.owns(owner_id) or caller.has_role(roles):
        return caller
    raise AuthorizationError(f"Not authorized to {action}")


def session_cookie(user_id: str, secret: str, role: str = USER) -> str:
    """Cookie value SessionMiddleware(secret_key=secret) reads back as the
    session {"user_id": user_id, "role": role}."""
    data = b64encode(json.dumps({"user_id": user_id, "role": role})
                     .encode("utf-8"))
    return itsdangerous.TimestampSigner(secret).sign(data).decode("utf-8")
