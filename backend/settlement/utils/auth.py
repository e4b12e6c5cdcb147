from __future__ import annotations

from dataclasses import dataclass

from flask import g, request

from settlement.errors import NotAuthorized, Unauthenticated
from settlement.extensions import db
from settlement.models import User
from settlement.utils.jwt_utils import decode_token, get_bearer_token

ROLES = ("buyer", "vendor", "installer", "admin")


@dataclass(frozen=True)
class Actor:
    """Who is performing an operation.

    ``id`` is ``None`` for the system itself (webhooks, background jobs).
    """

    id: int | None
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @property
    def is_system(self) -> bool:
        return self.role == "system"


SYSTEM_ACTOR = Actor(id=None, role="system")


def current_user() -> User | None:
    token = get_bearer_token(request.headers.get("Authorization", ""))
    if not token:
        return None
    payload = decode_token(token)
    if not payload or payload.get("type") != "access":
        return None
    sub = str(payload.get("sub") or "")
    if not sub.isdigit():
        return None
    user = db.session.get(User, int(sub))
    if user is None or not user.is_active:
        return None
    g.auth_user_id = int(user.id)
    g.auth_role = user.role_name
    return user


def require_actor(*roles: str) -> Actor:
    user = current_user()
    if user is None:
        raise Unauthenticated("Authentication required")
    if roles and user.role_name not in roles:
        raise NotAuthorized(f"Role {user.role_name} may not perform this operation")
    return Actor(id=int(user.id), role=user.role_name)
