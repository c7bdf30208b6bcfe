"""
Request identity helpers.

Authentication happens upstream; the gateway forwards the authenticated user
in X-User-Id (or sets request.state.user_id). Admin routes accept the shared
ADMIN_KEY in X-Admin-Key.
"""
import hashlib
import hmac
from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from creditledger.core.config import settings
from creditledger.core.errors import PermissionError, UnauthorizedError


@dataclass
class AdminActor:
    """Authenticated admin identity recorded on audit rows."""
    actor_id: str
    auth_mechanism: str = "x_admin_key"


def optional_user_id(request: Request) -> Optional[str]:
    user_id = getattr(request.state, "user_id", None) or request.headers.get("X-User-Id", "")
    return user_id.strip() or None


def get_current_user_id(request: Request) -> str:
    """FastAPI dependency returning the calling user's id."""
    user_id = optional_user_id(request)
    if not user_id:
        raise UnauthorizedError("Missing user identity")
    return user_id


def require_admin(request: Request) -> AdminActor:
    """FastAPI dependency guarding /admin routes."""
    expected_key = settings.ADMIN_KEY
    if not expected_key:
        raise PermissionError("Admin access is not configured", code="admin_disabled")

    header_key = request.headers.get("X-Admin-Key", "").strip()
    if not header_key or not hmac.compare_digest(header_key, expected_key):
        raise PermissionError("Invalid admin key")

    key_hash = hashlib.sha256(header_key.encode()).hexdigest()[:16]
    return AdminActor(actor_id=f"admin_key:{key_hash}")
