"""
Admin authentication for quota and subscription administration.

An admin is an authenticated user whose app_users.role is "admin".
All admin actions are logged with the actor identity.
"""
from dataclasses import dataclass
from typing import Optional
from fastapi import Depends

from heirloom.core.auth import get_current_user_id
from heirloom.core.errors import PermissionError


@dataclass
class AdminActor:
    """Represents an authenticated admin actor."""
    actor_id: str
    actor_email: Optional[str] = None
    role: str = "admin"


def require_admin(user_id: str = Depends(get_current_user_id)) -> AdminActor:
    """
    FastAPI dependency: Require admin role.

    Usage:
        @router.get("/admin/endpoint")
        def admin_endpoint(actor: AdminActor = Depends(require_admin)):
            pass
    """
    from heirloom.features.users.service import get_user

    user = get_user(user_id)
    if not user or not user.is_admin:
        raise PermissionError("Admin access required", code="admin_required")
    return AdminActor(actor_id=user.user_id, actor_email=user.email, role=user.role)
