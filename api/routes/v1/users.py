"""
api/routes/v1/users.py -- User administration REST endpoints (admin only).

Routes:
  GET   /api/v1/auth/users        -- list all users
  PATCH /api/v1/auth/users/{id}   -- update role, branch, active flag, display name

Deactivating a user here revokes all of their refresh tokens immediately;
their access tokens lapse within ACCESS_TOKEN_EXPIRE_SECONDS.

Security:
  [M4] SessionManager.admin_update_user() blocks self-deactivation and
       removing the last active admin.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from api.models import UserEnvelope, UserPatch, UserResponse
from api.routes.v1.auth import get_sessions
from auth.dependencies import Identity, require_admin
from auth.service import SessionManager

router = APIRouter()


@router.get("/auth/users", response_model=list[UserResponse])
def list_users(
    identity: Identity = Depends(require_admin),
    sessions: SessionManager = Depends(get_sessions),
) -> list[UserResponse]:
    """List all user accounts. Admin only."""
    return [UserResponse.from_user(u) for u in sessions.list_users()]


@router.patch("/auth/users/{user_id}", response_model=UserEnvelope)
def update_user(
    user_id: int,
    body: UserPatch,
    identity: Identity = Depends(require_admin),
    sessions: SessionManager = Depends(get_sessions),
) -> UserEnvelope:
    """Update another user's role, branch, active status or display name. Admin only.

    Only fields present in the request body are changed.
    """
    changes = {}
    for field in body.model_fields_set:
        value = getattr(body, field)
        changes[field] = value.value if field == "role" else value
    user = sessions.admin_update_user(identity.user_id, user_id, **changes)
    return UserEnvelope(user=UserResponse.from_user(user))
