"""
auth/dependencies.py -- FastAPI Depends() helpers: the Authorization Guard.

get_identity() is the guard for every protected route:
  1. Read the Authorization: Bearer <token> header.
  2. Verify the access token (signature, algorithm, expiry, claims).
  3. Attach an Identity (user_id, email, role, branch_id) to
     request.state.identity and return it.

The guard is a pure, stateless filter. It does NOT read the user store or the
refresh token ledger, so any replica can verify a request without a database
round trip. The price is that a deactivated user keeps a working access
token until it expires (ACCESS_TOKEN_EXPIRE_SECONDS, 15 minutes by default).

Every failure answers the same 401; the specific reason (expired, malformed,
wrong key) is logged only.

require_admin() wraps get_identity() and raises HTTP 403 for non-admins.

Layer rule: this is the only auth/ module that imports fastapi.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from fastapi import HTTPException, Request

from auth.errors import TokenError
from auth.tokens import decode_access_token

logger = logging.getLogger("libraryauth.auth")


@dataclass(frozen=True)
class Identity:
    """Verified caller identity handed to downstream handlers.

    Business collaborators read role and branch_id to scope their queries;
    they never touch tokens themselves.
    """

    user_id: int
    email: str
    role: str
    branch_id: int | None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def _unauthorized() -> HTTPException:
    return HTTPException(
        status_code=401,
        detail={"code": "unauthorized", "message": "Authentication required."},
        headers={"WWW-Authenticate": "Bearer"},
    )


def _bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def get_identity(request: Request) -> Identity:
    """Require a valid access token. Raises HTTP 401 otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(identity: Identity = Depends(get_identity)): ...
    """
    token = _bearer_token(request)
    if token is None:
        raise _unauthorized()
    try:
        claims = decode_access_token(token)
    except TokenError as exc:
        logger.info("Access token rejected (%s) on %s %s", exc.code, request.method, request.url.path)
        raise _unauthorized() from exc

    identity = Identity(
        user_id=claims.user_id,
        email=claims.email,
        role=claims.role,
        branch_id=claims.branch_id,
    )
    request.state.identity = identity
    return identity


def require_admin(request: Request) -> Identity:
    """Require the admin role. Raises HTTP 401 if unauthenticated, HTTP 403 if not admin."""
    identity = get_identity(request)
    if not identity.is_admin:
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Admin access required."},
        )
    return identity
