"""
api/routes/v1/auth.py -- Session lifecycle and profile REST endpoints.

Routes:
  POST  /api/v1/auth/register   -- create staff account; 201 + tokens
  POST  /api/v1/auth/login      -- password login; 200 + tokens
  POST  /api/v1/auth/refresh    -- rotate refresh token; 200 + new tokens
  POST  /api/v1/auth/logout     -- revoke refresh token; always 200
  GET   /api/v1/auth/profile    -- current user (requires auth)
  PUT   /api/v1/auth/profile    -- display name / password (requires auth)
  PATCH /api/v1/auth/theme      -- theme preference (requires auth)

Handlers are thin: they turn the request into SessionManager calls and the
result into response models. Domain errors (auth.errors) propagate to the
exception handler in api/main.py, which owns the status-code mapping.

Security:
  [C1] login goes through authenticate_user() (timing equalization).
  [M5] Cache-Control: no-store on every response that carries tokens.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response

from api.models import (
    LoginRequest,
    LogoutResponse,
    ProfileUpdate,
    RefreshRequest,
    RegisterRequest,
    SessionResponse,
    ThemeUpdate,
    UserEnvelope,
    UserResponse,
)
from auth.dependencies import Identity, get_identity
from auth.models import ClientInfo
from auth.service import SessionManager

# Auth policy:
# - POST  /api/v1/auth/register:  public
# - POST  /api/v1/auth/login:     public
# - POST  /api/v1/auth/refresh:   public -- the refresh token is the credential
# - POST  /api/v1/auth/logout:    public -- the refresh token is the credential
# - GET   /api/v1/auth/profile:   requires auth (get_identity)
# - PUT   /api/v1/auth/profile:   requires auth (get_identity)
# - PATCH /api/v1/auth/theme:     requires auth (get_identity)
router = APIRouter()


def get_sessions(request: Request) -> SessionManager:
    return request.app.state.sessions


def client_info(request: Request) -> ClientInfo:
    """Client ip (first X-Forwarded-For hop when behind a proxy) and user agent."""
    forwarded = request.headers.get("X-Forwarded-For", "")
    ip = forwarded.split(",")[0].strip() if forwarded else None
    if not ip and request.client:
        ip = request.client.host
    return ClientInfo(ip=ip or None, user_agent=request.headers.get("User-Agent"))


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=SessionResponse, status_code=201)
def register(
    request: Request,
    response: Response,
    body: RegisterRequest,
    sessions: SessionManager = Depends(get_sessions),
) -> SessionResponse:
    """Create a staff account and return its first access/refresh token pair.

    409 duplicate_email if the address is taken (case-insensitive),
    422 weak_password if the password is too short.
    """
    session = sessions.register(body.email, body.password, body.display_name, client=client_info(request))
    response.headers["Cache-Control"] = "no-store"  # [M5]
    return SessionResponse.from_session(session)


@router.post("/auth/login", response_model=SessionResponse)
def login(
    request: Request,
    response: Response,
    body: LoginRequest,
    sessions: SessionManager = Depends(get_sessions),
) -> SessionResponse:
    """Authenticate with email and password.

    401 bad_credentials for an unknown email or a wrong password (the two are
    indistinguishable on purpose). 403 account_inactive when the password is
    right but the account is deactivated.
    """
    session = sessions.login(body.email, body.password, client=client_info(request))
    response.headers["Cache-Control"] = "no-store"  # [M5]
    return SessionResponse.from_session(session)


@router.post("/auth/refresh", response_model=SessionResponse)
def refresh(
    request: Request,
    response: Response,
    body: RefreshRequest,
    sessions: SessionManager = Depends(get_sessions),
) -> SessionResponse:
    """Exchange a refresh token for a new access token and a new refresh token.

    The presented token is single-use. Unknown, expired, or already used
    tokens answer 401 invalid_refresh_token; reuse also revokes the token's
    whole lineage.
    """
    session = sessions.refresh(body.refresh_token, client=client_info(request))
    response.headers["Cache-Control"] = "no-store"  # [M5]
    return SessionResponse.from_session(session)


@router.post("/auth/logout", response_model=LogoutResponse)
def logout(
    request: Request,
    body: RefreshRequest,
    sessions: SessionManager = Depends(get_sessions),
) -> LogoutResponse:
    """Revoke a refresh token. Idempotent: always {"ok": true}."""
    sessions.logout(body.refresh_token, client=client_info(request))
    return LogoutResponse()


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/profile", response_model=UserEnvelope)
def profile(
    identity: Identity = Depends(get_identity),
    sessions: SessionManager = Depends(get_sessions),
) -> UserEnvelope:
    """Return the current user's record."""
    user = sessions.get_profile(identity.user_id)
    return UserEnvelope(user=UserResponse.from_user(user))


@router.put("/auth/profile", response_model=UserEnvelope)
def update_profile(
    body: ProfileUpdate,
    identity: Identity = Depends(get_identity),
    sessions: SessionManager = Depends(get_sessions),
) -> UserEnvelope:
    """Update display name and/or password of the current user."""
    user = sessions.update_profile(
        identity.user_id,
        display_name=body.display_name,
        current_password=body.current_password,
        new_password=body.new_password,
    )
    return UserEnvelope(user=UserResponse.from_user(user))


@router.patch("/auth/theme", response_model=UserEnvelope)
def update_theme(
    body: ThemeUpdate,
    identity: Identity = Depends(get_identity),
    sessions: SessionManager = Depends(get_sessions),
) -> UserEnvelope:
    """Set the current user's UI theme (light, dark, system)."""
    user = sessions.update_theme(identity.user_id, body.theme.value)
    return UserEnvelope(user=UserResponse.from_user(user))
