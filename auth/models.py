"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, near-zero logic). Dataclasses own
domain shape; stores, the ledger and the session manager do the work.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

ROLES = ("admin", "staff")
THEMES = ("light", "dark", "system")
DEFAULT_ROLE = "staff"
DEFAULT_THEME = "light"

# Refresh token states. Active is the only non-terminal state.
TOKEN_ACTIVE = "active"
TOKEN_ROTATED = "rotated"
TOKEN_REVOKED = "revoked"


@dataclass
class User:
    """A library staff or admin account.

    email is stored normalized (trimmed, lower-cased) so lookups are
    case-insensitive. branch_id None means global scope for admins and
    "no branch" for staff; downstream collaborators interpret it.

    password_hash never leaves the auth layer -- response models in api/
    do not carry it.
    """

    email: str
    password_hash: str
    role: str = DEFAULT_ROLE
    id: int | None = None
    branch_id: int | None = None
    display_name: str | None = None
    theme_preference: str = DEFAULT_THEME
    is_active: bool = True
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class RefreshTokenRecord:
    """Server-side state of one refresh token.

    token_hash is HMAC-SHA256(REFRESH_SECRET_KEY, raw token). The raw value is
    handed to the client once and never stored.

    family_id groups every token produced from one login by successive
    rotations (the lineage). Replay of any member revokes the whole family.
    """

    token_hash: str
    user_id: int
    family_id: str
    expires_at: str
    state: str = TOKEN_ACTIVE
    id: int | None = None
    created_at: str | None = None
    rotated_to: str | None = None
    revoked_at: str | None = None
    ip: str | None = None
    user_agent: str | None = None

    @property
    def is_active(self) -> bool:
        return self.state == TOKEN_ACTIVE

    def is_expired(self, now: datetime) -> bool:
        return datetime.fromisoformat(self.expires_at) <= now


@dataclass
class ClientInfo:
    """Where a request came from. Recorded on refresh tokens and in audit logs."""

    ip: str | None = None
    user_agent: str | None = None


@dataclass
class AccessToken:
    token: str
    expires_at: str


@dataclass
class AccessClaims:
    """Verified claims of an access token."""

    user_id: int
    email: str
    role: str
    branch_id: int | None
    issued_at: int
    expires_at: int


@dataclass
class Rotation:
    """Result of a successful RefreshTokenLedger.rotate()."""

    token: str
    record: RefreshTokenRecord
    user: User


@dataclass
class AuthSession:
    """Everything a client receives after register, login, or refresh."""

    user: User
    access_token: str
    access_expires_at: str
    refresh_token: str
    refresh_expires_at: str
