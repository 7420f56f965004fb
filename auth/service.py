"""
auth/service.py -- Session Lifecycle Manager.

SessionManager composes the Credential Store (UserStore), the Credential
Verifier (auth.tokens password helpers), the Access Token Issuer
(create_access_token) and the Refresh Token Ledger into the client-facing
operations:

  register  -> create user   -> issue access token -> create refresh token
  login     -> verify creds  -> issue access token -> create refresh token
  refresh   -> rotate refresh token (re-reads user, active gate) -> issue
  logout    -> revoke refresh token (always succeeds)

plus the profile/theme mutations and the admin user edits that feed back into
session state (deactivation revokes every refresh token the user holds).

Every method raises auth.errors types; nothing here knows about HTTP.

Audit trail: successful state changes are written to the libraryauth.audit
logger as "<action> key=value ..." lines. Passwords and raw tokens are never
logged.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError

from auth.errors import (
    AccountInactive,
    BadCredentials,
    DuplicateEmail,
    InvalidInput,
    PermissionDenied,
    UserNotFound,
    WeakPassword,
)
from auth.ledger import RefreshTokenLedger
from auth.models import DEFAULT_ROLE, DEFAULT_THEME, ROLES, THEMES, AuthSession, ClientInfo, User
from auth.store import UserStore, normalize_email
from auth.tokens import authenticate_user, create_access_token, hash_password, verify_password
from core.config import get_settings

audit = logging.getLogger("libraryauth.audit")

_BCRYPT_MAX_BYTES = 72

# Sentinel: "field not supplied" for admin_update_user, distinct from None,
# which clears branch_id / display_name.
UNSET = object()


class SessionManager:
    """Orchestrates register / login / refresh / logout and profile changes."""

    def __init__(self, store: UserStore, ledger: RefreshTokenLedger) -> None:
        self.store = store
        self.ledger = ledger
        self.min_password_length = get_settings().min_password_length

    # ------------------------------------------------------------------
    # Credential verifier
    # ------------------------------------------------------------------

    def check_password_policy(self, password: str) -> None:
        if len(password) < self.min_password_length:
            raise WeakPassword(f"Password must be at least {self.min_password_length} characters.")
        if len(password.encode("utf-8")) > _BCRYPT_MAX_BYTES:
            raise WeakPassword(f"Password must be at most {_BCRYPT_MAX_BYTES} bytes.")

    def create_user(
        self,
        email: str,
        password: str,
        display_name: str | None = None,
        role: str = DEFAULT_ROLE,
        branch_id: int | None = None,
    ) -> User:
        """Validate, hash and insert a new user. Returns the stored row."""
        email = normalize_email(email)
        if "@" not in email:
            raise InvalidInput("A valid email address is required.", field="email")
        if role not in ROLES:
            raise InvalidInput(f"Role must be one of {', '.join(ROLES)}.", field="role")
        self.check_password_policy(password)
        if self.store.get_by_email(email) is not None:
            raise DuplicateEmail("Email already registered.")

        user = User(
            email=email,
            password_hash=hash_password(password),
            role=role,
            branch_id=branch_id,
            display_name=display_name or None,
            theme_preference=DEFAULT_THEME,
            is_active=True,
        )
        try:
            user_id = self.store.create_user(user)
        except IntegrityError as exc:
            # A concurrent registration won between the check and the insert.
            raise DuplicateEmail("Email already registered.") from exc
        return self._require_user(user_id)

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def register(
        self,
        email: str,
        password: str,
        display_name: str | None = None,
        client: ClientInfo | None = None,
    ) -> AuthSession:
        """Create a staff account and open its first session."""
        user = self.create_user(email, password, display_name)
        session = self._open_session(user, client)
        audit.info("auth.register user_id=%s role=%s ip=%s", user.id, user.role, _ip(client))
        return session

    def login(self, email: str, password: str, client: ClientInfo | None = None) -> AuthSession:
        """Verify credentials and open a new session (new refresh token lineage).

        Raises BadCredentials for unknown email or wrong password and
        AccountInactive for a deactivated account with the correct password.
        """
        user = authenticate_user(self.store, email, password)
        session = self._open_session(user, client)
        audit.info("auth.login user_id=%s ip=%s", user.id, _ip(client))
        return session

    def refresh(self, refresh_token: str, client: ClientInfo | None = None) -> AuthSession:
        """Rotate a refresh token and issue a fresh access token.

        The user row comes from the rotation transaction, so role, branch and
        active-flag changes since login apply immediately.
        """
        rotation = self.ledger.rotate(refresh_token, client)
        access = create_access_token(rotation.user)
        audit.info("auth.refresh user_id=%s family=%s ip=%s", rotation.user.id, rotation.record.family_id, _ip(client))
        return AuthSession(
            user=rotation.user,
            access_token=access.token,
            access_expires_at=access.expires_at,
            refresh_token=rotation.token,
            refresh_expires_at=rotation.record.expires_at,
        )

    def logout(self, refresh_token: str, client: ClientInfo | None = None) -> None:
        """Revoke a refresh token. Unknown or already-used tokens are not an error."""
        if self.ledger.revoke(refresh_token):
            audit.info("auth.logout ip=%s", _ip(client))

    def _open_session(self, user: User, client: ClientInfo | None) -> AuthSession:
        access = create_access_token(user)
        raw, record = self.ledger.create(user.id, client=client)
        return AuthSession(
            user=user,
            access_token=access.token,
            access_expires_at=access.expires_at,
            refresh_token=raw,
            refresh_expires_at=record.expires_at,
        )

    # ------------------------------------------------------------------
    # Profile and preferences
    # ------------------------------------------------------------------

    def get_profile(self, user_id: int) -> User:
        return self._require_active_user(user_id)

    def update_profile(
        self,
        user_id: int,
        display_name: str | None = None,
        current_password: str | None = None,
        new_password: str | None = None,
    ) -> User:
        """Change display name and/or password for an active user.

        A password change requires the current password; a wrong one is
        BadCredentials.
        """
        if display_name is None and not new_password:
            raise InvalidInput("Nothing to update.")
        user = self._require_active_user(user_id)

        updates: dict = {}
        if display_name is not None:
            updates["display_name"] = display_name.strip() or None
        if new_password:
            if not current_password:
                raise InvalidInput("Current password is required.", field="current_password")
            if not verify_password(current_password, user.password_hash):
                raise BadCredentials("Current password is incorrect.")
            self.check_password_policy(new_password)
            updates["password_hash"] = hash_password(new_password)

        self.store.update_user(user_id, **updates)
        audit.info("auth.profile.update user_id=%s fields=%s", user_id, ",".join(sorted(updates)))
        return self._require_user(user_id)

    def update_theme(self, user_id: int, theme: str) -> User:
        if theme not in THEMES:
            raise InvalidInput(f"Theme must be one of {', '.join(THEMES)}.", field="theme")
        self._require_active_user(user_id)
        self.store.update_user(user_id, theme_preference=theme)
        audit.info("auth.theme.update user_id=%s theme=%s", user_id, theme)
        return self._require_user(user_id)

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def create_admin(self, email: str, password: str, display_name: str | None = None) -> User:
        """Bootstrap an admin account (CLI). No session is opened."""
        user = self.create_user(email, password, display_name, role="admin")
        audit.info("auth.admin.create user_id=%s", user.id)
        return user

    def list_users(self) -> list[User]:
        return self.store.list_users()

    def admin_update_user(
        self,
        actor: int,
        user_id: int,
        role=UNSET,
        branch_id=UNSET,
        is_active=UNSET,
        display_name=UNSET,
    ) -> User:
        """Apply an administrator's edit to another user.

        Guards [M4]:
          - an admin cannot deactivate themself
          - the last active admin can be neither deactivated nor demoted

        Deactivation revokes every refresh token the user holds. Access
        tokens already issued stay valid until they expire (at most
        ACCESS_TOKEN_EXPIRE_SECONDS).
        """
        target = self.store.get_by_id(user_id)
        if target is None:
            raise UserNotFound("User not found.")

        updates: dict = {}
        if role is not UNSET:
            if role not in ROLES:
                raise InvalidInput(f"Role must be one of {', '.join(ROLES)}.", field="role")
            if target.role == "admin" and role != "admin" and target.is_active and self.store.count_active_admins() <= 1:
                raise PermissionDenied("Cannot demote the last active admin account.")
            updates["role"] = role
        if branch_id is not UNSET:
            updates["branch_id"] = branch_id
        if display_name is not UNSET:
            updates["display_name"] = display_name
        if is_active is not UNSET:
            if not is_active and target.id == actor:
                raise PermissionDenied("You cannot deactivate your own account.")
            if not is_active and target.role == "admin" and target.is_active and self.store.count_active_admins() <= 1:
                raise PermissionDenied("Cannot deactivate the last active admin account.")
            updates["is_active"] = bool(is_active)

        if not updates:
            raise InvalidInput("No fields to update.")

        self.store.update_user(user_id, **updates)
        revoked = 0
        if updates.get("is_active") is False:
            revoked = self.ledger.revoke_all_for_user(user_id)
        audit.info(
            "auth.admin.update actor=%s user_id=%s fields=%s sessions_revoked=%d",
            actor,
            user_id,
            ",".join(sorted(updates)),
            revoked,
        )
        return self._require_user(user_id)

    def set_active(self, email: str, active: bool) -> User:
        """CLI helper: (de)activate by email, revoking sessions on deactivation.

        The last active admin cannot be deactivated here either [M4].
        """
        user = self.store.get_by_email(email)
        if user is None:
            raise UserNotFound("User not found.")
        if not active and user.role == "admin" and user.is_active and self.store.count_active_admins() <= 1:
            raise PermissionDenied("Cannot deactivate the last active admin account.")
        self.store.update_user(user.id, is_active=active)
        if not active:
            self.ledger.revoke_all_for_user(user.id)
        audit.info("auth.admin.set_active user_id=%s active=%s", user.id, active)
        return self._require_user(user.id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_user(self, user_id: int) -> User:
        user = self.store.get_by_id(user_id)
        if user is None:
            raise UserNotFound("User not found.")
        return user

    def _require_active_user(self, user_id: int) -> User:
        user = self._require_user(user_id)
        if not user.is_active:
            raise AccountInactive("This account has been deactivated.")
        return user


def _ip(client: ClientInfo | None) -> str:
    return (client.ip if client else None) or "unknown"
