"""
auth/tokens.py -- Password hashing, access tokens, and refresh token material.

Security design decisions:
  Passwords: bcrypt used directly (no passlib wrapper). Bcrypt's cost factor
       makes brute force of low-entropy secrets expensive. _DUMMY_HASH enables
       timing equalization in authenticate_user() so response time does not
       reveal whether an email is registered [C1].

  Access tokens: python-jose, HS256, signed with SECRET_KEY. Claims carry
       sub, email, role, branch_id, iat, exp and type="access". Tokens are
       stateless; verification needs only the key. decode_access_token()
       raises a TokenError subclass so the guard can log WHY a token was
       refused while still answering a uniform 401.

  Refresh tokens: opaque, "rt_" + secrets.token_hex(32) (256 bits). Only
       HMAC-SHA256(REFRESH_SECRET_KEY, raw) is persisted. The hash is
       deterministic so the ledger finds a record with one indexed lookup;
       the token's entropy makes bcrypt-style slowness unnecessary. A stolen
       database does not yield usable refresh tokens.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import ExpiredSignatureError, JWTError, jwt

from auth.errors import AccountInactive, BadCredentials, TokenMalformed, TokenExpired, WrongKey
from auth.models import AccessClaims, AccessToken
from core.config import get_settings

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import UserStore

logger = logging.getLogger("libraryauth.auth")

_settings = get_settings()

_ALGORITHM = "HS256"
_TOKEN_TYPE = "access"

# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt only accepts up to 72 bytes; SessionManager rejects longer
    passwords as WeakPassword before they reach this function.
    """
    salt = bcrypt.gensalt(rounds=_settings.bcrypt_rounds)
    return bcrypt.hashpw(plain.encode("utf-8"), salt).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Over-long input or a corrupt stored hash -- never a match.
        return False


# Timing equalization dummy hash [C1]. Computed once at module load so the
# first login attempt is not measurably slower than subsequent ones.
_DUMMY_HASH: str = hash_password("libraryauth_timing_dummy")


def authenticate_user(store: UserStore, email: str, password: str) -> User:
    """Verify an email/password pair with timing equalization.

    Always runs bcrypt whether or not the user exists [C1]:
    - Unknown email: bcrypt runs against _DUMMY_HASH
    - Wrong password: bcrypt runs against the real hash

    Both raise BadCredentials, so the caller cannot tell them apart.
    AccountInactive is raised only after the password matched; an attacker
    without the password never learns that an account is deactivated.
    """
    user = store.get_by_email(email)
    if user is None:
        verify_password(password, _DUMMY_HASH)
        raise BadCredentials("Invalid email or password.")
    if not verify_password(password, user.password_hash):
        raise BadCredentials("Invalid email or password.")
    if not user.is_active:
        raise AccountInactive("This account has been deactivated.")
    return user


# ---------------------------------------------------------------------------
# Access tokens (stateless JWT)
# ---------------------------------------------------------------------------


def create_access_token(user: User, expire_seconds: int = 0) -> AccessToken:
    """Encode a signed JWT with the user's identity claims.

    Pure function of the user row: nothing is persisted. If expire_seconds is
    0 (default) the configured ACCESS_TOKEN_EXPIRE_SECONDS is used.
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.access_token_expire_seconds
    issued = datetime.now(timezone.utc).replace(microsecond=0)
    expires = issued + timedelta(seconds=duration)
    payload = {
        "sub": str(user.id),
        "email": user.email,
        "role": user.role,
        "branch_id": user.branch_id,
        "iat": int(issued.timestamp()),
        "exp": int(expires.timestamp()),
        "type": _TOKEN_TYPE,
    }
    token = jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)
    return AccessToken(token=token, expires_at=expires.isoformat())


def decode_access_token(token: str) -> AccessClaims:
    """Verify a JWT and return its claims.

    Raises:
        WrongKey:       header names an algorithm other than HS256
        TokenExpired:   signature valid, exp elapsed
        TokenMalformed: not a JWT, bad signature, or missing/invalid claims
    """
    try:
        header = jwt.get_unverified_header(token)
    except JWTError as exc:
        raise TokenMalformed("Token is not a valid JWT.") from exc
    if header.get("alg") != _ALGORITHM:
        raise WrongKey(f"Unexpected signing algorithm {header.get('alg')!r}.")

    try:
        payload = jwt.decode(token, _settings.secret_key, algorithms=[_ALGORITHM])
    except ExpiredSignatureError as exc:
        raise TokenExpired("Token has expired.") from exc
    except JWTError as exc:
        raise TokenMalformed(str(exc)) from exc

    if payload.get("type") != _TOKEN_TYPE:
        raise TokenMalformed("Not an access token.")
    try:
        return AccessClaims(
            user_id=int(payload["sub"]),
            email=payload["email"],
            role=payload["role"],
            branch_id=payload.get("branch_id"),
            issued_at=int(payload["iat"]),
            expires_at=int(payload["exp"]),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise TokenMalformed("Token is missing required claims.") from exc


# ---------------------------------------------------------------------------
# Refresh token material
# ---------------------------------------------------------------------------


def generate_refresh_token() -> str:
    """Generate a new opaque refresh token: rt_<64 hex chars>."""
    return f"rt_{secrets.token_hex(32)}"


def hash_refresh_token(raw_token: str) -> str:
    """Return HMAC-SHA256(REFRESH_SECRET_KEY, raw_token) as a hex string."""
    return hmac.new(
        _settings.refresh_secret_key.encode(),
        raw_token.encode(),
        hashlib.sha256,
    ).hexdigest()


def generate_family_id() -> str:
    return secrets.token_hex(16)
