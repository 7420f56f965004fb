"""
auth/store.py -- SQLAlchemy Core persistence layer for user records.

Pattern: Repository + Data Mapper.
UserStore is the repository; row_to_user is the mapper. Route and service code
never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Emails are normalized (strip + lower) before every write and lookup, so the
  UNIQUE constraint on users.email gives case-insensitive uniqueness.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from sqlalchemy import func, select, text
from sqlalchemy.engine import Engine

from auth.models import User
from auth.schema import make_engine, now_iso, users
from core.config import get_settings

# Columns update_user() accepts. Anything else is a programming error.
_MUTABLE_FIELDS = frozenset({"password_hash", "role", "branch_id", "display_name", "theme_preference", "is_active"})


def normalize_email(email: str) -> str:
    return email.strip().lower()


class UserStore:
    """Repository for User entities.

    Usage:
        store = UserStore()
        uid = store.create_user(User(email="admin@school.local", role="admin", password_hash=hash_password("secret")))
        user = store.get_by_email("Admin@School.local")
        store.close()

    The engine is public so RefreshTokenLedger can share it (one database,
    two tables).
    """

    def __init__(self, db_url: str | None = None) -> None:
        self.engine: Engine = make_engine(db_url or get_settings().database_url)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def has_users(self) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(users)).scalar()
        return (result or 0) > 0

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        SessionManager turns that into DuplicateEmail, which covers the race
        where two registrations pass the pre-insert existence check together.
        """
        stamp = now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(
                users.insert().values(
                    email=normalize_email(user.email),
                    password_hash=user.password_hash,
                    role=user.role,
                    branch_id=user.branch_id,
                    display_name=user.display_name,
                    theme_preference=user.theme_preference,
                    is_active=1 if user.is_active else 0,
                    created_at=stamp,
                    updated_at=stamp,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by email (case-insensitive). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(users.select().where(users.c.email == normalize_email(email))).fetchone()
        return row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(users.select().where(users.c.id == user_id)).fetchone()
        return row_to_user(row) if row is not None else None

    def list_users(self) -> list[User]:
        """Return all users, newest first. Admin-only operation."""
        with self.engine.connect() as conn:
            rows = conn.execute(users.select().order_by(users.c.created_at.desc(), users.c.id.desc())).fetchall()
        return [row_to_user(r) for r in rows]

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable fields on an existing user and stamp updated_at.

        Accepted fields: password_hash, role, branch_id, display_name,
        theme_preference, is_active. is_active is passed as bool and stored
        as 0/1.

        Returns True if a row was updated, False if user_id was not found.
        """
        unknown = set(fields) - _MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {unknown!r}")
        if "is_active" in fields:
            fields["is_active"] = 1 if fields["is_active"] else 0
        fields["updated_at"] = now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(users.update().where(users.c.id == user_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def count_active_admins(self) -> int:
        """Used by the admin PATCH route to keep at least one active admin."""
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count()).select_from(users).where((users.c.role == "admin") & (users.c.is_active == 1))
            ).scalar()
        return result or 0

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        with self.engine.connect() as conn:
            return conn.execute(text("SELECT 1")).scalar() == 1

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        password_hash=row.password_hash,
        role=row.role,
        branch_id=row.branch_id,
        display_name=row.display_name,
        theme_preference=row.theme_preference,
        is_active=bool(row.is_active),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )
