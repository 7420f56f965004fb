"""
auth/schema.py -- SQLAlchemy Core table definitions and engine factory.

The session subsystem owns exactly two tables:
  users           -- the Credential Store (auth/store.py)
  refresh_tokens  -- the Refresh Token Ledger (auth/ledger.py)

Both live in one MetaData so the ledger can read the owning user inside the
same transaction that rotates a token.

Timestamps are ISO-8601 UTC strings with fixed microsecond precision, so
lexical order equals chronological order and SQL range filters on them work.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Column, ForeignKey, Index, Integer, MetaData, String, Table, Text, create_engine, event
from sqlalchemy.engine import Engine

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),  # normalized lower-case
    Column("password_hash", Text, nullable=False),
    Column("role", String(20), nullable=False, server_default="staff"),
    Column("branch_id", Integer),  # NULL = unscoped admin / staff without branch
    Column("display_name", String(255)),
    Column("theme_preference", String(20), nullable=False, server_default="light"),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

refresh_tokens = Table(
    "refresh_tokens",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("token_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("family_id", String(32), nullable=False),
    Column("state", String(10), nullable=False, server_default="active"),
    Column("created_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("rotated_to", String(64)),
    Column("revoked_at", String(32)),
    Column("ip", String(45)),
    Column("user_agent", String(255)),
    Index("ix_refresh_tokens_user_state", "user_id", "state"),
    Index("ix_refresh_tokens_family", "family_id"),
)


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def make_engine(db_url: str) -> Engine:
    """Create an engine for db_url and make sure both tables exist."""
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    metadata.create_all(engine)
    return engine


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(moment: datetime) -> str:
    return moment.isoformat(timespec="microseconds")


def now_iso() -> str:
    return to_iso(utcnow())
