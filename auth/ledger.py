"""
auth/ledger.py -- Refresh Token Ledger: the stateful core of session handling.

State machine per record:

    active --rotate--> rotated   (terminal)
    active --revoke--> revoked   (terminal)

Nothing leaves rotated or revoked. A record may be used exactly once.

Every state change happens inside a single engine.begin() transaction and is
guarded by a state-conditional UPDATE:

    UPDATE refresh_tokens SET state='rotated' ... WHERE id=:id AND state='active'

The UPDATE is the compare-and-swap. When two requests rotate the same token
concurrently, the database serializes the two writes; the second sees
rowcount == 0 and is treated exactly like any other replay. Only one caller
ever mints a successor.

Replay handling [R1]: presenting a rotated or revoked token means it was
either stolen or the client is confused. Either way every still-active token
in the same family (the lineage started by one login) is revoked and the
user must log in again.

Domain errors are raised only after the transaction block has committed, so
the side effects of a failed rotation (expiry revocation, lineage revocation)
are persisted rather than rolled back with the exception.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from sqlalchemy import select
from sqlalchemy.engine import Connection, Engine

from auth.errors import AccountInactive, RefreshTokenExpired, RefreshTokenNotFound, ReplayDetected
from auth.models import TOKEN_ACTIVE, TOKEN_REVOKED, TOKEN_ROTATED, ClientInfo, RefreshTokenRecord, Rotation
from auth.schema import refresh_tokens, to_iso, users, utcnow
from auth.store import row_to_user
from auth.tokens import generate_family_id, generate_refresh_token, hash_refresh_token
from core.config import get_settings

logger = logging.getLogger("libraryauth.ledger")
audit = logging.getLogger("libraryauth.audit")

_USER_AGENT_MAX = 255


class RefreshTokenLedger:
    """Repository and state machine for refresh tokens.

    Usage:
        ledger = RefreshTokenLedger(user_store.engine)
        raw, record = ledger.create(user.id)
        rotation = ledger.rotate(raw)        # rotation.token is the successor
        ledger.revoke(rotation.token)        # logout
    """

    def __init__(self, engine: Engine, ttl_days: int | None = None) -> None:
        self.engine = engine
        self.ttl = timedelta(days=ttl_days if ttl_days is not None else get_settings().refresh_token_expire_days)

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def create(
        self,
        user_id: int,
        family_id: str | None = None,
        client: ClientInfo | None = None,
    ) -> tuple[str, RefreshTokenRecord]:
        """Mint a new active token for user_id. Returns (raw_token, record).

        family_id None starts a new lineage (login / register).
        """
        raw = generate_refresh_token()
        with self.engine.begin() as conn:
            record = self._insert(conn, raw, user_id, family_id or generate_family_id(), client)
        return raw, record

    def _insert(
        self,
        conn: Connection,
        raw: str,
        user_id: int,
        family_id: str,
        client: ClientInfo | None,
    ) -> RefreshTokenRecord:
        now = utcnow()
        client = client or ClientInfo()
        record = RefreshTokenRecord(
            token_hash=hash_refresh_token(raw),
            user_id=user_id,
            family_id=family_id,
            created_at=to_iso(now),
            expires_at=to_iso(now + self.ttl),
            ip=client.ip,
            user_agent=client.user_agent[:_USER_AGENT_MAX] if client.user_agent else None,
        )
        result = conn.execute(
            refresh_tokens.insert().values(
                token_hash=record.token_hash,
                user_id=record.user_id,
                family_id=record.family_id,
                state=TOKEN_ACTIVE,
                created_at=record.created_at,
                expires_at=record.expires_at,
                ip=record.ip,
                user_agent=record.user_agent,
            )
        )
        record.id = result.inserted_primary_key[0]
        return record

    # ------------------------------------------------------------------
    # Rotate
    # ------------------------------------------------------------------

    def rotate(self, raw_token: str, client: ClientInfo | None = None) -> Rotation:
        """Exchange raw_token for a successor in one atomic step.

        Raises:
            RefreshTokenNotFound: no record matches the token hash
            RefreshTokenExpired:  the record is past expires_at
            ReplayDetected:       the record is not active (or a concurrent
                                  rotation won the race); lineage revoked
            AccountInactive:      the owner is deactivated or gone; the
                                  presented record is revoked
        """
        token_hash = hash_refresh_token(raw_token)
        now = utcnow()
        stamp = to_iso(now)
        failure: Exception | None = None
        rotation: Rotation | None = None

        with self.engine.begin() as conn:
            row = conn.execute(refresh_tokens.select().where(refresh_tokens.c.token_hash == token_hash)).first()
            record = _row_to_record(row) if row is not None else None

            if record is None:
                failure = RefreshTokenNotFound("Refresh token not recognized.")
            elif record.is_expired(now):
                if record.is_active:
                    self._revoke_record(conn, record.id, stamp)
                failure = RefreshTokenExpired("Refresh token has expired.")
            elif not record.is_active:
                revoked = self._revoke_family(conn, record.family_id, stamp)
                failure = ReplayDetected("Refresh token has already been used.")
                logger.warning(
                    "Refresh token replay: record=%s user_id=%s state=%s family_revoked=%d",
                    record.id,
                    record.user_id,
                    record.state,
                    revoked,
                )
            else:
                user_row = conn.execute(users.select().where(users.c.id == record.user_id)).first()
                user = row_to_user(user_row) if user_row is not None else None
                if user is None or not user.is_active:
                    self._revoke_record(conn, record.id, stamp)
                    failure = AccountInactive("This account has been deactivated.")
                else:
                    new_raw = generate_refresh_token()
                    swapped = conn.execute(
                        refresh_tokens.update()
                        .where((refresh_tokens.c.id == record.id) & (refresh_tokens.c.state == TOKEN_ACTIVE))
                        .values(state=TOKEN_ROTATED, rotated_to=hash_refresh_token(new_raw))
                    )
                    if swapped.rowcount != 1:
                        # Lost the race against a concurrent rotate/revoke.
                        revoked = self._revoke_family(conn, record.family_id, stamp)
                        failure = ReplayDetected("Refresh token has already been used.")
                        logger.warning(
                            "Concurrent refresh token reuse: record=%s user_id=%s family_revoked=%d",
                            record.id,
                            record.user_id,
                            revoked,
                        )
                    else:
                        new_record = self._insert(conn, new_raw, record.user_id, record.family_id, client)
                        rotation = Rotation(token=new_raw, record=new_record, user=user)

        if failure is not None:
            if isinstance(failure, ReplayDetected):
                audit.warning("auth.refresh.replay user_id=%s family=%s", record.user_id, record.family_id)
            raise failure
        return rotation

    # ------------------------------------------------------------------
    # Revoke
    # ------------------------------------------------------------------

    def revoke(self, raw_token: str) -> bool:
        """Revoke a token. Returns False if the token is unknown.

        Idempotent: a rotated or already revoked token is left untouched and
        still reported as success, because it can no longer be used either way.
        """
        token_hash = hash_refresh_token(raw_token)
        with self.engine.begin() as conn:
            row = conn.execute(
                select(refresh_tokens.c.id, refresh_tokens.c.state).where(refresh_tokens.c.token_hash == token_hash)
            ).first()
            if row is None:
                return False
            if row.state == TOKEN_ACTIVE:
                self._revoke_record(conn, row.id, to_iso(utcnow()))
        return True

    def revoke_all_for_user(self, user_id: int) -> int:
        """Revoke every active token owned by user_id. Returns the count."""
        with self.engine.begin() as conn:
            result = conn.execute(
                refresh_tokens.update()
                .where((refresh_tokens.c.user_id == user_id) & (refresh_tokens.c.state == TOKEN_ACTIVE))
                .values(state=TOKEN_REVOKED, revoked_at=to_iso(utcnow()))
            )
        return result.rowcount

    @staticmethod
    def _revoke_record(conn: Connection, record_id: int, stamp: str) -> None:
        conn.execute(
            refresh_tokens.update()
            .where((refresh_tokens.c.id == record_id) & (refresh_tokens.c.state == TOKEN_ACTIVE))
            .values(state=TOKEN_REVOKED, revoked_at=stamp)
        )

    @staticmethod
    def _revoke_family(conn: Connection, family_id: str, stamp: str) -> int:
        result = conn.execute(
            refresh_tokens.update()
            .where((refresh_tokens.c.family_id == family_id) & (refresh_tokens.c.state == TOKEN_ACTIVE))
            .values(state=TOKEN_REVOKED, revoked_at=stamp)
        )
        return result.rowcount

    # ------------------------------------------------------------------
    # Inspection and maintenance
    # ------------------------------------------------------------------

    def get(self, raw_token: str) -> RefreshTokenRecord | None:
        """Look up the record for a raw token without changing it."""
        with self.engine.connect() as conn:
            row = conn.execute(
                refresh_tokens.select().where(refresh_tokens.c.token_hash == hash_refresh_token(raw_token))
            ).fetchone()
        return _row_to_record(row) if row is not None else None

    def list_active_for_user(self, user_id: int) -> list[RefreshTokenRecord]:
        """Return the user's active, unexpired tokens (one per device/lineage), newest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                refresh_tokens.select()
                .where(
                    (refresh_tokens.c.user_id == user_id)
                    & (refresh_tokens.c.state == TOKEN_ACTIVE)
                    & (refresh_tokens.c.expires_at > to_iso(utcnow()))
                )
                .order_by(refresh_tokens.c.created_at.desc())
            ).fetchall()
        return [_row_to_record(r) for r in rows]

    def purge_expired(self) -> int:
        """Delete records past expires_at. Returns the number of rows removed.

        Expired records can no longer be exchanged, so dropping them only
        turns a future RefreshTokenExpired into RefreshTokenNotFound -- both
        answer 401.
        """
        with self.engine.begin() as conn:
            result = conn.execute(refresh_tokens.delete().where(refresh_tokens.c.expires_at <= to_iso(utcnow())))
        if result.rowcount:
            logger.info("Purged %d expired refresh tokens", result.rowcount)
        return result.rowcount


# ---------------------------------------------------------------------------
# Row mapper
# ---------------------------------------------------------------------------


def _row_to_record(row) -> RefreshTokenRecord:
    return RefreshTokenRecord(
        id=row.id,
        token_hash=row.token_hash,
        user_id=row.user_id,
        family_id=row.family_id,
        state=row.state,
        created_at=row.created_at,
        expires_at=row.expires_at,
        rotated_to=row.rotated_to,
        revoked_at=row.revoked_at,
        ip=row.ip,
        user_agent=row.user_agent,
    )
