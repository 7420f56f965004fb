"""
tests/test_ledger.py -- Unit tests for the Refresh Token Ledger.

The ledger is where session security lives, so these tests walk the full
state machine:

    active --rotate--> rotated
    active --revoke--> revoked

Coverage:
  - create: raw token never stored, record starts active in a new family
  - rotate: predecessor rotated and linked, successor active in the same family
  - replay: a rotated or revoked token raises ReplayDetected and revokes the lineage
  - expiry: expired tokens are refused and revoked
  - inactive owner: rotation refused with AccountInactive, record revoked
  - revoke: idempotent, never reactivates, unknown token reported as False
  - concurrency: N threads rotating the same token produce exactly one successor
  - maintenance: revoke_all_for_user, list_active_for_user, purge_expired
"""

from __future__ import annotations

import threading

import pytest

from auth.errors import AccountInactive, RefreshTokenExpired, RefreshTokenNotFound, ReplayDetected
from auth.ledger import RefreshTokenLedger
from auth.models import TOKEN_ACTIVE, TOKEN_REVOKED, TOKEN_ROTATED, ClientInfo, User
from auth.store import UserStore
from auth.tokens import hash_refresh_token


@pytest.fixture
def user(make_user) -> User:
    return make_user("staff1@school.local", branch_id=2)


@pytest.fixture
def ledger(auth_stack) -> RefreshTokenLedger:
    return auth_stack[1]


class TestCreate:
    def test_raw_token_is_not_persisted(self, ledger, user) -> None:
        raw, record = ledger.create(user.id)
        assert record.token_hash == hash_refresh_token(raw)
        assert record.token_hash != raw
        stored = ledger.get(raw)
        assert stored is not None and stored.state == TOKEN_ACTIVE

    def test_each_create_starts_a_new_family(self, ledger, user) -> None:
        _raw1, first = ledger.create(user.id)
        _raw2, second = ledger.create(user.id)
        assert first.family_id != second.family_id

    def test_expiry_is_after_creation(self, ledger, user) -> None:
        _raw, record = ledger.create(user.id)
        assert record.expires_at > record.created_at

    def test_client_info_is_recorded(self, ledger, user) -> None:
        raw, _record = ledger.create(user.id, client=ClientInfo(ip="10.0.0.5", user_agent="x" * 400))
        stored = ledger.get(raw)
        assert stored.ip == "10.0.0.5"
        assert len(stored.user_agent) == 255


class TestRotate:
    def test_rotation_issues_linked_successor(self, ledger, user) -> None:
        raw, original = ledger.create(user.id)
        rotation = ledger.rotate(raw)

        assert rotation.token != raw
        assert rotation.user.id == user.id
        assert rotation.record.family_id == original.family_id
        assert rotation.record.state == TOKEN_ACTIVE

        old = ledger.get(raw)
        assert old.state == TOKEN_ROTATED
        assert old.rotated_to == hash_refresh_token(rotation.token)
        assert ledger.get(rotation.token).state == TOKEN_ACTIVE

    def test_rotation_returns_current_user_row(self, ledger, user, auth_stack) -> None:
        """Role or branch changes since login show up on the next rotation."""
        store = auth_stack[0]
        raw, _record = ledger.create(user.id)
        store.update_user(user.id, branch_id=9)
        assert ledger.rotate(raw).user.branch_id == 9

    def test_unknown_token(self, ledger) -> None:
        with pytest.raises(RefreshTokenNotFound):
            ledger.rotate("rt_does-not-exist")

    def test_chain_of_rotations(self, ledger, user) -> None:
        raw, _record = ledger.create(user.id)
        for _ in range(5):
            raw = ledger.rotate(raw).token
        assert ledger.get(raw).state == TOKEN_ACTIVE
        assert len(ledger.list_active_for_user(user.id)) == 1


class TestReplay:
    def test_reusing_a_rotated_token_is_replay(self, ledger, user) -> None:
        raw, _record = ledger.create(user.id)
        ledger.rotate(raw)
        with pytest.raises(ReplayDetected):
            ledger.rotate(raw)

    def test_replay_revokes_the_whole_lineage(self, ledger, user) -> None:
        raw, _record = ledger.create(user.id)
        successor = ledger.rotate(raw).token
        with pytest.raises(ReplayDetected):
            ledger.rotate(raw)

        assert ledger.get(successor).state == TOKEN_REVOKED
        with pytest.raises(ReplayDetected):
            ledger.rotate(successor)

    def test_replay_leaves_other_devices_alone(self, ledger, user) -> None:
        phone, _record = ledger.create(user.id)
        laptop, _record = ledger.create(user.id)
        ledger.rotate(phone)
        with pytest.raises(ReplayDetected):
            ledger.rotate(phone)
        assert ledger.get(laptop).state == TOKEN_ACTIVE
        ledger.rotate(laptop)

    def test_revoked_token_is_replay(self, ledger, user) -> None:
        raw, _record = ledger.create(user.id)
        ledger.revoke(raw)
        with pytest.raises(ReplayDetected):
            ledger.rotate(raw)

    def test_replay_never_changes_a_terminal_state(self, ledger, user) -> None:
        raw, _record = ledger.create(user.id)
        ledger.rotate(raw)
        with pytest.raises(ReplayDetected):
            ledger.rotate(raw)
        assert ledger.get(raw).state == TOKEN_ROTATED


class TestExpiry:
    def test_expired_token_is_refused_and_revoked(self, auth_stack, user) -> None:
        store = auth_stack[0]
        expired_ledger = RefreshTokenLedger(store.engine, ttl_days=-1)
        raw, _record = expired_ledger.create(user.id)

        with pytest.raises(RefreshTokenExpired):
            expired_ledger.rotate(raw)
        assert expired_ledger.get(raw).state == TOKEN_REVOKED

    def test_expired_tokens_are_not_listed_as_active(self, auth_stack, user) -> None:
        store = auth_stack[0]
        RefreshTokenLedger(store.engine, ttl_days=-1).create(user.id)
        assert RefreshTokenLedger(store.engine).list_active_for_user(user.id) == []


class TestInactiveOwner:
    def test_rotation_refused_for_deactivated_user(self, ledger, user, auth_stack) -> None:
        store = auth_stack[0]
        raw, _record = ledger.create(user.id)
        store.update_user(user.id, is_active=False)

        with pytest.raises(AccountInactive):
            ledger.rotate(raw)
        assert ledger.get(raw).state == TOKEN_REVOKED

    def test_reactivation_does_not_revive_the_token(self, ledger, user, auth_stack) -> None:
        store = auth_stack[0]
        raw, _record = ledger.create(user.id)
        store.update_user(user.id, is_active=False)
        with pytest.raises(AccountInactive):
            ledger.rotate(raw)
        store.update_user(user.id, is_active=True)
        with pytest.raises(ReplayDetected):
            ledger.rotate(raw)


class TestRevoke:
    def test_revoke_active_token(self, ledger, user) -> None:
        raw, _record = ledger.create(user.id)
        assert ledger.revoke(raw) is True
        record = ledger.get(raw)
        assert record.state == TOKEN_REVOKED
        assert record.revoked_at is not None

    def test_revoke_is_idempotent(self, ledger, user) -> None:
        raw, _record = ledger.create(user.id)
        ledger.revoke(raw)
        stamp = ledger.get(raw).revoked_at
        assert ledger.revoke(raw) is True
        assert ledger.get(raw).revoked_at == stamp

    def test_revoking_a_rotated_token_keeps_it_rotated(self, ledger, user) -> None:
        raw, _record = ledger.create(user.id)
        successor = ledger.rotate(raw).token
        assert ledger.revoke(raw) is True
        assert ledger.get(raw).state == TOKEN_ROTATED
        assert ledger.get(successor).state == TOKEN_ACTIVE

    def test_revoke_unknown_token(self, ledger) -> None:
        assert ledger.revoke("rt_unknown") is False

    def test_revoke_all_for_user(self, ledger, user, make_user) -> None:
        other = make_user("staff2@school.local")
        mine = [ledger.create(user.id)[0] for _ in range(3)]
        theirs, _record = ledger.create(other.id)

        assert ledger.revoke_all_for_user(user.id) == 3
        assert all(ledger.get(raw).state == TOKEN_REVOKED for raw in mine)
        assert ledger.get(theirs).state == TOKEN_ACTIVE
        assert ledger.revoke_all_for_user(user.id) == 0


class TestMaintenance:
    def test_list_active_for_user(self, ledger, user) -> None:
        first, _record = ledger.create(user.id)
        second, _record = ledger.create(user.id)
        ledger.revoke(first)
        active = ledger.list_active_for_user(user.id)
        assert [r.token_hash for r in active] == [hash_refresh_token(second)]

    def test_purge_expired_deletes_only_expired(self, auth_stack, user) -> None:
        store = auth_stack[0]
        live = RefreshTokenLedger(store.engine)
        stale = RefreshTokenLedger(store.engine, ttl_days=-1)
        keep, _record = live.create(user.id)
        gone, _record = stale.create(user.id)

        assert live.purge_expired() == 1
        assert live.get(gone) is None
        assert live.get(keep) is not None
        assert live.purge_expired() == 0


class TestConcurrentRotation:
    """Two (or more) clients racing with the same refresh token.

    Uses a file-backed database so every thread gets its own real SQLite
    connection and the writes are serialized by SQLite's write lock, as they
    would be under a production server.
    """

    THREADS = 8

    def test_exactly_one_rotation_wins(self, tmp_path) -> None:
        store = UserStore(db_url=f"sqlite:///{tmp_path / 'race.db'}")
        try:
            ledger = RefreshTokenLedger(store.engine)
            uid = store.create_user(User(email="race@school.local", password_hash="$2b$04$hash"))
            raw, _record = ledger.create(uid)

            barrier = threading.Barrier(self.THREADS)
            winners: list[str] = []
            losers: list[Exception] = []
            lock = threading.Lock()

            def worker() -> None:
                barrier.wait()
                try:
                    token = ledger.rotate(raw).token
                except ReplayDetected as exc:
                    with lock:
                        losers.append(exc)
                else:
                    with lock:
                        winners.append(token)

            threads = [threading.Thread(target=worker) for _ in range(self.THREADS)]
            for t in threads:
                t.start()
            for t in threads:
                t.join()

            assert len(winners) == 1, f"Expected exactly one successful rotation, got {len(winners)}"
            assert len(losers) == self.THREADS - 1
            assert ledger.get(raw).state == TOKEN_ROTATED
            assert ledger.get(raw).rotated_to == hash_refresh_token(winners[0])
        finally:
            store.close()
