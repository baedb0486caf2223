"""Storage backends: atomic swaps, revocation, snapshot persistence."""

from contextlib import contextmanager
import uuid
from datetime import timedelta
from pathlib import Path

import pytest

from keyward.storage.errors import ConstraintViolation, StoreUnavailable
from keyward.storage.memory import MemoryStore, build_mfa_cipher
from keyward.storage.models import AuditLogEntry, PendingEnrollment, utcnow
from keyward.storage.postgres import PostgresStore


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path), mfa_encryption_key="unit-test-key")


@pytest.fixture
def test_user(memory_store):
    return memory_store.create_user("store@example.com")


class TestUsers:
    def test_duplicate_email_is_a_constraint_violation(self, memory_store, test_user):
        with pytest.raises(ConstraintViolation):
            memory_store.create_user("store@example.com")

    def test_disable_and_count(self, memory_store, test_user):
        memory_store.create_user("other@example.com")
        memory_store.set_user_active(test_user.id, False)
        assert memory_store.count_users() == 1
        assert memory_store.count_users(active_only=False) == 2
        assert memory_store.get_user(test_user.id).disabled_at is not None

    def test_password_requires_user(self, memory_store):
        with pytest.raises(ConstraintViolation):
            memory_store.save_password("missing", "hash", "argon2id")


class TestRefreshRotation:
    """The refresh identifier swap is a compare-and-set on the session row."""

    def test_swap_succeeds_once(self, memory_store, test_user):
        session = memory_store.create_session(test_user.id, 60)
        original = session.refresh_jti

        swapped = memory_store.rotate_refresh_jti(session.id, original, "next-1")
        assert swapped is not None
        assert swapped.refresh_jti == "next-1"
        assert swapped.rotation_count == 1

        assert memory_store.rotate_refresh_jti(session.id, original, "next-2") is None
        assert memory_store.get_session(session.id).refresh_jti == "next-1"

    def test_swap_fails_on_revoked_session(self, memory_store, test_user):
        session = memory_store.create_session(test_user.id, 60)
        assert memory_store.revoke_session(session.id, "logout")
        assert memory_store.rotate_refresh_jti(session.id, session.refresh_jti, "x") is None

    def test_session_requires_user(self, memory_store):
        with pytest.raises(ConstraintViolation):
            memory_store.create_session("missing", 60)


class TestRevocation:
    def test_revoke_is_idempotent(self, memory_store, test_user):
        session = memory_store.create_session(test_user.id, 60)
        assert memory_store.revoke_session(session.id, "logout") is True
        assert memory_store.revoke_session(session.id, "logout") is False
        assert memory_store.get_session(session.id).revoked_reason == "logout"

    def test_revoke_all_keeps_excepted_session(self, memory_store, test_user):
        keep = memory_store.create_session(test_user.id, 60)
        others = [memory_store.create_session(test_user.id, 60) for _ in range(2)]

        revoked = memory_store.revoke_user_sessions(
            test_user.id, "password_change", except_session_id=keep.id
        )
        assert sorted(revoked) == sorted(s.id for s in others)
        assert memory_store.count_active_sessions() == 1
        assert [s.id for s in memory_store.list_sessions(test_user.id)] == [keep.id]
        assert len(memory_store.list_sessions(test_user.id, include_revoked=True)) == 3

    def test_touch_ignores_revoked_session(self, memory_store, test_user):
        session = memory_store.create_session(test_user.id, 60)
        memory_store.revoke_session(session.id)
        assert memory_store.touch_session(session.id, ip_addr="203.0.113.10") is None


class TestMFARecords:
    def test_totp_steps_only_move_forward(self, memory_store, test_user):
        memory_store.save_totp_method(test_user.id, "JBSWY3DPEHPK3PXP")
        assert memory_store.consume_totp_step(test_user.id, 100) is True
        assert memory_store.consume_totp_step(test_user.id, 100) is False
        assert memory_store.consume_totp_step(test_user.id, 99) is False
        assert memory_store.consume_totp_step(test_user.id, 101) is True

    def test_totp_secret_roundtrips_through_cipher(self, memory_store, test_user):
        memory_store.save_totp_method(test_user.id, "JBSWY3DPEHPK3PXP")
        assert memory_store.totp_methods[test_user.id].secret != "JBSWY3DPEHPK3PXP"
        assert memory_store.get_totp_method(test_user.id).secret == "JBSWY3DPEHPK3PXP"

    def test_webauthn_counter_must_strictly_increase(self, memory_store, test_user):
        method = memory_store.add_webauthn_method(test_user.id, "cred", "pk", 4)
        assert memory_store.advance_webauthn_counter(method.id, 4) is False
        assert memory_store.advance_webauthn_counter(method.id, 3) is False
        assert memory_store.advance_webauthn_counter(method.id, 5) is True
        assert memory_store.get_webauthn_method_by_credential("cred").sign_count == 5

    def test_credential_ids_are_unique(self, memory_store, test_user):
        memory_store.add_webauthn_method(test_user.id, "cred", "pk", 0)
        with pytest.raises(ConstraintViolation):
            memory_store.add_webauthn_method(test_user.id, "cred", "pk2", 0)

    def test_other_users_cannot_delete_method(self, memory_store, test_user):
        method = memory_store.add_webauthn_method(test_user.id, "cred", "pk", 0)
        intruder = memory_store.create_user("intruder@example.com")
        assert memory_store.delete_webauthn_method(intruder.id, method.id) is False
        assert memory_store.delete_webauthn_method(test_user.id, method.id) is True

    def test_expired_enrollments_are_purged(self, memory_store, test_user):
        now = utcnow()
        memory_store.save_pending_enrollment(
            PendingEnrollment(test_user.id, "totp", {"secret": "s"}, now, now + timedelta(minutes=5))
        )
        memory_store.save_pending_enrollment(
            PendingEnrollment(test_user.id, "webauthn", {}, now, now - timedelta(seconds=1))
        )
        assert memory_store.purge_expired_enrollments() == 1
        assert memory_store.get_pending_enrollment(test_user.id, "totp") is not None
        assert memory_store.get_pending_enrollment(test_user.id, "webauthn") is None


class TestPersistence:
    def test_state_survives_reload(self, tmp_path, memory_store, test_user):
        session = memory_store.create_session(test_user.id, 60, ip_addr="203.0.113.10", country="DE")
        memory_store.save_totp_method(test_user.id, "JBSWY3DPEHPK3PXP")
        memory_store.consume_totp_step(test_user.id, 7)
        memory_store.block_ip("198.51.100.7", reason="abuse")
        memory_store.append_audit_entry(
            AuditLogEntry(id="a1", timestamp=utcnow(), event_type="login_success", user_id=test_user.id)
        )

        reloaded = MemoryStore(fs_root=str(tmp_path), mfa_encryption_key="unit-test-key")
        assert reloaded.get_user_by_email("store@example.com").id == test_user.id
        restored = reloaded.get_session(session.id)
        assert restored.refresh_jti == session.refresh_jti
        assert restored.country == "DE"
        totp = reloaded.get_totp_method(test_user.id)
        assert totp.secret == "JBSWY3DPEHPK3PXP"
        assert totp.last_used_step == 7
        assert reloaded.is_ip_blocked("198.51.100.7")
        assert reloaded.audit_log[0].event_type == "login_success"

    def test_audit_write_failure_is_store_unavailable(self, memory_store, monkeypatch):
        def _broken():
            raise RuntimeError("disk full")

        monkeypatch.setattr(memory_store, "_persist_state", _broken)
        with pytest.raises(StoreUnavailable):
            memory_store.append_audit_entry(
                AuditLogEntry(id="a1", timestamp=utcnow(), event_type="login_success")
            )
        assert memory_store.audit_log == []


class FakeResult:
    def __init__(self, row=None):
        self.row = row

    def fetchone(self):
        return self.row

    def fetchall(self):
        return [self.row] if self.row else []


class RecordingPool:
    """Captures SQL so unit tests can check statements without a database."""

    def __init__(self, row=None):
        self.row = row
        self.statements = []

    @contextmanager
    def connection(self):
        pool = self

        class _Conn:
            def execute(self, sql, params=None):
                pool.statements.append((" ".join(sql.split()), params))
                return FakeResult(pool.row)

        yield _Conn()


def _bare_postgres_store(tmp_path: Path, pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool
    store.fs_root = tmp_path
    store._mfa_cipher = build_mfa_cipher("unit-test-key")
    return store


SID = str(uuid.uuid4())
UID = str(uuid.uuid4())


class TestPostgresStatements:
    def test_rotation_is_a_conditional_update(self, tmp_path):
        pool = RecordingPool(row=None)
        store = _bare_postgres_store(tmp_path, pool)

        assert store.rotate_refresh_jti(SID, "old", "new") is None
        sql, params = pool.statements[0]
        assert sql.startswith("UPDATE auth_session")
        assert "refresh_jti = %s AND revoked_at IS NULL" in sql
        assert params == ("new", SID, "old")

    def test_audit_filters_build_where_clause(self):
        where, params = PostgresStore._audit_where("login_failed", UID, None, None)
        assert where == " WHERE event_type = %s AND user_id = %s"
        assert params == ["login_failed", UID]
        assert PostgresStore._audit_where(None, None, None, None) == ("", [])

    def test_ids_are_canonicalized(self, tmp_path):
        pool = RecordingPool(row=None)
        store = _bare_postgres_store(tmp_path, pool)

        assert store.get_session(SID.upper()) is None
        assert pool.statements[0][1] == (SID,)

    @pytest.mark.parametrize("bad_id", ["not-a-uuid", "x", "1; DROP TABLE auth_session"])
    def test_malformed_ids_never_reach_the_database(self, tmp_path, bad_id):
        pool = RecordingPool(row={"id": SID})
        store = _bare_postgres_store(tmp_path, pool)

        assert store.get_session(bad_id) is None
        assert store.get_user(bad_id) is None
        assert store.revoke_session(bad_id) is False
        assert store.touch_session(bad_id, ip_addr="203.0.113.10") is None
        assert store.rotate_refresh_jti(bad_id, "old", "new") is None
        assert store.delete_webauthn_method(UID, bad_id) is False
        assert pool.statements == []

    def test_malformed_user_filter_matches_nothing(self):
        where, params = PostgresStore._audit_where(None, "bob", None, None)
        assert where == " WHERE FALSE"
        assert params == []
