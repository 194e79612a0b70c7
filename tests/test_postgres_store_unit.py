"""PostgresStore unit tests with the connection pool stubbed out.

These pin the conditional statements each compare-and-swap depends on and
the mapping of driver failures onto storage errors.
"""

from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import pytest
from psycopg import errors
from psycopg_pool import PoolTimeout

from pixora_auth.logging import get_logger
from pixora_auth.storage.common import build_mfa_cipher
from pixora_auth.storage.errors import ConstraintViolation, StorageUnavailable
from pixora_auth.storage.models import Account, Session
from pixora_auth.storage.postgres import PostgresStore

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeCursor:
    def __init__(self, rows):
        self.rows = rows

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeConnection:
    """Answers each ``execute`` from a queue of canned results."""

    def __init__(self, results):
        self.results = results
        self.executed = []

    def execute(self, query, params=None):
        self.executed.append((str(query), params))
        result = self.results.pop(0) if self.results else []
        if isinstance(result, Exception):
            raise result
        return FakeCursor(result)


class FakePool:
    def __init__(self, *results, unavailable=None):
        self.conn = FakeConnection(list(results))
        self.unavailable = unavailable
        self.checkouts = 0

    @contextmanager
    def connection(self, timeout=None):
        if self.unavailable is not None:
            raise self.unavailable
        self.checkouts += 1
        yield self.conn


def make_store(pool: FakePool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://unit-test"
    store.pool = pool
    store.logger = get_logger(__name__)
    store.timeout_seconds = 1.0
    store._mfa_cipher = build_mfa_cipher("unit-test-mfa-key")
    return store


def account_row(**overrides):
    row = {
        "id": "acct-1",
        "email": "ada@example.com",
        "first_name": "Ada",
        "last_name": "Lovelace",
        "role": "user",
        "is_active": True,
        "email_verified": False,
        "failed_login_attempts": 0,
        "locked_until": None,
        "last_login_ip": None,
        "created_at": NOW,
        "updated_at": NOW,
    }
    row.update(overrides)
    return row


def session_row(**overrides):
    row = {
        "id": "sess-1",
        "user_id": "acct-1",
        "refresh_token_hash": "new-hash",
        "access_jti": "access-2",
        "access_expires_at": NOW + timedelta(minutes=15),
        "refresh_jti": "refresh-2",
        "expires_at": NOW + timedelta(days=7),
        "remember_me": False,
        "is_active": True,
        "ip_addr": "10.0.0.1",
        "user_agent": None,
        "created_at": NOW,
        "last_used_at": NOW,
    }
    row.update(overrides)
    return row


def _rotate(store: PostgresStore):
    return store.rotate_session(
        "sess-1",
        "old-hash",
        refresh_token_hash="new-hash",
        access_jti="access-2",
        access_expires_at=NOW + timedelta(minutes=15),
        refresh_jti="refresh-2",
        expires_at=NOW + timedelta(days=7),
        now=NOW,
    )


class TestConnectionErrors:
    def test_pool_timeout_is_storage_unavailable(self):
        store = make_store(FakePool(unavailable=PoolTimeout("no connection available")))

        with pytest.raises(StorageUnavailable) as excinfo:
            store.get_account("acct-1")
        assert excinfo.value.status_code == 503

    def test_statement_timeout_is_storage_unavailable(self):
        store = make_store(FakePool(errors.QueryCanceled("statement timeout")))

        with pytest.raises(StorageUnavailable):
            store.get_session("sess-1")

    def test_lost_connection_is_storage_unavailable(self):
        store = make_store(FakePool(errors.OperationalError("server closed the connection")))

        with pytest.raises(StorageUnavailable):
            _rotate(store)

    def test_duplicate_email_is_constraint_violation(self):
        store = make_store(FakePool(errors.UniqueViolation("duplicate key")))

        with pytest.raises(ConstraintViolation):
            store.create_account("ada@example.com", "Ada", "Lovelace")

    def test_missing_tables_fail_startup(self):
        pool = FakePool([{"oid": "app_account"}], [{"oid": None}], [{"oid": "x"}], [{"oid": None}])
        store = make_store(pool)

        with pytest.raises(RuntimeError, match="account_credential, auth_session"):
            store._verify_required_schema()


class TestSessionRotation:
    def test_hit_returns_rotated_session(self):
        pool = FakePool([session_row()])
        session = _rotate(make_store(pool))

        assert isinstance(session, Session)
        assert session.refresh_token_hash == "new-hash"
        assert session.access_jti == "access-2"

    def test_miss_returns_none(self):
        assert _rotate(make_store(FakePool([]))) is None

    def test_single_conditional_update(self):
        pool = FakePool([])
        _rotate(make_store(pool))

        assert len(pool.conn.executed) == 1
        query, params = pool.conn.executed[0]
        assert query.strip().startswith("UPDATE auth_session")
        assert "refresh_token_hash = %s AND is_active AND expires_at > %s" in query
        assert params[-3:] == ("sess-1", "old-hash", NOW)

    def test_invalidate_only_active(self):
        pool = FakePool([])
        assert make_store(pool).invalidate_session("sess-1") is None
        assert "WHERE id = %s AND is_active" in pool.conn.executed[0][0]


class TestFailedLogins:
    def test_increment_and_lock_in_one_statement(self):
        pool = FakePool([account_row(failed_login_attempts=5, locked_until=NOW + timedelta(minutes=30))])
        store = make_store(pool)

        account = store.record_failed_login(
            "acct-1", max_attempts=5, lockout=timedelta(minutes=30), now=NOW
        )

        assert isinstance(account, Account)
        assert account.failed_login_attempts == 5
        assert len(pool.conn.executed) == 1
        query, params = pool.conn.executed[0]
        assert "failed_login_attempts + 1" in query
        assert params == {
            "id": "acct-1",
            "now": NOW,
            "max_attempts": 5,
            "lock_until": NOW + timedelta(minutes=30),
        }

    def test_unknown_account(self):
        store = make_store(FakePool([]))
        assert (
            store.record_failed_login("nope", max_attempts=5, lockout=timedelta(minutes=30), now=NOW)
            is None
        )


class TestSingleUseTokens:
    def test_reset_consumed_once(self):
        pool = FakePool([account_row()], [])
        store = make_store(pool)

        assert store.consume_password_reset("acct-1", "digest", NOW) is not None
        assert store.consume_password_reset("acct-1", "digest", NOW) is None

        query, params = pool.conn.executed[0]
        assert "password_reset_token = %s AND password_reset_expires > %s" in query
        assert "failed_login_attempts = 0" in query
        assert params == (NOW, "acct-1", "digest", NOW)

    def test_verification_marks_email_verified(self):
        pool = FakePool([account_row(email_verified=True)])
        account = make_store(pool).consume_email_verification("acct-1", "digest", NOW)

        assert account.email_verified is True
        query, _ = pool.conn.executed[0]
        assert "email_verification_token = %s AND email_verification_expires > %s" in query

    def test_verification_miss(self):
        assert make_store(FakePool([])).consume_email_verification("acct-1", "stale", NOW) is None

    def test_backup_code_removed_only_if_present(self):
        pool = FakePool([{"account_id": "acct-1"}], [])
        store = make_store(pool)

        assert store.consume_backup_code("acct-1", "code-digest") is True
        assert store.consume_backup_code("acct-1", "code-digest") is False
        query, params = pool.conn.executed[0]
        assert "array_remove(backup_codes, %s)" in query
        assert params == ("code-digest", "acct-1", "code-digest")


class TestTwoFactorSecrets:
    def test_secret_encrypted_at_rest(self):
        pool = FakePool([{"created_at": NOW}])
        store = make_store(pool)

        config = store.set_mfa_config("acct-1", "JBSWY3DPEHPK3PXP", backup_codes=["d1", "d2"])

        stored_secret = pool.conn.executed[0][1][1]
        assert stored_secret != "JBSWY3DPEHPK3PXP"
        assert config.secret == "JBSWY3DPEHPK3PXP"

        pool.conn.results.append(
            [
                {
                    "account_id": "acct-1",
                    "secret": stored_secret,
                    "enabled": False,
                    "backup_codes": ["d1", "d2"],
                    "created_at": NOW,
                }
            ]
        )
        loaded = store.get_mfa_config("acct-1")
        assert loaded.secret == "JBSWY3DPEHPK3PXP"
        assert loaded.backup_codes == ["d1", "d2"]

    def test_missing_account_is_constraint_violation(self):
        store = make_store(FakePool(errors.ForeignKeyViolation("no account")))

        with pytest.raises(ConstraintViolation):
            store.set_mfa_config("ghost", "JBSWY3DPEHPK3PXP", backup_codes=[])
