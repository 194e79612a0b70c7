"""Tests for account/session value helpers: lockout transitions, roles and views."""

from dataclasses import replace
from datetime import datetime, timedelta, timezone

from pixora_auth.storage.models import (
    Account,
    Session,
    is_locked,
    parse_user_agent,
    register_failed_login,
    register_successful_login,
    role_allows,
    safe_account_view,
    safe_session_view,
    session_is_valid,
)

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
LOCKOUT = timedelta(minutes=30)


def _account(**changes) -> Account:
    return replace(Account(id="u1", email="a@x.com", first_name="A", last_name="B"), **changes)


class TestFailedLoginTransitions:
    """Pure lockout counter transitions."""

    def test_counts_up_without_locking(self):
        account = _account()
        for expected in range(1, 5):
            account = register_failed_login(account, NOW, 5, LOCKOUT)
            assert account.failed_login_attempts == expected
            assert account.locked_until is None

    def test_fifth_failure_locks_for_thirty_minutes(self):
        account = _account(failed_login_attempts=4)
        locked = register_failed_login(account, NOW, 5, LOCKOUT)

        assert locked.failed_login_attempts == 5
        assert locked.locked_until == NOW + LOCKOUT
        assert is_locked(locked, NOW)
        assert is_locked(locked, NOW + LOCKOUT - timedelta(seconds=1))
        assert not is_locked(locked, NOW + LOCKOUT)

    def test_failure_during_lock_does_not_extend_it(self):
        account = _account(failed_login_attempts=5, locked_until=NOW + LOCKOUT)
        later = NOW + timedelta(minutes=10)
        updated = register_failed_login(account, later, 5, LOCKOUT)

        assert updated.locked_until == NOW + LOCKOUT

    def test_failure_after_expired_lock_restarts_count(self):
        account = _account(failed_login_attempts=5, locked_until=NOW)
        updated = register_failed_login(account, NOW + timedelta(seconds=1), 5, LOCKOUT)

        assert updated.failed_login_attempts == 1
        assert updated.locked_until is None

    def test_original_value_untouched(self):
        account = _account()
        register_failed_login(account, NOW, 5, LOCKOUT)
        assert account.failed_login_attempts == 0

    def test_success_resets_counters_and_records_audit(self):
        account = _account(failed_login_attempts=3, locked_until=NOW - timedelta(minutes=1))
        updated = register_successful_login(account, "203.0.113.9", NOW)

        assert updated.failed_login_attempts == 0
        assert updated.locked_until is None
        assert updated.last_login_at == NOW
        assert updated.last_login_ip == "203.0.113.9"


class TestRoles:
    def test_hierarchy(self):
        assert role_allows("super_admin", "admin")
        assert role_allows("admin", "admin")
        assert role_allows("editor", "user")
        assert not role_allows("user", "editor")
        assert not role_allows("admin", "super_admin")

    def test_unknown_roles_never_pass(self):
        assert not role_allows("root", "user")
        assert not role_allows("admin", "owner")


class TestViews:
    def test_account_view_hides_secrets(self):
        account = _account(
            password_reset_token="digest",
            email_verification_token="digest",
            failed_login_attempts=2,
            company="Pixora",
        )
        view = safe_account_view(account)

        assert view["full_name"] == "A B"
        assert view["company"] == "Pixora"
        for hidden in (
            "password_reset_token",
            "email_verification_token",
            "failed_login_attempts",
            "locked_until",
            "password",
        ):
            assert hidden not in view

    def test_session_view_marks_current(self):
        sess = Session.new(
            "s1",
            "u1",
            refresh_token_hash="h",
            access_jti="a",
            access_expires_at=NOW,
            refresh_jti="r",
            expires_at=NOW + timedelta(days=7),
        )
        assert safe_session_view(sess, "s1")["current"] is True
        assert safe_session_view(sess, "s2")["current"] is False
        assert "refresh_token_hash" not in safe_session_view(sess)


class TestSessionValidity:
    def _session(self, **changes) -> Session:
        sess = Session.new(
            "s1",
            "u1",
            refresh_token_hash="h",
            access_jti="a",
            access_expires_at=NOW + timedelta(minutes=15),
            refresh_jti="r",
            expires_at=NOW + timedelta(days=7),
        )
        return replace(sess, **changes)

    def test_active_and_unexpired_is_valid(self):
        assert session_is_valid(self._session(), NOW)

    def test_inactive_is_invalid(self):
        assert not session_is_valid(self._session(is_active=False), NOW)

    def test_expired_is_invalid(self):
        assert not session_is_valid(self._session(), NOW + timedelta(days=7))


class TestUserAgentParsing:
    def test_mobile_safari_on_iphone(self):
        info = parse_user_agent(
            "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) "
            "AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1"
        )
        assert info.device_type == "Mobile"
        assert info.browser == "Safari"
        assert info.os == "iOS"

    def test_edge_is_not_reported_as_chrome(self):
        info = parse_user_agent(
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
            "(KHTML, like Gecko) Chrome/120.0 Safari/537.36 Edg/120.0"
        )
        assert info.browser == "Edge"
        assert info.os == "Windows"
        assert info.device_type == "Desktop"

    def test_missing_agent(self):
        info = parse_user_agent(None)
        assert (info.device_type, info.browser, info.os) == ("Desktop", "Unknown", "Unknown")
