"""
Tests for sign-up/sign-in, login lockout, audit events and rate limiting.
"""

from datetime import datetime, timedelta, timezone

import pytest

from conftest import ADMIN_PHONE, CLIENT_PHONE, PASSWORD
from core.errors import StoreError, StoreErrorKind, ValidationError
from services.security import SecurityEvent, failed_login_severity, parse_timestamp, sanitize_input
from services.user_auth import format_phone_number, validate_password, validate_phone_number


# ============================================================================
# Helpers
# ============================================================================


class TestPhoneNumbers:

    @pytest.mark.parametrize("raw, expected", [
        ("08012345678", "+2348012345678"),
        ("2348012345678", "+2348012345678"),
        ("+234 801 234 5678", "+2348012345678"),
    ])
    def test_format(self, raw, expected):
        assert format_phone_number(raw) == expected

    def test_validate(self):
        assert validate_phone_number("08012345678")
        assert not validate_phone_number("+2346012345678")
        assert not validate_phone_number("12345")


class TestHelpers:

    def test_password_rules(self):
        assert validate_password(PASSWORD) == []
        assert "Password must contain at least one uppercase letter" in validate_password("secret123")
        assert "Password must be at least 8 characters" in validate_password("Ab1")

    def test_sanitize_input(self):
        assert sanitize_input("  <b>Ada</b> ") == "bAda/b"
        assert sanitize_input("javascript:alert(1)") == "alert(1)"
        assert sanitize_input('x onclick="y"') == 'x "y"'

    def test_failed_login_severity(self):
        assert failed_login_severity(1) == "low"
        assert failed_login_severity(3) == "medium"
        assert failed_login_severity(5) == "high"

    def test_parse_timestamp_treats_naive_as_utc(self):
        parsed = parse_timestamp("2026-01-01T10:00:00")
        assert parsed == datetime(2026, 1, 1, 10, tzinfo=timezone.utc)
        assert parse_timestamp(None) is None


# ============================================================================
# UserAuthService
# ============================================================================


class TestSignUp:

    async def test_creates_public_user(self, user_auth):
        user, error = await user_auth.sign_up("08012345678", PASSWORD, "Ada Client", "Acme")

        assert error is None
        assert user["phone_number"] == CLIENT_PHONE
        assert user["is_admin"] is False
        assert "password_hash" not in user

    async def test_rejects_bad_phone(self, user_auth):
        assert await user_auth.sign_up("12345", PASSWORD) == (None, "Invalid phone number format")

    async def test_rejects_weak_password(self, user_auth):
        user, error = await user_auth.sign_up(CLIENT_PHONE, "weak")
        assert user is None
        assert "Password must be at least 8 characters" in error

    async def test_rejects_duplicate_phone(self, user_auth, client_user):
        user, error = await user_auth.sign_up("08012345678", PASSWORD)
        assert error == "User with this phone number already exists"


class TestSignIn:

    async def test_success(self, user_auth, client_user, database):
        user, error = await user_auth.sign_in(CLIENT_PHONE, PASSWORD, ip_address="10.0.0.1")

        assert error is None
        assert user["id"] == client_user["id"]
        assert user["last_login"] is not None
        audit = await database.select("security_alerts", {"user_id": client_user["id"]})
        assert [a["title"] for a in audit] == ["Successful Login"]

    async def test_wrong_password(self, user_auth, client_user):
        user, error = await user_auth.sign_in(CLIENT_PHONE, "Wrong1234")
        assert user is None
        assert error == "Invalid phone number or password"

    async def test_unknown_phone_logs_medium_event(self, user_auth, database):
        user, error = await user_auth.sign_in(ADMIN_PHONE, PASSWORD)

        assert error == "Invalid phone number or password"
        events = await database.select("security_alerts")
        assert events[0]["title"] == "Failed Login - Invalid User"
        assert events[0]["severity"] == "medium"

    async def test_locks_after_max_attempts(self, user_auth, client_user, database, settings):
        for _ in range(settings.login_max_attempts):
            await user_auth.sign_in(CLIENT_PHONE, "Wrong1234")

        user, error = await user_auth.sign_in(CLIENT_PHONE, PASSWORD)

        assert user is None
        assert error == ("Account is temporarily locked due to too many failed attempts. "
                         f"Try again in {settings.lockout_minutes} minutes.")
        stored = await database.get_by_id("users", client_user["id"])
        assert stored["login_attempts"] == settings.login_max_attempts

    async def test_lock_raises_admin_system_alert(self, user_auth, client_user, database, settings):
        for _ in range(settings.login_max_attempts):
            await user_auth.sign_in(CLIENT_PHONE, "Wrong1234")

        alerts = await database.select("system_alerts")
        assert len(alerts) == 1
        assert alerts[0]["title"] == "Security Alert: Failed Login Attempt"
        assert alerts[0]["target_audience"] == "admins"
        assert alerts[0]["created_by"] == "Security System"

    async def test_success_resets_counter(self, user_auth, client_user, database, settings):
        for _ in range(settings.login_max_attempts - 1):
            await user_auth.sign_in(CLIENT_PHONE, "Wrong1234")
        await user_auth.sign_in(CLIENT_PHONE, PASSWORD)
        await user_auth.sign_in(CLIENT_PHONE, "Wrong1234")

        stored = await database.get_by_id("users", client_user["id"])
        assert stored["login_attempts"] == 1
        assert stored["locked_until"] is None

    async def test_expired_lock_allows_login(self, user_auth, client_user, database):
        past = datetime.now(timezone.utc) - timedelta(minutes=1)
        await database.update("users", {"login_attempts": 5, "locked_until": past}, {"id": client_user["id"]})

        user, error = await user_auth.sign_in(CLIENT_PHONE, PASSWORD)
        assert error is None

    async def test_tracking_failure_does_not_block_login(self, user_auth, client_user, monkeypatch):
        async def broken(*args, **kwargs):
            raise StoreError(StoreErrorKind.NETWORK, "insert", "security_alerts")

        monkeypatch.setattr(user_auth.security, "log_security_event", broken)

        user, error = await user_auth.sign_in(CLIENT_PHONE, PASSWORD)
        assert error is None


class TestProfile:

    async def test_update_profile(self, user_auth, client_user):
        user = await user_auth.update_profile(client_user["id"], full_name="Ada Lovelace")
        assert user["full_name"] == "Ada Lovelace"
        assert user["company_name"] == "Acme Ltd"

    async def test_invalid_name(self, user_auth, client_user):
        with pytest.raises(ValidationError) as exc_info:
            await user_auth.update_profile(client_user["id"], full_name="A")
        assert "full_name" in exc_info.value.errors

    async def test_nothing_to_update(self, user_auth, client_user):
        with pytest.raises(ValidationError):
            await user_auth.update_profile(client_user["id"])

    async def test_unknown_user(self, user_auth):
        with pytest.raises(StoreError) as exc_info:
            await user_auth.update_profile("missing", full_name="Nobody Here")
        assert exc_info.value.kind == StoreErrorKind.NOT_FOUND


# ============================================================================
# SecurityMonitor
# ============================================================================


class TestSecurityMonitor:

    async def test_low_severity_creates_no_system_alert(self, security, database):
        await security.log_security_event(SecurityEvent(
            type="unauthorized_access", severity="low", title="Port scan", description="Port scan",
        ))
        assert await database.select("system_alerts") == []

    async def test_critical_event_alert_priority(self, security, database):
        row = await security.log_security_event(SecurityEvent(
            type="data_breach", severity="critical", title="Leak", description="Leak detected",
            metadata={"records": 3},
        ))

        assert row["metadata_json"] == {"records": 3}
        alerts = await database.select("system_alerts")
        assert alerts[0]["priority"] == "critical"
        assert alerts[0]["type"] == "error"

    async def test_detects_new_ip_after_many(self, security, client_user):
        for ip in ("10.0.0.1", "10.0.0.2", "10.0.0.3"):
            await security.track_successful_login(client_user["id"], ip_address=ip)

        assert (await security.detect_suspicious_activity(client_user["id"], "10.0.0.4"))["suspicious"] is True
        assert (await security.detect_suspicious_activity(client_user["id"], "10.0.0.1"))["suspicious"] is False

    async def test_two_ips_are_not_suspicious(self, security, client_user):
        for ip in ("10.0.0.1", "10.0.0.2"):
            await security.track_successful_login(client_user["id"], ip_address=ip)
        assert (await security.detect_suspicious_activity(client_user["id"], "10.0.0.9"))["suspicious"] is False

    async def test_resolve_alert(self, security):
        row = await security.log_security_event(SecurityEvent(
            type="malware_detected", severity="medium", title="Upload", description="Bad file",
        ))

        resolved = await security.resolve_security_alert(row["id"], "Grace Admin")

        assert resolved["resolved"] is True
        assert resolved["resolved_by"] == "Grace Admin"
        assert resolved["resolved_at"] is not None

    async def test_resolve_unknown_alert(self, security):
        with pytest.raises(StoreError) as exc_info:
            await security.resolve_security_alert("missing", "Grace Admin")
        assert exc_info.value.kind == StoreErrorKind.NOT_FOUND

    async def test_stats(self, security):
        for severity in ("low", "low", "high"):
            await security.log_security_event(SecurityEvent(
                type="suspicious_activity", severity=severity, title="t", description="d",
            ))

        stats = await security.get_security_stats()

        assert stats["total_alerts"] == 3
        assert stats["low_alerts"] == 2
        assert stats["high_alerts"] == 1
        assert stats["unresolved_alerts"] == 3
        assert stats["resolved_alerts"] == 0


class TestRateLimit:
    """Sliding window over the cache clock."""

    async def test_blocks_after_max_attempts(self, security):
        results = [await security.check_rate_limit("u1", "login", max_attempts=3, window_seconds=60)
                   for _ in range(4)]
        assert results == [True, True, True, False]

    async def test_window_slides(self, security, clock):
        for _ in range(3):
            await security.check_rate_limit("u1", "login", max_attempts=3, window_seconds=60)
        clock.advance(60)
        assert await security.check_rate_limit("u1", "login", max_attempts=3, window_seconds=60)

    async def test_actions_and_users_are_independent(self, security):
        for _ in range(3):
            await security.check_rate_limit("u1", "login", max_attempts=3, window_seconds=60)
        assert await security.check_rate_limit("u1", "upload", max_attempts=3, window_seconds=60)
        assert await security.check_rate_limit("u2", "login", max_attempts=3, window_seconds=60)
