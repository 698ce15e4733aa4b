"""Tests for the security incident logger and persistent security events."""

import re
from datetime import datetime, timedelta, timezone

import pytest
from starlette.requests import Request

from foodhub.core.cache import redis_cache
from foodhub.models.security_log import SecurityLog
from foodhub.services.security_logging_service import SecurityLoggingService


def make_request(ip="203.0.113.9"):
    return Request({
        "type": "http",
        "method": "POST",
        "path": "/api/auth/login",
        "headers": [
            (b"user-agent", b"pytest-agent"),
            (b"authorization", b"Bearer abc"),
            (b"cookie", b"access_token=abc"),
        ],
        "query_string": b"",
        "client": (ip, 50000),
    })


@pytest.fixture
def service():
    return SecurityLoggingService()


# ============== Incidents ==============

class TestIncidents:
    def test_incident_id_format(self, service):
        incident_id = service.log_security_incident("api_abuse", "low", "Noisy client")
        assert re.fullmatch(r"SEC-\d{8}-\d{6}-[0-9A-F]{6}", incident_id)

    def test_safe_headers_redact_credentials(self, service):
        headers = service.get_safe_headers(make_request())
        assert headers["authorization"] == "[REDACTED]"
        assert headers["cookie"] == "[REDACTED]"
        assert headers["user-agent"] == "pytest-agent"

    def test_sanitize_for_logging(self, service):
        assert service.sanitize_for_logging("a<b>;c") == "a[FILTERED]b[FILTERED][FILTERED]c"
        assert len(service.sanitize_for_logging("x" * 900)) == 500

    def test_activity_severity(self, service):
        assert service.calculate_activity_severity("mass_data_export") == "critical"
        assert service.calculate_activity_severity("multiple_failed_logins") == "high"
        assert service.calculate_activity_severity("odd_hours_login") == "medium"

    def test_attack_severity(self, service):
        assert service.attack_severity("sql_injection_attempt") == "critical"
        assert service.attack_severity("csrf_attack") == "high"
        assert service.attack_severity("path_traversal_attempt") == "medium"

    def test_data_access_violation_is_high(self, service, caplog):
        with caplog.at_level("ERROR", logger="security"):
            incident_id = service.log_data_access_violation("customer", "cross_tenant_read", {"user_id": 4})
        assert incident_id.startswith("SEC-")
        assert any("Data access violation: cross_tenant_read for customer" in r.getMessage()
                   for r in caplog.records)

    def test_pattern_thresholds(self, service):
        assert service.pattern_threshold("authentication_failure") == 20
        assert service.pattern_threshold("api_abuse") == 25


class TestBruteForceAndBlocking:
    def test_authentication_failures_counted(self, service):
        request = make_request()
        for _ in range(3):
            service.log_authentication_failure("ada@example.com", "invalid_password", request)
        assert redis_cache.get("brute_force:email:ada@example.com") == 3
        assert redis_cache.get("brute_force:ip:203.0.113.9") == 3

    def test_brute_force_escalates(self, service, caplog):
        request = make_request()
        with caplog.at_level("ERROR", logger="security"):
            for _ in range(5):
                service.log_authentication_failure("ada@example.com", "invalid_password", request)
        assert any("Brute force attack pattern detected" in r.getMessage() for r in caplog.records)

    def test_critical_attack_blocks_ip(self, service):
        service.log_attack_attempt("xss_attempt", {"raw_input": "<script>"}, make_request())
        assert service.is_ip_blocked("203.0.113.9")
        blocked = redis_cache.get("blocked_ip:203.0.113.9")
        assert blocked["reason"] == "xss_attempt"

    def test_medium_attack_does_not_block(self, service):
        service.log_attack_attempt("path_traversal_attempt", {"raw_input": "../"}, make_request())
        assert not service.is_ip_blocked("203.0.113.9")

    def test_no_ip_never_blocked(self, service):
        service.log_attack_attempt("sql_injection_attempt", {"raw_input": "1=1"})
        assert not service.is_ip_blocked(None)

    def test_pattern_spike_alert(self, service, caplog):
        with caplog.at_level("ERROR", logger="security"):
            for _ in range(11):
                service.log_suspicious_activity("odd_hours_login")
        assert any("Unusual spike in suspicious_activity" in r.getMessage() for r in caplog.records)


# ============== Persistent events ==============

class TestSecurityEvents:
    def test_event_is_persisted_and_masked(self, service, db_session, owner):
        entry = service.log_security_event(
            db_session,
            owner,
            "password_changed",
            {"new_password_hash": "abcdef123456", "api_key": "sk-live-9999", "nested": {"token": "tok-1234"}},
            "warning",
            "user",
            owner.id,
            make_request(),
        )
        db_session.commit()
        assert entry.user_id == owner.id
        assert entry.target_id == str(owner.id)
        assert entry.ip_address == "203.0.113.9"
        assert entry.user_agent == "pytest-agent"
        assert entry.details["new_password_hash"] == "***3456"
        assert entry.details["api_key"] == "***9999"
        assert entry.details["nested"]["token"] == "***1234"
        assert entry.details["severity_level"] == "warning"

    def test_empty_event_type_rejected(self, service, db_session):
        with pytest.raises(ValueError, match="Event type cannot be empty"):
            service.log_security_event(db_session, None, "")

    def test_user_action(self, service, db_session, owner):
        entry = service.log_user_action(db_session, owner, "menu_item_updated", "menu_item", 12, {"price": "9.50"})
        assert entry.target_type == "menu_item"
        assert entry.details["changes"] == {"price": "9.50"}

    def test_get_logs_filters(self, service, db_session, owner):
        service.log_security_event(db_session, owner, "login_success")
        service.log_security_event(db_session, owner, "logout", severity="info")
        service.log_security_event(db_session, None, "login_failed", severity="warning")
        db_session.commit()

        assert len(service.get_logs(db_session, user_id=owner.id)) == 2
        assert [log.event_type for log in service.get_logs(db_session, severity="warning")] == ["login_failed"]
        assert len(service.get_logs(db_session, limit=1)) == 1

    def test_rotate_old_logs(self, service, db_session):
        old = SecurityLog(event_type="login_success", severity="info",
                          created_at=datetime.now(timezone.utc) - timedelta(days=120))
        recent = SecurityLog(event_type="login_success", severity="info")
        db_session.add_all([old, recent])
        db_session.commit()

        assert service.rotate_old_logs(db_session) == 1
        assert db_session.query(SecurityLog).count() == 1

    def test_security_report(self, service, db_session):
        db_session.add_all([
            SecurityLog(event_type="xss_attempt", severity="critical", ip_address="198.51.100.1"),
            SecurityLog(event_type="xss_attempt", severity="critical", ip_address="198.51.100.1"),
            SecurityLog(event_type="login_failed", severity="medium", ip_address="198.51.100.2"),
        ])
        db_session.commit()

        now = datetime.now(timezone.utc)
        report = service.generate_security_report(db_session, now - timedelta(hours=1), now + timedelta(hours=1))
        assert report["total_incidents"] == 3
        assert report["incidents_by_severity"]["critical"] == 2
        assert report["incidents_by_severity"]["low"] == 0
        assert report["incidents_by_type"] == {"xss_attempt": 2, "login_failed": 1}
        assert report["top_threat_sources"][0] == {"ip_address": "198.51.100.1", "incidents": 2}
