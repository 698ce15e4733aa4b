"""Security incident logging.

Incidents go to the ``security`` logger at a level matching their severity.
Hourly counts per incident type are kept in the cache so spikes raise an
alert, failed logins are tracked per email and per IP to spot brute force,
and critical attacks block the source IP for an hour.

``log_security_event`` is the persistent side: it writes a ``SecurityLog``
row in the caller's session. With ``SECURITY_LOGGING=true`` every incident is
also written to ``security_logs`` through a short-lived session.
"""

import logging
import re
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from fastapi import Request
from sqlalchemy import func
from sqlalchemy.orm import Session

from foodhub.core.cache import redis_cache
from foodhub.core.config import settings

logger = logging.getLogger("security")

SEVERITY_LOW = "low"
SEVERITY_MEDIUM = "medium"
SEVERITY_HIGH = "high"
SEVERITY_CRITICAL = "critical"

INCIDENT_TYPES = (
    "authentication_failure",
    "authorization_failure",
    "brute_force_attempt",
    "rate_limit_exceeded",
    "suspicious_activity",
    "data_access_violation",
    "encryption_failure",
    "session_hijacking",
    "csrf_attack",
    "xss_attempt",
    "sql_injection_attempt",
    "file_upload_violation",
    "privilege_escalation",
    "account_lockout",
    "suspicious_location",
    "api_abuse",
    "data_export_violation",
)

PATTERN_THRESHOLDS = {
    "authentication_failure": 20,
    "authorization_failure": 15,
    "rate_limit_exceeded": 50,
    "suspicious_activity": 10,
}
DEFAULT_PATTERN_THRESHOLD = 25

HIGH_RISK_ACTIVITIES = (
    "multiple_failed_logins",
    "unusual_data_access_pattern",
    "privilege_escalation_attempt",
    "suspicious_file_upload",
)

CRITICAL_ACTIVITIES = (
    "admin_account_compromise",
    "mass_data_export",
    "encryption_key_access",
    "system_configuration_change",
)

SENSITIVE_HEADERS = ("authorization", "cookie", "x-csrf-token", "x-api-key")

SENSITIVE_DETAIL_KEYS = (
    "password", "password_hash", "old_password_hash", "new_password_hash",
    "token", "api_key", "secret", "key", "credential",
)

BRUTE_FORCE_WINDOW = 900
BLOCK_DURATION = 3600
LOG_RETENTION_DAYS = 90

_SEVERITY_LEVELS = {
    SEVERITY_CRITICAL: logging.CRITICAL,
    SEVERITY_HIGH: logging.ERROR,
    SEVERITY_MEDIUM: logging.WARNING,
    SEVERITY_LOW: logging.INFO,
}

_UNSAFE_LOG_CHARS = re.compile(r"[^\w\s\-_@.,!?()\[\]{}]")


def client_ip(request: Optional[Request]) -> Optional[str]:
    if request is None or request.client is None:
        return None
    return request.client.host


class SecurityLoggingService:
    """Central sink for security incidents."""

    def log_security_incident(
        self,
        incident_type: str,
        severity: str,
        description: str,
        context: Optional[Dict[str, Any]] = None,
        request: Optional[Request] = None,
    ) -> str:
        """Log one incident and return its id (``SEC-YYYYmmdd-HHMMSS-XXXXXX``)."""
        user = getattr(request.state, "user", None) if request is not None else None
        incident = {
            "incident_id": self.generate_incident_id(),
            "incident_type": incident_type,
            "severity": severity,
            "description": description,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "user_id": getattr(user, "user_id", None),
            "ip_address": client_ip(request),
            "user_agent": request.headers.get("user-agent") if request is not None else None,
            "url": str(request.url) if request is not None else None,
            "method": request.method if request is not None else None,
            "headers": self.get_safe_headers(request),
            "context": context or {},
        }

        level = _SEVERITY_LEVELS.get(severity, logging.INFO)
        logger.log(
            level,
            f"Security Incident - {severity.upper()}: {description} "
            f"[{incident['incident_id']}] ip={incident['ip_address']} user={incident['user_id']}",
            extra={"incident": incident},
        )

        if settings.security_logging:
            self._persist_incident(incident)

        self._track_incident_patterns(incident_type)

        if severity in (SEVERITY_HIGH, SEVERITY_CRITICAL):
            self._trigger_security_alert(incident)

        return incident["incident_id"]

    def log_authentication_failure(
        self, email: str, reason: str, request: Optional[Request] = None,
    ) -> str:
        incident_id = self.log_security_incident(
            "authentication_failure",
            SEVERITY_MEDIUM,
            f"Authentication failed for user: {email}",
            {
                "email": email,
                "failure_reason": reason,
                "attempt_time": datetime.now(timezone.utc).isoformat(),
            },
            request,
        )
        self._track_brute_force_attempts(email, client_ip(request), request)
        return incident_id

    def log_authorization_failure(
        self,
        resource: str,
        action: str,
        context: Optional[Dict[str, Any]] = None,
        request: Optional[Request] = None,
    ) -> str:
        user = getattr(request.state, "user", None) if request is not None else None
        details = {
            "resource": resource,
            "action": action,
            "user_role": user.role.value if user is not None else None,
            "user_permissions": list(user.permissions) if user is not None else [],
        }
        details.update(context or {})
        return self.log_security_incident(
            "authorization_failure",
            SEVERITY_MEDIUM,
            f"Authorization failed for action: {action} on resource: {resource}",
            details,
            request,
        )

    def log_suspicious_activity(
        self,
        activity: str,
        details: Optional[Dict[str, Any]] = None,
        request: Optional[Request] = None,
    ) -> str:
        context = dict(details or {})
        context.update({
            "activity_type": activity,
            "detection_time": datetime.now(timezone.utc).isoformat(),
        })
        return self.log_security_incident(
            "suspicious_activity",
            self.calculate_activity_severity(activity),
            f"Suspicious activity detected: {activity}",
            context,
            request,
        )

    def log_data_access_violation(
        self,
        data_type: str,
        violation: str,
        context: Optional[Dict[str, Any]] = None,
        request: Optional[Request] = None,
    ) -> str:
        details = dict(context or {})
        details.update({
            "data_type": data_type,
            "violation_type": violation,
            "access_time": datetime.now(timezone.utc).isoformat(),
        })
        return self.log_security_incident(
            "data_access_violation",
            SEVERITY_HIGH,
            f"Data access violation: {violation} for {data_type}",
            details,
            request,
        )

    def log_attack_attempt(
        self,
        attack_type: str,
        evidence: Optional[Dict[str, Any]] = None,
        request: Optional[Request] = None,
    ) -> str:
        """Log a detected attack. SQL injection and XSS also block the source IP."""
        severity = self.attack_severity(attack_type)
        details = dict(evidence or {})
        details.update({
            "attack_type": attack_type,
            "detection_method": "automated",
            "raw_input": self.sanitize_for_logging(str(details.get("raw_input", ""))),
        })
        incident_id = self.log_security_incident(
            attack_type, severity, f"Potential {attack_type} detected", details, request,
        )
        if severity == SEVERITY_CRITICAL:
            self._handle_critical_threat(client_ip(request), attack_type)
        return incident_id

    # ------------------------------------------------------------------
    # Classification helpers
    # ------------------------------------------------------------------

    @staticmethod
    def attack_severity(attack_type: str) -> str:
        if attack_type in ("sql_injection_attempt", "xss_attempt"):
            return SEVERITY_CRITICAL
        if attack_type in ("csrf_attack", "session_hijacking"):
            return SEVERITY_HIGH
        return SEVERITY_MEDIUM

    @staticmethod
    def calculate_activity_severity(activity: str) -> str:
        if activity in CRITICAL_ACTIVITIES:
            return SEVERITY_CRITICAL
        if activity in HIGH_RISK_ACTIVITIES:
            return SEVERITY_HIGH
        return SEVERITY_MEDIUM

    @staticmethod
    def pattern_threshold(incident_type: str) -> int:
        return PATTERN_THRESHOLDS.get(incident_type, DEFAULT_PATTERN_THRESHOLD)

    @staticmethod
    def generate_incident_id() -> str:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
        return f"SEC-{stamp}-{secrets.token_hex(3).upper()}"

    @staticmethod
    def get_safe_headers(request: Optional[Request]) -> Dict[str, str]:
        if request is None:
            return {}
        return {
            key: "[REDACTED]" if key.lower() in SENSITIVE_HEADERS else value
            for key, value in request.headers.items()
        }

    @staticmethod
    def sanitize_for_logging(value: str) -> str:
        return _UNSAFE_LOG_CHARS.sub("[FILTERED]", value[:500])

    # ------------------------------------------------------------------
    # Counters, alerts and blocking
    # ------------------------------------------------------------------

    def _track_brute_force_attempts(
        self, email: str, ip: Optional[str], request: Optional[Request],
    ) -> None:
        email_attempts = redis_cache.increment(f"brute_force:email:{email}", BRUTE_FORCE_WINDOW)
        ip_attempts = redis_cache.increment(f"brute_force:ip:{ip}", BRUTE_FORCE_WINDOW)

        if email_attempts >= 5 or ip_attempts >= 10:
            self.log_security_incident(
                "brute_force_attempt",
                SEVERITY_HIGH,
                "Brute force attack pattern detected",
                {
                    "email_attempts": email_attempts,
                    "ip_attempts": ip_attempts,
                    "target_email": email,
                    "source_ip": ip,
                    "detection_threshold": "exceeded",
                },
                request,
            )

    def _track_incident_patterns(self, incident_type: str) -> None:
        now = datetime.now(timezone.utc)
        hourly_key = f"security_pattern:{incident_type}:{now.strftime('%Y-%m-%d-%H')}"
        hourly_count = redis_cache.increment(hourly_key, 3600)
        threshold = self.pattern_threshold(incident_type)

        # Alert once per hour, on the first count past the threshold
        if hourly_count == threshold + 1:
            self.log_security_incident(
                "suspicious_activity",
                SEVERITY_HIGH,
                f"Unusual spike in {incident_type} incidents",
                {
                    "incident_type": incident_type,
                    "hourly_count": hourly_count,
                    "threshold": threshold,
                    "time_window": now.strftime("%Y-%m-%d %H:00"),
                },
            )

    def _trigger_security_alert(self, incident: Dict[str, Any]) -> None:
        logger.critical(
            f"SECURITY ALERT TRIGGERED: {incident['incident_type']} "
            f"[{incident['incident_id']}] severity={incident['severity']}",
            extra={"incident": incident, "requires_immediate_attention": True},
        )

    def _handle_critical_threat(self, ip: Optional[str], threat_type: str) -> None:
        if not ip:
            return
        now = datetime.now(timezone.utc)
        redis_cache.set(
            f"blocked_ip:{ip}",
            {
                "reason": threat_type,
                "blocked_at": now.isoformat(),
                "expires_at": (now + timedelta(seconds=BLOCK_DURATION)).isoformat(),
            },
            BLOCK_DURATION,
        )
        logger.critical(f"IP address {ip} temporarily blocked for 1 hour due to {threat_type}")

    def is_ip_blocked(self, ip: Optional[str]) -> bool:
        return bool(ip) and redis_cache.has(f"blocked_ip:{ip}")

    def _persist_incident(self, incident: Dict[str, Any]) -> None:
        from foodhub.db.session import SessionLocal
        from foodhub.models.security_log import SecurityLog

        db = SessionLocal()
        try:
            db.add(SecurityLog(
                user_id=incident["user_id"],
                event_type=incident["incident_type"],
                severity=incident["severity"],
                ip_address=incident["ip_address"],
                user_agent=(incident["user_agent"] or "")[:500] or None,
                details={
                    "incident_id": incident["incident_id"],
                    "description": incident["description"],
                    "context": incident["context"],
                },
            ))
            db.commit()
        except Exception:
            logger.exception("Failed to persist security incident")
            db.rollback()
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Persistent security events
    # ------------------------------------------------------------------

    def log_security_event(
        self,
        db: Session,
        user,
        event_type: str,
        details: Optional[Dict[str, Any]] = None,
        severity: str = "info",
        target_type: Optional[str] = None,
        target_id: Optional[Any] = None,
        request: Optional[Request] = None,
    ):
        """Write a SecurityLog row in the caller's session (flushed, not committed)."""
        from foodhub.models.security_log import SecurityLog

        if not event_type:
            raise ValueError("Event type cannot be empty")

        masked = self.mask_sensitive_details(details or {})
        masked.update({
            "severity_level": severity,
            "logged_at": datetime.now(timezone.utc).isoformat(),
        })
        entry = SecurityLog(
            user_id=getattr(user, "id", None),
            event_type=event_type,
            severity=severity,
            ip_address=client_ip(request),
            user_agent=request.headers.get("user-agent") if request is not None else None,
            target_type=target_type,
            target_id=str(target_id) if target_id is not None else None,
            details=masked,
        )
        db.add(entry)
        db.flush()
        return entry

    def log_user_action(
        self, db: Session, user, action: str, resource: str, resource_id: int,
        changes: Optional[Dict[str, Any]] = None, request: Optional[Request] = None,
    ):
        return self.log_security_event(
            db,
            user,
            action,
            {
                "resource": resource,
                "resource_id": resource_id,
                "changes": changes or {},
                "action_timestamp": datetime.now(timezone.utc).isoformat(),
            },
            "info",
            resource,
            resource_id,
            request,
        )

    def mask_sensitive_details(self, details: Dict[str, Any]) -> Dict[str, Any]:
        masked = {}
        for key, value in details.items():
            if isinstance(value, dict):
                masked[key] = self.mask_sensitive_details(value)
            elif isinstance(value, str) and any(s in key.lower() for s in SENSITIVE_DETAIL_KEYS):
                masked[key] = "***" + value[-4:]
            else:
                masked[key] = value
        return masked

    def rotate_old_logs(self, db: Session) -> int:
        from foodhub.models.security_log import SecurityLog

        cutoff = datetime.now(timezone.utc) - timedelta(days=LOG_RETENTION_DAYS)
        deleted = db.query(SecurityLog).filter(
            SecurityLog.created_at < cutoff
        ).delete(synchronize_session=False)
        db.commit()
        if deleted:
            logger.info(f"Security log retention: purged {deleted} entries older than {LOG_RETENTION_DAYS} days")
        return deleted

    def get_logs(
        self,
        db: Session,
        user_id: Optional[int] = None,
        event_type: Optional[str] = None,
        severity: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 50,
    ) -> List[Any]:
        from foodhub.models.security_log import SecurityLog

        query = db.query(SecurityLog)
        if user_id is not None:
            query = query.filter(SecurityLog.user_id == user_id)
        if event_type:
            query = query.filter(SecurityLog.event_type == event_type)
        if severity:
            query = query.filter(SecurityLog.severity == severity)
        if start:
            query = query.filter(SecurityLog.created_at >= start)
        if end:
            query = query.filter(SecurityLog.created_at <= end)
        return query.order_by(SecurityLog.created_at.desc(), SecurityLog.id.desc()).limit(limit).all()

    def generate_security_report(self, db: Session, start: datetime, end: datetime) -> Dict[str, Any]:
        from foodhub.models.security_log import SecurityLog

        base = db.query(SecurityLog).filter(
            SecurityLog.created_at >= start, SecurityLog.created_at <= end,
        )
        by_severity = dict(
            base.with_entities(SecurityLog.severity, func.count(SecurityLog.id))
            .group_by(SecurityLog.severity).all()
        )
        by_type = dict(
            base.with_entities(SecurityLog.event_type, func.count(SecurityLog.id))
            .group_by(SecurityLog.event_type).all()
        )
        top_sources = (
            base.filter(SecurityLog.ip_address.isnot(None))
            .with_entities(SecurityLog.ip_address, func.count(SecurityLog.id).label("n"))
            .group_by(SecurityLog.ip_address)
            .order_by(func.count(SecurityLog.id).desc())
            .limit(10).all()
        )
        return {
            "report_period": {"start": start.isoformat(), "end": end.isoformat()},
            "total_incidents": sum(by_type.values()),
            "incidents_by_severity": {
                level: by_severity.get(level, 0)
                for level in (SEVERITY_CRITICAL, SEVERITY_HIGH, SEVERITY_MEDIUM, SEVERITY_LOW)
            },
            "incidents_by_type": by_type,
            "top_threat_sources": [{"ip_address": ip, "incidents": n} for ip, n in top_sources],
            "generated_at": datetime.now(timezone.utc).isoformat(),
        }


security_logger = SecurityLoggingService()
