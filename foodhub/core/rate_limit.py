"""Rate limiting.

Two layers:

* ``limiter`` / ``user_limiter`` are slowapi limiters for fixed per-route
  decorator limits (``@limiter.limit("30/minute")``).
* ``advanced_limiter`` is the tiered sliding-window limiter. Routes opt in
  with ``Depends(rate_limit("login"))``; limits depend on the caller's tier
  and repeated violations earn progressively longer lockouts.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import Request
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.util import get_remote_address

from foodhub.core.cache import redis_cache
from foodhub.core.config import settings
from foodhub.core.rbac import INTERNAL_STAFF_ROLES, OptionalCurrentUser, TokenData

logger = logging.getLogger(__name__)

limiter = Limiter(key_func=get_remote_address, enabled=settings.rate_limit_enabled)


def get_user_or_ip(request: Request) -> str:
    """Rate limit by user ID if authenticated, else by IP."""
    auth = request.headers.get("Authorization", "")
    if auth.startswith("Bearer "):
        from foodhub.core.security import decode_access_token
        token = auth.split(" ", 1)[1]
        payload = decode_access_token(token)
        if payload and payload.get("sub"):
            return f"user:{payload['sub']}"
    return get_remote_address(request)


user_limiter = Limiter(key_func=get_user_or_ip, enabled=settings.rate_limit_enabled)


TIER_UNAUTHENTICATED = "unauthenticated"
TIER_CUSTOMER = "customer"
TIER_INTERNAL_STAFF = "internal_staff"
TIER_SUPER_ADMIN = "super_admin"

ENDPOINT_TYPES = ("general", "login", "password_reset", "mfa_verify", "mfa_request")


def _limits(ip_limit, ip_window, user_limit=None, user_window=None) -> Dict[str, Optional[Dict[str, int]]]:
    return {
        "ip": {"limit": ip_limit, "window": ip_window},
        "user": {"limit": user_limit, "window": user_window} if user_limit else None,
    }


# endpoint type -> tier -> {"ip": {...}, "user": {...} | None}
RATE_LIMITS = {
    "general": {
        TIER_UNAUTHENTICATED: _limits(15, 60),
        TIER_CUSTOMER: _limits(50, 60, 400, 60),
        TIER_INTERNAL_STAFF: _limits(100, 60, 5000, 60),
        TIER_SUPER_ADMIN: _limits(200, 60, 10000, 60),
    },
    "login": {
        TIER_UNAUTHENTICATED: _limits(5, 900),
        TIER_CUSTOMER: _limits(5, 900, 10, 900),
        TIER_INTERNAL_STAFF: _limits(10, 900, 20, 900),
        TIER_SUPER_ADMIN: _limits(20, 900, 50, 900),
    },
    "password_reset": {
        TIER_UNAUTHENTICATED: _limits(3, 3600),
        TIER_CUSTOMER: _limits(3, 3600, 5, 3600),
        TIER_INTERNAL_STAFF: _limits(5, 3600, 10, 3600),
        TIER_SUPER_ADMIN: _limits(10, 3600, 20, 3600),
    },
    "mfa_verify": {
        TIER_UNAUTHENTICATED: _limits(3, 300),
        TIER_CUSTOMER: _limits(5, 300, 5, 300),
        TIER_INTERNAL_STAFF: _limits(10, 300, 10, 300),
        TIER_SUPER_ADMIN: _limits(20, 300, 20, 300),
    },
    "mfa_request": {
        TIER_UNAUTHENTICATED: _limits(2, 60),
        TIER_CUSTOMER: _limits(3, 60, 5, 3600),
        TIER_INTERNAL_STAFF: _limits(5, 60, 10, 3600),
        TIER_SUPER_ADMIN: _limits(10, 60, 20, 3600),
    },
}

# Per-email limits on top of the ip/user limits
EMAIL_LIMITS = {
    "login": ("login_attempts", {"limit": 3, "window": 300}),
    "password_reset": ("password_reset", {"limit": 1, "window": 600}),
}

PENALTY_DURATIONS = {1: 300, 2: 900, 3: 1800, 4: 3600, 5: 7200}
VIOLATION_MEMORY = 86400


class RateLimitViolation(Exception):
    """Raised by the tiered limiter; rendered as a 429 with Retry-After."""

    def __init__(self, payload: Dict[str, Any], retry_after: int):
        super().__init__(payload.get("message"))
        self.payload = payload
        self.retry_after = int(retry_after)


async def rate_limit_violation_handler(request: Request, exc: RateLimitViolation) -> JSONResponse:
    return JSONResponse(
        status_code=429,
        content=exc.payload,
        headers={"Retry-After": str(exc.retry_after)},
    )


def client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


class AdvancedRateLimiter:
    """Tiered sliding-window limiter with progressive penalties."""

    def __init__(self, enabled: bool = True, progressive_penalties: bool = True):
        self.enabled = enabled
        self.progressive_penalties = progressive_penalties

    @staticmethod
    def get_user_tier(user: Optional[TokenData]) -> str:
        if user is None:
            return TIER_UNAUTHENTICATED
        if user.is_super_admin():
            return TIER_SUPER_ADMIN
        if user.role in INTERNAL_STAFF_ROLES:
            return TIER_INTERNAL_STAFF
        return TIER_CUSTOMER

    @staticmethod
    def get_endpoint_limits(
        endpoint_type: str,
        tier: str,
        custom_limit: Optional[int] = None,
        custom_window: Optional[int] = None,
    ) -> Dict[str, Optional[Dict[str, int]]]:
        tier_limits = RATE_LIMITS.get(endpoint_type, RATE_LIMITS["general"]).get(tier)
        if tier_limits is None:
            tier_limits = RATE_LIMITS["general"][tier]

        # Copy so overrides never leak into the shared table
        limits = {scope: dict(cfg) if cfg else None for scope, cfg in tier_limits.items()}
        if custom_limit and custom_window:
            for cfg in limits.values():
                if cfg:
                    cfg["limit"] = custom_limit
                    cfg["window"] = custom_window
        return limits

    def check(
        self,
        request: Request,
        endpoint_type: str = "general",
        user: Optional[TokenData] = None,
        email: Optional[str] = None,
        custom_limit: Optional[int] = None,
        custom_window: Optional[int] = None,
    ) -> None:
        """Count this request; raise RateLimitViolation when a limit is hit."""
        if not self.enabled or not settings.rate_limit_enabled:
            return

        ip = client_ip(request)
        tier = self.get_user_tier(user)
        limits = self.get_endpoint_limits(endpoint_type, tier, custom_limit, custom_window)

        self._check_key(request, f"ip:{ip}:{endpoint_type}", limits["ip"], endpoint_type, user)
        if user is not None:
            self._check_key(request, f"user:{user.user_id}:{endpoint_type}", limits["user"], endpoint_type, user)

        if email and endpoint_type in EMAIL_LIMITS:
            suffix, config = EMAIL_LIMITS[endpoint_type]
            self._check_key(request, f"email:{email}:{suffix}", config, endpoint_type, user)

    def _check_key(
        self,
        request: Request,
        key: str,
        config: Optional[Dict[str, int]],
        endpoint_type: str,
        user: Optional[TokenData],
    ) -> None:
        if not config:
            return

        limit, window = config["limit"], config["window"]
        now = time.time()
        requests_key = f"rate_limit:{key}"
        in_window = [t for t in (redis_cache.get(requests_key) or []) if t > now - window]

        if len(in_window) >= limit:
            self._log_violation(request, key, limit, window, len(in_window), endpoint_type, user)
            if self.progressive_penalties:
                self._apply_progressive_penalty(key, endpoint_type)

            retry_after = self.calculate_retry_after(in_window, window, now)
            raise RateLimitViolation(
                {
                    "message": "Too many requests. Please try again later.",
                    "retry_after": retry_after,
                    "limit": limit,
                    "window": window,
                },
                retry_after,
            )

        in_window.append(now)
        redis_cache.set(requests_key, in_window, window + 60)

    def _apply_progressive_penalty(self, key: str, endpoint_type: str) -> None:
        violations = int(redis_cache.get(f"penalty:{key}") or 0)
        penalty_end = redis_cache.get(f"current_penalty:{key}")
        now = time.time()

        if penalty_end and now < float(penalty_end):
            remaining = max(1, int(float(penalty_end) - now))
            logger.warning(
                f"Progressive penalty active for {key}: {remaining}s remaining "
                f"({violations} violations, endpoint {endpoint_type})"
            )
            raise RateLimitViolation(
                {
                    "message": "Account temporarily locked due to repeated violations.",
                    "retry_after": remaining,
                    "violations": violations,
                    "penalty_duration": self.penalty_duration(violations + 1),
                },
                remaining,
            )

        violations += 1
        duration = self.penalty_duration(violations)
        redis_cache.set(f"penalty:{key}", violations, VIOLATION_MEMORY)
        redis_cache.set(f"current_penalty:{key}", now + duration, duration)
        logger.warning(
            f"Progressive penalty applied to {key}: violation {violations}, locked for {duration}s"
        )
        raise RateLimitViolation(
            {
                "message": "Too many violations. Account temporarily locked.",
                "retry_after": duration,
                "violations": violations,
                "penalty_duration": duration,
            },
            duration,
        )

    @staticmethod
    def penalty_duration(violations: int) -> int:
        return PENALTY_DURATIONS[min(max(violations, 1), 5)]

    @staticmethod
    def calculate_retry_after(requests: List[float], window: int, now: Optional[float] = None) -> int:
        if not requests:
            return window
        now = now if now is not None else time.time()
        return max(1, int(min(requests) + window - now))

    def _log_violation(self, request, key, limit, window, count, endpoint_type, user) -> None:
        from foodhub.services.security_logging_service import SEVERITY_MEDIUM, security_logger

        logger.warning(
            f"Rate limit exceeded: {key} ({count}/{limit} in {window}s, endpoint {endpoint_type})"
        )
        security_logger.log_security_incident(
            "rate_limit_exceeded",
            SEVERITY_MEDIUM,
            f"Rate limit exceeded for {endpoint_type} endpoint",
            {
                "key": key,
                "limit": limit,
                "window": window,
                "requests_count": count,
                "endpoint_type": endpoint_type,
                "user_id": user.user_id if user is not None else None,
            },
            request,
        )

    # ------------------------------------------------------------------
    # Introspection and administration
    # ------------------------------------------------------------------

    def get_status(self, key: str, config: Optional[Dict[str, int]]) -> Optional[Dict[str, Any]]:
        if not config:
            return None

        limit, window = config["limit"], config["window"]
        now = time.time()
        requests = redis_cache.get(f"rate_limit:{key}") or []
        used = len([t for t in requests if t > now - window])

        penalty_end = redis_cache.get(f"current_penalty:{key}")
        penalty_active = bool(penalty_end) and now < float(penalty_end)

        return {
            "limit": limit,
            "window_seconds": window,
            "requests_used": used,
            "requests_remaining": max(0, limit - used),
            "reset_time": _iso(min(requests) + window) if requests else None,
            "penalty_active": penalty_active,
            "penalty_end_time": _iso(float(penalty_end)) if penalty_active else None,
        }

    def status_report(self, request: Request, user: Optional[TokenData]) -> Dict[str, Any]:
        ip = client_ip(request)
        tier = self.get_user_tier(user)
        rate_limits = {}
        for endpoint_type in ENDPOINT_TYPES:
            limits = self.get_endpoint_limits(endpoint_type, tier)
            user_status = None
            if user is not None:
                user_status = self.get_status(f"user:{user.user_id}:{endpoint_type}", limits["user"])
            rate_limits[endpoint_type] = {
                "ip_limits": self.get_status(f"ip:{ip}:{endpoint_type}", limits["ip"]),
                "user_limits": user_status,
            }
        return {
            "user_tier": tier,
            "user_id": user.user_id if user is not None else None,
            "ip_address": ip,
            "rate_limits": rate_limits,
        }

    def clear(self, target_type: str, target_value: str, endpoint_type: Optional[str] = None) -> List[str]:
        """Drop windows and penalties for one ip/user/email; returns the cleared keys."""
        endpoint_types = ENDPOINT_TYPES if endpoint_type in (None, "*") else (endpoint_type,)
        cleared = []
        for etype in endpoint_types:
            if target_type == "email":
                if etype not in EMAIL_LIMITS:
                    continue
                etype = EMAIL_LIMITS[etype][0]
            key = f"{target_type}:{target_value}:{etype}"
            for prefix in ("rate_limit", "penalty", "current_penalty"):
                redis_cache.delete(f"{prefix}:{key}")
            cleared.append(key)
        logger.info(f"Rate limits cleared for {target_type}:{target_value} ({len(cleared)} keys)")
        return cleared


def _iso(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


advanced_limiter = AdvancedRateLimiter()


def rate_limit(
    endpoint_type: str = "general",
    custom_limit: Optional[int] = None,
    custom_window: Optional[int] = None,
):
    """Dependency factory applying the tiered limiter to a route or router."""

    async def dependency(request: Request, current_user: OptionalCurrentUser) -> None:
        email = None
        if endpoint_type in EMAIL_LIMITS and request.method in ("POST", "PUT"):
            try:
                body = await request.json()
            except ValueError:
                body = None
            if isinstance(body, dict) and isinstance(body.get("email"), str):
                email = body["email"].lower()

        advanced_limiter.check(
            request,
            endpoint_type,
            user=current_user,
            email=email,
            custom_limit=custom_limit,
            custom_window=custom_window,
        )

    return dependency
