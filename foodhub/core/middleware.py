"""HTTP middleware stack: HTTPS enforcement, security headers, input
sanitization, public cache headers and request logging."""

import hashlib
import json
import logging
import time
from datetime import datetime, timedelta, timezone
from email.utils import format_datetime

from fastapi import Request, status
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.middleware.base import BaseHTTPMiddleware

from foodhub.core.config import settings
from foodhub.core.sanitize import SEVERITY_CRITICAL, analyze_input, flatten_strings

logger = logging.getLogger(__name__)
request_logger = logging.getLogger("requests")

# Health checks bypass HTTPS redirects and input scanning
SAFE_PATHS = ("/health", "/ping", "/status")

# Headers worth scanning; the rest are client plumbing (accept, encoding, ...)
SCANNED_HEADERS = ("user-agent", "referer", "x-forwarded-for", "x-forwarded-host")


def _is_safe_path(path: str) -> bool:
    return any(path == p or path.startswith(p + "/") for p in SAFE_PATHS)


class HTTPSEnforcementMiddleware(BaseHTTPMiddleware):
    """Redirect plain HTTP to HTTPS outside debug (direct or behind a proxy)."""

    async def dispatch(self, request: Request, call_next):
        if (
            not settings.debug
            and settings.force_https
            and not _is_safe_path(request.url.path)
            and self._is_plain_http(request)
        ):
            url = request.url.replace(scheme="https")
            return RedirectResponse(url=str(url), status_code=status.HTTP_301_MOVED_PERMANENTLY)
        return await call_next(request)

    @staticmethod
    def _is_plain_http(request: Request) -> bool:
        forwarded = request.headers.get("x-forwarded-proto")
        if forwarded:
            return forwarded.split(",")[0].strip().lower() == "http"
        return request.url.scheme == "http"


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        headers = response.headers
        headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains; preload"
        headers["X-Frame-Options"] = "DENY"
        headers["X-XSS-Protection"] = "1; mode=block"
        headers["X-Content-Type-Options"] = "nosniff"
        headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        headers["Permissions-Policy"] = "camera=(), microphone=(), geolocation=(), payment=()"
        headers["Content-Security-Policy"] = (
            "default-src 'none'; "
            "script-src 'none'; "
            "style-src 'none'; "
            "img-src 'none'; "
            "font-src 'none'; "
            "connect-src 'self'; "
            "media-src 'none'; "
            "object-src 'none'; "
            "child-src 'none'; "
            "frame-src 'none'; "
            "worker-src 'none'; "
            "frame-ancestors 'none'; "
            "form-action 'none'; "
            "base-uri 'none'"
        )
        headers["X-Powered-By"] = "FoodHub-API"
        headers["Server"] = "FoodHub-Secure"

        # Public cacheable GETs set their own Cache-Control
        if "cache-control" not in headers:
            headers["Cache-Control"] = "no-store, no-cache, must-revalidate, private"
            headers["Pragma"] = "no-cache"
            headers["Expires"] = "0"

        if not settings.debug:
            headers["Expect-CT"] = "max-age=86400, enforce"
        return response


class InputSanitizationMiddleware(BaseHTTPMiddleware):
    """Reject requests whose path, query, body or headers carry attack payloads.

    Every detected threat is reported through the security logger; critical
    ones (SQL injection, XSS, command injection) answer 403, anything else
    400. Requests from IPs blocked by an earlier critical threat are refused
    outright.
    """

    async def dispatch(self, request: Request, call_next):
        if _is_safe_path(request.url.path):
            return await call_next(request)

        from foodhub.services.security_logging_service import security_logger

        ip = request.client.host if request.client else None
        if security_logger.is_ip_blocked(ip):
            logger.warning(f"Request from blocked IP {ip} refused: {request.method} {request.url.path}")
            return self._violation(status.HTTP_400_BAD_REQUEST, "IP address is temporarily blocked")

        threats = []
        for field, value in (await self._collect_inputs(request)).items():
            threats.extend(analyze_input(field, value))

        if not threats:
            return await call_next(request)

        for threat in threats:
            security_logger.log_attack_attempt(
                threat["type"],
                {
                    "field": threat["field"],
                    "raw_input": threat["value"],
                    "severity": threat["severity"],
                    "url": str(request.url),
                    "method": request.method,
                },
                request,
            )

        if any(t["severity"] == SEVERITY_CRITICAL for t in threats):
            return self._violation(status.HTTP_403_FORBIDDEN, "Critical security threat detected")
        return self._violation(status.HTTP_400_BAD_REQUEST, "Security threat detected")

    @staticmethod
    async def _collect_inputs(request: Request) -> dict:
        inputs = {"path": request.url.path}
        for key, value in request.query_params.multi_items():
            inputs[f"query.{key}"] = value
        for name in SCANNED_HEADERS:
            if name in request.headers:
                inputs[f"header.{name}"] = request.headers[name]

        if request.method in ("POST", "PUT", "PATCH"):
            body = await request.body()
            if body and "json" in request.headers.get("content-type", ""):
                try:
                    payload = json.loads(body)
                except ValueError:
                    payload = None
                inputs.update(flatten_strings(payload, "body"))
        return inputs

    @staticmethod
    def _violation(status_code: int, message: str) -> JSONResponse:
        return JSONResponse(
            status_code=status_code,
            content={
                "error": "Security Violation",
                "message": message,
                "status": status_code,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
        )


# Resource segment -> max-age seconds for public GETs
CACHE_MAX_AGE = {
    "restaurants": 300,
    "menu-items": 300,
    "menu-categories": 1800,
    "restaurant-branches": 1800,
}
DEFAULT_CACHE_MAX_AGE = 600
PUBLIC_CACHE_PREFIXES = (
    "restaurants",
    "restaurant-branches",
    "menu-categories",
    "menu-items",
    "branch-menu-items",
)


class CacheHeadersMiddleware(BaseHTTPMiddleware):
    """Public cache headers and an md5 ETag on successful catalogue GETs."""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)

        resource = self._resource(request.url.path)
        if request.method != "GET" or response.status_code != 200 or resource is None:
            return response

        body = b""
        async for chunk in response.body_iterator:
            body += chunk

        max_age = CACHE_MAX_AGE.get(resource, DEFAULT_CACHE_MAX_AGE)
        now = datetime.now(timezone.utc)
        headers = dict(response.headers)
        headers.pop("content-length", None)
        headers.update({
            "Cache-Control": f"public, max-age={max_age}, s-maxage={max_age}",
            "ETag": f'"{hashlib.md5(body).hexdigest()}"',
            "Last-Modified": format_datetime(now, usegmt=True),
            "Expires": format_datetime(now + timedelta(seconds=max_age), usegmt=True),
        })
        return JSONResponse(
            content=json.loads(body) if body else None,
            status_code=response.status_code,
            headers=headers,
        )

    @staticmethod
    def _resource(path: str):
        prefix = settings.api_prefix.rstrip("/") + "/"
        if not path.startswith(prefix):
            return None
        segment = path[len(prefix):].split("/", 1)[0]
        return segment if segment in PUBLIC_CACHE_PREFIXES else None


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware for logging all HTTP requests and responses."""

    async def dispatch(self, request: Request, call_next):
        # Skip logging for health checks and docs
        if request.url.path in ["/health", "/", "/docs", "/openapi.json"]:
            return await call_next(request)

        start_time = time.time()
        client_ip = request.client.host if request.client else "unknown"

        request_logger.info(
            f"Request: {request.method} {request.url.path} - Client: {client_ip}"
        )

        try:
            response = await call_next(request)
            process_time = time.time() - start_time

            log_level = logging.WARNING if response.status_code >= 400 else logging.INFO
            request_logger.log(
                log_level,
                f"Response: {request.method} {request.url.path} - "
                f"Status: {response.status_code} - Time: {process_time:.3f}s - Client: {client_ip}"
            )
            return response
        except Exception as e:
            process_time = time.time() - start_time
            request_logger.error(
                f"Error: {request.method} {request.url.path} - "
                f"Exception: {str(e)} - Time: {process_time:.3f}s - Client: {client_ip}"
            )
            raise
