"""FastAPI application entry point."""

import json
import logging
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Query, Request, WebSocket, WebSocketDisconnect, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text
from starlette.exceptions import HTTPException as StarletteHTTPException

from foodhub.api.routes import api_router
from foodhub.core.cache import redis_cache
from foodhub.core.config import settings
from foodhub.core.middleware import (
    CacheHeadersMiddleware,
    HTTPSEnforcementMiddleware,
    InputSanitizationMiddleware,
    RequestLoggingMiddleware,
    SecurityHeadersMiddleware,
)
from foodhub.core.policies import can_join_channel
from foodhub.core.rate_limit import RateLimitViolation, limiter, rate_limit_violation_handler
from foodhub.core.rbac import TokenData
from foodhub.core.security import decode_access_token
from foodhub.db.base import Base
from foodhub.db.session import DbSession, SessionLocal, engine
from foodhub.models.user import User
from foodhub.services.websocket_service import ws_manager

import foodhub.models  # noqa: F401  registers every table on Base.metadata

# Configure logging - use JSON format in production, human-readable in dev
root_logger = logging.getLogger()
root_logger.setLevel(getattr(logging, settings.log_level))
root_logger.handlers.clear()


class JSONFormatter(logging.Formatter):
    def format(self, record):
        return json.dumps({
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "module": record.module,
            "line": record.lineno,
        })


if settings.debug:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
else:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())

root_logger.addHandler(handler)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info(f"Starting {settings.app_name}")

    # In production the schema is managed outside the app
    if settings.database_url.startswith("sqlite"):
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables created (SQLite mode)")

    redis_cache.initialize(settings.redis_url)

    yield

    logger.info(f"Shutting down {settings.app_name}")


app = FastAPI(
    title=settings.app_name,
    description="Multi-tenant restaurant ordering and delivery API",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
)

# Rate limiting setup
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_exception_handler(RateLimitViolation, rate_limit_violation_handler)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Errors carry both ``message`` and ``detail``."""
    return JSONResponse(
        status_code=exc.status_code,
        content={"message": exc.detail, "detail": exc.detail},
        headers=getattr(exc, "headers", None),
    )


# Public catalogue cache headers; innermost so security headers see them
app.add_middleware(CacheHeadersMiddleware)

# Security headers middleware
app.add_middleware(SecurityHeadersMiddleware)

# Attack pattern detection on path, query, body and selected headers
app.add_middleware(InputSanitizationMiddleware)

# HTTPS redirect (outside debug, when force_https is set)
app.add_middleware(HTTPSEnforcementMiddleware)

# Request logging middleware
app.add_middleware(RequestLoggingMiddleware)

# CORS middleware - MUST be added last so it runs first (Starlette LIFO order).
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=[
        "Content-Type",
        "Authorization",
        "Accept",
        "Origin",
        "X-Requested-With",
        "X-Request-ID",
    ],
    expose_headers=["X-Request-ID", "Retry-After"],
    max_age=600,
)

app.include_router(api_router, prefix=settings.api_prefix)


@app.get("/health")
def health_check():
    """Basic liveness check endpoint."""
    return {"status": "healthy", "version": "1.0.0"}


@app.get("/health/ready")
def readiness_check():
    """Readiness check with database, cache and WebSocket checks."""
    checks = {
        "database": "unknown",
        "cache": redis_cache.backend,
        "websocket_manager": "unknown",
    }

    db = None
    try:
        db = SessionLocal()
        db.execute(text("SELECT 1"))
        checks["database"] = "healthy"
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        checks["database"] = "unhealthy"
    finally:
        if db:
            db.close()

    checks["websocket_manager"] = f"healthy ({ws_manager.get_connection_count()} connections)"

    return {
        "status": "ready" if checks["database"] == "healthy" else "degraded",
        "version": "1.0.0",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": checks,
    }


# ===== WebSocket =====

async def _authenticate_websocket(websocket: WebSocket, token: Optional[str], channel: str, db) -> Optional[TokenData]:
    """Authenticate and authorize a WebSocket subscription.

    The ``token`` query parameter is tried first, then the ``access_token``
    cookie. The user must exist, be active and be allowed on ``channel``;
    otherwise the connection is closed with 1008 and None is returned.
    """
    payload = decode_access_token(token) if token else None
    if not payload:
        cookie_token = websocket.cookies.get("access_token")
        if cookie_token:
            payload = decode_access_token(cookie_token)

    user_id = int(payload.get("sub", 0)) if payload else 0
    user = db.get(User, user_id) if user_id else None
    if user is None or not user.is_active:
        logger.warning(f"WebSocket rejected for '{channel}': no valid token or inactive account")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return None

    current = TokenData.from_user(user)
    if not can_join_channel(current, channel):
        logger.warning(f"WebSocket rejected for '{channel}': user {user.id} may not subscribe")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return None
    return current


@app.websocket("/ws/{channel}")
async def websocket_channel(websocket: WebSocket, channel: str, db: DbSession, token: Optional[str] = Query(None)):
    """Subscribe to a broadcast channel (``customer.1``, ``kitchen.3``, ...)."""
    user = await _authenticate_websocket(websocket, token, channel, db)
    if user is None:
        return
    if not await ws_manager.connect(websocket, channel, user_id=user.user_id):
        return

    try:
        while True:
            data = await websocket.receive_text()
            if data == "ping":
                ws_manager.update_ping(websocket)
                await websocket.send_text("pong")
    except WebSocketDisconnect:
        ws_manager.disconnect(websocket, channel)
    except Exception as e:
        logger.error(f"WebSocket error in {channel}: {e}", exc_info=True)
        ws_manager.disconnect(websocket, channel)
