"""Authentication routes: password login, email OTP second factor, logout."""

import logging
from datetime import timedelta

import jwt
from fastapi import APIRouter, Depends, HTTPException, Request, status
from jwt.exceptions import PyJWTError

from foodhub.core.config import settings
from foodhub.core.rate_limit import limiter, rate_limit
from foodhub.core.rbac import CurrentUser, extract_token
from foodhub.core.responses import success_response
from foodhub.core.security import (
    MFA_PURPOSE,
    blacklist_token,
    create_access_token,
    create_mfa_token,
    decode_mfa_token,
    generate_otp_code,
    get_password_hash,
    is_token_blacklisted,
    verify_password,
)
from foodhub.db.base import as_utc, isoformat, utcnow
from foodhub.db.session import DbSession
from foodhub.models.user import User
from foodhub.schemas.auth import LoginRequest, MfaVerifyRequest
from foodhub.services.security_logging_service import client_ip, security_logger

logger = logging.getLogger("auth")

router = APIRouter()
profile_router = APIRouter()

INVALID_CREDENTIALS = "Invalid credentials."
INVALID_TOKEN = "Invalid or expired token."
INVALID_MFA = "Invalid MFA code or MFA not enabled for this user."


def user_to_dict(user: User) -> dict:
    return {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "role": user.role.value,
        "restaurant_id": user.restaurant_id,
        "restaurant_branch_id": user.restaurant_branch_id,
        "permissions": user.permissions or [],
        "status": user.status,
        "phone": user.phone,
        "mfa_enabled": user.mfa_enabled,
        "last_login_at": isoformat(user.last_login_at),
        "created_at": isoformat(user.created_at),
    }


def _issue_token(db, user: User) -> dict:
    user.last_login_at = utcnow()
    db.commit()
    token = create_access_token(
        data={"sub": str(user.id), "email": user.email, "role": user.role.value}
    )
    return {
        "token": token,
        "token_type": "bearer",
        "expires_in": settings.access_token_expire_minutes * 60,
        "user": user_to_dict(user),
    }


@router.post("/login", dependencies=[Depends(rate_limit("login"))])
@limiter.limit("10/minute")
def login(request: Request, login_request: LoginRequest, db: DbSession):
    """Authenticate with email and password.

    Users with MFA enabled get a short-lived ``temp_token`` instead of an
    access token and must complete ``/auth/mfa/verify``.
    """
    ip = client_ip(request)
    user = db.query(User).filter(User.email == login_request.email).first()

    if not user or not verify_password(login_request.password, user.password_hash):
        logger.warning(f"Failed login attempt for email: {login_request.email} from IP: {ip}")
        security_logger.log_authentication_failure(login_request.email, "invalid_credentials", request)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=INVALID_CREDENTIALS,
        )
    if not user.is_active:
        logger.warning(f"Login attempt for inactive user: {login_request.email} (ID: {user.id}) from IP: {ip}")
        security_logger.log_authentication_failure(login_request.email, "account_inactive", request)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User account is inactive",
        )

    if user.mfa_enabled:
        code = generate_otp_code()
        user.mfa_code_hash = get_password_hash(code)
        user.mfa_code_expires_at = utcnow() + timedelta(minutes=settings.mfa_token_expire_minutes)
        db.commit()
        if settings.debug:
            logger.debug(f"MFA code for user {user.id}: {code}")
        logger.info(f"MFA challenge issued for {user.email} (ID: {user.id}) from IP: {ip}")
        return success_response("MFA verification required", {
            "mfa_required": True,
            "temp_token": create_mfa_token(user.id),
            "expires_in": settings.mfa_token_expire_minutes * 60,
        })

    logger.info(f"Successful login: {user.email} (ID: {user.id}, role: {user.role.value}) from IP: {ip}")
    return success_response("Login successful", _issue_token(db, user))


@router.post("/mfa/verify", dependencies=[Depends(rate_limit("mfa_verify"))])
@limiter.limit("10/minute")
def verify_mfa(request: Request, data: MfaVerifyRequest, db: DbSession):
    """Exchange a temp token and the emailed 6-digit code for an access token."""
    try:
        payload = decode_mfa_token(data.temp_token)
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=INVALID_TOKEN)
    except PyJWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token format.")

    if payload.get("purpose") != MFA_PURPOSE or is_token_blacklisted(payload.get("jti", "")):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=INVALID_TOKEN)

    user = db.get(User, int(payload["sub"]))
    if user is None or not user.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=INVALID_TOKEN)

    expires_at = as_utc(user.mfa_code_expires_at)
    code_valid = (
        user.mfa_enabled
        and user.mfa_code_hash is not None
        and expires_at is not None
        and expires_at > utcnow()
        and verify_password(data.otp, user.mfa_code_hash)
    )
    if not code_valid:
        security_logger.log_authentication_failure(user.email, "invalid_mfa_code", request)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=INVALID_MFA)

    user.mfa_code_hash = None
    user.mfa_code_expires_at = None
    blacklist_token(data.temp_token)
    logger.info(f"MFA login completed: {user.email} (ID: {user.id})")
    return success_response("Login successful", _issue_token(db, user))


@router.post("/logout")
@limiter.limit("30/minute")
def logout(request: Request, current_user: CurrentUser):
    """Blacklist the presented token until it would have expired."""
    token = extract_token(request)
    if token:
        blacklist_token(token)
    logger.info(f"User logged out: {current_user.email} (ID: {current_user.user_id})")
    return success_response("Logged out successfully")


@profile_router.get("/user")
@limiter.limit("60/minute")
def get_current_user_info(request: Request, current_user: CurrentUser, db: DbSession):
    user = db.get(User, current_user.user_id)
    return user_to_dict(user)
