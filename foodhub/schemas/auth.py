"""Authentication schemas."""

from pydantic import BaseModel, EmailStr, Field


class LoginRequest(BaseModel):
    """Login request body."""

    email: EmailStr
    password: str = Field(..., min_length=1, max_length=128)


class MfaVerifyRequest(BaseModel):
    """Second step of an MFA login."""

    temp_token: str = Field(..., min_length=1)
    otp: str = Field(..., pattern=r"^\d{6}$")
