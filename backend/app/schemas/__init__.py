"""Pydantic schemas for API validation"""

from app.schemas.auth import (
    NativeSignInRequest,
    AuthUrlResponse,
    UserResponse,
    SignInResponse,
    TokenResponse,
    RefreshResponse,
    LogoutResponse,
    SessionResponse,
    SessionListResponse,
)

__all__ = [
    "NativeSignInRequest", "AuthUrlResponse",
    "UserResponse", "SignInResponse", "TokenResponse", "RefreshResponse", "LogoutResponse",
    "SessionResponse", "SessionListResponse",
]
