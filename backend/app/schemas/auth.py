"""Authentication request/response schemas"""

from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import datetime


APPLE_CODE_PATTERN = r"^[A-Za-z0-9._-]+$"
STATE_PATTERN = r"^[0-9a-f]{32}$"


class NativeSignInRequest(BaseModel):
    """Identity token obtained by a native Apple client"""
    identity_token: str = Field(..., min_length=1, max_length=8192)


class AuthUrlResponse(BaseModel):
    auth_url: str


class UserResponse(BaseModel):
    """User response schema"""
    id: str
    email: str
    role: str
    created_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class SignInResponse(BaseModel):
    success: bool = True
    user: UserResponse
    is_new_user: bool = False


class TokenResponse(BaseModel):
    """Token pair returned to native clients"""
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    user: UserResponse


class RefreshResponse(BaseModel):
    success: bool = True
    expires_in: int
    user: UserResponse


class LogoutResponse(BaseModel):
    success: bool = True
    message: str = "Logged out successfully"
    refresh_token_revoked: bool = False


class SessionResponse(BaseModel):
    """One active session (refresh token) of the current user"""
    id: str
    device_name: str
    device_type: str
    created_at: datetime
    last_used_at: Optional[datetime] = None
    is_current: bool = False

    class Config:
        from_attributes = True


class SessionListResponse(BaseModel):
    sessions: List[SessionResponse]
    total: int
