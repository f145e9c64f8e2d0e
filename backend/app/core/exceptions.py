"""Custom exception classes for the application"""

from datetime import datetime
from typing import Optional, Dict, Any


class BaseAPIException(Exception):
    """Base exception for all API errors"""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


# Configuration Errors
class ConfigurationError(BaseAPIException):
    """Apple credentials are missing or unusable"""
    def __init__(self, message: str = "Apple Sign-In configuration error"):
        super().__init__(message, status_code=500)


class ConfigIncompleteError(ConfigurationError):
    """One of clientId/teamId/keyId/privateKey is empty"""
    def __init__(self, message: str = "Apple Sign-In configuration is incomplete"):
        super().__init__(message)


class NotConfiguredError(ConfigurationError):
    """Apple client ID is not set"""
    def __init__(self):
        super().__init__("Apple Sign-In is not configured")


# Authentication Errors
class AuthenticationError(BaseAPIException):
    """Base authentication error"""
    def __init__(
        self,
        message: str = "Authentication failed",
        status_code: int = 401,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, status_code=status_code, details=details)


class CsrfStateMismatchError(AuthenticationError):
    """State parameter does not match the one issued with the authorization request"""
    def __init__(self):
        super().__init__("Invalid state parameter", status_code=400)


class MissingPkceVerifierError(AuthenticationError):
    """PKCE verifier cookie is absent"""
    def __init__(self):
        super().__init__("Missing PKCE verifier - please restart sign-in", status_code=400)


class MissingNonceError(AuthenticationError):
    """Nonce cookie is absent"""
    def __init__(self):
        super().__init__("Missing nonce - please restart sign-in", status_code=400)


class TokenExchangeFailedError(AuthenticationError):
    """Apple's token endpoint rejected the code or could not be reached"""
    def __init__(self, status: Optional[int] = None, body: Optional[str] = None):
        self.status = status
        self.body = body
        if status is None:
            message = "Apple token exchange failed"
        else:
            message = f"Apple token exchange failed: {status} - {body}"
        super().__init__(message, details={"status": status})


class TokenVerificationError(AuthenticationError):
    """Apple identity token was rejected

    ``reason`` is a stable code for audit logs. ``subject`` is only set when
    the signature had already been verified, so it identifies a real account.
    """

    reason = "invalid_token"

    def __init__(self, message: str = "Invalid identity token", subject: Optional[str] = None):
        self.subject = subject
        super().__init__(message, details={"reason": self.reason})


class MalformedIdentityTokenError(TokenVerificationError):
    reason = "malformed"


class InvalidSignatureError(TokenVerificationError):
    reason = "bad_signature"


class InvalidIssuerError(TokenVerificationError):
    reason = "bad_issuer"


class InvalidAudienceError(TokenVerificationError):
    reason = "bad_audience"


class IdentityTokenExpiredError(TokenVerificationError):
    reason = "expired"


class MissingSubjectClaimError(TokenVerificationError):
    reason = "missing_sub"


class NonceMismatchError(TokenVerificationError):
    reason = "nonce_mismatch"


class MissingIatClaimError(TokenVerificationError):
    reason = "missing_iat"


class TokenTooOldError(TokenVerificationError):
    reason = "too_old"


class InvalidRefreshTokenError(AuthenticationError):
    """Presented refresh token is unknown or already rotated"""
    def __init__(self):
        super().__init__("Invalid refresh token")


class RefreshTokenExpiredError(AuthenticationError):
    """Presented refresh token is past its expiry"""
    def __init__(self):
        super().__init__("Refresh token expired")


class SessionInvalidatedError(AuthenticationError):
    """Refresh token was presented from a different device; all sessions revoked"""
    def __init__(self):
        super().__init__("Session invalidated - please sign in again")


class UserNotFoundError(AuthenticationError):
    """Token owner no longer exists"""
    def __init__(self):
        super().__init__("User not found")


class AccountLockedError(BaseAPIException):
    """Account is locked due to failed login attempts"""
    def __init__(self, retry_after_seconds: int, locked_until: datetime, message: Optional[str] = None):
        self.retry_after_seconds = retry_after_seconds
        self.locked_until = locked_until
        super().__init__(
            message or "Your account is temporarily locked",
            status_code=423,
            details={
                "retry_after": retry_after_seconds,
                "locked_until": locked_until.isoformat(),
            },
        )


# Resource Errors
class ResourceNotFoundError(BaseAPIException):
    """Resource not found"""
    def __init__(self, resource: str):
        super().__init__(f"{resource} not found", status_code=404)


# System Errors
class KeySetUnavailableError(BaseAPIException):
    """Apple's public key set could not be fetched"""
    def __init__(self, message: str = "Apple public keys are unavailable"):
        super().__init__(message, status_code=503)


class RateLimitExceededError(BaseAPIException):
    """Rate limit exceeded"""
    def __init__(self, message: str = "Rate limit exceeded. Please try again later.", retry_after_seconds: int = 60):
        self.retry_after_seconds = retry_after_seconds
        super().__init__(message, status_code=429, details={"retry_after": retry_after_seconds})
