"""Sign in with Apple routes"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Form, Request, Response, status
from fastapi.responses import JSONResponse

from app.api.deps import get_auth_service, get_client_ip, get_current_user, rate_limit
from app.api.errors import api_error_response
from app.config import settings
from app.core.exceptions import (
    AuthenticationError,
    BaseAPIException,
    ResourceNotFoundError,
    TokenExchangeFailedError,
    TokenVerificationError,
)
from app.core.security import hash_token
from app.schemas.auth import (
    APPLE_CODE_PATTERN,
    STATE_PATTERN,
    AuthUrlResponse,
    LogoutResponse,
    NativeSignInRequest,
    RefreshResponse,
    SessionListResponse,
    SessionResponse,
    SignInResponse,
    TokenResponse,
    UserResponse,
)
from app.services.auth_service import AuthService, SignInResult
from app.services.repositories import AuthUser
from app.services.token_service import SessionTokens

logger = logging.getLogger(__name__)

router = APIRouter()

STATE_COOKIE = settings.cookie_name("state")
VERIFIER_COOKIE = settings.cookie_name("verifier")
NONCE_COOKIE = settings.cookie_name("nonce")
ACCESS_COOKIE = settings.cookie_name("access_token")
REFRESH_COOKIE = settings.cookie_name("refresh_token")


def _set_cookie(response: Response, name: str, value: str, max_age: int) -> None:
    response.set_cookie(
        name,
        value,
        max_age=max_age,
        httponly=True,
        secure=settings.COOKIE_SECURE,
        samesite=settings.COOKIE_SAMESITE,
        path=settings.COOKIE_PATH,
        domain=settings.COOKIE_DOMAIN,
    )


def _clear_cookies(response: Response, *names: str) -> None:
    for name in names:
        response.delete_cookie(name, path=settings.COOKIE_PATH, domain=settings.COOKIE_DOMAIN)


def _set_session_cookies(response: Response, tokens: SessionTokens) -> None:
    _set_cookie(response, ACCESS_COOKIE, tokens.access_token, tokens.expires_in)
    _set_cookie(response, REFRESH_COOKIE, tokens.refresh_token, settings.REFRESH_TOKEN_EXPIRE_DAYS * 24 * 60 * 60)


def _user_response(user: AuthUser) -> UserResponse:
    return UserResponse.model_validate(user)


def _sign_in_error(request: Request, exc: BaseAPIException, *cookies: str) -> JSONResponse:
    # Apple-side failures are audited with their specific reason; clients only see a generic message.
    if isinstance(exc, (TokenExchangeFailedError, TokenVerificationError)):
        logger.info("Apple sign-in rejected: %s", type(exc).__name__)
        exc = AuthenticationError("Authentication failed")
    response = api_error_response(request, exc)
    _clear_cookies(response, *cookies)
    return response


@router.get("/apple", response_model=AuthUrlResponse, dependencies=[Depends(rate_limit("apple", settings.RATE_LIMIT_APPLE_PER_MINUTE))])
def start_apple_sign_in(
    response: Response,
    auth: AuthService = Depends(get_auth_service),
):
    """
    Begin Sign in with Apple

    Sets short-lived state, PKCE verifier and nonce cookies and returns
    the Apple authorization URL the client should navigate to.
    """
    auth_request = auth.start_sign_in()
    max_age = settings.OAUTH_COOKIE_MAX_AGE_SECONDS
    _set_cookie(response, STATE_COOKIE, auth_request.state, max_age)
    _set_cookie(response, VERIFIER_COOKIE, auth_request.code_verifier, max_age)
    _set_cookie(response, NONCE_COOKIE, auth_request.nonce, max_age)
    return AuthUrlResponse(auth_url=auth_request.url)


@router.post("/apple/callback", response_model=SignInResponse, dependencies=[Depends(rate_limit("callback", settings.RATE_LIMIT_CALLBACK_PER_MINUTE))])
def apple_callback(
    request: Request,
    code: str = Form(..., min_length=1, max_length=2048, pattern=APPLE_CODE_PATTERN),
    state: str = Form(..., pattern=STATE_PATTERN),
    auth: AuthService = Depends(get_auth_service),
):
    """
    Handle Apple's form_post callback

    The state/verifier/nonce cookies are single use and cleared on every outcome.
    """
    oauth_cookies = (STATE_COOKIE, VERIFIER_COOKIE, NONCE_COOKIE)
    try:
        result: SignInResult = auth.complete_web_sign_in(
            code=code,
            state=state,
            saved_state=request.cookies.get(STATE_COOKIE),
            code_verifier=request.cookies.get(VERIFIER_COOKIE),
            expected_nonce=request.cookies.get(NONCE_COOKIE),
            user_agent=request.headers.get("user-agent"),
            ip_address=get_client_ip(request),
        )
    except BaseAPIException as exc:
        return _sign_in_error(request, exc, *oauth_cookies)

    body = SignInResponse(user=_user_response(result.user), is_new_user=result.is_new_user)
    response = JSONResponse(content=body.model_dump(mode="json"))
    _clear_cookies(response, *oauth_cookies)
    _set_session_cookies(response, result.tokens)
    return response


@router.post("/apple/native", response_model=TokenResponse, dependencies=[Depends(rate_limit("native", settings.RATE_LIMIT_CALLBACK_PER_MINUTE))])
def apple_native_sign_in(
    payload: NativeSignInRequest,
    request: Request,
    auth: AuthService = Depends(get_auth_service),
):
    """Sign in with an identity token obtained by a native Apple client."""
    try:
        result = auth.sign_in_native(
            payload.identity_token,
            user_agent=request.headers.get("user-agent"),
            ip_address=get_client_ip(request),
        )
    except BaseAPIException as exc:
        return _sign_in_error(request, exc)

    body = TokenResponse(
        access_token=result.tokens.access_token,
        refresh_token=result.tokens.refresh_token,
        expires_in=result.tokens.expires_in,
        user=_user_response(result.user),
    )
    response = JSONResponse(content=body.model_dump(mode="json"))
    _set_session_cookies(response, result.tokens)
    return response


@router.post("/refresh", response_model=RefreshResponse, dependencies=[Depends(rate_limit("refresh", settings.RATE_LIMIT_REFRESH_PER_MINUTE))])
def refresh_session(
    request: Request,
    auth: AuthService = Depends(get_auth_service),
):
    """
    Rotate the refresh cookie

    Any failure clears both session cookies so the client signs in again.
    """
    presented = request.cookies.get(REFRESH_COOKIE)
    if not presented:
        return api_error_response(request, AuthenticationError("No refresh token provided"))

    try:
        result = auth.refresh(
            presented,
            request.headers.get("user-agent"),
            ip_address=get_client_ip(request),
        )
    except AuthenticationError as exc:
        response = api_error_response(request, exc)
        _clear_cookies(response, ACCESS_COOKIE, REFRESH_COOKIE)
        return response

    body = RefreshResponse(expires_in=result.tokens.expires_in, user=_user_response(result.user))
    response = JSONResponse(content=body.model_dump(mode="json"))
    _set_session_cookies(response, result.tokens)
    return response


@router.post("/logout", response_model=LogoutResponse, dependencies=[Depends(rate_limit("logout", settings.RATE_LIMIT_LOGOUT_PER_MINUTE))])
def logout(
    request: Request,
    response: Response,
    auth: AuthService = Depends(get_auth_service),
):
    """Revoke the current refresh token (if any) and clear session cookies."""
    revoked = auth.logout(request.cookies.get(REFRESH_COOKIE))
    _clear_cookies(response, ACCESS_COOKIE, REFRESH_COOKIE)
    return LogoutResponse(refresh_token_revoked=revoked)


@router.get("/me", response_model=UserResponse, dependencies=[Depends(rate_limit("me", settings.RATE_LIMIT_ME_PER_MINUTE))])
def get_current_user_info(current_user: AuthUser = Depends(get_current_user)):
    return _user_response(current_user)


@router.get("/sessions", response_model=SessionListResponse, dependencies=[Depends(rate_limit("sessions", settings.RATE_LIMIT_SESSIONS_PER_MINUTE))])
def list_sessions(
    request: Request,
    current_user: AuthUser = Depends(get_current_user),
    auth: AuthService = Depends(get_auth_service),
):
    """List the caller's active sessions, newest first, marking the current one."""
    presented: Optional[str] = request.cookies.get(REFRESH_COOKIE)
    current_hash = hash_token(presented) if presented else None
    sessions = [
        SessionResponse.model_validate(session)
        for session in auth.list_sessions(current_user.id, current_hash)
    ]
    return SessionListResponse(sessions=sessions, total=len(sessions))


@router.delete("/sessions/{session_id}", status_code=status.HTTP_200_OK, dependencies=[Depends(rate_limit("sessions", settings.RATE_LIMIT_SESSIONS_PER_MINUTE))])
def revoke_session(
    session_id: str,
    current_user: AuthUser = Depends(get_current_user),
    auth: AuthService = Depends(get_auth_service),
):
    if not auth.revoke_session(current_user.id, session_id):
        raise ResourceNotFoundError("Session")
    return {"success": True}


@router.post("/sessions/revoke-all", status_code=status.HTTP_200_OK, dependencies=[Depends(rate_limit("sessions", settings.RATE_LIMIT_SESSIONS_PER_MINUTE))])
def revoke_all_sessions(
    response: Response,
    current_user: AuthUser = Depends(get_current_user),
    auth: AuthService = Depends(get_auth_service),
):
    """Sign out everywhere, including this device."""
    auth.revoke_all(current_user.id)
    _clear_cookies(response, ACCESS_COOKIE, REFRESH_COOKIE)
    return {"success": True}
