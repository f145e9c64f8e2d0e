"""Concurrent session limits and device metadata for refresh-token sessions."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import List, Optional, Sequence

from app.services.repositories import RefreshTokenRecord, RefreshTokenRepository, SessionInfo

logger = logging.getLogger(__name__)

DEVICE_MOBILE = "mobile"
DEVICE_TABLET = "tablet"
DEVICE_DESKTOP = "desktop"
DEVICE_UNKNOWN = "unknown"

_ANDROID_MODEL = re.compile(r"Android[^;]*;\s*([^)]+)\)")


@dataclass(frozen=True)
class SessionConfig:
    max_concurrent_sessions: int = 5
    revoke_on_user_agent_change: bool = True


DEFAULT_SESSION_CONFIG = SessionConfig()


def detect_device_type(user_agent: Optional[str]) -> str:
    """
    Classify a User-Agent as mobile, tablet, desktop or unknown

    Mobile keywords are checked before tablet, tablet before desktop.
    """
    if not user_agent:
        return DEVICE_UNKNOWN

    ua = user_agent.lower()

    if (
        "iphone" in ua
        or ("android" in ua and "mobile" in ua)
        or "windows phone" in ua
        or "blackberry" in ua
    ):
        return DEVICE_MOBILE

    if "ipad" in ua or ("android" in ua and "mobile" not in ua) or "tablet" in ua:
        return DEVICE_TABLET

    if "windows" in ua or "macintosh" in ua or ("linux" in ua and "android" not in ua):
        return DEVICE_DESKTOP

    return DEVICE_UNKNOWN


def _browser_on_os(browser: str, ua: str) -> Optional[str]:
    if "Mac OS" in ua:
        return f"{browser} on macOS"
    if "Windows" in ua:
        return f"{browser} on Windows"
    if "Linux" in ua:
        return f"{browser} on Linux"
    return None


def extract_device_name(user_agent: Optional[str]) -> str:
    """Best-effort label such as "Chrome on macOS" or "iPhone"."""
    if not user_agent:
        return "Unknown Device"

    ua = user_agent

    if "iPhone" in ua:
        return "iPhone"
    if "iPad" in ua:
        return "iPad"

    android = _ANDROID_MODEL.search(ua)
    if android:
        model = android.group(1).split(" Build")[0].strip()
        return model or "Android Device"

    if "Chrome" in ua and "Edg" not in ua:
        return _browser_on_os("Chrome", ua) or "Chrome"

    if "Firefox" in ua:
        return _browser_on_os("Firefox", ua) or "Firefox"

    if "Safari" in ua and "Chrome" not in ua:
        return "Safari on macOS"

    if "Edg" in ua:
        if "Mac OS" in ua:
            return "Edge on macOS"
        if "Windows" in ua:
            return "Edge on Windows"
        return "Microsoft Edge"

    return "Unknown Device"


def _fingerprint(user_agent: str) -> str:
    ua = user_agent.lower()
    parts = []

    # Mobile first: iOS UAs say "like Mac OS X" and Android UAs say "Linux; Android".
    if "iphone" in ua or "ipad" in ua:
        parts.append("ios")
    elif "android" in ua:
        parts.append("android")
    elif "windows" in ua:
        parts.append("windows")
    elif "mac os" in ua:
        parts.append("macos")
    elif "linux" in ua:
        parts.append("linux")

    # Browser family only; versions change on every update.
    if "firefox" in ua:
        parts.append("firefox")
    elif "edg" in ua:
        parts.append("edge")
    elif "chrome" in ua:
        parts.append("chrome")
    elif "safari" in ua:
        parts.append("safari")

    return "-".join(parts)


def has_user_agent_changed(stored_user_agent: Optional[str], current_user_agent: Optional[str]) -> bool:
    """
    Detect a session presented from a different OS or browser family

    Unparseable or missing User-Agents never count as a change.
    """
    if not stored_user_agent or not current_user_agent:
        return False

    stored_key = _fingerprint(stored_user_agent)
    current_key = _fingerprint(current_user_agent)
    if not stored_key or not current_key:
        return False
    return stored_key != current_key


def select_sessions_to_evict(
    active_sessions: Sequence[RefreshTokenRecord],
    max_concurrent: int,
) -> List[RefreshTokenRecord]:
    """Oldest sessions to revoke so one new session fits under the cap."""
    if len(active_sessions) < max_concurrent:
        return []
    ordered = sorted(active_sessions, key=lambda s: s.created_at)
    return ordered[: len(active_sessions) - max_concurrent + 1]


def enforce_session_limits(
    repo: RefreshTokenRepository,
    user_id: str,
    config: SessionConfig = DEFAULT_SESSION_CONFIG,
) -> int:
    """
    Revoke the oldest sessions when the user is at the session cap

    Args:
        repo: Refresh token repository
        user_id: Owner of the sessions
        config: Session configuration

    Returns:
        int: Number of sessions revoked
    """
    active = repo.find_active_by_user(user_id)
    to_revoke = select_sessions_to_evict(active, config.max_concurrent_sessions)
    for session in to_revoke:
        repo.revoke_by_hash(session.token_hash)

    if to_revoke:
        logger.info("Revoked %d old session(s) for user %s due to session limit", len(to_revoke), user_id)
    return len(to_revoke)


def get_user_sessions(
    repo: RefreshTokenRepository,
    user_id: str,
    current_token_hash: Optional[str] = None,
) -> List[SessionInfo]:
    """Active sessions for a user, newest first."""
    tokens = sorted(repo.find_active_by_user(user_id), key=lambda t: t.created_at, reverse=True)
    return [
        SessionInfo(
            id=token.id,
            device_name=extract_device_name(token.user_agent),
            device_type=detect_device_type(token.user_agent),
            created_at=token.created_at,
            last_used_at=token.last_used_at,
            is_current=bool(current_token_hash) and token.token_hash == current_token_hash,
        )
        for token in tokens
    ]


def revoke_session(repo: RefreshTokenRepository, session_id: str, user_id: str) -> bool:
    """Revoke one of the user's sessions by id; False if it is not theirs or not active."""
    for session in repo.find_active_by_user(user_id):
        if session.id == session_id:
            repo.revoke_by_hash(session.token_hash)
            return True
    return False


def revoke_all_sessions(repo: RefreshTokenRepository, user_id: str) -> None:
    repo.revoke_all_for_user(user_id)
