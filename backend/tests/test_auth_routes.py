from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qsl, urlsplit

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.api.deps import get_apple_http_client, get_identity_verifier
from app.config import settings
from app.core.database import Base, get_db
from app.main import app
from app.services.rate_limiter import rate_limiter
from app.services.repositories import UserLockoutState
from app.services.sql_repositories import SqlAlchemyUserRepository

CHROME_WINDOWS = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 Chrome/120.0.0.0 Safari/537.36"
FIREFOX_WINDOWS = "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:121.0) Gecko/20100101 Firefox/121.0"

AUTH = "/api/v1/auth"


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def client(session_factory, apple_config, identity_verifier, http_client, monkeypatch):
    monkeypatch.setattr(settings, "APPLE_CLIENT_ID", apple_config.client_id)
    monkeypatch.setattr(settings, "APPLE_TEAM_ID", apple_config.team_id)
    monkeypatch.setattr(settings, "APPLE_KEY_ID", apple_config.key_id)
    monkeypatch.setattr(settings, "APPLE_PRIVATE_KEY", apple_config.private_key)
    monkeypatch.setattr(settings, "APPLE_REDIRECT_URI", apple_config.redirect_uri)

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_identity_verifier] = lambda: identity_verifier
    app.dependency_overrides[get_apple_http_client] = lambda: http_client
    rate_limiter.reset()

    # Secure cookies are only sent back over https.
    test_client = TestClient(app, base_url="https://testserver")
    test_client.headers["User-Agent"] = CHROME_WINDOWS
    yield test_client

    app.dependency_overrides.clear()
    rate_limiter.reset()


def _set_cookie_headers(response):
    return response.headers.get_list("set-cookie")


def _cleared(response, name):
    return any(h.startswith(f"{name}=") and "Max-Age=0" in h for h in _set_cookie_headers(response))


def _start(client, apple_stub):
    response = client.get(f"{AUTH}/apple")
    assert response.status_code == 200
    apple_stub.nonce = client.cookies.get("auth_nonce")
    return client.cookies.get("auth_state")


def _sign_in(client, apple_stub):
    state = _start(client, apple_stub)
    response = client.post(f"{AUTH}/apple/callback", data={"code": "c1", "state": state})
    assert response.status_code == 200, response.text
    return response


def test_start_sets_oauth_cookies_and_returns_url(client):
    response = client.get(f"{AUTH}/apple")

    assert response.status_code == 200
    params = dict(parse_qsl(urlsplit(response.json()["auth_url"]).query))
    assert params["state"] == client.cookies.get("auth_state")
    assert params["nonce"] == client.cookies.get("auth_nonce")
    assert client.cookies.get("auth_verifier")
    for header in _set_cookie_headers(response):
        assert "HttpOnly" in header
        assert "Max-Age=600" in header
        assert "SameSite=strict" in header
        assert "Secure" in header


def test_full_web_flow(client, apple_stub):
    response = _sign_in(client, apple_stub)

    body = response.json()
    assert body["success"] is True
    assert body["is_new_user"] is True
    assert body["user"]["role"] == "user"
    assert _cleared(response, "auth_state")
    assert client.cookies.get("auth_access_token")
    assert apple_stub.token_requests[0]["code"] == ["c1"]

    me = client.get(f"{AUTH}/me")
    assert me.status_code == 200
    assert me.json()["id"] == body["user"]["id"]

    sessions = client.get(f"{AUTH}/sessions").json()
    assert sessions["total"] == 1
    assert sessions["sessions"][0]["is_current"] is True
    assert sessions["sessions"][0]["device_name"] == "Chrome on Windows"

    old_refresh = client.cookies.get("auth_refresh_token")
    refreshed = client.post(f"{AUTH}/refresh")
    assert refreshed.status_code == 200
    assert client.cookies.get("auth_refresh_token") != old_refresh

    logout = client.post(f"{AUTH}/logout")
    assert logout.status_code == 200
    assert logout.json()["refresh_token_revoked"] is True
    assert _cleared(logout, "auth_refresh_token")


def test_me_accepts_bearer_token(client, apple_stub):
    access_token = _sign_in(client, apple_stub).cookies.get("auth_access_token")
    client.cookies.clear()

    response = client.get(f"{AUTH}/me", headers={"Authorization": f"Bearer {access_token}"})

    assert response.status_code == 200


def test_me_requires_authentication(client):
    response = client.get(f"{AUTH}/me")
    assert response.status_code == 401
    assert response.json()["success"] is False


def test_callback_rejects_state_mismatch(client, apple_stub):
    _start(client, apple_stub)

    response = client.post(f"{AUTH}/apple/callback", data={"code": "c1", "state": "0" * 32})

    assert response.status_code == 400
    assert response.json()["error"] == "Invalid state parameter"
    assert _cleared(response, "auth_verifier")
    assert apple_stub.token_requests == []


@pytest.mark.parametrize(
    "form",
    [
        {"code": "c1", "state": "NOT-HEX"},
        {"code": "bad code!", "state": "a" * 32},
        {"code": "x" * 2049, "state": "a" * 32},
        {"state": "a" * 32},
    ],
)
def test_callback_validates_form(client, form):
    response = client.post(f"{AUTH}/apple/callback", data=form)
    assert response.status_code == 422


def test_callback_hides_verification_details(client, apple_stub):
    state = _start(client, apple_stub)
    apple_stub.nonce = "replayed-nonce"

    response = client.post(f"{AUTH}/apple/callback", data={"code": "c1", "state": state})

    assert response.status_code == 401
    assert response.json()["error"] == "Authentication failed"
    assert response.json()["details"] == {}


def test_locked_account_gets_423_with_retry_after(client, apple_stub, session_factory):
    user_id = _sign_in(client, apple_stub).json()["user"]["id"]
    now = datetime.now(timezone.utc)
    db = session_factory()
    try:
        SqlAlchemyUserRepository(db).update_lockout_state(
            user_id,
            UserLockoutState(failed_login_attempts=5, locked_until=now + timedelta(minutes=15), last_failed_attempt_at=now),
        )
    finally:
        db.close()

    state = _start(client, apple_stub)
    response = client.post(f"{AUTH}/apple/callback", data={"code": "c1", "state": state})

    assert response.status_code == 423
    assert 0 < int(response.headers["Retry-After"]) <= 900
    assert response.json()["details"]["retry_after"] == int(response.headers["Retry-After"])


def test_refresh_without_cookie(client):
    response = client.post(f"{AUTH}/refresh")
    assert response.status_code == 401
    assert response.json()["error"] == "No refresh token provided"


def test_refresh_from_other_browser_invalidates_everything(client, apple_stub):
    _sign_in(client, apple_stub)

    response = client.post(f"{AUTH}/refresh", headers={"User-Agent": FIREFOX_WINDOWS})

    assert response.status_code == 401
    assert response.json()["error"] == "Session invalidated - please sign in again"
    assert _cleared(response, "auth_access_token")
    assert _cleared(response, "auth_refresh_token")


def test_native_sign_in_returns_tokens(client, make_id_token):
    response = client.post(f"{AUTH}/apple/native", json={"identity_token": make_id_token("native-user")})

    assert response.status_code == 200
    body = response.json()
    assert body["token_type"] == "bearer"
    assert body["expires_in"] == settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60
    assert body["refresh_token"] == client.cookies.get("auth_refresh_token")


def test_session_management_routes(client, apple_stub):
    _sign_in(client, apple_stub)

    assert client.delete(f"{AUTH}/sessions/not-a-session").status_code == 404

    session_id = client.get(f"{AUTH}/sessions").json()["sessions"][0]["id"]
    assert client.delete(f"{AUTH}/sessions/{session_id}").json() == {"success": True}
    assert client.get(f"{AUTH}/sessions").json()["total"] == 0

    response = client.post(f"{AUTH}/sessions/revoke-all")
    assert response.status_code == 200
    assert _cleared(response, "auth_access_token")


def test_rate_limit(client):
    for _ in range(settings.RATE_LIMIT_APPLE_PER_MINUTE):
        assert client.get(f"{AUTH}/apple").status_code == 200

    response = client.get(f"{AUTH}/apple")

    assert response.status_code == 429
    assert int(response.headers["Retry-After"]) >= 1
