import json
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qs

import httpx
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from jose import jwk, jwt

from app.services.apple_auth import APPLE_ISSUER
from app.services.identity_token import APPLE_KEYS_URL, AppleKeySet, IdentityTokenVerifier
from app.services.repositories import (
    AppleConfig,
    AuditEntry,
    AuthUser,
    NewAuthUser,
    NewRefreshToken,
    RefreshTokenRecord,
    UserLockoutState,
)

CLIENT_ID = "com.example.web"
TEST_KID = "test-kid"


def _pem(private_key) -> str:
    return private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")


def _public_pem(private_key) -> str:
    return private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("ascii")


@pytest.fixture(scope="session")
def ec_key():
    return ec.generate_private_key(ec.SECP256R1())


@pytest.fixture(scope="session")
def ec_private_pem(ec_key) -> str:
    return _pem(ec_key)


@pytest.fixture(scope="session")
def ec_public_pem(ec_key) -> str:
    return _public_pem(ec_key)


@pytest.fixture(scope="session")
def rsa_private_pem() -> str:
    return _pem(rsa.generate_private_key(public_exponent=65537, key_size=2048))


@pytest.fixture(scope="session")
def other_rsa_private_pem() -> str:
    return _pem(rsa.generate_private_key(public_exponent=65537, key_size=2048))


@pytest.fixture(scope="session")
def apple_jwks(rsa_private_pem) -> Dict[str, list]:
    from cryptography.hazmat.primitives.serialization import load_pem_private_key

    private_key = load_pem_private_key(rsa_private_pem.encode("ascii"), password=None)
    key = jwk.construct(_public_pem(private_key), "RS256").to_dict()
    key.update({"kid": TEST_KID, "use": "sig", "alg": "RS256"})
    return {"keys": [key]}


@pytest.fixture
def apple_config(ec_private_pem) -> AppleConfig:
    return AppleConfig(
        client_id=CLIENT_ID,
        team_id="TEAM123456",
        key_id="KEY1234567",
        private_key=ec_private_pem,
        redirect_uri="https://example.com/api/v1/auth/apple/callback",
    )


@pytest.fixture
def make_id_token(rsa_private_pem):
    """Factory for Apple-style identity tokens signed with the test key."""

    def factory(
        sub: str = "u1",
        nonce: Optional[str] = None,
        *,
        aud: str = CLIENT_ID,
        iss: str = APPLE_ISSUER,
        iat: Optional[int] = None,
        exp: Optional[int] = None,
        email: str = "user@privaterelay.appleid.com",
        email_verified: Any = "true",
        is_private_email: Any = "true",
        kid: Optional[str] = TEST_KID,
        signing_key: Optional[str] = None,
        drop: tuple = (),
    ) -> str:
        now = int(time.time())
        claims = {
            "iss": iss,
            "aud": aud,
            "sub": sub,
            "iat": now if iat is None else iat,
            "exp": now + 600 if exp is None else exp,
            "email": email,
            "email_verified": email_verified,
            "is_private_email": is_private_email,
        }
        if nonce is not None:
            claims["nonce"] = nonce
        for name in drop:
            claims.pop(name, None)
        headers = {"kid": kid} if kid else None
        return jwt.encode(claims, signing_key or rsa_private_pem, algorithm="RS256", headers=headers)

    return factory


class AppleStub:
    """Scriptable stand-in for Apple's token and key endpoints."""

    def __init__(self, jwks: dict, make_id_token) -> None:
        self.jwks = jwks
        self.make_id_token = make_id_token
        self.sub = "u1"
        self.nonce: Optional[str] = None
        self.id_token: Optional[str] = None
        self.token_status = 200
        self.keys_status = 200
        self.token_requests: List[Dict[str, List[str]]] = []
        self.key_requests = 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url == httpx.URL(APPLE_KEYS_URL):
            self.key_requests += 1
            if self.keys_status != 200:
                return httpx.Response(self.keys_status, text="unavailable")
            return httpx.Response(200, json=self.jwks)

        self.token_requests.append(parse_qs(request.content.decode("ascii")))
        if self.token_status != 200:
            return httpx.Response(self.token_status, text=json.dumps({"error": "invalid_grant"}))
        id_token = self.id_token or self.make_id_token(self.sub, self.nonce)
        return httpx.Response(
            200,
            json={"access_token": "apple-at", "token_type": "Bearer", "expires_in": 3600, "id_token": id_token},
        )

    def client(self) -> httpx.Client:
        return httpx.Client(transport=httpx.MockTransport(self.handler))


@pytest.fixture
def apple_stub(apple_jwks, make_id_token) -> AppleStub:
    return AppleStub(apple_jwks, make_id_token)


@pytest.fixture
def http_client(apple_stub):
    client = apple_stub.client()
    yield client
    client.close()


@pytest.fixture
def identity_verifier(http_client) -> IdentityTokenVerifier:
    return IdentityTokenVerifier(AppleKeySet(http_client=http_client))


class BasicUserRepository:
    """In-memory user store without the optional lockout methods."""

    def __init__(self) -> None:
        self.users: Dict[str, AuthUser] = {}

    def find_by_apple_user_id(self, apple_user_id: str) -> Optional[AuthUser]:
        return next((u for u in self.users.values() if u.apple_user_id == apple_user_id), None)

    def find_by_email(self, email: str) -> Optional[AuthUser]:
        return next((u for u in self.users.values() if u.email == email), None)

    def find_by_id(self, user_id: str) -> Optional[AuthUser]:
        return self.users.get(user_id)

    def create(self, data: NewAuthUser) -> AuthUser:
        user = AuthUser(
            id=str(uuid.uuid4()),
            email=data.email,
            role=data.role,
            apple_user_id=data.apple_user_id,
            created_at=datetime.now(timezone.utc),
        )
        self.users[user.id] = user
        return user

    def update_last_login(self, user_id: str, timestamp: datetime) -> None:
        self.users[user_id].last_login_at = timestamp


class FakeUserRepository(BasicUserRepository):
    def __init__(self) -> None:
        super().__init__()
        self.lockout: Dict[str, UserLockoutState] = {}

    def get_lockout_state(self, user_id: str) -> Optional[UserLockoutState]:
        if user_id not in self.users:
            return None
        return self.lockout.get(user_id, UserLockoutState())

    def update_lockout_state(self, user_id: str, state: UserLockoutState) -> None:
        self.lockout[user_id] = state


class FakeRefreshTokenRepository:
    def __init__(self) -> None:
        self.records: List[RefreshTokenRecord] = []
        self._base = datetime.now(timezone.utc) - timedelta(hours=1)

    def find_by_hash(self, token_hash: str) -> Optional[RefreshTokenRecord]:
        return next((r for r in self.records if r.token_hash == token_hash and not r.revoked), None)

    def create(self, data: NewRefreshToken) -> RefreshTokenRecord:
        record = RefreshTokenRecord(
            id=str(uuid.uuid4()),
            user_id=data.user_id,
            token_hash=data.token_hash,
            user_agent=data.user_agent,
            expires_at=data.expires_at,
            # Strictly increasing so "oldest" is unambiguous.
            created_at=self._base + timedelta(seconds=len(self.records)),
        )
        self.records.append(record)
        return record

    def revoke_by_hash(self, token_hash: str) -> None:
        for record in self.records:
            if record.token_hash == token_hash:
                record.revoked = True

    def revoke_all_for_user(self, user_id: str) -> None:
        for record in self.records:
            if record.user_id == user_id:
                record.revoked = True

    def find_active_by_user(self, user_id: str) -> List[RefreshTokenRecord]:
        now = datetime.now(timezone.utc)
        return [r for r in self.records if r.user_id == user_id and not r.revoked and r.expires_at > now]

    def count_active_for_user(self, user_id: str) -> int:
        return len(self.find_active_by_user(user_id))


class RecordingAuditSink:
    def __init__(self) -> None:
        self.entries: List[AuditEntry] = []

    def log_auth_event(self, entry: AuditEntry) -> None:
        self.entries.append(entry)

    @property
    def reasons(self) -> List[Optional[str]]:
        return [e.reason for e in self.entries if not e.success]


@pytest.fixture
def users() -> FakeUserRepository:
    return FakeUserRepository()


@pytest.fixture
def refresh_tokens() -> FakeRefreshTokenRepository:
    return FakeRefreshTokenRepository()


@pytest.fixture
def audit() -> RecordingAuditSink:
    return RecordingAuditSink()


@pytest.fixture
def basic_users() -> BasicUserRepository:
    return BasicUserRepository()
