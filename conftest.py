"""
Shared test fixtures.

This module provides reusable fixtures for:
- Generating RSA key pairs and JWKS documents for test ID-token signing
- Creating valid/expired/invalid test ID tokens
- A throwaway SQLite database per test (sync session for seeding/asserts,
  async session factory for the app under test)
- TestClient instances whose caller is chosen by the bearer token
- An in-memory stand-in for the Redis client
"""

import time
import uuid
from typing import Any, Dict, Optional

import pytest
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import NullPool

from common.constants import ALGORITHMS, API_AUDIENCE, ISSUER
from libs.db import get_db, utcnow
from models.registry import Base, EmergencyContact, User

# ============================================================================
# ID token fixtures
# ============================================================================


@pytest.fixture(scope="session")
def rsa_key_pair():
    """RSA key pair (PEM) for signing test ID tokens."""
    private_key = rsa.generate_private_key(
        public_exponent=65537,
        key_size=2048,
        backend=default_backend(),
    )
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return {
        "private_key": private_pem.decode("utf-8"),
        "public_key": public_pem.decode("utf-8"),
    }


@pytest.fixture(scope="session")
def test_kid():
    return "test-key-id-123"


@pytest.fixture(scope="session")
def mock_jwks(rsa_key_pair, test_kid):
    """JWKS document in the shape Google's securetoken endpoint serves."""
    from jose.backends import RSAKey

    jwk_dict = RSAKey(rsa_key_pair["public_key"], ALGORITHMS[0]).to_dict()
    jwk_dict["kid"] = test_kid
    jwk_dict["alg"] = "RS256"
    jwk_dict["use"] = "sig"
    return {"keys": [jwk_dict]}


def _sign(payload: Dict[str, Any], private_key: str, kid: Optional[str]) -> str:
    headers = {"kid": kid} if kid else None
    return jwt.encode(payload, private_key, algorithm=ALGORITHMS[0], headers=headers)


def _claims(user_id: str, *, aud=API_AUDIENCE, iss=ISSUER, offset: int = 0, **extra):
    now = int(time.time()) + offset
    return {
        "sub": user_id,
        "aud": aud,
        "iss": iss,
        "iat": now,
        "exp": now + 3600,
        **extra,
    }


@pytest.fixture
def create_valid_jwt(rsa_key_pair, test_kid):
    def _create_jwt(user_id: str = "test-user-123", **extra_claims) -> str:
        return _sign(_claims(user_id, **extra_claims), rsa_key_pair["private_key"], test_kid)

    return _create_jwt


@pytest.fixture
def create_expired_jwt(rsa_key_pair, test_kid):
    def _create_expired_jwt(user_id: str = "test-user-123") -> str:
        # Issued 2 hours ago, expired 1 hour ago
        return _sign(_claims(user_id, offset=-7200), rsa_key_pair["private_key"], test_kid)

    return _create_expired_jwt


@pytest.fixture
def create_invalid_signature_jwt(test_kid):
    def _create_invalid_jwt(user_id: str = "test-user-123") -> str:
        wrong_key = rsa.generate_private_key(
            public_exponent=65537,
            key_size=2048,
            backend=default_backend(),
        )
        wrong_pem = wrong_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        ).decode("utf-8")
        return _sign(_claims(user_id), wrong_pem, test_kid)

    return _create_invalid_jwt


@pytest.fixture
def create_invalid_audience_jwt(rsa_key_pair, test_kid):
    def _create_jwt(user_id: str = "test-user-123") -> str:
        return _sign(
            _claims(user_id, aud="some-other-project"),
            rsa_key_pair["private_key"],
            test_kid,
        )

    return _create_jwt


@pytest.fixture
def create_invalid_issuer_jwt(rsa_key_pair, test_kid):
    def _create_jwt(user_id: str = "test-user-123") -> str:
        return _sign(
            _claims(user_id, iss="https://securetoken.google.com/other"),
            rsa_key_pair["private_key"],
            test_kid,
        )

    return _create_jwt


@pytest.fixture
def create_jwt_without_kid(rsa_key_pair):
    def _create_jwt(user_id: str = "test-user-123") -> str:
        return _sign(_claims(user_id), rsa_key_pair["private_key"], None)

    return _create_jwt


@pytest.fixture
def mock_jwks_request(mocker, mock_jwks):
    """Patch requests.get in the verifier so no JWKS is fetched over the network."""
    mock_response = mocker.Mock()
    mock_response.json.return_value = mock_jwks
    mock_response.raise_for_status = mocker.Mock()
    return mocker.patch(
        "libs.auth.firebase_verify.requests.get", return_value=mock_response
    )


# ============================================================================
# Database fixtures
# ============================================================================


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "safecircle-test.db"


@pytest.fixture
def sync_engine(db_path):
    engine = create_engine(f"sqlite:///{db_path}")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(sync_engine):
    """Synchronous session for seeding rows and asserting on results."""
    with Session(sync_engine, expire_on_commit=False) as session:
        yield session


@pytest.fixture
def async_session_factory(db_path, sync_engine):
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}", poolclass=NullPool)
    return sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def override_get_db(async_session_factory):
    async def _get_db():
        async with async_session_factory() as session:
            yield session

    return _get_db


@pytest.fixture
def make_user(db_session):
    def _make_user(
        user_id: str,
        *,
        email: Optional[str] = None,
        username: Optional[str] = None,
        display_name: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> User:
        now = utcnow()
        user = User(
            user_id=user_id,
            email=email or f"{user_id}@example.com",
            username=username,
            display_name=display_name or user_id.title(),
            phone=phone,
            created_at=now,
            updated_at=now,
        )
        db_session.add(user)
        db_session.commit()
        return user

    return _make_user


@pytest.fixture
def make_contact(db_session):
    def _make_contact(
        owner_id: str,
        *,
        name: str = "Guardian",
        phone: str = "",
        relation: str = "Contact",
        linked_user_id: Optional[str] = None,
        is_primary: bool = False,
        added_by: str = "manual",
    ) -> EmergencyContact:
        now = utcnow()
        contact = EmergencyContact(
            contact_id=f"ctc_{uuid.uuid4().hex[:12]}",
            user_id=owner_id,
            name=name,
            phone=phone,
            relation=relation,
            linked_user_id=linked_user_id,
            is_primary=is_primary,
            added_by=added_by,
            created_at=now,
            updated_at=now,
        )
        db_session.add(contact)
        db_session.commit()
        return contact

    return _make_contact


# ============================================================================
# Client fixtures
# ============================================================================


@pytest.fixture
def as_user(override_get_db):
    """
    Factory returning a TestClient that calls `app` as the given user.

    The bearer token carries the user id, so clients for several users can
    talk to the same app in one test.
    """
    from fastapi.testclient import TestClient

    from libs.auth.firebase_verify import security, verify_token

    emails: Dict[str, str] = {}
    apps = []

    def fake_verify_token(credentials: HTTPAuthorizationCredentials = Depends(security)):
        user_id = credentials.credentials
        return {"sub": user_id, "email": emails.get(user_id, f"{user_id}@example.com")}

    def _client(app, user_id: str = "uid-alice", email: Optional[str] = None) -> TestClient:
        if email:
            emails[user_id] = email
        app.dependency_overrides[get_db] = override_get_db
        app.dependency_overrides[verify_token] = fake_verify_token
        apps.append(app)
        return TestClient(app, headers={"Authorization": f"Bearer {user_id}"})

    yield _client

    for app in apps:
        app.dependency_overrides.clear()


class MockRedis:
    """In-memory stand-in for libs.redis_client.RedisClient."""

    def __init__(self, connected: bool = True):
        self.store: Dict[str, Any] = {}
        self.ttls: Dict[str, Optional[int]] = {}
        self.connected = connected

    def is_connected(self) -> bool:
        return self.connected

    def get_json(self, key: str):
        if not self.connected:
            return None
        return self.store.get(key)

    def set_json(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        if not self.connected:
            return False
        self.store[key] = value
        self.ttls[key] = ttl
        return True

    def delete(self, key: str) -> bool:
        if not self.connected:
            return False
        return self.store.pop(key, None) is not None


@pytest.fixture
def fake_redis():
    return MockRedis()
