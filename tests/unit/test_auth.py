import uuid
from unittest.mock import patch

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from httpx import ASGITransport, AsyncClient
from jose import JWTError, jwt

from allocator.main import app
from allocator.services import auth_service


@pytest.fixture(scope="module")
def key_pair():
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()
    public_pem = key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()
    return private_pem, public_pem


@pytest.fixture
def public_key(key_pair):
    with patch.object(auth_service, "_public_key", key_pair[1]):
        yield key_pair[1]


def test_access_token_round_trip(key_pair, public_key):
    tenant_id, user_id = str(uuid.uuid4()), str(uuid.uuid4())
    token = auth_service.create_access_token(
        user_id, tenant_id, "manager", "ops@harbour.test", private_key=key_pair[0]
    )

    payload = auth_service.verify_access_token(token)

    assert payload["sub"] == user_id
    assert payload["tenant_id"] == tenant_id
    assert payload["role"] == "manager"


def test_refresh_token_is_rejected(key_pair, public_key):
    token = jwt.encode(
        {"sub": "u", "tenant_id": "t", "role": "manager", "type": "refresh"},
        key_pair[0],
        algorithm="RS256",
    )
    with pytest.raises(JWTError):
        auth_service.verify_access_token(token)


def test_token_without_tenant_is_rejected(key_pair, public_key):
    token = jwt.encode(
        {"sub": "u", "role": "manager", "type": "access"}, key_pair[0], algorithm="RS256"
    )
    with pytest.raises(JWTError, match="tenant_id"):
        auth_service.verify_access_token(token)


@pytest.mark.asyncio
async def test_missing_bearer_is_401():
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        resp = await c.get("/api/v1/allocations")

    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "AUTH_REQUIRED"


@pytest.mark.asyncio
async def test_garbage_bearer_is_401(public_key):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        resp = await c.get(
            "/api/v1/allocations", headers={"Authorization": "Bearer not-a-token"}
        )

    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "AUTH_TOKEN_INVALID"
