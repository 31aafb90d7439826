import time

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient
from jose import jwk, jwt

from dragonchat import auth as auth_module
from dragonchat.auth import AuthenticatedUser, JWKSCache, require_user
from dragonchat.errors import register_exception_handlers
from dragonchat.settings import settings
from tests.utils import make_token


@pytest.fixture()
def client():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/whoami")
    async def whoami(user: AuthenticatedUser = Depends(require_user)):
        return {"id": user.id, "username": user.username}

    return TestClient(app)


def test_bearer_token_yields_subject(client):
    resp = client.get("/whoami", headers={"Authorization": f"Bearer {make_token('user-42')}"})

    assert resp.status_code == 200
    assert resp.json()["id"] == "user-42"


def test_cookie_token_is_accepted(client):
    resp = client.get("/whoami", headers={"Cookie": f"access_token={make_token('user-7')}"})

    assert resp.status_code == 200
    assert resp.json()["id"] == "user-7"


def test_missing_token_is_rejected(client):
    resp = client.get("/whoami")

    assert resp.status_code == 401
    assert resp.json() == {"error": "No token provided"}
    assert resp.headers["www-authenticate"] == "Bearer"


@pytest.mark.parametrize(
    "token",
    [
        make_token("user-1", expires_in=-60),
        make_token("user-1", secret="someone-elses-secret"),
        jwt.encode({"exp": int(time.time()) + 60}, settings.jwt_secret_key, algorithm="HS256"),
        "garbage",
    ],
    ids=["expired", "wrong-secret", "no-subject", "malformed"],
)
def test_invalid_tokens_are_rejected(client, token):
    resp = client.get("/whoami", headers={"Authorization": f"Bearer {token}"})

    assert resp.status_code == 401
    assert resp.json() == {"error": "Invalid or expired token"}


def _rsa_keypair(kid: str):
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = private_key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()
    public_pem = private_key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()
    public_jwk = jwk.construct(public_pem, algorithm="RS256").to_dict()
    public_jwk["kid"] = kid
    return private_pem, public_jwk


def test_keycloak_tokens_are_verified_against_jwks(client, monkeypatch):
    monkeypatch.setattr(settings, "keycloak_url", "https://sso.example.com")
    monkeypatch.setattr(settings, "keycloak_realm", "dragon")
    issuer = "https://sso.example.com/realms/dragon"
    private_pem, public_jwk = _rsa_keypair("kid-1")

    fetched = []

    async def fake_refresh(self, jwks_url):
        fetched.append(jwks_url)
        self._keys = [public_jwk]
        self._fetched_at = time.monotonic()

    monkeypatch.setattr(JWKSCache, "_refresh", fake_refresh)
    monkeypatch.setattr(auth_module, "_jwks_cache", JWKSCache(600))

    token = jwt.encode(
        {"sub": "kc-user", "iss": issuer, "exp": int(time.time()) + 60, "preferred_username": "kc"},
        private_pem,
        algorithm="RS256",
        headers={"kid": "kid-1"},
    )
    resp = client.get("/whoami", headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 200
    assert resp.json() == {"id": "kc-user", "username": "kc"}

    # Keys are cached between requests.
    client.get("/whoami", headers={"Authorization": f"Bearer {token}"})
    assert fetched == [f"{issuer}/protocol/openid-connect/certs"]

    wrong_issuer = jwt.encode(
        {"sub": "kc-user", "iss": "https://elsewhere", "exp": int(time.time()) + 60},
        private_pem,
        algorithm="RS256",
        headers={"kid": "kid-1"},
    )
    resp = client.get("/whoami", headers={"Authorization": f"Bearer {wrong_issuer}"})
    assert resp.status_code == 401

    # Shared-secret tokens are not accepted once Keycloak is configured.
    resp = client.get("/whoami", headers={"Authorization": f"Bearer {make_token('user-1')}"})
    assert resp.status_code == 401
