"""Shared fakes and token/certificate factories for the test suite."""
from __future__ import annotations

import base64
import json
import time
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional

import requests
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID
from jose import jwt

DAY = 24 * 3600


def make_token(expires_in: Optional[int] = 30 * DAY, key: str = "test-secret", algorithm: str = "HS256", **claims) -> str:
    now = int(time.time())
    payload = {"sub": "user-1", "iat": now}
    if expires_in is not None:
        payload["exp"] = now + expires_in
    payload.update(claims)
    return jwt.encode(payload, key, algorithm=algorithm)


def credential_json(access_token: Optional[str], refresh_token: Optional[str] = "refresh-1", expires_in: Optional[int] = 3600) -> str:
    data = {"AccessToken": access_token, "RefreshToken": refresh_token, "ExpiresIn": expires_in}
    return json.dumps({k: v for k, v in data.items() if v is not None})


def generate_rsa_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def private_pem(key: rsa.RSAPrivateKey) -> str:
    return key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()


def public_key_b64(key: rsa.RSAPrivateKey) -> str:
    der = key.public_key().public_bytes(
        serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return base64.b64encode(der).decode()


def self_signed_cert_pem(key: rsa.RSAPrivateKey, valid_days: int) -> str:
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "device.local")])
    now = datetime.now(timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=valid_days))
        .sign(key, hashes.SHA256())
    )
    return cert.public_bytes(serialization.Encoding.PEM).decode()


def json_response(status_code: int, payload: Any) -> requests.Response:
    r = requests.Response()
    r.status_code = status_code
    r._content = json.dumps(payload).encode()
    r.headers["Content-Type"] = "application/json"
    r.encoding = "utf-8"
    return r


class FakeSession(requests.Session):
    """requests.Session that answers from a queue and records every request."""

    def __init__(self, responses: Optional[List[Any]] = None):
        super().__init__()
        self.responses: List[Any] = list(responses or [])
        self.requests: List[dict] = []

    def queue(self, *responses: Any) -> None:
        self.responses.extend(responses)

    def request(self, method, url, **kwargs):
        self.requests.append({"method": method, "url": url, **kwargs})
        if not self.responses:
            raise AssertionError(f"Unexpected request: {method} {url}")
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now
        self.slept: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.slept.append(seconds)
        self.now += seconds

    def sleep_sync(self, seconds: float) -> None:
        self.slept.append(seconds)
        self.now += seconds
