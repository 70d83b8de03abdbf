# mediaboot/identity.py
from __future__ import annotations

import base64
import hashlib
import secrets
from dataclasses import dataclass
from typing import List, Optional, Tuple
from urllib.parse import urlencode

from pydantic import BaseModel, ValidationError

from .errors import RemoteServiceError
from .http_client import ServiceClient
from .tokens import CredentialRecord, is_well_formed_jwt

SCOPE = "openid offline_access email profile"
DEVICE_CODE_GRANT = "urn:ietf:params:oauth:grant-type:device_code"

FormBody = List[Tuple[str, str]]


# -------- PKCE (RFC 7636) --------

def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")

def generate_code_verifier() -> str:
    # 32 random bytes -> 43 url-safe characters, the RFC minimum
    return _b64url(secrets.token_bytes(32))

def generate_code_challenge(verifier: str) -> str:
    return _b64url(hashlib.sha256(verifier.encode("ascii")).digest())


# -------- request bodies (public client: never a client_secret) --------

def build_authorization_code_body(client_id: str, code: str, code_verifier: str, redirect_uri: str) -> FormBody:
    return [
        ("grant_type", "authorization_code"),
        ("client_id", client_id),
        ("scope", SCOPE),
        ("redirect_uri", redirect_uri),
        ("code", code),
        ("code_verifier", code_verifier),
    ]

def build_password_body(client_id: str, username: str, password: str, otp: Optional[str] = None) -> FormBody:
    body = [
        ("grant_type", "password"),
        ("client_id", client_id),
        ("scope", SCOPE),
        ("username", username),
        ("password", password),
    ]
    if otp:
        body.append(("totp", otp))
    return body

def build_refresh_body(client_id: str, refresh_token: str) -> FormBody:
    return [
        ("grant_type", "refresh_token"),
        ("client_id", client_id),
        ("refresh_token", refresh_token),
        ("scope", SCOPE),
    ]

def build_device_code_body(client_id: str) -> FormBody:
    return [("client_id", client_id), ("scope", SCOPE)]

def build_device_token_body(client_id: str, device_code: str) -> FormBody:
    return [
        ("grant_type", DEVICE_CODE_GRANT),
        ("client_id", client_id),
        ("device_code", device_code),
    ]


# -------- response shapes --------

class DeviceAuthorization(BaseModel):
    device_code: str
    user_code: str
    verification_uri: str
    verification_uri_complete: Optional[str] = None
    expires_in: int = 600
    interval: int = 5


class TokenErrorResponse(BaseModel):
    error: str = "unknown_error"
    error_description: Optional[str] = None

    @property
    def is_pending(self) -> bool:
        return self.error == "authorization_pending"

    def describe(self) -> str:
        return self.error_description or self.error


@dataclass
class TokenResult:
    credential: Optional[CredentialRecord] = None
    error: Optional[TokenErrorResponse] = None

    @property
    def ok(self) -> bool:
        return self.credential is not None


class IdentityProviderClient(ServiceClient):
    """OAuth2/OpenID Connect endpoints of the identity provider realm."""

    service_name = "identity provider"

    def __init__(self, base_url: str, client_id: str, **kwargs):
        super().__init__(base_url, **kwargs)
        self.client_id = client_id

    def fetch_public_key(self) -> str:
        data = self.send_json("GET", "")
        key = (data or {}).get("public_key") if isinstance(data, dict) else None
        if not key:
            raise RemoteServiceError(self.service_name, reason="Realm info has no public_key")
        return key

    def authorize_url(self, code_challenge: str, redirect_uri: str) -> str:
        query = urlencode({
            "redirect_uri": redirect_uri,
            "client_id": self.client_id,
            "response_type": "code",
            "scope": SCOPE,
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
        })
        return f"{self.url('protocol/openid-connect/auth')}?{query}"

    def request_device_code(self) -> DeviceAuthorization:
        data = self.send_json(
            "POST", "protocol/openid-connect/auth/device",
            data=build_device_code_body(self.client_id),
        )
        try:
            return DeviceAuthorization.model_validate(data)
        except ValidationError as e:
            raise RemoteServiceError(self.service_name, reason=f"Malformed device code response: {e}") from e

    def poll_device_token(self, device_code: str) -> TokenResult:
        return self._token_request(build_device_token_body(self.client_id, device_code))

    def exchange_authorization_code(self, code: str, code_verifier: str, redirect_uri: str) -> TokenResult:
        return self._token_request(build_authorization_code_body(self.client_id, code, code_verifier, redirect_uri))

    def password_grant(self, username: str, password: str, otp: Optional[str] = None) -> TokenResult:
        return self._token_request(build_password_body(self.client_id, username, password, otp))

    def refresh_grant(self, refresh_token: str) -> TokenResult:
        return self._token_request(build_refresh_body(self.client_id, refresh_token))

    def _token_request(self, body: FormBody) -> TokenResult:
        r = self.send("POST", "protocol/openid-connect/token", data=body, raise_for_status=False)
        try:
            payload = r.json()
        except ValueError:
            payload = None
        if not isinstance(payload, dict):
            return TokenResult(error=TokenErrorResponse(
                error="invalid_response", error_description=f"HTTP {r.status_code} without a JSON body",
            ))
        if r.status_code >= 400 or "error" in payload:
            try:
                return TokenResult(error=TokenErrorResponse.model_validate(payload))
            except ValidationError:
                return TokenResult(error=TokenErrorResponse(error="invalid_response"))

        record = CredentialRecord.from_token_response(payload)
        if not record.access_token or not record.refresh_token or record.expires_in is None:
            return TokenResult(error=TokenErrorResponse(
                error="invalid_token_response",
                error_description="Token response is missing access_token, refresh_token or expires_in",
            ))
        if not is_well_formed_jwt(record.access_token):
            return TokenResult(error=TokenErrorResponse(
                error="invalid_token_response",
                error_description="Token response access_token is not a JWT",
            ))
        return TokenResult(credential=record)
