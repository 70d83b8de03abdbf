# mediaboot/tokens.py
from __future__ import annotations

import enum
import json
import logging
import os
import tempfile
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional

from jose import jwt, JWTError
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

log = logging.getLogger("auth")

# A credential that expires within this window is treated as expired so that
# re-authentication happens well before the token actually stops working.
EXPIRY_MARGIN = timedelta(days=5)


class TokenState(str, enum.Enum):
    valid = "Valid"
    expired = "Expired"
    missing = "Missing"
    corrupt = "Corrupt"
    no_refresh_token = "NoRefreshToken"


class CredentialRecord(BaseModel):
    """Persisted credential. Reads both our own keys and raw OAuth token responses."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    access_token: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("AccessToken", "access_token"),
        serialization_alias="AccessToken",
    )
    refresh_token: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("RefreshToken", "refresh_token"),
        serialization_alias="RefreshToken",
    )
    expires_in: Optional[int] = Field(
        default=None,
        validation_alias=AliasChoices("ExpiresIn", "expires_in"),
        serialization_alias="ExpiresIn",
    )
    not_before: Optional[int] = Field(
        default=None,
        validation_alias=AliasChoices("NotBeforePolicy", "not-before-policy", "not_before_policy"),
        serialization_alias="NotBeforePolicy",
    )

    @property
    def is_empty(self) -> bool:
        return not self.access_token

    @classmethod
    def from_token_response(cls, data: dict[str, Any]) -> "CredentialRecord":
        """Normalize an OAuth2 token endpoint response."""
        return cls.model_validate(data)

    def to_file_dict(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)

    def claims(self) -> dict[str, Any]:
        if not self.access_token:
            return {}
        try:
            return jwt.get_unverified_claims(self.access_token)
        except JWTError:
            return {}


def is_well_formed_jwt(token: Optional[str]) -> bool:
    if not token or len(token.split(".")) != 3:
        return False
    try:
        jwt.get_unverified_header(token)
        jwt.get_unverified_claims(token)
    except JWTError:
        return False
    return True


def token_valid_to(claims: dict[str, Any], record: CredentialRecord) -> Optional[datetime]:
    """Expiry of the access token: the `exp` claim, else `iat` + ExpiresIn."""
    exp = claims.get("exp")
    if isinstance(exp, (int, float)) and not isinstance(exp, bool):
        return datetime.fromtimestamp(exp, tz=timezone.utc)
    if exp is not None:
        raise ValueError("exp claim is not numeric")
    iat = claims.get("iat")
    if isinstance(iat, (int, float)) and record.expires_in is not None:
        return datetime.fromtimestamp(iat + record.expires_in, tz=timezone.utc)
    return None


def validate_token_content(content: Optional[str], now: datetime) -> TokenState:
    """Classify credential file content at wall-clock time `now`. Pure."""
    if content is None:
        return TokenState.missing
    text = content.strip()
    if not text or text == "{}":
        return TokenState.missing

    try:
        data = json.loads(text)
    except ValueError:
        return TokenState.corrupt
    if not isinstance(data, dict):
        return TokenState.corrupt
    try:
        record = CredentialRecord.model_validate(data)
    except ValidationError:
        return TokenState.corrupt

    if not record.access_token:
        return TokenState.missing
    if len(record.access_token.split(".")) != 3:
        return TokenState.corrupt

    try:
        claims = jwt.get_unverified_claims(record.access_token)
        valid_to = token_valid_to(claims, record)
    except (JWTError, ValueError, OverflowError, OSError):
        return TokenState.corrupt

    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    if valid_to is None or valid_to < now + EXPIRY_MARGIN:
        return TokenState.expired

    if not record.refresh_token:
        return TokenState.no_refresh_token
    return TokenState.valid


class TokenStore:
    """Credential file with atomic replace-on-save."""

    def __init__(self, path: Path | str):
        self.path = Path(path)
        self._lock = threading.Lock()

    def _read_text(self) -> Optional[str]:
        try:
            return self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def load(self) -> CredentialRecord:
        with self._lock:
            text = self._read_text()
            if text is None:
                self._write_text("{}")
                return CredentialRecord()
        if not text.strip():
            return CredentialRecord()
        try:
            data = json.loads(text)
            if isinstance(data, dict):
                return CredentialRecord.model_validate(data)
        except (ValueError, ValidationError):
            pass
        log.warning("Credential file %s is unreadable; treating it as empty", self.path)
        return CredentialRecord()

    def save(self, record: CredentialRecord) -> None:
        payload = json.dumps(record.to_file_dict(), indent=2)
        with self._lock:
            self._write_text(payload)
        log.info("Tokens saved")

    def validate(self, now: Optional[datetime] = None) -> TokenState:
        try:
            with self._lock:
                text = self._read_text()
        except OSError:
            return TokenState.corrupt
        return validate_token_content(text, now or datetime.now(timezone.utc))

    def _write_text(self, text: str) -> None:
        # temp file in the same directory + os.replace: readers see old or new, never partial
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=".token-", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(text)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.path)
        except BaseException:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise
