# mediaboot/trust_cache.py
from __future__ import annotations

import base64
import binascii
import logging
import textwrap
from pathlib import Path
from typing import Any, Optional

from cryptography.hazmat.primitives import serialization
from jose import jwt, JWTError

log = logging.getLogger("auth")


def public_key_pem(public_key_b64: str) -> str:
    """Wrap a base64 SubjectPublicKeyInfo blob (as published by the realm) in PEM armour."""
    body = "\n".join(textwrap.wrap(public_key_b64.strip(), 64))
    return f"-----BEGIN PUBLIC KEY-----\n{body}\n-----END PUBLIC KEY-----\n"


def _parse_public_key(public_key_b64: str):
    der = base64.b64decode(public_key_b64.strip(), validate=True)
    return serialization.load_der_public_key(der)


class OfflineTrustCache:
    """
    Keeps the identity provider's verification key on disk so access tokens can be
    checked without network access.
    """

    def __init__(self, path: Path | str):
        self.path = Path(path)
        self._public_key_b64: Optional[str] = None

    @property
    def public_key(self) -> Optional[str]:
        return self._public_key_b64

    @property
    def has_key(self) -> bool:
        return self._public_key_b64 is not None

    def use_public_key(self, public_key_b64: str) -> None:
        """Verify against this key from now on without touching the cache file."""
        _parse_public_key(public_key_b64)
        self._public_key_b64 = public_key_b64.strip()

    def cache_public_key(self, public_key_b64: str) -> None:
        self.use_public_key(public_key_b64)  # reject garbage before it reaches disk
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(self._public_key_b64, encoding="utf-8")
        log.debug("Auth public key cached at %s", self.path)

    def load(self) -> bool:
        """Load the cached key. False when the file is missing, empty or undecodable."""
        try:
            text = self.path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return False
        except OSError as e:
            log.warning("Could not read cached auth key: %s", e)
            return False
        if not text:
            return False
        try:
            _parse_public_key(text)
        except (binascii.Error, ValueError) as e:
            log.warning("Cached auth key is corrupt: %s", e)
            return False
        self._public_key_b64 = text
        return True

    def verify(self, token: str, audience: Optional[str] = None, issuer: Optional[str] = None) -> dict[str, Any]:
        """
        Verify signature and lifetime of an RS256 token with the cached key.
        Raises JWTError when the token does not verify.
        """
        if self._public_key_b64 is None and not self.load():
            raise JWTError("No cached verification key")
        options = {"verify_aud": audience is not None, "verify_iss": issuer is not None}
        return jwt.decode(
            token,
            public_key_pem(self._public_key_b64),
            algorithms=["RS256"],
            audience=audience,
            issuer=issuer,
            options=options,
        )

    def is_trusted(self, token: Optional[str], audience: Optional[str] = None) -> bool:
        if not token:
            return False
        try:
            self.verify(token, audience=audience)
            return True
        except JWTError:
            return False
