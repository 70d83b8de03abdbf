# mediaboot/certificate.py
from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Optional

from cryptography import x509
from pydantic import BaseModel, ValidationError

from .errors import CredentialError, NetworkUnavailableError, RemoteServiceError
from .http_client import ServiceClient

log = logging.getLogger("certificate")

RENEW_BEFORE = timedelta(days=30)
GATEWAY_TIMEOUT = 504


class CertificateBundle(BaseModel):
    certificate: str
    private_key: str
    issuer_certificate: str = ""
    certificate_authority: str = ""


class CertificateResponse(BaseModel):
    status: Optional[str] = None
    message: Optional[str] = None
    data: CertificateBundle


def certificate_not_after(pem: bytes) -> datetime:
    cert = x509.load_pem_x509_certificate(pem)
    return cert.not_valid_after_utc


class CertificateClient(ServiceClient):
    """Issues and renews the device's TLS certificate through the control-plane."""

    service_name = "certificate authority"

    def __init__(
        self,
        base_url: str,
        device_id: str,
        access_token: Callable[[], Optional[str]],
        cert_file: Path | str,
        key_file: Path | str,
        ca_file: Path | str,
        *,
        max_retries: int = 3,
        retry_delay: float = 5.0,
        sleep: Callable[[float], None] = time.sleep,
        **kwargs,
    ):
        kwargs.setdefault("timeout", 600.0)
        super().__init__(base_url, **kwargs)
        self.device_id = device_id
        self.access_token = access_token
        self.cert_file = Path(cert_file)
        self.key_file = Path(key_file)
        self.ca_file = Path(ca_file)
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._sleep = sleep

    def has_valid_certificate(self, now: Optional[datetime] = None) -> bool:
        try:
            pem = self.cert_file.read_bytes()
        except FileNotFoundError:
            return False
        try:
            not_after = certificate_not_after(pem)
        except ValueError as e:
            log.warning("Certificate file is unreadable: %s", e)
            return False
        now = now or datetime.now(timezone.utc)
        return not_after - now > RENEW_BEFORE

    def renew_certificate(self) -> None:
        """No-op while the current certificate is valid; otherwise issue or renew it."""
        if self.has_valid_certificate():
            log.info("SSL certificate is valid")
            return

        token = self.access_token()
        if not token:
            raise CredentialError("No access token available for certificate issuance")

        has_existing = self.cert_file.exists()
        log.info("Renewing SSL certificate..." if has_existing else "Generating SSL certificate...")
        path = "renew-certificate" if has_existing else "certificate"

        for attempt in range(1, self.max_retries + 1):
            try:
                r = self.send("GET", path, params={"id": self.device_id}, bearer=token, raise_for_status=False)
            except NetworkUnavailableError as e:
                if attempt >= self.max_retries:
                    raise
                log.warning("Request failed: %s, retrying in %ss (attempt %d/%d)",
                            e.message, self.retry_delay, attempt, self.max_retries)
                self._sleep(self.retry_delay)
                continue

            if r.status_code == GATEWAY_TIMEOUT:
                if attempt >= self.max_retries:
                    raise RemoteServiceError(self.service_name, r.status_code, "Max retries reached for certificate renewal")
                log.warning("Gateway timeout, retrying in %ss (attempt %d/%d)", self.retry_delay, attempt, self.max_retries)
                self._sleep(self.retry_delay)
                continue
            if r.status_code >= 400:
                raise RemoteServiceError(self.service_name, r.status_code)

            try:
                bundle = CertificateResponse.model_validate(r.json()).data
            except (ValueError, ValidationError) as e:
                raise RemoteServiceError(self.service_name, r.status_code, "Malformed certificate response") from e
            self._write_bundle(bundle)
            log.info("SSL certificate renewed" if has_existing else "SSL certificate created")
            return

    def _write_bundle(self, bundle: CertificateBundle) -> None:
        self.cert_file.parent.mkdir(parents=True, exist_ok=True)
        self.key_file.write_text(bundle.private_key, encoding="utf-8")
        self.ca_file.write_text(bundle.certificate_authority, encoding="utf-8")
        self.cert_file.write_text(f"{bundle.certificate}\n{bundle.issuer_certificate}", encoding="utf-8")
