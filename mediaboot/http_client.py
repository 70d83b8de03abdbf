# mediaboot/http_client.py
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import requests

from .errors import NetworkUnavailableError, RemoteServiceError

log = logging.getLogger("network")


class ServiceClient:
    """Thin requests.Session wrapper for one remote service (base URL + default headers)."""

    service_name = "remote service"

    def __init__(
        self,
        base_url: str,
        *,
        user_agent: str = "Mediaboot/1.0",
        timeout: float = 15.0,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url if base_url.endswith("/") else base_url + "/"
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"Accept": "application/json", "User-Agent": user_agent})

    def url(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        return f"{self.base_url}{path.lstrip('/')}"

    def send(
        self,
        method: str,
        path: str,
        *,
        bearer: Optional[str] = None,
        raise_for_status: bool = True,
        **kwargs: Any,
    ) -> requests.Response:
        headers: Dict[str, str] = dict(kwargs.pop("headers", None) or {})
        if bearer:
            headers["Authorization"] = f"Bearer {bearer}"
        kwargs.setdefault("timeout", self.timeout)
        try:
            r = self.session.request(method, self.url(path), headers=headers, **kwargs)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise NetworkUnavailableError(self.service_name, str(e)) from e
        except requests.RequestException as e:
            raise RemoteServiceError(self.service_name, reason=str(e)) from e
        if raise_for_status and r.status_code >= 400:
            raise RemoteServiceError(self.service_name, r.status_code, _short_body(r))
        return r

    def send_json(self, method: str, path: str, **kwargs: Any) -> Any:
        r = self.send(method, path, **kwargs)
        try:
            return r.json()
        except ValueError as e:
            raise RemoteServiceError(self.service_name, r.status_code, "Response was not JSON") from e

    def close(self) -> None:
        self.session.close()


def _short_body(r: requests.Response, limit: int = 200) -> str:
    try:
        text = r.text or ""
    except Exception:
        return ""
    return text[:limit]
