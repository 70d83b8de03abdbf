# mediaboot/registration.py
from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Dict, Optional, Sequence, TypeVar

from .errors import CredentialError, MediabootError, RegistrationCooldownError, RemoteServiceError
from .http_client import ServiceClient

log = logging.getLogger("register")

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 5
BACKOFF_SECONDS: Sequence[int] = (2, 5, 15, 30, 60)
FAILURE_COOLDOWN = 60.0


def backoff_delay(attempt: int, schedule: Sequence[float] = BACKOFF_SECONDS) -> float:
    """Delay after failed attempt number `attempt` (1-based); clamps to the last value."""
    return schedule[min(max(attempt, 1) - 1, len(schedule) - 1)]


def with_retry(
    fn: Callable[[], T],
    what: str,
    max_retries: int = DEFAULT_MAX_RETRIES,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    for attempt in range(1, max_retries + 1):
        try:
            return fn()
        except MediabootError as e:
            if attempt >= max_retries:
                raise
            delay = backoff_delay(attempt)
            log.warning("%s failed: %s, retrying in %ss (attempt %d/%d)", what, e.message, delay, attempt, max_retries)
            sleep(delay)
    raise RuntimeError("unreachable")


class RegistrationClient(ServiceClient):
    """
    Control-plane registration. register() is idempotent: once the device is
    registered further calls return immediately, and a call racing an in-flight
    registration is skipped.
    """

    service_name = "control-plane"

    def __init__(
        self,
        base_url: str,
        access_token: Callable[[], Optional[str]],
        server_info: Callable[[], Dict[str, str]],
        *,
        max_retries: int = DEFAULT_MAX_RETRIES,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        **kwargs,
    ):
        super().__init__(base_url, **kwargs)
        self.access_token = access_token
        self.server_info = server_info
        self.max_retries = max_retries
        self._sleep = sleep
        self._clock = clock
        self._lock = threading.Lock()
        self._last_failure: Optional[float] = None
        self.is_registered = False
        self.owner: Optional[dict] = None
        self.tunnel_token: Optional[str] = None

    def _bearer(self) -> str:
        token = self.access_token()
        if not token:
            raise CredentialError("No access token available for registration")
        return token

    def register(self) -> None:
        if self.is_registered:
            log.debug("Server already registered")
            return
        if self._last_failure is not None:
            since = self._clock() - self._last_failure
            if since < FAILURE_COOLDOWN:
                remaining = FAILURE_COOLDOWN - since
                log.info("Registration failed recently, cooling down for %.0fs", remaining)
                raise RegistrationCooldownError(remaining)

        if not self._lock.acquire(blocking=False):
            log.info("Registration already in progress, skipping duplicate call")
            return
        try:
            log.info("Registering server, this takes a moment...")
            with_retry(self._register_once, "Registration", self.max_retries, self._sleep)
            with_retry(self._assign_once, "Server assignment", self.max_retries, self._sleep)
            self.is_registered = True
            self._last_failure = None
        except Exception:
            self._last_failure = self._clock()
            raise
        finally:
            self._lock.release()

    def _register_once(self) -> None:
        data = self.send_json("POST", "register", data=self.server_info(), bearer=self._bearer())
        if not data:
            raise RemoteServiceError(self.service_name, reason="Empty register response")
        log.info("Server registered successfully")

    def _assign_once(self) -> None:
        data = self.send_json("POST", "assign", data=self.server_info(), bearer=self._bearer())
        body = data.get("data") if isinstance(data, dict) else None
        if not isinstance(body, dict) or body.get("status") == "error":
            raise RemoteServiceError(self.service_name, reason="Failed to assign server")
        self.owner = body.get("user")
        log.info("Server assigned successfully")

    def check_tunnel(self) -> Optional[str]:
        """Ask the control-plane for a tunnel token. Never raises."""
        try:
            data = self.send_json("POST", "tunnel", data=self.server_info(), bearer=self._bearer())
        except MediabootError as e:
            log.debug("Tunnel check: %s", e)
            return None
        if not isinstance(data, dict) or not data.get("allowed") or not data.get("token"):
            return None
        self.tunnel_token = data["token"]
        log.debug("Tunnel is available")
        return self.tunnel_token
