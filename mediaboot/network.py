# mediaboot/network.py
from __future__ import annotations

import asyncio
import json
import logging
import socket
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional, Tuple

from .errors import NetworkUnavailableError, RemoteServiceError
from .http_client import ServiceClient

log = logging.getLogger("network")

UNKNOWN_IP = "0.0.0.0"


class NetworkProbe:
    """Connectivity check: true when any probe target accepts a TCP connection."""

    def __init__(self, targets: Iterable[Tuple[str, int]], timeout: float = 3.0):
        self.targets = list(targets)
        self.timeout = timeout

    async def _try(self, host: str, port: int) -> bool:
        try:
            _reader, writer = await asyncio.wait_for(asyncio.open_connection(host, port), self.timeout)
        except (OSError, asyncio.TimeoutError):
            return False
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return True

    async def check(self) -> bool:
        if not self.targets:
            return False
        results = await asyncio.gather(*(self._try(h, p) for h, p in self.targets))
        online = any(results)
        log.debug("Connectivity probe: %s", "online" if online else "offline")
        return online


def get_internal_ip() -> str:
    # UDP connect only selects a route; nothing is sent
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
        try:
            s.connect(("10.255.255.255", 1))
            return s.getsockname()[0]
        except OSError:
            return "127.0.0.1"


class NetworkDiscovery:
    """Internal and external address discovery with an on-disk cache of the external IP."""

    def __init__(self, client: ServiceClient, cache_file: Path | str, external_ip_url: str):
        self.client = client
        self.cache_file = Path(cache_file)
        self.external_ip_url = external_ip_url
        self.internal_ip: str = UNKNOWN_IP
        self.external_ip: str = UNKNOWN_IP
        self.discovered = False

    def read_cache(self) -> Optional[str]:
        try:
            data = json.loads(self.cache_file.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            log.warning("External IP cache unreadable: %s", e)
            return None
        ip = data.get("ip") if isinstance(data, dict) else None
        return ip or None

    def write_cache(self, ip: str) -> None:
        try:
            self.cache_file.parent.mkdir(parents=True, exist_ok=True)
            self.cache_file.write_text(
                json.dumps({"ip": ip, "cached_at": datetime.now(timezone.utc).isoformat()}),
                encoding="utf-8",
            )
        except OSError as e:
            log.warning("Could not write external IP cache: %s", e)

    def discover(self) -> None:
        """
        Resolve both addresses. Raises NetworkUnavailableError when the external
        lookup fails; the cached (or unknown) external address stays in place.
        """
        self.internal_ip = get_internal_ip()
        cached = self.read_cache()
        if cached and self.external_ip == UNKNOWN_IP:
            self.external_ip = cached
        try:
            data = self.client.send_json("GET", self.external_ip_url)
        except (NetworkUnavailableError, RemoteServiceError) as e:
            log.warning("External IP lookup failed: %s", e)
            raise
        ip = data.get("ip") if isinstance(data, dict) else None
        if not ip:
            raise RemoteServiceError("external ip service", reason="Response has no ip field")
        self.external_ip = ip
        self.write_cache(ip)
        self.discovered = True
        log.info("Network discovered: internal %s, external %s", self.internal_ip, self.external_ip)
