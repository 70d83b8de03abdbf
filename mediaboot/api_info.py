# mediaboot/api_info.py
from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError

from .errors import MediabootError
from .http_client import ServiceClient

log = logging.getLogger("setup")

STALE_AFTER = timedelta(days=30)


class ApiInfoData(BaseModel):
    keys: Dict[str, str]
    quote: str = ""
    colors: List[str] = Field(default_factory=list)


class ApiInfoResponse(BaseModel):
    data: ApiInfoData
    cached_at: Optional[str] = None


class ApiInfo:
    """
    Provider API keys and remote configuration. Network first, then the on-disk cache.
    """

    def __init__(self, client: ServiceClient, cache_file: Path | str):
        self.client = client
        self.cache_file = Path(cache_file)
        self.keys: Dict[str, str] = {}
        self.quote: str = ""
        self.colors: List[str] = []
        self.keys_loaded = False
        self.loaded_from_cache = False

    def fetch(self) -> Optional[ApiInfoResponse]:
        try:
            payload = self.client.send_json("GET", "v1/info")
            return ApiInfoResponse.model_validate(payload)
        except (MediabootError, ValidationError) as e:
            log.warning("Failed to fetch API keys from network: %s", e)
            return None

    def read_cache(self) -> Optional[ApiInfoResponse]:
        try:
            text = self.cache_file.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            log.warning("Failed to read API keys cache: %s", e)
            return None
        if not text.strip():
            return None
        try:
            return ApiInfoResponse.model_validate(json.loads(text))
        except (ValueError, ValidationError) as e:
            log.warning("Failed to read API keys cache: %s", e)
            return None

    def write_cache(self, info: ApiInfoResponse) -> None:
        info = info.model_copy(update={"cached_at": datetime.now(timezone.utc).isoformat()})
        try:
            self.cache_file.parent.mkdir(parents=True, exist_ok=True)
            self.cache_file.write_text(info.model_dump_json(indent=2), encoding="utf-8")
        except OSError as e:
            log.warning("Failed to write API keys cache: %s", e)

    def apply(self, info: ApiInfoResponse) -> None:
        self.keys = dict(info.data.keys)
        self.quote = info.data.quote
        if info.data.colors:
            self.colors = list(info.data.colors)
        self.keys_loaded = True

    def load(self) -> bool:
        """Load keys; True when keys were applied from the network or the cache."""
        live = self.fetch()
        if live is not None:
            self.apply(live)
            self.write_cache(live)
            self.loaded_from_cache = False
            log.info("API keys loaded from network")
            return True

        cached = self.read_cache()
        if cached is not None:
            self.apply(cached)
            self.loaded_from_cache = True
            cached_at = _parse_time(cached.cached_at)
            if cached_at and datetime.now(timezone.utc) - cached_at > STALE_AFTER:
                log.warning("API keys loaded from cache (cached at %s); cache is over 30 days old", cached.cached_at)
            else:
                log.warning("API keys loaded from cache (cached at %s)", cached.cached_at or "unknown")
            return True

        log.error("API unreachable and no cached keys available; provider features will be unavailable")
        return False

    def refresh(self) -> bool:
        """Network-only reload, used once connectivity returns after a cache start."""
        live = self.fetch()
        if live is None:
            return False
        self.apply(live)
        self.write_cache(live)
        self.loaded_from_cache = False
        log.info("API keys refreshed from network")
        return True


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
