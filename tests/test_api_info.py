import json
from datetime import datetime, timedelta, timezone

import requests

from mediaboot.api_info import ApiInfo
from mediaboot.http_client import ServiceClient

from helpers import FakeSession, json_response

PAYLOAD = {"data": {"keys": {"tmdb_key": "abc"}, "quote": "hello", "colors": ["#fff"]}}


def _api_info(tmp_path, session):
    return ApiInfo(ServiceClient("https://api.test/", session=session), tmp_path / "api_keys.json")


def test_network_load_applies_and_caches(tmp_path):
    session = FakeSession([json_response(200, PAYLOAD)])
    info = _api_info(tmp_path, session)

    assert info.load()

    assert info.keys == {"tmdb_key": "abc"}
    assert info.keys_loaded and not info.loaded_from_cache
    assert session.requests[0]["url"] == "https://api.test/v1/info"
    cached = json.loads((tmp_path / "api_keys.json").read_text())
    assert cached["data"]["keys"] == {"tmdb_key": "abc"}
    assert cached["cached_at"]


def test_offline_load_uses_cache(tmp_path):
    cached_at = (datetime.now(timezone.utc) - timedelta(days=45)).isoformat()
    (tmp_path / "api_keys.json").write_text(json.dumps({**PAYLOAD, "cached_at": cached_at}))
    info = _api_info(tmp_path, FakeSession([requests.ConnectionError("down")]))

    assert info.load()
    assert info.loaded_from_cache
    assert info.keys["tmdb_key"] == "abc"


def test_offline_without_cache_loads_nothing(tmp_path):
    info = _api_info(tmp_path, FakeSession([requests.ConnectionError("down")]))
    assert not info.load()
    assert not info.keys_loaded


def test_corrupt_cache_is_ignored(tmp_path):
    (tmp_path / "api_keys.json").write_text("{broken")
    info = _api_info(tmp_path, FakeSession([json_response(500, {})]))
    assert not info.load()


def test_refresh_is_network_only(tmp_path):
    (tmp_path / "api_keys.json").write_text(json.dumps(PAYLOAD))
    session = FakeSession([requests.ConnectionError("down")])
    info = _api_info(tmp_path, session)
    assert not info.refresh()

    session.queue(json_response(200, {"data": {"keys": {"tmdb_key": "new"}}}))
    assert info.refresh()
    assert info.keys == {"tmdb_key": "new"}
