import json
import socket

import pytest

pytest.importorskip("httpx")

from fastapi.testclient import TestClient

from mediaboot.errors import CredentialError
from mediaboot.phases import BootstrapPhase, BootstrapPhaseMachine
from mediaboot.setup_server import LocalCallbackListener, build_callback_html

P = BootstrapPhase


class Handlers:
    def __init__(self, fail=False):
        self.fail = fail
        self.codes = []
        self.post_auth = 0

    async def on_code(self, code, redirect_uri):
        self.codes.append((code, redirect_uri))
        if self.fail:
            raise CredentialError("Authorization code exchange failed", "invalid_grant")

    async def on_authenticated(self):
        self.post_auth += 1


def _listener(machine=None, handlers=None):
    handlers = handlers or Handlers()
    machine = machine or BootstrapPhaseMachine()
    listener = LocalCallbackListener(machine, 7626, on_code=handlers.on_code, on_authenticated=handlers.on_authenticated)
    return listener, TestClient(listener.app), handlers


def test_setup_reports_phase_and_port():
    listener, client, _ = _listener()
    resp = client.get("/setup")
    assert resp.status_code == 200
    assert resp.json() == {"status": "setup_required", "phase": "Unauthenticated", "error": None, "server_port": 7626}


def test_setup_only_accepts_get():
    _, client, _ = _listener()
    assert client.post("/setup").status_code == 405
    assert client.post("/setup/status").status_code == 405
    assert client.delete("/sso-callback?code=x").status_code == 405


def test_status_snapshot():
    machine = BootstrapPhaseMachine(P.authenticated)
    _, client, _ = _listener(machine)
    assert client.get("/setup/status").json() == {
        "phase": "Authenticated", "is_setup_required": True, "is_authenticated": True, "error": None,
    }


def test_status_event_stream_ends_once_complete():
    machine = BootstrapPhaseMachine(P.complete)
    _, client, _ = _listener(machine)
    resp = client.get("/setup/status", headers={"Accept": "text/event-stream"})
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")
    events = [line[len("data: "):] for line in resp.text.splitlines() if line.startswith("data: ")]
    assert [json.loads(e)["phase"] for e in events] == ["Complete"]


def test_unknown_paths_point_to_setup():
    _, client, _ = _listener()
    for path in ("/", "/api/v1/libraries", "/setup/config"):
        resp = client.get(path)
        assert resp.status_code == 503
        assert resp.json() == {"status": "setup_required", "message": "Server is in setup mode", "setup_url": "/setup"}
    assert client.post("/anything").status_code == 503


def test_callback_without_code_is_rejected():
    _, client, handlers = _listener()
    resp = client.get("/sso-callback")
    assert resp.status_code == 400
    assert resp.json()["status"] == "error"
    assert handlers.codes == []


def test_callback_error_is_recorded():
    listener, client, handlers = _listener()
    resp = client.get("/sso-callback", params={"error": "access_denied", "error_description": "User said no"})
    assert resp.status_code == 200
    assert "Authorization Failed" in resp.text
    assert listener.machine.error_message == "Authorization failed: User said no"
    assert handlers.codes == []


def test_callback_exchanges_code_and_advances_phase():
    listener, client, handlers = _listener()
    resp = client.get("/sso-callback", params={"code": "one-time-code"})

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/html")
    assert "one-time-code" not in resp.text
    assert handlers.codes == [("one-time-code", "http://testserver/sso-callback")]
    assert listener.machine.current_phase == P.authenticated
    assert handlers.post_auth == 1


def test_failed_exchange_returns_to_unauthenticated():
    listener, client, handlers = _listener(handlers=Handlers(fail=True))
    client.get("/sso-callback", params={"code": "bad"})
    assert listener.machine.current_phase == P.unauthenticated
    assert listener.machine.error_message.startswith("Authentication failed")
    assert handlers.post_auth == 0


def test_callback_during_orchestrated_login_leaves_phases_alone():
    machine = BootstrapPhaseMachine(P.authenticating)
    listener, client, handlers = _listener(machine)
    client.get("/sso-callback", params={"code": "c"})
    assert handlers.codes
    assert machine.current_phase == P.authenticating
    assert handlers.post_auth == 0


def test_callback_html_is_escaped():
    page = build_callback_html("<b>title</b>", "<script>alert(1)</script>", is_error=True)
    assert "<script>alert(1)</script>" not in page
    assert "&lt;script&gt;" in page


@pytest.mark.asyncio
async def test_start_and_stop_bind_loopback(unused_tcp_port):
    machine = BootstrapPhaseMachine()
    handlers = Handlers()
    listener = LocalCallbackListener(machine, unused_tcp_port, on_code=handlers.on_code)
    await listener.start()
    try:
        assert listener.is_running
        assert listener.host == "127.0.0.1"
    finally:
        await listener.stop()
    assert not listener.is_running


@pytest.mark.asyncio
async def test_busy_port_raises_oserror(unused_tcp_port):
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as blocker:
        blocker.bind(("127.0.0.1", unused_tcp_port))
        blocker.listen()
        listener = LocalCallbackListener(BootstrapPhaseMachine(), unused_tcp_port, on_code=Handlers().on_code)

        with pytest.raises(OSError):
            await listener.start()

        assert not listener.is_running
        await listener.stop()
