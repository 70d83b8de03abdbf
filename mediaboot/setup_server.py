# mediaboot/setup_server.py
from __future__ import annotations

import asyncio
import contextlib
import html
import json
import logging
import socket
from typing import Any, Awaitable, Callable, Optional

import uvicorn
from fastapi import BackgroundTasks, FastAPI, Request
from fastapi.responses import HTMLResponse, JSONResponse, Response, StreamingResponse

from .phases import BootstrapPhase, BootstrapPhaseMachine
from .tasks import run_action

log = logging.getLogger("setup")

ALL_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]
SSE_KEEPALIVE_SECONDS = 15.0

CodeHandler = Callable[[str, str], Awaitable[Any]]


def build_callback_html(title: str, message: str, is_error: bool = False) -> str:
    color = "#f08080" if is_error else "#cbafff"
    return (
        "<!DOCTYPE html><html><head><meta charset=\"UTF-8\">"
        "<style>"
        "body{background:#0a0a0f;color:#e0e0e0;font-family:-apple-system,BlinkMacSystemFont,"
        "\"Segoe UI\",Roboto,sans-serif;display:flex;align-items:center;justify-content:center;"
        "min-height:100vh;margin:0;}"
        ".card{background:#16161e;border:1px solid #2a2a3a;border-radius:12px;padding:32px 24px;"
        "text-align:center;max-width:440px;width:100%;}"
        f"h2{{color:{color};margin-bottom:12px;}}"
        "p{color:#999;font-size:14px;}"
        "</style></head><body><div class=\"card\">"
        f"<h2>{html.escape(title)}</h2>"
        f"<p>{html.escape(message)}</p>"
        "<p style=\"margin-top:16px;color:#666;\">You can close this window.</p>"
        "</div><script>setTimeout(function(){window.close();}, 1500);</script>"
        "</body></html>"
    )


def _sse(data: dict) -> str:
    return f"data: {json.dumps(data)}\n\n"


class _EmbeddedServer(uvicorn.Server):
    # the host process owns signal handling
    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


class LocalCallbackListener:
    """
    Loopback-only HTTP surface used while the device is in setup mode: receives the
    authorization-code redirect and reports setup status. Every other path answers 503.
    """

    def __init__(
        self,
        machine: BootstrapPhaseMachine,
        port: int,
        on_code: CodeHandler,
        on_authenticated: Optional[Callable[[], Any]] = None,
        host: str = "127.0.0.1",
    ):
        self.machine = machine
        self.port = port
        self.host = host
        self.on_code = on_code
        self.on_authenticated = on_authenticated
        self._server: Optional[_EmbeddedServer] = None
        self._task: Optional[asyncio.Task] = None
        self.app = self._build_app()

    # ---------- lifecycle ----------

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.is_running:
            return
        # bound here so a busy port raises OSError instead of uvicorn's sys.exit
        sock = self._bind()
        config = uvicorn.Config(self.app, host=self.host, port=self.port, log_level="warning", lifespan="off")
        self._server = _EmbeddedServer(config)
        self._task = asyncio.create_task(self._server.serve(sockets=[sock]))
        while not self._server.started:
            if self._task.done():
                sock.close()
                self._task.result()
                raise OSError(f"Setup listener exited before serving port {self.port}")
            await asyncio.sleep(0.05)
        log.info("Setup server listening on http://%s:%d", self.host, self.port)

    def _bind(self) -> socket.socket:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((self.host, self.port))
        except OSError:
            sock.close()
            raise
        return sock

    async def stop(self) -> None:
        if self._server is None or self._task is None:
            return
        self._server.should_exit = True
        try:
            await self._task
        finally:
            self._server = None
            self._task = None
            log.info("Setup server stopped")

    # ---------- routes ----------

    def _build_app(self) -> FastAPI:
        app = FastAPI(title="Setup", docs_url=None, redoc_url=None, openapi_url=None)

        @app.api_route("/setup", methods=ALL_METHODS)
        async def setup(request: Request):
            if request.method != "GET":
                return Response(status_code=405)
            return JSONResponse({
                "status": "setup_required",
                "phase": self.machine.current_phase.label,
                "error": self.machine.error_message,
                "server_port": self.port,
            })

        @app.api_route("/setup/status", methods=ALL_METHODS)
        async def setup_status(request: Request):
            if request.method != "GET":
                return Response(status_code=405)
            if "text/event-stream" in request.headers.get("accept", ""):
                return StreamingResponse(
                    self._status_events(request),
                    media_type="text/event-stream",
                    headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
                )
            return JSONResponse(self.machine.snapshot())

        @app.api_route("/sso-callback", methods=ALL_METHODS)
        async def sso_callback(request: Request, background: BackgroundTasks):
            if request.method != "GET":
                return Response(status_code=405)
            params = request.query_params

            error = params.get("error")
            if error:
                description = params.get("error_description")
                message = f"Authorization failed: {description or error}"
                log.warning("OAuth callback error: %s", error)
                self.machine.set_error(message)
                return HTMLResponse(build_callback_html("Authorization Failed", message, is_error=True))

            code = params.get("code")
            if not code:
                return JSONResponse({"status": "error", "message": "Missing authorization code"}, status_code=400)

            drove = False
            if self.machine.current_phase == BootstrapPhase.unauthenticated:
                drove = self.machine.transition_to(BootstrapPhase.authenticating)
            redirect_uri = f"{request.url.scheme}://{request.url.netloc}/sso-callback"
            background.add_task(self._exchange_code, code, redirect_uri, drove)
            return HTMLResponse(build_callback_html(
                "Authentication Received", "Exchanging authorization code for tokens...",
            ))

        @app.api_route("/{path:path}", methods=ALL_METHODS)
        async def service_unavailable(path: str):
            return JSONResponse(
                {"status": "setup_required", "message": "Server is in setup mode", "setup_url": "/setup"},
                status_code=503,
            )

        return app

    async def _status_events(self, request: Request):
        yield _sse(self.machine.snapshot())
        while self.machine.is_setup_required:
            if await request.is_disconnected():
                break
            try:
                await self.machine.wait_for_change(timeout=SSE_KEEPALIVE_SECONDS)
            except asyncio.TimeoutError:
                yield ": keepalive\n\n"
                continue
            yield _sse(self.machine.snapshot())

    async def _exchange_code(self, code: str, redirect_uri: str, drove: bool) -> None:
        try:
            await self.on_code(code, redirect_uri)
        except Exception as e:
            log.error("OAuth token exchange failed: %s", e)
            if drove:
                self.machine.transition_to(BootstrapPhase.unauthenticated)
            self.machine.set_error(f"Authentication failed: {e}")
            return

        log.info("OAuth token exchange completed successfully")
        if drove and self.machine.transition_to(BootstrapPhase.authenticated) and self.on_authenticated:
            await run_action(self.on_authenticated)
