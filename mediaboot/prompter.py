# mediaboot/prompter.py
from __future__ import annotations

import getpass
import io
import logging
import os
import sys
import webbrowser
from dataclasses import dataclass
from typing import Optional, Protocol

import qrcode

from .identity import DeviceAuthorization

log = logging.getLogger("auth")


@dataclass
class PasswordCredentials:
    username: str
    password: str
    otp: Optional[str] = None


class InteractiveLoginPrompter(Protocol):
    """Platform adapter for the parts of a login that need a human."""

    def has_display(self) -> bool: ...

    def open_browser(self, url: str) -> bool: ...

    def show_device_code(self, authorization: DeviceAuthorization) -> None: ...

    def ask_password(self) -> Optional[PasswordCredentials]: ...


def is_desktop_environment() -> bool:
    if sys.platform.startswith("win") or sys.platform == "darwin":
        return True
    if not sys.platform.startswith("linux"):
        return False
    return bool(os.environ.get("DISPLAY") or os.environ.get("WAYLAND_DISPLAY"))


def render_qr(data: str) -> str:
    qr = qrcode.QRCode(border=1)
    qr.add_data(data)
    qr.make(fit=True)
    out = io.StringIO()
    qr.print_ascii(out=out, invert=True)
    return out.getvalue()


class ConsolePrompter:
    """Terminal implementation: prints codes, opens the system browser, reads stdin."""

    def __init__(self, stream=None, max_attempts: int = 3):
        self.stream = stream or sys.stdout
        self.max_attempts = max_attempts

    def _print(self, text: str = "") -> None:
        print(text, file=self.stream, flush=True)

    def has_display(self) -> bool:
        return is_desktop_environment()

    def open_browser(self, url: str) -> bool:
        try:
            opened = webbrowser.open(url, new=1)
        except webbrowser.Error as e:
            log.warning("Could not open a browser: %s", e)
            opened = False
        if not opened:
            self._print("Open this URL in a browser to sign in:")
            self._print(f"  {url}")
        return opened

    def show_device_code(self, authorization: DeviceAuthorization) -> None:
        target = authorization.verification_uri_complete or authorization.verification_uri
        self._print()
        self._print("=== Sign in to finish setting up this server ===")
        self._print(f"Visit: {authorization.verification_uri}")
        self._print(f"Code:  {authorization.user_code}")
        self._print("Or scan:")
        try:
            self._print(render_qr(target))
        except Exception as e:
            log.debug("QR rendering failed: %s", e)
        self._print(f"The code expires in {authorization.expires_in // 60} minutes.")
        self._print("================================================")
        self._print()

    def ask_password(self) -> Optional[PasswordCredentials]:
        for _ in range(self.max_attempts):
            try:
                email = input("Enter your email: ").strip()
            except EOFError:
                return None
            if not email:
                self._print("Email cannot be empty")
                continue
            password = getpass.getpass("Enter your password: ")
            if not password:
                self._print("Password cannot be empty")
                continue
            otp = input("Enter your 2 factor authentication code (if enabled): ").strip() or None
            return PasswordCredentials(email, password, otp)
        return None
