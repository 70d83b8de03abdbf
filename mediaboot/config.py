# mediaboot/config.py
import socket
from pathlib import Path
from typing import List, Tuple

from pydantic import Field
from pydantic_settings import BaseSettings
from dotenv import load_dotenv

load_dotenv(override=True)

VERSION = "0.1.0"

class Settings(BaseSettings):
    # branding
    APP_NAME: str = "Mediaboot"
    USER_AGENT: str = "Mediaboot/1.0"

    # env / debug
    ENV: str = Field(default="dev", description="dev|prod")
    DEBUG: bool = False

    # storage
    DATA_DIR: Path = Field(
        default_factory=lambda: Path.home() / ".mediaboot",
        description="Directory holding the credential, key cache and certificate files",
    )

    # identity provider (OAuth2 / OpenID Connect realm, trailing slash)
    AUTH_BASE_URL: str = Field(default="https://auth.example.com/realms/media/")
    TOKEN_CLIENT_ID: str = Field(default="", description="Public OAuth client id")
    AUTH_PASSWORD_FALLBACK: bool = Field(
        default=False,
        description="Allow the console password + one-time-code flow as the last fallback",
    )
    BROWSER_LOGIN_TIMEOUT: int = Field(default=300, description="Seconds to wait for the browser redirect")

    # remote configuration service and control-plane
    API_BASE_URL: str = Field(default="https://api.example.com/")
    API_SERVER_BASE_URL: str = Field(default="https://api.example.com/v1/server/")
    EXTERNAL_IP_URL: str = Field(default="https://api.ipify.org?format=json")

    # device identity
    DEVICE_ID: str = Field(default="", description="Stable device id; generated on first run when empty")
    DEVICE_NAME: str = Field(default_factory=socket.gethostname)

    # ports
    INTERNAL_PORT: int = Field(default=7626, description="Local setup/callback listener port")
    EXTERNAL_PORT: int = Field(default=7626, description="Port announced to the control-plane")

    # networking
    HTTP_TIMEOUT: float = 15.0
    PROBE_TARGETS: str = Field(default="1.1.1.1:443,8.8.8.8:53", description="host:port, comma separated")
    PROBE_TIMEOUT: float = 3.0

    # degraded-mode recovery backoff (seconds, comma separated; last value repeats)
    RECOVERY_BACKOFF: str = "30,60,300,900,1800"

    class Config:
        env_file = ".env"
        env_prefix = "MEDIABOOT_"
        extra = "ignore"

    # ---- derived paths ----
    @property
    def token_file(self) -> Path:
        return self.DATA_DIR / "token.json"

    @property
    def auth_keys_file(self) -> Path:
        return self.DATA_DIR / "auth_keys.pub"

    @property
    def api_keys_file(self) -> Path:
        return self.DATA_DIR / "api_keys.json"

    @property
    def external_ip_file(self) -> Path:
        return self.DATA_DIR / "external_ip.json"

    @property
    def device_id_file(self) -> Path:
        return self.DATA_DIR / "device_id"

    @property
    def cert_dir(self) -> Path:
        return self.DATA_DIR / "certs"

    @property
    def cert_file(self) -> Path:
        return self.cert_dir / "cert.pem"

    @property
    def key_file(self) -> Path:
        return self.cert_dir / "key.pem"

    @property
    def ca_file(self) -> Path:
        return self.cert_dir / "ca.pem"

    # ---- derived values ----
    @property
    def redirect_uri(self) -> str:
        return f"http://127.0.0.1:{self.INTERNAL_PORT}/sso-callback"

    def probe_targets(self) -> List[Tuple[str, int]]:
        out: List[Tuple[str, int]] = []
        for part in (self.PROBE_TARGETS or "").replace(";", ",").split(","):
            part = part.strip()
            if not part or ":" not in part:
                continue
            host, _, port = part.rpartition(":")
            try:
                out.append((host, int(port)))
            except ValueError:
                continue
        return out

    def recovery_backoff(self) -> List[float]:
        vals = [float(v) for v in (self.RECOVERY_BACKOFF or "").split(",") if v.strip()]
        return vals or [30.0, 60.0, 300.0, 900.0, 1800.0]

    def ensure_dirs(self) -> None:
        self.DATA_DIR.mkdir(parents=True, exist_ok=True)
        self.cert_dir.mkdir(parents=True, exist_ok=True)

    def resolve_device_id(self) -> str:
        """Return DEVICE_ID, generating and persisting one on first run."""
        if self.DEVICE_ID:
            return self.DEVICE_ID
        path = self.device_id_file
        if path.exists():
            existing = path.read_text(encoding="utf-8").strip()
            if existing:
                self.DEVICE_ID = existing
                return existing
        import uuid
        self.DEVICE_ID = str(uuid.uuid4())
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.DEVICE_ID, encoding="utf-8")
        return self.DEVICE_ID


def platform_name() -> str:
    import sys
    if sys.platform.startswith("win"):
        return "windows"
    if sys.platform == "darwin":
        return "mac"
    return "linux"
