# run_server.py
import asyncio
import socket

from mediaboot.config import Settings
from mediaboot.errors import ConfigurationError, MediabootError
from mediaboot.main import configure_logging, serve


def _is_port_available(host: str, port: int) -> bool:
    """Check if a TCP port is available for binding on the given host."""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            s.bind((host, port))
        return True
    except OSError:
        return False


def _print_banner(settings: Settings) -> None:
    print(f"\n=== {settings.APP_NAME} ===")
    print(f"Data directory: {settings.DATA_DIR}")
    print(f"Setup status:   http://127.0.0.1:{settings.INTERNAL_PORT}/setup/status")
    print("========================================\n")


def main() -> int:
    settings = Settings()
    configure_logging(settings.DEBUG)

    if not _is_port_available("127.0.0.1", settings.INTERNAL_PORT):
        print(f"Warning: port {settings.INTERNAL_PORT} is in use; browser sign-in will be unavailable")

    _print_banner(settings)
    try:
        asyncio.run(serve(settings))
    except KeyboardInterrupt:
        return 0
    except ConfigurationError as e:
        print(f"Configuration error: {e.message} ({e.details})")
        return 2
    except MediabootError as e:
        print(f"Startup failed: {e.message}")
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
