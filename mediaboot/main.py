from __future__ import annotations

# ── Logging ───────────────────────────────────────────────────────────────────
import logging, logging.config

LOGGERS = ("auth", "setup", "startup", "recovery", "register", "certificate", "network")


def configure_logging(debug: bool = False) -> None:
    level = "DEBUG" if debug else "INFO"
    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {"std": {"format": "%(levelname)s  %(name)s: %(message)s"}},
        "handlers": {"console": {"class": "logging.StreamHandler", "formatter": "std"}},
        "loggers": {
            **{name: {"level": level, "handlers": ["console"], "propagate": False} for name in LOGGERS},
            "uvicorn":        {"level": "WARNING", "handlers": ["console"], "propagate": False},
            "uvicorn.access": {"level": "WARNING", "handlers": ["console"], "propagate": False},
            "urllib3":        {"level": "WARNING", "handlers": ["console"], "propagate": False},
        },
    })


# ── Windows event loop policy (keeps asyncio stable with sockets)
import sys, asyncio, signal
if sys.platform.startswith("win"):
    try:
        asyncio.set_event_loop_policy(asyncio.WindowsProactorEventLoopPolicy())
    except Exception:
        pass

from typing import Iterable, List, Optional

from .bootstrap import BootContext, Bootstrap
from .config import Settings
from .prompter import InteractiveLoginPrompter
from .tasks import StartupTask

log = logging.getLogger("startup")


def _install_stop_signals(stop: asyncio.Event) -> List[int]:
    """SIGINT/SIGTERM set `stop`. Windows loops have no signal handlers; Ctrl+C raises there instead."""
    loop = asyncio.get_running_loop()
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            pass
    return installed


async def serve(
    settings: Optional[Settings] = None,
    caller_tasks: Iterable[StartupTask] = (),
    prompter: Optional[InteractiveLoginPrompter] = None,
    stop: Optional[asyncio.Event] = None,
) -> None:
    """
    Boot the device, then keep running (setup listener, recovery loop) until `stop` is set
    or the process receives SIGINT/SIGTERM.
    """
    settings = settings or Settings()
    stop = stop or asyncio.Event()
    ctx = BootContext.from_settings(settings, prompter)
    bootstrap = Bootstrap(ctx)
    installed = _install_stop_signals(stop)
    try:
        await bootstrap.boot(caller_tasks)
        await stop.wait()
        log.info("Stop requested; shutting down")
    finally:
        loop = asyncio.get_running_loop()
        for sig in installed:
            loop.remove_signal_handler(sig)
        await bootstrap.shutdown()
