# mediaboot/phases.py
from __future__ import annotations

import asyncio
import enum
import logging
import threading
from concurrent.futures import Future
from typing import Optional

from .errors import InvalidTransitionError
from .tokens import TokenState

log = logging.getLogger("setup")


class BootstrapPhase(enum.IntEnum):
    unauthenticated = 0
    authenticating = 1
    authenticated = 2
    registering = 3
    registered = 4
    certificate_acquired = 5
    complete = 6

    @property
    def label(self) -> str:
        return "".join(part.capitalize() for part in self.name.split("_"))


P = BootstrapPhase

LEGAL_TRANSITIONS = frozenset({
    (P.unauthenticated, P.authenticating),
    (P.authenticating, P.authenticated),
    (P.authenticated, P.registering),
    (P.registering, P.registered),
    (P.registered, P.certificate_acquired),
    (P.certificate_acquired, P.complete),
    # failure recovery
    (P.authenticating, P.unauthenticated),
    (P.registering, P.authenticated),
    # certificate retry
    (P.registered, P.registered),
})


def is_valid_transition(source: BootstrapPhase, target: BootstrapPhase) -> bool:
    return (source, target) in LEGAL_TRANSITIONS


def initial_phase_for(state: TokenState) -> BootstrapPhase:
    if state in (TokenState.valid, TokenState.no_refresh_token):
        return P.complete
    return P.unauthenticated


async def _await_signal(signal: Future, timeout: Optional[float]) -> None:
    # shield: cancelling one waiter must not cancel the shared signal
    waiter = asyncio.shield(asyncio.wrap_future(signal))
    if timeout is None:
        await waiter
    else:
        await asyncio.wait_for(waiter, timeout)


class BootstrapPhaseMachine:
    """
    Tracks bootstrap progress. Phase and error message are guarded by one lock;
    every change swaps the change signal for a fresh one so all current waiters are
    released and can re-subscribe.
    """

    def __init__(self, phase: BootstrapPhase = P.unauthenticated):
        self._lock = threading.Lock()
        self._phase = phase
        self._error: Optional[str] = None
        self._change_signal: Future = Future()
        self._complete_signal: Future = Future()
        if phase == P.complete:
            self._complete_signal.set_result(None)

    @property
    def current_phase(self) -> BootstrapPhase:
        with self._lock:
            return self._phase

    @property
    def error_message(self) -> Optional[str]:
        with self._lock:
            return self._error

    @property
    def is_setup_required(self) -> bool:
        return self.current_phase < P.complete

    @property
    def is_authenticated(self) -> bool:
        return self.current_phase >= P.authenticated

    def snapshot(self) -> dict:
        with self._lock:
            phase, error = self._phase, self._error
        return {
            "phase": phase.label,
            "is_setup_required": phase < P.complete,
            "is_authenticated": phase >= P.authenticated,
            "error": error,
        }

    def transition_to(self, target: BootstrapPhase) -> bool:
        with self._lock:
            source = self._phase
            if not is_valid_transition(source, target):
                log.warning("Invalid setup transition: %s -> %s", source.label, target.label)
                return False
            self._phase = target
            self._error = None
            log.info("Setup phase: %s -> %s", source.label, target.label)
            self._notify_change()
            if target == P.complete and not self._complete_signal.done():
                self._complete_signal.set_result(None)
            return True

    def require_transition(self, target: BootstrapPhase) -> None:
        source = self.current_phase
        if not self.transition_to(target):
            raise InvalidTransitionError(source.label, target.label)

    def set_error(self, message: str) -> None:
        with self._lock:
            self._error = message
            log.error("Setup error in %s: %s", self._phase.label, message)
            self._notify_change()

    def determine_initial_phase(self, state: TokenState) -> BootstrapPhase:
        phase = initial_phase_for(state)
        with self._lock:
            self._phase = phase
            if phase == P.complete and not self._complete_signal.done():
                self._complete_signal.set_result(None)
            self._notify_change()
        if state == TokenState.no_refresh_token:
            log.warning("Token valid but no refresh token; re-authentication will be needed later")
        elif state == TokenState.corrupt:
            log.warning("Token file is corrupted; entering setup mode")
        return phase

    async def wait_for_change(self, timeout: Optional[float] = None) -> None:
        with self._lock:
            signal = self._change_signal
        await _await_signal(signal, timeout)

    async def wait_for_complete(self, timeout: Optional[float] = None) -> None:
        with self._lock:
            if self._phase >= P.complete:
                return
            signal = self._complete_signal
        await _await_signal(signal, timeout)

    def _notify_change(self) -> None:
        previous = self._change_signal
        self._change_signal = Future()
        previous.set_result(None)
