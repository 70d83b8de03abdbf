# mediaboot/recovery.py
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, Sequence

from .errors import RegistrationCooldownError
from .tasks import StartupTask, run_action

log = logging.getLogger("recovery")

DEFAULT_BACKOFF: Sequence[float] = (30, 60, 300, 900, 1800)


@dataclass
class DeferredTaskSet:
    """Completion flags for work the initial boot could not finish. Owned by the recovery loop."""
    api_keys_loaded: bool = False
    keys_refreshed: bool = True
    authenticated: bool = False
    network_discovered: bool = False
    seeds_run: bool = False
    registered: bool = False
    all_completed: bool = False
    caller_tasks: List[StartupTask] = field(default_factory=list)

    @property
    def everything_done(self) -> bool:
        return (self.api_keys_loaded and self.keys_refreshed and self.authenticated
                and self.network_discovered and self.seeds_run and self.registered)


@dataclass
class RecoverySteps:
    """Actions the loop re-drives. Each may be sync or async."""
    load_keys: Callable[[], Any]
    authenticate: Callable[[], Any]
    discover: Callable[[], Any]
    register: Callable[[], Any]
    refresh_keys: Optional[Callable[[], Any]] = None
    is_registered: Callable[[], bool] = lambda: False
    has_access_token: Callable[[], bool] = lambda: True


def backoff_for(attempt: int, schedule: Sequence[float]) -> float:
    return schedule[min(attempt, len(schedule) - 1)]


class DegradedRecoveryLoop:
    """
    Background loop that re-attempts deferred boot work with backoff until every flag in
    the DeferredTaskSet is set. stop() ends the loop at the next wait or step boundary.
    """

    def __init__(
        self,
        tasks: DeferredTaskSet,
        steps: RecoverySteps,
        probe: Callable[[], Awaitable[bool]],
        backoff: Sequence[float] = DEFAULT_BACKOFF,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.tasks = tasks
        self.steps = steps
        self.probe = probe
        self.backoff = list(backoff) or list(DEFAULT_BACKOFF)
        self._sleep = sleep
        self._stop = asyncio.Event()
        self.attempt = 0
        self.passes = 0

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def stop(self) -> None:
        self._stop.set()

    async def _wait(self, delay: float) -> None:
        if self._sleep is not None:
            await self._sleep(delay)
            return
        try:
            await asyncio.wait_for(self._stop.wait(), delay)
        except asyncio.TimeoutError:
            pass

    async def run(self) -> DeferredTaskSet:
        log.warning("Entering degraded mode; deferred work will be retried in the background")
        while not self.tasks.all_completed and not self.stopped:
            await self._wait(backoff_for(self.attempt, self.backoff))
            if self.stopped:
                break

            if not await self.probe():
                self.attempt += 1
                log.info("Network still unavailable. Next retry in %ss", backoff_for(self.attempt, self.backoff))
                continue

            log.info("Network connectivity restored, executing deferred tasks")
            await self.run_pass()
            self.passes += 1

            if self.tasks.everything_done:
                self.tasks.all_completed = True
                log.info("Full mode restored, all deferred tasks completed")
            self.attempt += 1

        if self.stopped and not self.tasks.all_completed:
            log.info("Recovery loop stopped before all deferred tasks completed")
        return self.tasks

    async def run_pass(self) -> None:
        t = self.tasks
        steps = self.steps

        if not t.api_keys_loaded and not self.stopped:
            try:
                t.api_keys_loaded = bool(await run_action(steps.load_keys))
            except Exception as e:
                log.warning("Deferred API info failed: %s", e)

        if t.api_keys_loaded and not t.keys_refreshed and not self.stopped:
            try:
                t.keys_refreshed = steps.refresh_keys is None or bool(await run_action(steps.refresh_keys))
            except Exception as e:
                log.warning("Refreshing cached API info failed: %s", e)

        if not t.authenticated and t.api_keys_loaded and not self.stopped:
            try:
                t.authenticated = bool(await run_action(steps.authenticate))
            except Exception as e:
                log.warning("Deferred auth failed: %s", e)

        if not t.network_discovered and not self.stopped:
            try:
                await run_action(steps.discover)
                t.network_discovered = True
            except Exception as e:
                log.warning("Deferred network discovery failed: %s", e)

        if not t.seeds_run and t.api_keys_loaded and not self.stopped:
            await self._run_caller_tasks()

        if not t.registered and t.authenticated and t.network_discovered and not self.stopped:
            await self._register()

    async def _run_caller_tasks(self) -> None:
        remaining: List[StartupTask] = []
        for task in self.tasks.caller_tasks:
            if self.stopped:
                remaining.append(task)
                continue
            try:
                await run_action(task.action)
            except Exception as e:
                log.warning("Deferred task '%s' failed: %s", task.name, e)
                remaining.append(task)
        self.tasks.caller_tasks = remaining
        self.tasks.seeds_run = not remaining

    async def _register(self) -> None:
        t = self.tasks
        if self.steps.is_registered():
            t.registered = True
            return
        try:
            if not self.steps.has_access_token():
                log.warning("Access token missing before deferred registration, re-authenticating")
                t.authenticated = bool(await run_action(self.steps.authenticate))
                if not t.authenticated:
                    return
            await run_action(self.steps.register)
            t.registered = True
        except RegistrationCooldownError as e:
            log.debug("Deferred registration postponed: %s", e.details)
        except Exception as e:
            log.warning("Deferred registration failed: %s", e)
