import asyncio

import pytest

from mediaboot.errors import NetworkUnavailableError, RegistrationCooldownError
from mediaboot.recovery import DeferredTaskSet, DegradedRecoveryLoop, RecoverySteps, backoff_for
from mediaboot.tasks import StartupTask


class Probe:
    def __init__(self, results):
        self.results = list(results)
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        return self.results.pop(0) if self.results else True


class Steps:
    def __init__(self):
        self.calls = []
        self.register_failures = 0
        self.registered = False

    def load_keys(self):
        self.calls.append("keys")
        return True

    async def authenticate(self):
        self.calls.append("auth")
        return True

    def discover(self):
        self.calls.append("discover")

    def register(self):
        self.calls.append("register")
        if self.register_failures:
            self.register_failures -= 1
            raise NetworkUnavailableError("control-plane")
        self.registered = True

    def as_recovery_steps(self):
        return RecoverySteps(
            load_keys=self.load_keys,
            authenticate=self.authenticate,
            discover=self.discover,
            register=self.register,
            is_registered=lambda: self.registered,
        )


class Sleeper:
    def __init__(self):
        self.slept = []

    async def __call__(self, seconds):
        self.slept.append(seconds)


def test_backoff_schedule_clamps_to_last_value():
    schedule = [30, 60, 300, 900, 1800]
    assert [backoff_for(n, schedule) for n in range(7)] == [30, 60, 300, 900, 1800, 1800, 1800]


@pytest.mark.asyncio
async def test_converges_when_third_probe_succeeds():
    steps, sleeper = Steps(), Sleeper()
    probe = Probe([False, False, True])
    loop = DegradedRecoveryLoop(DeferredTaskSet(), steps.as_recovery_steps(), probe, sleep=sleeper)

    tasks = await asyncio.wait_for(loop.run(), 1)

    assert tasks.all_completed
    assert probe.calls == 3
    assert loop.passes == 1
    assert sleeper.slept == [30, 60, 300]
    assert steps.calls == ["keys", "auth", "discover", "register"]


@pytest.mark.asyncio
async def test_partial_progress_is_kept_between_passes():
    steps, sleeper = Steps(), Sleeper()
    steps.register_failures = 2
    loop = DegradedRecoveryLoop(DeferredTaskSet(), steps.as_recovery_steps(), Probe([]), sleep=sleeper)

    tasks = await asyncio.wait_for(loop.run(), 1)

    assert tasks.all_completed
    assert loop.passes == 3
    assert steps.calls.count("keys") == 1
    assert steps.calls.count("auth") == 1
    assert steps.calls.count("register") == 3


@pytest.mark.asyncio
async def test_auth_waits_for_keys():
    steps = Steps()
    steps.load_keys = lambda: False
    loop = DegradedRecoveryLoop(DeferredTaskSet(), steps.as_recovery_steps(), Probe([]), sleep=Sleeper())

    await loop.run_pass()

    assert not loop.tasks.authenticated
    assert "auth" not in steps.calls
    assert loop.tasks.network_discovered
    assert not loop.tasks.registered


@pytest.mark.asyncio
async def test_already_done_flags_are_not_redone():
    steps = Steps()
    done = DeferredTaskSet(api_keys_loaded=True, authenticated=True, network_discovered=True, seeds_run=True)
    loop = DegradedRecoveryLoop(done, steps.as_recovery_steps(), Probe([]), sleep=Sleeper())

    await loop.run()

    assert steps.calls == ["register"]


@pytest.mark.asyncio
async def test_caller_tasks_are_dropped_as_they_succeed():
    ran = []
    attempts = {"flaky": 0}

    def flaky():
        attempts["flaky"] += 1
        if attempts["flaky"] < 2:
            raise RuntimeError("not yet")
        ran.append("flaky")

    deferred = DeferredTaskSet(
        api_keys_loaded=True,
        caller_tasks=[StartupTask("seed", lambda: ran.append("seed")), StartupTask("flaky", flaky)],
    )
    steps = Steps()
    loop = DegradedRecoveryLoop(deferred, steps.as_recovery_steps(), Probe([]), sleep=Sleeper())

    await loop.run_pass()
    assert [t.name for t in deferred.caller_tasks] == ["flaky"]
    assert not deferred.seeds_run

    await loop.run_pass()
    assert deferred.caller_tasks == []
    assert deferred.seeds_run
    assert ran == ["seed", "flaky"]


@pytest.mark.asyncio
async def test_registration_cooldown_is_retried_later():
    steps = Steps()

    def cooling():
        raise RegistrationCooldownError(42)

    recovery_steps = steps.as_recovery_steps()
    recovery_steps.register = cooling
    done = DeferredTaskSet(api_keys_loaded=True, authenticated=True, network_discovered=True, seeds_run=True)
    loop = DegradedRecoveryLoop(done, recovery_steps, Probe([]), sleep=Sleeper())

    await loop.run_pass()
    assert not done.registered


@pytest.mark.asyncio
async def test_missing_access_token_triggers_reauthentication():
    steps = Steps()
    recovery_steps = steps.as_recovery_steps()
    recovery_steps.has_access_token = lambda: False
    done = DeferredTaskSet(api_keys_loaded=True, authenticated=True, network_discovered=True, seeds_run=True)
    loop = DegradedRecoveryLoop(done, recovery_steps, Probe([]), sleep=Sleeper())

    await loop.run_pass()

    assert steps.calls == ["auth", "register"]
    assert done.registered


@pytest.mark.asyncio
async def test_stop_interrupts_backoff_wait():
    steps = Steps()
    loop = DegradedRecoveryLoop(DeferredTaskSet(), steps.as_recovery_steps(), Probe([]), backoff=[3600])
    runner = asyncio.create_task(loop.run())
    await asyncio.sleep(0.01)

    loop.stop()
    tasks = await asyncio.wait_for(runner, 1)

    assert not tasks.all_completed
    assert steps.calls == []


@pytest.mark.asyncio
async def test_keys_from_cache_are_refreshed_before_completing():
    steps = Steps()
    results = [False, True]
    refresh_calls = []

    def refresh_keys():
        refresh_calls.append("refresh")
        return results.pop(0)

    recovery_steps = steps.as_recovery_steps()
    recovery_steps.refresh_keys = refresh_keys
    done = DeferredTaskSet(api_keys_loaded=True, keys_refreshed=False, authenticated=True,
                           network_discovered=True, seeds_run=True, registered=True)
    loop = DegradedRecoveryLoop(done, recovery_steps, Probe([]), sleep=Sleeper())

    tasks = await asyncio.wait_for(loop.run(), 1)

    assert tasks.all_completed
    assert loop.passes == 2
    assert refresh_calls == ["refresh", "refresh"]
    assert "keys" not in steps.calls
