import asyncio
import itertools
import threading

import pytest

from mediaboot.errors import InvalidTransitionError
from mediaboot.phases import LEGAL_TRANSITIONS, BootstrapPhase, BootstrapPhaseMachine
from mediaboot.tokens import TokenState

P = BootstrapPhase
ILLEGAL = [pair for pair in itertools.product(P, P) if pair not in LEGAL_TRANSITIONS]


@pytest.mark.parametrize("source,target", ILLEGAL, ids=lambda p: p.label)
def test_illegal_transition_is_rejected_and_state_kept(source, target):
    machine = BootstrapPhaseMachine(source)
    assert machine.transition_to(target) is False
    assert machine.current_phase == source


@pytest.mark.parametrize("source,target", sorted(LEGAL_TRANSITIONS), ids=lambda p: p.label)
def test_legal_transition_is_applied(source, target):
    machine = BootstrapPhaseMachine(source)
    assert machine.transition_to(target) is True
    assert machine.current_phase == target


def test_happy_path_reaches_complete():
    machine = BootstrapPhaseMachine()
    for phase in list(P)[1:]:
        machine.require_transition(phase)
    assert not machine.is_setup_required
    assert machine.snapshot() == {
        "phase": "Complete", "is_setup_required": False, "is_authenticated": True, "error": None,
    }


def test_require_transition_raises_on_skip():
    machine = BootstrapPhaseMachine()
    with pytest.raises(InvalidTransitionError):
        machine.require_transition(P.registered)
    assert machine.current_phase == P.unauthenticated


def test_exactly_one_racing_transition_wins():
    machine = BootstrapPhaseMachine()
    barrier = threading.Barrier(8)
    results = []

    def race():
        barrier.wait()
        results.append(machine.transition_to(P.authenticating))

    threads = [threading.Thread(target=race) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count(True) == 1
    assert machine.current_phase == P.authenticating


def test_error_is_cleared_by_next_transition():
    machine = BootstrapPhaseMachine(P.authenticating)
    machine.set_error("boom")
    assert machine.snapshot()["error"] == "boom"
    machine.transition_to(P.unauthenticated)
    assert machine.error_message is None


@pytest.mark.parametrize("state,expected", [
    (TokenState.valid, P.complete),
    (TokenState.no_refresh_token, P.complete),
    (TokenState.missing, P.unauthenticated),
    (TokenState.expired, P.unauthenticated),
    (TokenState.corrupt, P.unauthenticated),
])
def test_determine_initial_phase(state, expected):
    machine = BootstrapPhaseMachine()
    assert machine.determine_initial_phase(state) == expected
    assert machine.current_phase == expected


def test_labels():
    assert P.certificate_acquired.label == "CertificateAcquired"
    assert P.unauthenticated.label == "Unauthenticated"


@pytest.mark.asyncio
async def test_all_waiters_are_released_on_change():
    machine = BootstrapPhaseMachine()
    waiters = [asyncio.create_task(machine.wait_for_change()) for _ in range(3)]
    await asyncio.sleep(0)
    machine.transition_to(P.authenticating)
    await asyncio.wait_for(asyncio.gather(*waiters), 1)

    # waiters re-subscribe to the fresh signal
    again = asyncio.create_task(machine.wait_for_change())
    await asyncio.sleep(0)
    assert not again.done()
    machine.set_error("x")
    await asyncio.wait_for(again, 1)


@pytest.mark.asyncio
async def test_rejected_transition_does_not_release_waiters():
    machine = BootstrapPhaseMachine()
    waiter = asyncio.create_task(machine.wait_for_change(timeout=0.05))
    await asyncio.sleep(0)
    assert machine.transition_to(P.complete) is False
    with pytest.raises(asyncio.TimeoutError):
        await waiter


@pytest.mark.asyncio
async def test_wait_for_complete():
    machine = BootstrapPhaseMachine(P.certificate_acquired)
    waiter = asyncio.create_task(machine.wait_for_complete())
    await asyncio.sleep(0)
    assert not waiter.done()
    machine.transition_to(P.complete)
    await asyncio.wait_for(waiter, 1)
    await asyncio.wait_for(machine.wait_for_complete(), 0.1)


@pytest.mark.asyncio
async def test_cancelled_waiter_does_not_affect_others():
    machine = BootstrapPhaseMachine()
    cancelled = asyncio.create_task(machine.wait_for_change())
    kept = asyncio.create_task(machine.wait_for_change())
    await asyncio.sleep(0)
    cancelled.cancel()
    machine.transition_to(P.authenticating)
    await asyncio.wait_for(kept, 1)
