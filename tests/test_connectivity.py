"""
Connectivity monitor tests.

Transitions only, no duplicates; the poll catches missed notifications.
"""
import asyncio
import json

import pytest

from command_pipeline.connectivity import ConnectivityMonitor
from command_pipeline.models import BecameOffline, BecameOnline, ConnectivityState


def _events(capsys):
    return [json.loads(line) for line in capsys.readouterr().out.splitlines() if line.startswith("{")]


def test_initial_state_is_online():
    monitor = ConnectivityMonitor()
    assert monitor.current_state() is ConnectivityState.ONLINE
    assert monitor.is_online


def test_transition_notifies_listeners(capsys):
    monitor = ConnectivityMonitor()
    seen = []
    monitor.subscribe(seen.append)

    assert monitor.notify(False) is True
    assert monitor.notify(True) is True

    assert seen == [BecameOffline(source="notification"), BecameOnline(source="notification")]
    changes = [e for e in _events(capsys) if e.get("event_type") == "connectivity.changed"]
    assert [(e["from_state"], e["to_state"]) for e in changes] == [("online", "offline"), ("offline", "online")]


def test_repeated_state_is_dropped():
    monitor = ConnectivityMonitor()
    seen = []
    monitor.subscribe(seen.append)

    monitor.notify(False)
    assert monitor.notify(False) is False
    assert monitor.notify(False, source="poll") is False

    assert len(seen) == 1


def test_unsubscribe():
    monitor = ConnectivityMonitor()
    seen = []
    unsubscribe = monitor.subscribe(seen.append)
    unsubscribe()
    unsubscribe()

    monitor.notify(False)
    assert seen == []


def test_failing_listener_does_not_block_others():
    monitor = ConnectivityMonitor()
    seen = []

    def broken(event):
        raise RuntimeError("listener bug")

    monitor.subscribe(broken)
    monitor.subscribe(seen.append)

    monitor.notify(False)
    assert seen == [BecameOffline(source="notification")]


@pytest.mark.asyncio
async def test_poll_catches_missed_notification():
    async def probe():
        return False

    monitor = ConnectivityMonitor(probe=probe)
    seen = []
    monitor.subscribe(seen.append)

    state = await monitor.poll_once()

    assert state is ConnectivityState.OFFLINE
    assert seen == [BecameOffline(source="poll")]

    # Same value on the next poll: no new transition
    await monitor.poll_once()
    assert len(seen) == 1


@pytest.mark.asyncio
async def test_probe_exception_keeps_last_state():
    async def probe():
        raise RuntimeError("probe crashed")

    monitor = ConnectivityMonitor(probe=probe)

    assert await monitor.poll_once() is ConnectivityState.ONLINE


@pytest.mark.asyncio
async def test_poll_without_probe_is_noop():
    monitor = ConnectivityMonitor(initial_state=ConnectivityState.OFFLINE)
    assert await monitor.poll_once() is ConnectivityState.OFFLINE


@pytest.mark.asyncio
async def test_periodic_poll_loop():
    results = iter([True, False])
    polled = asyncio.Event()

    async def probe():
        value = next(results, False)
        return value

    sleeps = []

    async def fake_sleep(seconds):
        sleeps.append(seconds)
        if len(sleeps) > 2:
            polled.set()
            await asyncio.Event().wait()

    monitor = ConnectivityMonitor(probe=probe, poll_interval_seconds=30.0, sleep=fake_sleep)
    monitor.start()
    await asyncio.wait_for(polled.wait(), timeout=1.0)
    await monitor.stop()

    assert sleeps[:2] == [30.0, 30.0]
    assert monitor.current_state() is ConnectivityState.OFFLINE


def test_start_without_loop_is_noop():
    async def probe():
        return True

    monitor = ConnectivityMonitor(probe=probe)
    monitor.start()
    assert monitor._poll_task is None
