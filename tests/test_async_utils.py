import asyncio
import sys

import pytest

sys.path.insert(0, '.')

from monitoring.async_utils import SingleFlight, run_tasks_with_cleanup, seconds_until_next_minute


class Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def test_single_flight_drops_concurrent_trigger():
    guard = SingleFlight('candles', ttl_s=30, clock=Clock())
    token = guard.try_acquire()
    assert token is not None
    assert guard.try_acquire() is None
    assert guard.skipped == 1
    guard.release(token)
    assert not guard.busy


def test_watchdog_clears_stuck_flag_and_ignores_stale_release():
    clock = Clock()
    guard = SingleFlight('candles', ttl_s=30, clock=clock)
    stale = guard.try_acquire()
    clock.now = 31
    fresh = guard.try_acquire()
    assert fresh is not None and fresh != stale
    assert guard.watchdog_clears == 1

    guard.release(stale)
    assert guard.busy
    guard.release(fresh)
    assert not guard.busy


def test_run_releases_after_failure():
    guard = SingleFlight('orders', ttl_s=5)

    async def boom():
        raise RuntimeError('boom')

    with pytest.raises(RuntimeError):
        asyncio.run(guard.run(boom))
    assert not guard.busy


def test_run_skips_while_in_flight():
    guard = SingleFlight('orders', ttl_s=5)

    async def run():
        gate = asyncio.Event()

        async def slow():
            await gate.wait()
            return 'done'

        first = asyncio.create_task(guard.run(slow))
        await asyncio.sleep(0)
        second = await guard.run(slow)
        gate.set()
        return await first, second

    assert asyncio.run(run()) == ('done', None)


@pytest.mark.parametrize('now, expected', [(0.0, 60.5), (59.0, 1.5), (125.25, 55.25)])
def test_seconds_until_next_minute(now, expected):
    assert seconds_until_next_minute(now) == pytest.approx(expected)


def test_run_tasks_with_cleanup_cancels_survivors_and_reraises():
    cleaned = []

    async def forever():
        await asyncio.sleep(3600)

    async def fail():
        raise ValueError('loop died')

    async def cleanup():
        cleaned.append(True)

    async def run():
        tasks = [asyncio.create_task(forever(), name='cycle'), asyncio.create_task(fail(), name='tracking')]
        with pytest.raises(ValueError):
            await run_tasks_with_cleanup(tasks, cleanup)
        return tasks

    tasks = asyncio.run(run())
    assert tasks[0].cancelled()
    assert cleaned == [True]
