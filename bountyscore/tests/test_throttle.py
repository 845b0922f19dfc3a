from __future__ import annotations

import pytest

from bountyscore.throttle import Throttle, throttled


class FakeClock:
    def __init__(self):
        self.now = 100.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.mark.asyncio
async def test_first_call_does_not_wait(clock):
    throttle = Throttle(1.0, sleep=clock.sleep, clock=clock)
    await throttle.acquire()
    assert clock.sleeps == []


@pytest.mark.asyncio
async def test_back_to_back_calls_are_spaced(clock):
    throttle = Throttle(1.0, sleep=clock.sleep, clock=clock)
    await throttle.acquire()
    clock.now += 0.25
    await throttle.acquire()
    assert clock.sleeps == [pytest.approx(0.75)]


@pytest.mark.asyncio
async def test_no_wait_once_delay_elapsed(clock):
    throttle = Throttle(1.0, sleep=clock.sleep, clock=clock)
    await throttle.acquire()
    clock.now += 5
    await throttle.acquire()
    assert clock.sleeps == []


def test_backoff_doubles_and_caps():
    throttle = Throttle(0.3, max_delay=4.0)
    throttle.backoff()
    assert throttle.delay == 1.0
    throttle.backoff()
    throttle.backoff()
    throttle.backoff()
    assert throttle.delay == 4.0
    throttle.reset()
    assert throttle.delay == 0.3


@pytest.mark.asyncio
async def test_throttled_yields_in_order(clock):
    throttle = Throttle(0.5, sleep=clock.sleep, clock=clock)
    seen = [item async for item in throttled(["a", "b", "c"], throttle)]
    assert seen == ["a", "b", "c"]
    assert clock.sleeps == [0.5, 0.5]
