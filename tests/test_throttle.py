import threading

import pytest

from stadia_spider.rpc.throttle import Throttle


class FakeClock:
    def __init__(self):
        self.now = 100.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


def test_first_call_does_not_wait():
    clock = FakeClock()
    throttle = Throttle(2.0, clock=clock, sleep=clock.sleep)
    assert throttle.wait() == 0
    assert clock.sleeps == []


def test_calls_are_spaced_by_interval():
    clock = FakeClock()
    throttle = Throttle(2.0, clock=clock, sleep=clock.sleep)
    throttle.wait()
    clock.now += 0.5
    assert throttle.wait() == pytest.approx(1.5)
    assert throttle.wait() == pytest.approx(2.0)


def test_no_wait_after_idle_gap():
    clock = FakeClock()
    throttle = Throttle(2.0, clock=clock, sleep=clock.sleep)
    throttle.wait()
    clock.now += 10
    assert throttle.wait() == 0


def test_waiters_queue_for_slots():
    clock = FakeClock()
    lock = threading.Lock()
    waits = []
    # Time does not advance, so every caller reserves the next free slot.
    throttle = Throttle(1.0, clock=clock, sleep=lambda seconds: None)

    def worker():
        delay = throttle.wait()
        with lock:
            waits.append(delay)

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert sorted(waits) == [0, 1.0, 2.0, 3.0]


def test_call_wraps_function():
    clock = FakeClock()
    throttle = Throttle(1.0, clock=clock, sleep=clock.sleep)
    assert throttle(lambda a, b: a + b, 1, b=2) == 3


def test_negative_interval_rejected():
    with pytest.raises(ValueError):
        Throttle(-1)
