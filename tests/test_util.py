import pytest

from mdnsresponder.util import (
    HostIdentity,
    Scheduler,
    get_hostname,
    monotonic_time,
    rand_time_delta,
)


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


def test_monotonic_time_is_whole_and_non_decreasing():
    first = monotonic_time()
    second = monotonic_time()
    assert isinstance(first, int)
    assert second >= first


@pytest.mark.parametrize("t", [300, 3000, 75 * 60 * 1000])
def test_rand_time_delta_stays_within_spread(t):
    spread = t // 30
    for _ in range(50):
        value = rand_time_delta(t)
        assert t - spread // 2 <= value < t - spread // 2 + spread


def test_rand_time_delta_small_value_unchanged():
    assert rand_time_delta(10) == 10


def test_get_hostname_local_name_derived_from_label():
    identity = get_hostname()
    assert isinstance(identity, HostIdentity)
    assert identity.local == identity.label + ".local"


def test_scheduler_runs_only_due_timers():
    clock = FakeClock()
    sched = Scheduler(clock)
    calls = []
    sched.call_later(1.0, lambda: calls.append("a"))
    sched.call_later(2.0, lambda: calls.append("b"))
    assert sched.run_due() == 0
    clock.now += 1.0
    assert sched.run_due() == 1
    assert calls == ["a"]
    clock.now += 5
    assert sched.run_due() == 1
    assert calls == ["a", "b"]


def test_scheduler_cancel_and_pending():
    clock = FakeClock()
    sched = Scheduler(clock)
    calls = []
    handle = sched.call_later(0.5, lambda: calls.append(1))
    assert sched.pending(handle)
    sched.cancel(handle)
    assert not sched.pending(handle)
    clock.now += 1
    assert sched.run_due() == 0
    assert calls == []


def test_scheduler_fired_timer_not_pending():
    clock = FakeClock()
    sched = Scheduler(clock)
    handle = sched.call_later(0, lambda: None)
    sched.run_due()
    assert not sched.pending(handle)
    assert not sched.pending(None)


def test_scheduler_next_delay():
    clock = FakeClock()
    sched = Scheduler(clock)
    assert sched.next_delay() is None
    first = sched.call_later(3.0, lambda: None)
    sched.call_later(1.5, lambda: None)
    assert sched.next_delay() == pytest.approx(1.5)
    clock.now += 10
    assert sched.next_delay() == 0.0
    sched.run_due()
    assert sched.next_delay() is None
    assert not sched.pending(first)


def test_scheduler_callback_rescheduling_runs_next_time():
    clock = FakeClock()
    sched = Scheduler(clock)
    calls = []

    def tick():
        calls.append(clock.now)
        sched.call_later(0, tick)

    sched.call_later(0, tick)
    assert sched.run_due() == 1
    assert sched.run_due() == 1
    assert len(calls) == 2