import threading
import time

import pytest

from casebook.limiter import VIP_CTX_KEY, Monitor, RateLimitMonitor, State, VipLimiter


class FixedMonitor(Monitor):
    def __init__(self, value):
        self.value = value

    def qps(self):
        return self.value


def feed(limiter, qps, times):
    for _ in range(times):
        limiter.observe(qps)


def test_vip_state_machine():
    limiter = VipLimiter(1000, FixedMonitor(0))
    feed(limiter, 1000, 5)
    state, _ = limiter.state_and_pass_rate()
    assert state is State.RATE_LIMIT

    feed(limiter, 700, 5)
    assert limiter.state_and_pass_rate() == (State.RECOVERING, 10)

    feed(limiter, 800, 5)
    assert limiter.state_and_pass_rate() == (State.RECOVERING, 20)

    feed(limiter, 1000, 3)
    assert limiter.state_and_pass_rate() == (State.RECOVERING, 10)

    feed(limiter, 500, 44)
    assert limiter.state_and_pass_rate() == (State.RECOVERING, 90)
    feed(limiter, 500, 1)
    assert limiter.state_and_pass_rate() == (State.HEALTHY, 100)


def test_healthy_counter_resets_on_low_sample():
    limiter = VipLimiter(1000, FixedMonitor(0))
    feed(limiter, 1000, 4)
    limiter.observe(10)
    feed(limiter, 1000, 4)
    assert limiter.state_and_pass_rate()[0] is State.HEALTHY
    limiter.observe(1000)
    assert limiter.state_and_pass_rate()[0] is State.RATE_LIMIT


def test_rate_limit_needs_below_eighty_percent():
    limiter = VipLimiter(1000, FixedMonitor(0))
    feed(limiter, 1000, 5)
    feed(limiter, 800, 10)
    assert limiter.state_and_pass_rate()[0] is State.RATE_LIMIT


def test_pass_rate_never_negative():
    limiter = VipLimiter(1000, FixedMonitor(0))
    feed(limiter, 1000, 5)
    feed(limiter, 0, 5)
    feed(limiter, 1000, 9)
    assert limiter.state_and_pass_rate() == (State.RECOVERING, 0)


def test_limit_per_state():
    rolls = iter([5, 50])
    limiter = VipLimiter(1000, FixedMonitor(0), roll=lambda: next(rolls))
    vip = {VIP_CTX_KEY: 1}
    assert limiter.limit({}) is False
    feed(limiter, 1000, 5)
    assert limiter.limit(None) is True
    assert limiter.limit(vip) is False
    feed(limiter, 0, 5)
    assert limiter.limit({}) is False
    assert limiter.limit({}) is True
    assert limiter.limit(vip) is False


@pytest.mark.parametrize("value", [True, "1", 2])
def test_non_vip_values_are_limited(value):
    limiter = VipLimiter(1000, FixedMonitor(0))
    feed(limiter, 1000, 5)
    assert limiter.limit({VIP_CTX_KEY: value}) is True


def test_background_loop_reads_monitor():
    limiter = VipLimiter(1000, FixedMonitor(2000), interval=0.005)
    with limiter:
        deadline = time.monotonic() + 5
        while time.monotonic() < deadline and limiter.state_and_pass_rate()[0] is State.HEALTHY:
            time.sleep(0.01)
    assert limiter.state_and_pass_rate()[0] is State.RATE_LIMIT


def test_start_twice_raises():
    limiter = VipLimiter(1000, FixedMonitor(0), interval=0.01)
    limiter.start()
    try:
        with pytest.raises(RuntimeError):
            limiter.start()
    finally:
        limiter.stop()


def test_rate_limit_monitor_counts_in_flight():
    mon = RateLimitMonitor()
    threads = [threading.Thread(target=mon.incr) for _ in range(50)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert mon.qps() == 50
    for _ in range(50):
        mon.decr()
    assert mon.qps() == 0