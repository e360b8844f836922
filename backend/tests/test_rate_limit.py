from unittest.mock import Mock

from app.jobs.sync.rate_limit import RateLimiter


def test_requests_are_spaced_across_callers():
    sleeps = []
    limiter = RateLimiter(1.0, clock=lambda: 100.0, sleep=sleeps.append)

    waits = [limiter.acquire() for _ in range(3)]

    assert waits == [0.0, 1.0, 2.0]
    assert sleeps == [1.0, 2.0]


def test_no_wait_once_interval_has_passed():
    now = [0.0]
    sleeps = []
    limiter = RateLimiter(0.5, clock=lambda: now[0], sleep=sleeps.append)

    limiter.acquire()
    now[0] = 10.0
    assert limiter.acquire() == 0.0
    assert sleeps == []


def test_zero_interval_never_sleeps():
    sleep = Mock()
    limiter = RateLimiter(0, sleep=sleep)
    assert limiter.acquire() == 0.0
    sleep.assert_not_called()

