"""Tests for prowners.retrieval.ratelimit: admission, retry/backoff and quota pauses.

Run with:
    pytest tests/test_ratelimit.py --maxfail=1 -v --cov=prowners.retrieval.ratelimit --cov-report=term-missing
"""

import threading
from unittest.mock import MagicMock

import pytest
import requests

from prowners.retrieval import ratelimit
from prowners.retrieval.http_client import GitHubAPIError, GitHubResponse, RateInfo
from prowners.retrieval.ratelimit import CancelledError, MaxRetriesExceeded, RateLimiter


class FakeClock:
    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def sleeps(monkeypatch):
    recorded = []

    def fake_sleep(seconds, cancel=None):
        if cancel is not None and cancel.is_set():
            raise CancelledError("cancelled")
        if seconds > 0:
            recorded.append(seconds)

    monkeypatch.setattr(ratelimit, "sleep_or_cancel", fake_sleep)
    return recorded


def _ok(remaining=None, reset=None):
    return GitHubResponse(200, {}, rate=RateInfo(limit=5000, remaining=remaining, reset=reset))


def _error(status, remaining=None, reset=None):
    response = GitHubResponse(status, None, rate=RateInfo(remaining=remaining, reset=reset))
    return GitHubAPIError(f"HTTP {status}", status_code=status, response=response)


def _unlimited(**kwargs):
    kwargs.setdefault("wall_clock", lambda: 1_000.0)
    return RateLimiter(0, 1, clock=FakeClock(), **kwargs)


def test_admit_spends_burst_then_waits(sleeps):
    limiter = RateLimiter(1.0, 2, clock=FakeClock())
    limiter.admit()
    limiter.admit()
    assert sleeps == []
    limiter.admit()
    assert sleeps == [pytest.approx(1.0)]
    limiter.admit()
    assert sleeps[-1] == pytest.approx(2.0)


def test_admit_refills_over_time(sleeps):
    clock = FakeClock()
    limiter = RateLimiter(2.0, 1, clock=clock)
    limiter.admit()
    clock.now = 0.5
    limiter.admit()
    assert sleeps == []
    assert limiter.available_tokens == pytest.approx(0.0)


def test_zero_rate_means_unlimited(sleeps):
    limiter = RateLimiter(0, 1, clock=FakeClock())
    for _ in range(50):
        limiter.admit()
    assert sleeps == []


def test_admit_cancelled_before_start_raises(sleeps):
    limiter = RateLimiter(1.0, 1, clock=FakeClock())
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(CancelledError):
        limiter.admit(cancel)
    assert limiter.available_tokens == pytest.approx(1.0)


def test_cancelled_wait_returns_token(monkeypatch):
    limiter = RateLimiter(1.0, 1, clock=FakeClock())
    limiter.admit()

    def interrupted(seconds, cancel=None):
        raise CancelledError("cancelled while waiting")

    monkeypatch.setattr(ratelimit, "sleep_or_cancel", interrupted)
    with pytest.raises(CancelledError):
        limiter.admit(threading.Event())
    assert limiter.available_tokens == pytest.approx(0.0)


def test_sleep_or_cancel_honours_event():
    cancel = threading.Event()
    ratelimit.sleep_or_cancel(0, cancel)
    cancel.set()
    with pytest.raises(CancelledError):
        ratelimit.sleep_or_cancel(5.0, cancel)


def test_sleep_or_cancel_interrupted_mid_wait():
    cancel = threading.Event()
    timer = threading.Timer(0.05, cancel.set)
    timer.start()
    try:
        with pytest.raises(CancelledError):
            ratelimit.sleep_or_cancel(10.0, cancel)
    finally:
        timer.cancel()


def test_backoff_delay_doubles_with_jitter():
    limiter = RateLimiter(0, 1, base_delay=0.5, jitter_fraction=0.1)
    assert limiter.backoff_delay(0) == pytest.approx(0.55)
    assert limiter.backoff_delay(1) == pytest.approx(1.1)
    assert limiter.backoff_delay(3) == pytest.approx(4.4)


def test_retry_on_server_error_then_success(sleeps):
    limiter = _unlimited()
    op = MagicMock(side_effect=[_error(502), _ok()])
    resp = limiter.with_retry(op)
    assert resp.status_code == 200
    assert op.call_count == 2
    assert sleeps == [pytest.approx(0.55)]


def test_retry_on_transport_error(sleeps):
    limiter = _unlimited()
    op = MagicMock(side_effect=[requests.ConnectionError("reset"), _ok()])
    assert limiter.with_retry(op).status_code == 200
    assert op.call_count == 2


def test_quota_error_waits_for_reset(sleeps):
    limiter = _unlimited()
    op = MagicMock(side_effect=[_error(429, remaining=0, reset=1_030), _ok()])
    limiter.with_retry(op)
    assert sleeps == [pytest.approx(30.0)]


def test_forbidden_with_quota_left_is_not_retried(sleeps):
    limiter = _unlimited()
    op = MagicMock(side_effect=_error(403, remaining=10))
    with pytest.raises(GitHubAPIError):
        limiter.with_retry(op)
    assert op.call_count == 1


def test_not_found_returns_immediately(sleeps):
    limiter = _unlimited()
    op = MagicMock(side_effect=_error(404))
    with pytest.raises(GitHubAPIError) as excinfo:
        limiter.with_retry(op)
    assert excinfo.value.is_not_found
    assert op.call_count == 1
    assert sleeps == []


def test_max_retries_exceeded_after_bounded_attempts(sleeps):
    limiter = _unlimited(max_attempts=3)
    last = _error(500)
    op = MagicMock(side_effect=[_error(500), _error(500), last])
    with pytest.raises(MaxRetriesExceeded) as excinfo:
        limiter.with_retry(op)
    assert op.call_count == 3
    assert excinfo.value.attempts == 3
    assert excinfo.value.last_error is last
    assert excinfo.value.last_response is last.response
    # No sleep after the final attempt.
    assert len(sleeps) == 2


def test_success_with_exhausted_quota_blocks_until_reset(sleeps):
    limiter = _unlimited()
    limiter.with_retry(lambda: _ok(remaining=0, reset=1_045))
    assert sleeps == [pytest.approx(45.0)]


def test_exhausted_quota_skips_threshold_pause(sleeps):
    limiter = _unlimited(threshold=100, threshold_sleep=3_600.0)
    limiter.with_retry(lambda: _ok(remaining=0, reset=1_030))
    assert sleeps == [pytest.approx(30.0)]
    assert limiter.paused_for == 0.0


def test_threshold_pause_blocks_later_admissions(sleeps):
    clock = FakeClock()
    limiter = RateLimiter(0, 1, threshold=10, threshold_sleep=60.0, clock=clock, wall_clock=lambda: 0.0)
    limiter.with_retry(lambda: _ok(remaining=5, reset=3_600))
    assert sleeps == [pytest.approx(60.0)]
    assert limiter.paused_for == pytest.approx(60.0)

    limiter.admit()
    assert sleeps[-1] == pytest.approx(60.0)

    clock.now = 61.0
    sleeps.clear()
    limiter.admit()
    assert sleeps == []


def test_threshold_disabled_by_zero(sleeps):
    limiter = _unlimited(threshold=0)
    limiter.with_retry(lambda: _ok(remaining=1, reset=2_000))
    assert sleeps == []


def test_with_retry_cancelled_during_backoff(sleeps):
    limiter = _unlimited()
    cancel = threading.Event()

    def op():
        cancel.set()
        raise _error(500)

    with pytest.raises(CancelledError):
        limiter.with_retry(op, cancel)
