"""Admission control, retry/backoff and quota-threshold pauses for API calls.

One ``RateLimiter`` is shared by every worker thread. It combines three
independent guards:

* a token bucket (``rate`` tokens per second, ``burst`` capacity) that every
  call must pass through ``admit`` before touching the network,
* ``with_retry``, which re-runs an operation on quota exhaustion, server
  errors and transport failures with exponential backoff, and blocks until
  the reported reset when a successful response says the quota is spent,
* a threshold pause: once a response reports ``remaining <= threshold`` all
  further admissions are held for ``threshold_sleep`` seconds.

Blocking calls accept an optional ``threading.Event``; setting it aborts the
wait with ``CancelledError``.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

import requests

from .http_client import GitHubAPIError, GitHubResponse

logger = logging.getLogger(__name__)


class CancelledError(RuntimeError):
    """Raised when a wait is interrupted by the cancellation event."""


class MaxRetriesExceeded(RuntimeError):
    """Raised once every attempt of ``with_retry`` has failed."""

    def __init__(self,
                 attempts: int,
                 last_error: Optional[BaseException],
                 last_response: Optional[GitHubResponse] = None) -> None:
        self.attempts = attempts
        self.last_error = last_error
        self.last_response = last_response
        super().__init__(f"max retries exceeded after {attempts} attempt(s): {last_error}")


def sleep_or_cancel(seconds: float, cancel: Optional[threading.Event] = None) -> None:
    """Sleep for ``seconds`` unless ``cancel`` fires first."""
    if cancel is not None and cancel.is_set():
        raise CancelledError("cancelled")
    if seconds <= 0:
        return
    if cancel is None:
        time.sleep(seconds)
        return
    if cancel.wait(seconds):
        raise CancelledError("cancelled while waiting")


class RateLimiter:
    """Thread-safe token bucket with retry and threshold handling."""

    def __init__(self,
                 rate: float,
                 burst: int,
                 *,
                 max_attempts: int = 5,
                 base_delay: float = 0.5,
                 jitter_fraction: float = 0.1,
                 threshold: int = 0,
                 threshold_sleep: float = 3600.0,
                 clock: Callable[[], float] = time.monotonic,
                 wall_clock: Callable[[], float] = time.time) -> None:
        self.rate = float(rate)
        self.burst = max(1, int(burst))
        self.max_attempts = max(1, int(max_attempts))
        self.base_delay = max(0.0, float(base_delay))
        self.jitter_fraction = max(0.0, float(jitter_fraction))
        self.threshold = max(0, int(threshold))
        self.threshold_sleep = max(0.0, float(threshold_sleep))
        self._clock = clock
        self._wall_clock = wall_clock
        self._lock = threading.Lock()
        self._tokens = float(self.burst)
        self._last_refill = clock()
        self._paused_until = 0.0

    # -- token bucket -----------------------------------------------------

    def _refill(self, now: float) -> None:
        elapsed = max(0.0, now - self._last_refill)
        self._tokens = min(float(self.burst), self._tokens + elapsed * self.rate)
        self._last_refill = now

    def _reserve(self) -> float:
        """Take a token (possibly on credit) and return how long to wait for it."""
        with self._lock:
            now = self._clock()
            pause = max(0.0, self._paused_until - now)
            if self.rate <= 0:
                return pause
            self._refill(now)
            self._tokens -= 1.0
            wait = 0.0 if self._tokens >= 0 else -self._tokens / self.rate
            return max(wait, pause)

    def _release(self) -> None:
        if self.rate <= 0:
            return
        with self._lock:
            self._tokens = min(float(self.burst), self._tokens + 1.0)

    def admit(self, cancel: Optional[threading.Event] = None) -> None:
        """Block until a token is available; raise ``CancelledError`` if cancelled."""
        if cancel is not None and cancel.is_set():
            raise CancelledError("cancelled before admission")
        delay = self._reserve()
        if delay <= 0:
            return
        try:
            sleep_or_cancel(delay, cancel)
        except CancelledError:
            self._release()
            raise

    @property
    def available_tokens(self) -> float:
        with self._lock:
            self._refill(self._clock())
            return self._tokens

    # -- threshold pause --------------------------------------------------

    def pause(self, seconds: float, cancel: Optional[threading.Event] = None) -> None:
        """Hold every admission for ``seconds`` and sleep through it."""
        with self._lock:
            now = self._clock()
            self._paused_until = max(self._paused_until, now + seconds)
            wait = self._paused_until - now
        sleep_or_cancel(wait, cancel)

    @property
    def paused_for(self) -> float:
        with self._lock:
            return max(0.0, self._paused_until - self._clock())

    # -- retry ------------------------------------------------------------

    def backoff_delay(self, attempt: int) -> float:
        """``base * 2**attempt`` plus a fixed jitter fraction (attempt is 0-based)."""
        delay = self.base_delay * (2 ** attempt)
        return delay + delay * self.jitter_fraction

    def _after_success(self,
                       response: GitHubResponse,
                       cancel: Optional[threading.Event]) -> None:
        rate = getattr(response, "rate", None)
        if rate is None or rate.remaining is None:
            return
        if rate.remaining <= 0:
            wait = rate.seconds_until_reset(self._wall_clock())
            if wait > 0:
                logger.warning("[rate-limit] quota exhausted; waiting %.0fs for reset", wait)
                sleep_or_cancel(wait, cancel)
        elif self.threshold > 0 and rate.remaining <= self.threshold:
            logger.warning(
                "[rate-limit] remaining quota %s <= threshold %s; pausing %.0fs",
                rate.remaining,
                self.threshold,
                self.threshold_sleep,
            )
            self.pause(self.threshold_sleep, cancel)

    def with_retry(self,
                   op: Callable[[], GitHubResponse],
                   cancel: Optional[threading.Event] = None,
                   *,
                   description: str = "request") -> GitHubResponse:
        """Run ``op`` through admission control, retrying transient failures."""
        last_error: Optional[BaseException] = None
        last_response: Optional[GitHubResponse] = None

        for attempt in range(self.max_attempts):
            self.admit(cancel)
            try:
                response = op()
            except GitHubAPIError as exc:
                last_error = exc
                last_response = exc.response
                if not (exc.is_quota_exhausted or exc.is_server_error):
                    raise
                delay = self.backoff_delay(attempt)
                if exc.is_quota_exhausted:
                    delay = max(delay, exc.rate.seconds_until_reset(self._wall_clock()))
                reason = f"HTTP {exc.status_code}"
            except requests.RequestException as exc:
                last_error = exc
                last_response = None
                delay = self.backoff_delay(attempt)
                reason = str(exc)
            else:
                self._after_success(response, cancel)
                return response

            if attempt + 1 >= self.max_attempts:
                break
            logger.warning(
                "[retry %d/%d] %s: %s -> sleep %.1fs",
                attempt + 1,
                self.max_attempts,
                description,
                reason,
                delay,
            )
            sleep_or_cancel(delay, cancel)

        raise MaxRetriesExceeded(self.max_attempts, last_error, last_response)


__all__ = [
    "CancelledError",
    "MaxRetriesExceeded",
    "RateLimiter",
    "sleep_or_cancel",
]
