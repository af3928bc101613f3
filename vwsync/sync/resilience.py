"""
Retry and circuit-breaker helpers for the cluster and vault boundaries.

Retries use tenacity with bounded exponential backoff. The breaker opens
after a run of consecutive failures so a dead dependency fails fast instead
of consuming the full retry budget on every call.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from typing import Any, TypeVar

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

CIRCUIT_BREAKER_THRESHOLD = 5
CIRCUIT_BREAKER_RESET_SECONDS = 30.0
RETRY_ATTEMPTS = 3


class CircuitOpenError(Exception):
    """Raised when a call is refused because the breaker is open."""

    def __init__(self, name: str, retry_in: float):
        super().__init__(f"{name} circuit open, retry in {retry_in:.0f}s")
        self.name = name
        self.retry_in = retry_in


class CircuitBreaker:
    """Consecutive-failure breaker: closed → open → half-open → closed."""

    def __init__(
        self,
        name: str,
        threshold: int = CIRCUIT_BREAKER_THRESHOLD,
        reset_seconds: float = CIRCUIT_BREAKER_RESET_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.threshold = threshold
        self.reset_seconds = reset_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._failures = 0
        self._opened_at: float | None = None
        self._trial_in_flight = False

    @property
    def state(self) -> str:
        with self._lock:
            return self._state()

    def _state(self) -> str:
        if self._opened_at is None:
            return "closed"
        if self._clock() - self._opened_at >= self.reset_seconds:
            return "half-open"
        return "open"

    def before_call(self) -> None:
        """Raise CircuitOpenError if the call must not proceed."""
        with self._lock:
            if self._opened_at is None:
                return
            elapsed = self._clock() - self._opened_at
            if elapsed >= self.reset_seconds and not self._trial_in_flight:
                self._trial_in_flight = True
                return
            remaining = self.reset_seconds - elapsed
            raise CircuitOpenError(self.name, max(remaining, 0.0))

    def record_success(self) -> None:
        with self._lock:
            if self._opened_at is not None:
                logger.info("Circuit %s closed", self.name)
            self._failures = 0
            self._opened_at = None
            self._trial_in_flight = False

    def record_failure(self) -> None:
        with self._lock:
            self._failures += 1
            self._trial_in_flight = False
            if self._opened_at is not None or self._failures >= self.threshold:
                if self._opened_at is None:
                    logger.warning(
                        "Circuit %s opened after %d consecutive failures", self.name, self._failures
                    )
                self._opened_at = self._clock()


def call_with_resilience(
    fn: Callable[..., T],
    *args: Any,
    breaker: CircuitBreaker,
    is_transient: Callable[[BaseException], bool],
    is_failure: Callable[[BaseException], bool] | None = None,
    attempts: int = RETRY_ATTEMPTS,
    wait_min: float = 1.0,
    wait_max: float = 8.0,
    **kwargs: Any,
) -> T:
    """Call ``fn`` through the breaker, retrying transient errors.

    ``is_failure`` decides whether a final error counts against the breaker;
    by default only transient errors do (a 404 is an answer, not an outage).
    """
    breaker.before_call()
    counts = is_failure or is_transient
    retrying = Retrying(
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=1, min=wait_min, max=wait_max),
        retry=retry_if_exception(is_transient),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    try:
        result = retrying(fn, *args, **kwargs)
    except Exception as e:
        if counts(e):
            breaker.record_failure()
        else:
            breaker.record_success()
        raise
    breaker.record_success()
    return result
