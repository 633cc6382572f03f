"""
Thread-safe circuit breaker for calls to the vector index and chunk store.

Usage:
    cb = CircuitBreaker(name="vector_index", failure_threshold=5, recovery_timeout=30.0)

    if not cb.allow_request():
        raise UpstreamServiceError("vector index circuit open")
    try:
        result = await client.query(...)
        cb.record_success()
    except Exception:
        cb.record_failure()
        raise
"""

from __future__ import annotations

import logging
import threading
import time
from enum import Enum
from typing import Optional

from ..config import ResilienceConfig

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"  # requests pass through
    OPEN = "open"  # fail fast
    HALF_OPEN = "half_open"  # one probe in flight


class CircuitBreaker:
    """
    Consecutive-failure circuit breaker.

    CLOSED counts consecutive failures and opens at ``failure_threshold``.
    OPEN rejects until ``recovery_timeout`` seconds have passed, then admits a
    single probe (HALF_OPEN). The probe's outcome closes or reopens the circuit.

    State transitions are guarded by a ``threading.Lock`` so one breaker can be
    shared by the event loop and executor threads.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0,
    ) -> None:
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at: Optional[float] = None
        self._probe_in_flight = False
        self._lock = threading.Lock()

        logger.debug(
            "circuit_breaker_initialized",
            extra={
                "breaker": name,
                "failure_threshold": failure_threshold,
                "recovery_timeout": recovery_timeout,
            },
        )

    @classmethod
    def from_config(cls, name: str, config: ResilienceConfig) -> "CircuitBreaker":
        return cls(
            name=name,
            failure_threshold=config.circuit_breaker_failure_threshold,
            recovery_timeout=config.circuit_breaker_recovery_timeout,
        )

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    @property
    def failure_count(self) -> int:
        with self._lock:
            return self._failure_count

    def allow_request(self) -> bool:
        """
        Check whether a call may proceed.

        Returns:
            True if the call is admitted, False if the caller should fail fast
        """
        with self._lock:
            if self._state == CircuitState.CLOSED:
                return True

            if self._state == CircuitState.OPEN:
                elapsed = time.monotonic() - (self._opened_at or 0.0)
                if elapsed < self.recovery_timeout:
                    return False
                self._state = CircuitState.HALF_OPEN
                self._probe_in_flight = True
                logger.info(
                    "circuit_breaker_half_open",
                    extra={"breaker": self.name, "elapsed_seconds": elapsed},
                )
                return True

            # HALF_OPEN: only the probe is admitted
            if self._probe_in_flight:
                return False
            self._probe_in_flight = True
            return True

    def record_success(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                logger.info(
                    "circuit_breaker_closed",
                    extra={"breaker": self.name, "reason": "probe_succeeded"},
                )
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._probe_in_flight = False

    def record_failure(self) -> None:
        with self._lock:
            self._failure_count += 1
            self._probe_in_flight = False

            if self._state == CircuitState.HALF_OPEN:
                self._open()
                logger.warning(
                    "circuit_breaker_reopened",
                    extra={"breaker": self.name, "reason": "probe_failed"},
                )
            elif (
                self._state == CircuitState.CLOSED
                and self._failure_count >= self.failure_threshold
            ):
                self._open()
                logger.warning(
                    "circuit_breaker_opened",
                    extra={
                        "breaker": self.name,
                        "failure_count": self._failure_count,
                        "threshold": self.failure_threshold,
                    },
                )

    def release_probe(self) -> None:
        """Return an unused half-open probe slot (the call was cancelled)."""
        with self._lock:
            self._probe_in_flight = False

    def _open(self) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = time.monotonic()

    def reset(self) -> None:
        with self._lock:
            previous_state = self._state
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._opened_at = None
            self._probe_in_flight = False
            logger.info(
                "circuit_breaker_reset",
                extra={"breaker": self.name, "previous_state": previous_state.value},
            )

    def is_open(self) -> bool:
        with self._lock:
            return self._state == CircuitState.OPEN

    def __repr__(self) -> str:
        with self._lock:
            return (
                f"CircuitBreaker(name={self.name!r}, state={self._state.value}, "
                f"failures={self._failure_count}/{self.failure_threshold})"
            )
