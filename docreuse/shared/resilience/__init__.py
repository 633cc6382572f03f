"""Resilience patterns for upstream calls."""

from docreuse.shared.resilience.circuit_breaker import CircuitBreaker, CircuitState
from docreuse.shared.resilience.retry import RetryPolicy, retry_async

__all__ = ["CircuitBreaker", "CircuitState", "RetryPolicy", "retry_async"]
