"""
Retry with exponential backoff and a per-host circuit breaker.

Two kinds of failure are retried, each with its own policy:

- Transport failures from Graph and SharePoint (timeouts, throttling, 5xx).
  A ``Retry-After`` hint carried by the error takes precedence over the
  computed backoff, capped at the policy's maximum delay.
- Lost compare-and-set races on the sequence counter, and waits for another
  minter's claim on the same document. These are resolved by re-reading, so
  delays are short and attempts many.

The circuit breaker is shared by all worker threads of a run and counts only
retryable failures: a host that answers 404 or 403 is up.
"""

from __future__ import annotations

import random
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Tuple, Type, TypeVar

from .error_tracker import ConcurrencyConflictError, TransientTransportError
from .logging_manager import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 32.0
    jitter: bool = True
    retry_on_exceptions: Tuple[Type[BaseException], ...] = (TransientTransportError,)

    @classmethod
    def for_transport(cls, max_attempts: int = 3) -> "RetryPolicy":
        return cls(max_attempts=max_attempts, base_delay_seconds=1.0, max_delay_seconds=16.0)

    @classmethod
    def for_conflicts(cls, max_attempts: int = 25) -> "RetryPolicy":
        return cls(
            max_attempts=max_attempts,
            base_delay_seconds=0.01,
            max_delay_seconds=0.5,
            retry_on_exceptions=(ConcurrencyConflictError,),
        )

    def compute_backoff(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """Delay before retry number ``attempt + 1``."""
        if retry_after is not None:
            return min(max(retry_after, 0.0), self.max_delay_seconds)
        delay = min(self.base_delay_seconds * (2 ** attempt), self.max_delay_seconds)
        if self.jitter:
            # Spread concurrent minters and workers apart
            delay = delay * (0.5 + random.random())
        return delay


@dataclass
class CircuitState:
    failures: int = 0
    open_until: Optional[float] = None


@dataclass
class CircuitBreaker:
    failure_threshold: int = 3
    reset_timeout_seconds: float = 60.0
    _state: Dict[str, CircuitState] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def is_open(self, key: str) -> bool:
        with self._lock:
            state = self._state.get(key)
            if not state or state.open_until is None:
                return False
            if time.time() >= state.open_until:
                # Half-open: let the next call try the host
                state.open_until = None
                return False
            return True

    def record_success(self, key: str) -> None:
        with self._lock:
            self._state.pop(key, None)

    def record_failure(self, key: str) -> None:
        with self._lock:
            state = self._state.setdefault(key, CircuitState())
            state.failures += 1
            if state.failures >= self.failure_threshold:
                state.open_until = time.time() + self.reset_timeout_seconds
                logger.warning(
                    f"Circuit opened for {key}",
                    extra={'details': {'failures': state.failures, 'reset_timeout_seconds': self.reset_timeout_seconds}},
                )

    def get_state_snapshot(self) -> Dict[str, Dict[str, object]]:
        with self._lock:
            return {
                key: {
                    "failures": state.failures,
                    "open_until": datetime.fromtimestamp(state.open_until, tz=timezone.utc).isoformat()
                    if state.open_until else None,
                }
                for key, state in self._state.items()
            }


def with_retry(fn: Callable[[], T], *, policy: RetryPolicy, circuit_breaker: Optional[CircuitBreaker] = None,
               circuit_key: Optional[str] = None) -> T:
    """
    Call ``fn`` until it succeeds or the policy gives up.

    Only the policy's exception types are retried; anything else propagates
    immediately and leaves the circuit untouched. When the circuit for
    ``circuit_key`` is open the call fails fast with TransientTransportError.
    """
    breaker = circuit_breaker if circuit_key else None
    if breaker and breaker.is_open(circuit_key):
        raise TransientTransportError(
            f"Circuit open for {circuit_key}", source_id=circuit_key,
            recovery_suggestion="The host failed repeatedly; the next run will try it again.",
        )

    for attempt in range(policy.max_attempts):
        try:
            result = fn()
        except policy.retry_on_exceptions as exc:
            if attempt >= policy.max_attempts - 1:
                if breaker:
                    breaker.record_failure(circuit_key)
                raise
            delay = policy.compute_backoff(attempt, getattr(exc, 'retry_after', None))
            logger.debug(
                f"Retrying after {type(exc).__name__} (attempt {attempt + 1}/{policy.max_attempts})",
                extra={'details': {'delay_seconds': round(delay, 3), 'circuit_key': circuit_key}},
            )
            time.sleep(delay)
        else:
            if breaker:
                breaker.record_success(circuit_key)
            return result

    raise ValueError("RetryPolicy.max_attempts must be at least 1")
