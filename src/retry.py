"""
ResolveChain - Retry Logic with Exponential Backoff

Retry utilities for the outer layers that talk to the external ledger:
- API handlers that submit attestations
- CLI commands that query the ledger
- HTTP ledger transport (circuit breaker only)

The Resolution Engine never retries; it is a pure state transition.
Callers decide whether an error is worth retrying by looking at its
base class (RetryableError / NonRetryableError) or its type.

Usage:
    from retry import retry_call, RetryConfig

    attestation = retry_call(gateway.attest, args=(resolution,))

Environment Variables:
    RETRY_MAX_ATTEMPTS=3
    RETRY_BASE_DELAY=1.0
    RETRY_MAX_DELAY=60.0
    RETRY_EXPONENTIAL_BASE=2.0
    RETRY_JITTER=0.1
"""

import logging
import os
import random
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Type

logger = logging.getLogger(__name__)


class RetryableError(Exception):
    """Base class for errors that should trigger a retry."""
    pass


class NonRetryableError(Exception):
    """Base class for errors that should NOT trigger a retry."""
    pass


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"      # Normal operation, requests allowed
    OPEN = "open"          # Failures exceeded threshold, requests blocked
    HALF_OPEN = "half_open"  # Testing if service recovered


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_retries: int = 3
    max_delay: float = 60.0

    base_delay: float = 1.0
    exponential_base: float = 2.0
    jitter: float = 0.1

    # Anything not listed here (and not a RetryableError) fails fast
    retryable_exceptions: tuple = (
        ConnectionError,
        TimeoutError,
    )

    log_retries: bool = True
    log_level: int = logging.WARNING

    @classmethod
    def from_env(cls) -> "RetryConfig":
        """Create configuration from environment variables."""
        return cls(
            max_retries=int(os.getenv("RETRY_MAX_ATTEMPTS", "3")),
            base_delay=float(os.getenv("RETRY_BASE_DELAY", "1.0")),
            max_delay=float(os.getenv("RETRY_MAX_DELAY", "60.0")),
            exponential_base=float(os.getenv("RETRY_EXPONENTIAL_BASE", "2.0")),
            jitter=float(os.getenv("RETRY_JITTER", "0.1")),
        )


class CircuitBreaker:
    """
    Circuit breaker around an unreliable dependency.

    After ``failure_threshold`` consecutive failures the circuit opens and
    calls are refused until ``recovery_timeout`` seconds have passed; the
    next call is then let through as a probe.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time = 0.0
        self._lock = threading.Lock()

    @property
    def state(self) -> CircuitState:
        """Get current circuit state."""
        with self._lock:
            if self._state == CircuitState.OPEN:
                if time.time() - self._last_failure_time >= self.recovery_timeout:
                    self._state = CircuitState.HALF_OPEN
                    logger.info(f"Circuit {self.name}: OPEN -> HALF_OPEN")

            return self._state

    def is_allowed(self) -> bool:
        """Check if requests are allowed."""
        return self.state != CircuitState.OPEN

    def record_success(self):
        """Record a successful request."""
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._state = CircuitState.CLOSED
                self._failure_count = 0
                logger.info(f"Circuit {self.name}: HALF_OPEN -> CLOSED (recovered)")
            elif self._state == CircuitState.CLOSED:
                self._failure_count = 0

    def record_failure(self):
        """Record a failed request."""
        with self._lock:
            self._failure_count += 1
            self._last_failure_time = time.time()

            if self._state == CircuitState.HALF_OPEN:
                self._state = CircuitState.OPEN
                logger.warning(f"Circuit {self.name}: HALF_OPEN -> OPEN (still failing)")

            elif self._state == CircuitState.CLOSED:
                if self._failure_count >= self.failure_threshold:
                    self._state = CircuitState.OPEN
                    logger.warning(
                        f"Circuit {self.name}: CLOSED -> OPEN "
                        f"(failures: {self._failure_count})"
                    )

    def reset(self):
        """Reset the circuit breaker."""
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._last_failure_time = 0.0


_circuit_breakers: dict[str, CircuitBreaker] = {}
_circuit_breakers_lock = threading.Lock()


def get_circuit_breaker(name: str, **kwargs) -> CircuitBreaker:
    """Get or create a circuit breaker by name."""
    with _circuit_breakers_lock:
        if name not in _circuit_breakers:
            _circuit_breakers[name] = CircuitBreaker(name, **kwargs)
        return _circuit_breakers[name]


def calculate_delay(
    attempt: int,
    base_delay: float,
    exponential_base: float,
    max_delay: float,
    jitter: float
) -> float:
    """
    Calculate delay with exponential backoff and jitter.

    Args:
        attempt: Current attempt number (0-indexed)
        base_delay: Initial delay in seconds
        exponential_base: Multiplier for exponential growth
        max_delay: Maximum delay cap
        jitter: Random jitter factor (0.0 to 1.0)

    Returns:
        Delay in seconds
    """
    delay = min(base_delay * (exponential_base ** attempt), max_delay)

    if jitter > 0:
        delay += delay * jitter * (2 * random.random() - 1)

    return max(0, delay)


def is_retryable_exception(
    exception: Exception,
    retryable_types: tuple[Type[Exception], ...]
) -> bool:
    """Check if an exception should trigger a retry."""
    if isinstance(exception, NonRetryableError):
        return False

    if isinstance(exception, RetryableError):
        return True

    return isinstance(exception, retryable_types)


def is_retryable_status_code(status_code: int) -> bool:
    """Check if an HTTP status code from the ledger gateway is transient."""
    return status_code in (408, 429, 500, 502, 503, 504)


def retry_call(
    func: Callable,
    args: tuple = (),
    kwargs: dict | None = None,
    config: RetryConfig | None = None,
    on_retry: Callable[[int, Exception, float], None] | None = None,
) -> Any:
    """
    Execute a function with retry logic.

    Args:
        func: Function to call
        args: Positional arguments
        kwargs: Keyword arguments
        config: Retry configuration
        on_retry: Optional callback (attempt, exception, delay) before each wait

    Returns:
        Result of the function call
    """
    config = config or RetryConfig()
    kwargs = kwargs or {}

    for attempt in range(config.max_retries + 1):
        try:
            return func(*args, **kwargs)

        except Exception as e:
            if not is_retryable_exception(e, config.retryable_exceptions):
                raise

            if attempt >= config.max_retries:
                if config.log_retries:
                    logger.log(
                        config.log_level,
                        f"Max retries ({config.max_retries}) exceeded for "
                        f"{getattr(func, '__name__', func)}: {e}"
                    )
                raise

            delay = calculate_delay(
                attempt,
                config.base_delay,
                config.exponential_base,
                config.max_delay,
                config.jitter
            )

            if config.log_retries:
                logger.log(
                    config.log_level,
                    f"Retry {attempt + 1}/{config.max_retries} after {delay:.2f}s: {e}"
                )

            if on_retry:
                on_retry(attempt + 1, e, delay)

            time.sleep(delay)
