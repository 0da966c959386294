"""Retry and circuit-breaker wrappers shared by every I/O boundary.

``ErrorHandler.execute_with_retry`` retries an operation with exponential
backoff, but only when the raised error matches one of the policy's
retryable signatures (message substring, ``code`` attribute, errno name or
exception class name). ``ErrorHandler.execute_with_circuit_breaker`` keeps
one closed/open/half-open state machine per operation name:

- CLOSED: calls pass through; consecutive failures are counted and the
  breaker opens once ``failure_threshold`` is reached.
- OPEN: calls fail fast with ``CircuitBreakerOpenError`` until
  ``reset_timeout`` has elapsed.
- HALF_OPEN: exactly one trial call is admitted. Success closes the breaker,
  failure reopens it and restarts the timeout. A cancelled trial frees the
  slot without counting as a failure.

Breaker state is guarded by a lock so concurrent callers sharing an
operation name see one consistent state machine.
"""

import asyncio
import errno
import inspect
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Optional, Set, TypeVar, Union

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from .events import EventBus
from .models import (
    CircuitBreakerConfig,
    CircuitBreakerState,
    CircuitState,
    ErrorStats,
    RetryConfig,
    utcnow,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")
Operation = Callable[[], Union[Awaitable[T], T]]

DEFAULT_RETRY_CONFIGS: Dict[str, RetryConfig] = {
    "database": RetryConfig(
        max_retries=3,
        initial_delay=1.0,
        max_delay=10.0,
        backoff_multiplier=2,
        retryable_errors=["ECONNREFUSED", "ETIMEDOUT", "ENOTFOUND", "database is locked"],
    ),
    "api": RetryConfig(
        max_retries=3,
        initial_delay=0.5,
        max_delay=5.0,
        backoff_multiplier=2,
        retryable_errors=[
            "ECONNREFUSED", "ETIMEDOUT", "ENOTFOUND", "ConnectError",
            "TimeoutException", "429", "502", "503", "504",
        ],
    ),
    "file": RetryConfig(
        max_retries=2,
        initial_delay=0.1,
        max_delay=1.0,
        backoff_multiplier=2,
        retryable_errors=["EBUSY", "EMFILE", "ENFILE"],
    ),
    "stream": RetryConfig(
        max_retries=5,
        initial_delay=1.0,
        max_delay=30.0,
        backoff_multiplier=2,
        retryable_errors=["ECONNREFUSED", "ETIMEDOUT", "ENOTFOUND"],
    ),
}


class CircuitBreakerOpenError(Exception):
    """Raised instead of calling an operation whose breaker is open."""

    code = "CIRCUIT_OPEN"

    def __init__(self, operation_name: str, message: str):
        super().__init__(message)
        self.operation_name = operation_name


def error_signatures(exc: BaseException) -> Set[str]:
    signatures = {cls.__name__ for cls in type(exc).__mro__}
    code = getattr(exc, "code", None)
    if code is not None:
        signatures.add(str(code))
    errno_value = getattr(exc, "errno", None)
    if isinstance(errno_value, int) and errno_value in errno.errorcode:
        signatures.add(errno.errorcode[errno_value])
    return signatures


def is_retryable(exc: BaseException, retryable_errors) -> bool:
    message = str(exc).lower()
    signatures = error_signatures(exc)
    return any(
        candidate.lower() in message or candidate in signatures
        for candidate in retryable_errors
    )


def error_code(exc: BaseException) -> str:
    code = getattr(exc, "code", None)
    if isinstance(code, str) and code:
        return code
    errno_value = getattr(exc, "errno", None)
    if isinstance(errno_value, int) and errno_value in errno.errorcode:
        return errno.errorcode[errno_value]

    message = str(exc).lower()
    if "timeout" in message or "timed out" in message:
        return "TIMEOUT"
    if "connection" in message:
        return "CONNECTION_ERROR"
    if "not found" in message:
        return "NOT_FOUND"
    if "permission" in message:
        return "PERMISSION_DENIED"
    if "validation" in message:
        return "VALIDATION_ERROR"
    return type(exc).__name__


async def _call(operation: Operation) -> Any:
    result = operation()
    if inspect.isawaitable(result):
        result = await result
    return result


@dataclass
class _Breaker:
    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    last_failure_time: Optional[datetime] = None
    next_attempt_time: Optional[datetime] = None
    reopen_at: float = 0.0
    trial_in_flight: bool = False

    def snapshot(self) -> CircuitBreakerState:
        return CircuitBreakerState(
            state=self.state,
            failure_count=self.failure_count,
            last_failure_time=self.last_failure_time,
            next_attempt_time=self.next_attempt_time,
        )


class ErrorHandler:
    """Owns retry policies, per-operation error statistics and circuit breakers."""

    def __init__(
        self,
        events: Optional[EventBus] = None,
        circuit_config: Optional[CircuitBreakerConfig] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.events = events or EventBus()
        self.circuit_config = circuit_config or CircuitBreakerConfig()
        self._sleep = sleep
        self._clock = clock
        self._lock = threading.RLock()
        self._retry_configs: Dict[str, RetryConfig] = dict(DEFAULT_RETRY_CONFIGS)
        self._error_stats: Dict[str, ErrorStats] = {}
        self._breakers: Dict[str, _Breaker] = {}

    # retry ------------------------------------------------------------------

    def register_retry_config(self, operation_name: str, config: RetryConfig) -> None:
        self._retry_configs[operation_name] = config

    def get_retry_config(self, operation_name: str) -> Optional[RetryConfig]:
        return self._retry_configs.get(operation_name)

    async def execute_with_retry(
        self,
        operation_name: str,
        operation: Operation,
        config: Optional[RetryConfig] = None,
    ) -> Any:
        """Run ``operation``, retrying errors that match the policy's signatures.

        Non-matching errors propagate after the first attempt. Matching errors
        are retried up to ``max_retries`` times, sleeping
        ``min(initial_delay * backoff_multiplier ** (attempt - 1), max_delay)``
        between attempts; the last error is re-raised once retries run out.
        """
        config = config or self._retry_configs.get(operation_name)
        if config is None:
            raise LookupError(f"No retry configuration found for operation: {operation_name}")

        retrying = AsyncRetrying(
            stop=stop_after_attempt(config.max_retries + 1),
            wait=wait_exponential(
                multiplier=config.initial_delay,
                exp_base=config.backoff_multiplier,
                max=config.max_delay,
            ),
            retry=retry_if_exception(
                lambda exc: is_retryable(exc, config.retryable_errors)
            ),
            before_sleep=lambda state: self._before_retry(operation_name, state, config),
            sleep=self._sleep,
            reraise=True,
        )

        async for attempt in retrying:
            with attempt:
                try:
                    result = await _call(operation)
                except Exception as exc:
                    self._record_failure(
                        operation_name, exc, attempt.retry_state.attempt_number, config
                    )
                    raise

        self.reset_error_stats(operation_name)
        return result

    def _record_failure(
        self, operation_name: str, exc: Exception, attempt: int, config: RetryConfig
    ) -> None:
        with self._lock:
            stats = self._error_stats.setdefault(operation_name, ErrorStats())
            stats.count += 1
            stats.last_occurrence = utcnow()

        context = {
            "operation": operation_name,
            "attempt": attempt,
            "max_attempts": config.max_retries + 1,
            "error": str(exc),
            "error_type": type(exc).__name__,
        }
        self.events.publish("operation_failed", "error_handler", **context)

        if not is_retryable(exc, config.retryable_errors):
            logger.error(
                "Non-retryable error in %s (attempt %d): %s", operation_name, attempt, exc
            )
            self.events.publish("non_retryable_error", "error_handler", **context)
        elif attempt > config.max_retries:
            logger.error(
                "Retries exhausted for %s after %d attempts: %s", operation_name, attempt, exc
            )
            self.events.publish("max_retries_reached", "error_handler", **context)

    def _before_retry(
        self, operation_name: str, state: RetryCallState, config: RetryConfig
    ) -> None:
        delay = state.next_action.sleep if state.next_action else 0.0
        exc = state.outcome.exception() if state.outcome else None
        logger.warning(
            "Retrying %s in %.2fs (attempt %d/%d): %s",
            operation_name,
            delay,
            state.attempt_number,
            config.max_retries + 1,
            exc,
        )
        self.events.publish(
            "retry_attempt",
            "error_handler",
            operation=operation_name,
            attempt=state.attempt_number,
            max_attempts=config.max_retries + 1,
            delay=delay,
            error=str(exc),
        )

    def get_error_stats(self, operation_name: str) -> ErrorStats:
        with self._lock:
            stats = self._error_stats.get(operation_name)
            return stats.model_copy() if stats else ErrorStats()

    def get_all_error_stats(self) -> Dict[str, ErrorStats]:
        with self._lock:
            return {name: stats.model_copy() for name, stats in self._error_stats.items()}

    def reset_error_stats(self, operation_name: str) -> None:
        with self._lock:
            self._error_stats.pop(operation_name, None)

    # circuit breaker --------------------------------------------------------

    async def execute_with_circuit_breaker(
        self,
        operation_name: str,
        operation: Operation,
        config: Optional[CircuitBreakerConfig] = None,
    ) -> Any:
        config = config or self.circuit_config

        with self._lock:
            breaker = self._breakers.setdefault(operation_name, _Breaker())
            if breaker.state == CircuitState.OPEN:
                if self._clock() < breaker.reopen_at:
                    self._reject(
                        operation_name,
                        f"Circuit breaker is open for {operation_name}. "
                        f"Next attempt at {breaker.next_attempt_time}",
                    )
                breaker.state = CircuitState.HALF_OPEN
                breaker.trial_in_flight = True
                logger.info("Circuit breaker for %s entering half-open state", operation_name)
                self.events.publish(
                    "circuit_breaker_half_open", "error_handler", operation=operation_name
                )
            elif breaker.state == CircuitState.HALF_OPEN:
                if breaker.trial_in_flight:
                    self._reject(
                        operation_name,
                        f"Circuit breaker is half-open for {operation_name}; "
                        "trial call in progress",
                    )
                breaker.trial_in_flight = True

        try:
            result = await _call(operation)
        except Exception:
            with self._lock:
                self._on_breaker_failure(operation_name, breaker, config)
            raise
        except BaseException:
            # Cancelled: release the trial slot without counting a failure.
            with self._lock:
                breaker.trial_in_flight = False
            raise

        with self._lock:
            was_half_open = breaker.state == CircuitState.HALF_OPEN
            breaker.state = CircuitState.CLOSED
            breaker.failure_count = 0
            breaker.trial_in_flight = False
            if was_half_open:
                breaker.last_failure_time = None
                breaker.next_attempt_time = None
                logger.info("Circuit breaker for %s closed after successful trial", operation_name)
                self.events.publish(
                    "circuit_breaker_closed", "error_handler", operation=operation_name
                )
        return result

    async def execute_with_resilience(
        self,
        operation_name: str,
        operation: Operation,
        retry_config: Optional[RetryConfig] = None,
        circuit_config: Optional[CircuitBreakerConfig] = None,
    ) -> Any:
        """Retry inside a circuit breaker; exhausted retries count as one breaker failure."""
        return await self.execute_with_circuit_breaker(
            operation_name,
            lambda: self.execute_with_retry(operation_name, operation, retry_config),
            circuit_config,
        )

    def _reject(self, operation_name: str, message: str) -> None:
        logger.warning("%s", message)
        self.events.publish("circuit_breaker_rejected", "error_handler", operation=operation_name)
        raise CircuitBreakerOpenError(operation_name, message)

    def _on_breaker_failure(
        self, operation_name: str, breaker: _Breaker, config: CircuitBreakerConfig
    ) -> None:
        was_half_open = breaker.state == CircuitState.HALF_OPEN
        breaker.failure_count += 1
        breaker.last_failure_time = utcnow()
        breaker.trial_in_flight = False

        if was_half_open or breaker.failure_count >= config.failure_threshold:
            breaker.state = CircuitState.OPEN
            breaker.reopen_at = self._clock() + config.reset_timeout
            breaker.next_attempt_time = breaker.last_failure_time + timedelta(
                seconds=config.reset_timeout
            )
            logger.warning(
                "Circuit breaker for %s opened after %d failures",
                operation_name,
                breaker.failure_count,
            )
            self.events.publish(
                "circuit_breaker_opened",
                "error_handler",
                operation=operation_name,
                failure_count=breaker.failure_count,
            )

    def get_circuit_breaker_state(self, operation_name: str) -> CircuitBreakerState:
        with self._lock:
            breaker = self._breakers.get(operation_name)
            return breaker.snapshot() if breaker else CircuitBreakerState()

    def get_circuit_breaker_states(self) -> Dict[str, CircuitBreakerState]:
        with self._lock:
            return {name: b.snapshot() for name, b in self._breakers.items()}

    def reset_circuit_breaker(self, operation_name: str) -> None:
        with self._lock:
            if operation_name in self._breakers:
                self._breakers[operation_name] = _Breaker()

    # responses --------------------------------------------------------------

    def create_error_response(self, exc: BaseException, context: Any = None) -> Dict[str, Any]:
        details = {
            key: value
            for key, value in vars(exc).items()
            if not key.startswith("_")
        }
        return {
            "success": False,
            "error": {
                "code": error_code(exc),
                "message": str(exc),
                "details": details or None,
                "timestamp": utcnow().isoformat(),
                "context": context,
            },
        }
