"""
Retry orchestration for arbitrary async operations.

Built on tenacity with:
- Exponential backoff capped at a maximum delay, optional ±25% jitter
- Caller-supplied retry conditions and retry observers
- Ordered fallback chains
- Per-key circuit breakers
"""

import asyncio
import functools
import random
import time
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Optional, Sequence, TypeVar

import httpx
import structlog
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt

from .errors import (
    AllFallbacksFailedError,
    AuthenticationError,
    CircuitOpenError,
    PermanentHTTPError,
    SourceFailedError,
    TransientHTTPError,
    TransientNetworkError,
)
from .models import CircuitBreakerConfig, CircuitRecord, CircuitState, RetryResult

logger = structlog.get_logger(__name__)

T = TypeVar("T")

Operation = Callable[[], Awaitable[T]]
RetryCondition = Callable[[BaseException], bool]


@dataclass(frozen=True)
class RetryOptions:
    """Retry policy. Delays are in seconds."""
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 300.0
    backoff_multiplier: float = 2.0
    jitter: bool = True
    retry_condition: Optional[RetryCondition] = None
    on_retry: Optional[Callable[[BaseException, int], None]] = None


def calculate_delay(attempt_number: int, options: RetryOptions) -> float:
    """
    Backoff delay before the retry following failure ``attempt_number``.

    Args:
        attempt_number: 1-based number of the failed attempt
        options: Retry policy

    Returns:
        Delay in seconds, never negative
    """
    delay = options.base_delay * options.backoff_multiplier ** (attempt_number - 1)
    delay = min(delay, options.max_delay)
    if options.jitter:
        delay += delay * 0.25 * (random.random() - 0.5) * 2
    return max(delay, 0.0)


def operation_key(operation: Callable[..., Any]) -> str:
    """
    Derive a circuit key from an operation.

    Lambdas get their first line number appended so two lambdas in the
    same function do not share a circuit. Lambdas on one line still do;
    pass an explicit key for those.
    """
    if isinstance(operation, functools.partial):
        return operation_key(operation.func)
    module = getattr(operation, "__module__", None) or ""
    name = getattr(operation, "__qualname__", None) or repr(operation)
    code = getattr(operation, "__code__", None)
    if name.endswith("<lambda>") and code is not None:
        name = f"{name}:{code.co_firstlineno}"
    return f"{module}.{name}" if module else name


class RetryManager:
    """
    Retry, fallback and circuit breaker orchestration.

    One instance is held by a HarvestSession so circuit state is shared by
    every adapter in the run.

    Usage:
        manager = RetryManager()
        outcome = await manager.execute_with_retry(fetch_page, max_retries=2)
        page = outcome.result
    """

    def __init__(
        self,
        defaults: Optional[RetryOptions] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.defaults = defaults or RetryOptions()
        self._sleep = sleep
        self._clock = clock
        self._circuits: dict[str, CircuitRecord] = {}

    def _options(self, options: Optional[RetryOptions], overrides: dict) -> RetryOptions:
        config = options or self.defaults
        return replace(config, **overrides) if overrides else config

    async def execute_with_retry(
        self,
        operation: Operation[T],
        options: Optional[RetryOptions] = None,
        **overrides: Any,
    ) -> RetryResult[T]:
        """
        Run operation, retrying failures with backoff.

        An error rejected by ``retry_condition`` is re-raised at once
        without consuming a retry. After ``max_retries`` retries the last
        error is re-raised unchanged.

        Args:
            operation: Zero-argument coroutine function
            options: Retry policy (defaults to the manager's)
            **overrides: Field overrides applied to the policy

        Returns:
            RetryResult with the value, number of failed attempts,
            elapsed seconds and the errors seen along the way
        """
        config = self._options(options, overrides)
        errors: list[BaseException] = []
        started = self._clock()

        def should_retry(error: BaseException) -> bool:
            if not isinstance(error, Exception):
                return False
            return config.retry_condition is None or config.retry_condition(error)

        def before_sleep(retry_state) -> None:
            error = retry_state.outcome.exception()
            logger.debug(
                "operation_retry",
                attempt=retry_state.attempt_number,
                error=str(error),
            )
            if config.on_retry:
                config.on_retry(error, retry_state.attempt_number)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(config.max_retries + 1),
            wait=lambda retry_state: calculate_delay(retry_state.attempt_number, config),
            retry=retry_if_exception(should_retry),
            before_sleep=before_sleep,
            sleep=self._sleep,
            reraise=True,
        )

        result = None
        async for attempt in retrying:
            with attempt:
                try:
                    result = await operation()
                except Exception as e:
                    errors.append(e)
                    raise

        return RetryResult(
            result=result,
            attempt_number=len(errors),
            total_time=self._clock() - started,
            errors=errors,
        )

    async def execute_with_fallbacks(
        self,
        operations: Sequence[Operation[T]],
        options: Optional[RetryOptions] = None,
        **overrides: Any,
    ) -> RetryResult[T]:
        """
        Try each operation in order until one succeeds.

        Each operation is itself retried. The returned attempt_number is
        the 1-based index of the operation that succeeded.

        Raises:
            AllFallbacksFailedError: Carrying every underlying error
        """
        if not operations:
            raise ValueError("No operations provided")

        errors: list[BaseException] = []
        started = self._clock()

        for index, operation in enumerate(operations):
            try:
                outcome = await self.execute_with_retry(operation, options, **overrides)
            except Exception as e:
                errors.append(e)
                logger.warning(
                    "fallback_failed",
                    index=index,
                    remaining=len(operations) - index - 1,
                    error=str(e),
                )
                continue

            return RetryResult(
                result=outcome.result,
                attempt_number=index + 1,
                total_time=self._clock() - started,
                errors=errors + outcome.errors,
            )

        raise AllFallbacksFailedError(errors)

    async def execute_with_circuit_breaker(
        self,
        operation: Operation[T],
        circuit: Optional[CircuitBreakerConfig] = None,
        options: Optional[RetryOptions] = None,
        key: Optional[str] = None,
        **overrides: Any,
    ) -> T:
        """
        Run a retried operation behind a circuit breaker.

        Args:
            operation: Zero-argument coroutine function
            circuit: Breaker thresholds
            options: Retry policy for each admitted call
            key: Circuit key (derived from the operation when omitted)

        Returns:
            The operation's value

        Raises:
            CircuitOpenError: Circuit is open; operation was not invoked
        """
        circuit = circuit or CircuitBreakerConfig()
        key = key or operation_key(operation)
        record = self._circuits.setdefault(key, CircuitRecord())
        now = self._clock()

        if record.state == CircuitState.OPEN:
            if record.last_failure is not None and now - record.last_failure >= circuit.reset_timeout:
                record.state = CircuitState.HALF_OPEN
                logger.info("circuit_half_open", key=key)
            else:
                raise CircuitOpenError(key)

        if record.state == CircuitState.HALF_OPEN:
            if record.trial_in_flight:
                raise CircuitOpenError(key)
            record.trial_in_flight = True

        try:
            outcome = await self.execute_with_retry(operation, options, **overrides)
        except Exception:
            self._record_failure(key, record, circuit)
            raise
        finally:
            record.trial_in_flight = False

        self._record_success(key, record)
        return outcome.result

    def _record_success(self, key: str, record: CircuitRecord) -> None:
        if record.state != CircuitState.CLOSED:
            logger.info("circuit_closed", key=key)
        record.failures = 0
        record.state = CircuitState.CLOSED
        record.last_success = self._clock()

    def _record_failure(self, key: str, record: CircuitRecord, circuit: CircuitBreakerConfig) -> None:
        now = self._clock()
        # Failures separated by a quiet monitoring period do not accumulate
        if record.last_failure is not None and now - record.last_failure > circuit.monitoring_period:
            record.failures = 0

        record.failures += 1
        record.last_failure = now

        if record.state == CircuitState.HALF_OPEN or record.failures >= circuit.failure_threshold:
            if record.state != CircuitState.OPEN:
                logger.warning("circuit_opened", key=key, failures=record.failures)
            record.state = CircuitState.OPEN

    def get_circuit_state(self, key: str) -> CircuitState:
        record = self._circuits.get(key)
        return record.state if record else CircuitState.CLOSED

    def get_circuit_record(self, key: str) -> Optional[CircuitRecord]:
        return self._circuits.get(key)

    def reset_circuit(self, key: Optional[str] = None) -> None:
        """Reset one circuit, or all of them."""
        if key is None:
            self._circuits.clear()
        else:
            self._circuits.pop(key, None)


# --- Predefined retry conditions ---------------------------------------------

_NETWORK_WORDS = ("network", "timeout", "timed out", "econnrefused", "econnreset", "enotfound", "etimedout")
_TRANSIENT_STATUSES = {429, 500, 502, 503, 504}
_AUTH_STATUSES = {401, 403}


def _unwrap(error: BaseException) -> BaseException:
    if isinstance(error, SourceFailedError) and error.cause is not None:
        return error.cause
    return error


class RetryConditions:
    """Reusable retry-condition predicates and combinators."""

    @staticmethod
    def network_errors(error: BaseException) -> bool:
        error = _unwrap(error)
        if isinstance(error, (TransientNetworkError, httpx.TimeoutException, httpx.NetworkError,
                              ConnectionError, TimeoutError)):
            return True
        message = str(error).lower()
        return any(word in message for word in _NETWORK_WORDS)

    @staticmethod
    def temporary_http_errors(error: BaseException) -> bool:
        error = _unwrap(error)
        if isinstance(error, TransientHTTPError):
            return True
        if isinstance(error, httpx.HTTPStatusError):
            return error.response.status_code in _TRANSIENT_STATUSES
        if isinstance(error, PermanentHTTPError):
            return error.status_code in _TRANSIENT_STATUSES
        return False

    @staticmethod
    def not_authentication_errors(error: BaseException) -> bool:
        error = _unwrap(error)
        if isinstance(error, AuthenticationError):
            return False
        status = getattr(error, "status_code", None)
        if isinstance(error, httpx.HTTPStatusError):
            status = error.response.status_code
        if status in _AUTH_STATUSES:
            return False
        message = str(error).lower()
        return "unauthorized" not in message and "forbidden" not in message

    @staticmethod
    def and_(*conditions: RetryCondition) -> RetryCondition:
        def combined(error: BaseException) -> bool:
            return all(condition(error) for condition in conditions)
        return combined

    @staticmethod
    def or_(*conditions: RetryCondition) -> RetryCondition:
        def combined(error: BaseException) -> bool:
            return any(condition(error) for condition in conditions)
        return combined
