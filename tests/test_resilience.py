"""Tests for retry and circuit-breaker handling."""

import asyncio
import errno

import pytest

from pipeline_core.connector import DataSourceNotFoundError
from pipeline_core.models import CircuitBreakerConfig, CircuitState, RetryConfig
from pipeline_core.resilience import (
    DEFAULT_RETRY_CONFIGS,
    CircuitBreakerOpenError,
    error_code,
    is_retryable,
)


class TransientError(Exception):
    pass


def flaky(failures, exc_factory=lambda: TransientError("ETIMEDOUT talking to upstream")):
    calls = {"count": 0}

    async def operation():
        calls["count"] += 1
        if calls["count"] <= failures:
            raise exc_factory()
        return "ok"

    return operation, calls


POLICY = RetryConfig(
    max_retries=3,
    initial_delay=1.0,
    max_delay=10.0,
    backoff_multiplier=2,
    retryable_errors=["ETIMEDOUT"],
)


class TestRetrySignatures:
    def test_message_substring_matches(self):
        assert is_retryable(TransientError("connect ETIMEDOUT 10.0.0.1"), ["ETIMEDOUT"])

    def test_errno_name_matches(self):
        exc = ConnectionRefusedError(errno.ECONNREFUSED, "refused")
        assert is_retryable(exc, ["ECONNREFUSED"])

    def test_class_name_matches(self):
        assert is_retryable(TimeoutError("slow"), ["TimeoutError"])

    def test_unrelated_error_is_not_retryable(self):
        assert not is_retryable(ValueError("bad input"), DEFAULT_RETRY_CONFIGS["database"].retryable_errors)


class TestExecuteWithRetry:
    @pytest.mark.asyncio
    async def test_succeeds_after_transient_failures(self, error_handler, sleeps, recorder):
        operation, calls = flaky(2)

        result = await error_handler.execute_with_retry("fetch", operation, POLICY)

        assert result == "ok"
        assert calls["count"] == 3
        assert sleeps == [1.0, 2.0]
        assert recorder.names().count("retry_attempt") == 2
        assert recorder.names().count("operation_failed") == 2
        # Success clears the counters.
        assert error_handler.get_error_stats("fetch").count == 0

    @pytest.mark.asyncio
    async def test_delay_is_capped_at_max_delay(self, error_handler, sleeps):
        policy = POLICY.model_copy(update={"max_retries": 5, "max_delay": 3.0})
        operation, _ = flaky(5)

        await error_handler.execute_with_retry("fetch", operation, policy)

        assert sleeps == [1.0, 2.0, 3.0, 3.0, 3.0]

    @pytest.mark.asyncio
    async def test_exhausted_retries_reraise_last_error(self, error_handler, sleeps, recorder):
        policy = POLICY.model_copy(update={"max_retries": 2})
        operation, calls = flaky(10)

        with pytest.raises(TransientError, match="ETIMEDOUT"):
            await error_handler.execute_with_retry("fetch", operation, policy)

        assert calls["count"] == 3
        assert sleeps == [1.0, 2.0]
        assert recorder.names().count("max_retries_reached") == 1
        assert error_handler.get_error_stats("fetch").count == 3

    @pytest.mark.asyncio
    async def test_non_retryable_error_fails_immediately(self, error_handler, sleeps, recorder):
        operation, calls = flaky(1, lambda: ValueError("bad input"))

        with pytest.raises(ValueError):
            await error_handler.execute_with_retry("fetch", operation, POLICY)

        assert calls["count"] == 1
        assert sleeps == []
        assert "non_retryable_error" in recorder.names()

    @pytest.mark.asyncio
    async def test_sync_operations_are_supported(self, error_handler):
        result = await error_handler.execute_with_retry("file", lambda: 42)
        assert result == 42

    @pytest.mark.asyncio
    async def test_unknown_operation_without_config_raises(self, error_handler):
        with pytest.raises(LookupError, match="No retry configuration"):
            await error_handler.execute_with_retry("nope", lambda: None)

    def test_registered_config_is_returned(self, error_handler):
        error_handler.register_retry_config("custom", POLICY)
        assert error_handler.get_retry_config("custom") == POLICY
        assert error_handler.get_retry_config("api").max_delay == 5.0


class TestCircuitBreaker:
    CONFIG = CircuitBreakerConfig(failure_threshold=2, reset_timeout=30.0)

    @staticmethod
    async def boom():
        raise RuntimeError("upstream down")

    @pytest.mark.asyncio
    async def test_opens_after_threshold_and_rejects(self, error_handler, recorder):
        for _ in range(2):
            with pytest.raises(RuntimeError):
                await error_handler.execute_with_circuit_breaker("svc", self.boom, self.CONFIG)

        state = error_handler.get_circuit_breaker_state("svc")
        assert state.state == CircuitState.OPEN
        assert state.failure_count == 2
        assert state.next_attempt_time is not None

        called = []
        with pytest.raises(CircuitBreakerOpenError) as excinfo:
            await error_handler.execute_with_circuit_breaker(
                "svc", lambda: called.append(1), self.CONFIG
            )
        assert called == []
        assert excinfo.value.code == "CIRCUIT_OPEN"
        assert "circuit_breaker_opened" in recorder.names()
        assert "circuit_breaker_rejected" in recorder.names()

    @pytest.mark.asyncio
    async def test_half_open_success_closes(self, error_handler, clock, recorder):
        for _ in range(2):
            with pytest.raises(RuntimeError):
                await error_handler.execute_with_circuit_breaker("svc", self.boom, self.CONFIG)

        clock.advance(31)
        result = await error_handler.execute_with_circuit_breaker(
            "svc", lambda: "recovered", self.CONFIG
        )

        assert result == "recovered"
        state = error_handler.get_circuit_breaker_state("svc")
        assert state.state == CircuitState.CLOSED
        assert state.failure_count == 0
        names = recorder.names()
        assert names.index("circuit_breaker_half_open") < names.index("circuit_breaker_closed")

    @pytest.mark.asyncio
    async def test_half_open_failure_reopens(self, error_handler, clock):
        for _ in range(2):
            with pytest.raises(RuntimeError):
                await error_handler.execute_with_circuit_breaker("svc", self.boom, self.CONFIG)

        clock.advance(31)
        with pytest.raises(RuntimeError):
            await error_handler.execute_with_circuit_breaker("svc", self.boom, self.CONFIG)

        assert error_handler.get_circuit_breaker_state("svc").state == CircuitState.OPEN
        with pytest.raises(CircuitBreakerOpenError):
            await error_handler.execute_with_circuit_breaker("svc", lambda: "x", self.CONFIG)

    @pytest.mark.asyncio
    async def test_half_open_admits_a_single_trial(self, error_handler, clock):
        for _ in range(2):
            with pytest.raises(RuntimeError):
                await error_handler.execute_with_circuit_breaker("svc", self.boom, self.CONFIG)
        clock.advance(31)

        release = asyncio.Event()

        async def slow_trial():
            await release.wait()
            return "done"

        trial = asyncio.create_task(
            error_handler.execute_with_circuit_breaker("svc", slow_trial, self.CONFIG)
        )
        await asyncio.sleep(0)

        with pytest.raises(CircuitBreakerOpenError):
            await error_handler.execute_with_circuit_breaker("svc", lambda: "x", self.CONFIG)

        release.set()
        assert await trial == "done"
        assert error_handler.get_circuit_breaker_state("svc").state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_cancelled_trial_frees_the_half_open_slot(self, error_handler, clock):
        for _ in range(2):
            with pytest.raises(RuntimeError):
                await error_handler.execute_with_circuit_breaker("svc", self.boom, self.CONFIG)
        clock.advance(31)

        async def hang():
            await asyncio.Event().wait()

        trial = asyncio.create_task(
            error_handler.execute_with_circuit_breaker("svc", hang, self.CONFIG)
        )
        await asyncio.sleep(0)
        trial.cancel()
        with pytest.raises(asyncio.CancelledError):
            await trial

        result = await error_handler.execute_with_circuit_breaker(
            "svc", lambda: "recovered", self.CONFIG
        )

        assert result == "recovered"
        assert error_handler.get_circuit_breaker_state("svc").state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_success_resets_consecutive_failures(self, error_handler):
        with pytest.raises(RuntimeError):
            await error_handler.execute_with_circuit_breaker("svc", self.boom, self.CONFIG)
        await error_handler.execute_with_circuit_breaker("svc", lambda: 1, self.CONFIG)
        with pytest.raises(RuntimeError):
            await error_handler.execute_with_circuit_breaker("svc", self.boom, self.CONFIG)

        assert error_handler.get_circuit_breaker_state("svc").state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_reset_circuit_breaker(self, error_handler):
        for _ in range(2):
            with pytest.raises(RuntimeError):
                await error_handler.execute_with_circuit_breaker("svc", self.boom, self.CONFIG)

        error_handler.reset_circuit_breaker("svc")

        assert error_handler.get_circuit_breaker_state("svc").state == CircuitState.CLOSED
        assert await error_handler.execute_with_circuit_breaker("svc", lambda: 1) == 1


class TestExecuteWithResilience:
    @pytest.mark.asyncio
    async def test_exhausted_retries_count_as_one_breaker_failure(self, error_handler, sleeps):
        operation, calls = flaky(10)
        config = CircuitBreakerConfig(failure_threshold=2, reset_timeout=30.0)

        with pytest.raises(TransientError):
            await error_handler.execute_with_resilience("svc", operation, POLICY, config)

        assert calls["count"] == 4
        assert sleeps == [1.0, 2.0, 4.0]
        state = error_handler.get_circuit_breaker_state("svc")
        assert state.state == CircuitState.CLOSED
        assert state.failure_count == 1

        with pytest.raises(TransientError):
            await error_handler.execute_with_resilience("svc", operation, POLICY, config)
        with pytest.raises(CircuitBreakerOpenError):
            await error_handler.execute_with_resilience("svc", operation, POLICY, config)
        assert calls["count"] == 8

    @pytest.mark.asyncio
    async def test_recovers_within_retries(self, error_handler, sleeps):
        operation, calls = flaky(1)

        assert await error_handler.execute_with_resilience("svc", operation, POLICY) == "ok"
        assert sleeps == [1.0]
        assert error_handler.get_circuit_breaker_state("svc").failure_count == 0


class TestErrorResponses:
    def test_code_attribute_wins(self, error_handler):
        response = error_handler.create_error_response(
            DataSourceNotFoundError("orders"), context={"job": "nightly"}
        )

        assert response["success"] is False
        error = response["error"]
        assert error["code"] == "NOT_FOUND"
        assert error["message"] == "Data source orders not found"
        assert error["details"] == {"source_id": "orders"}
        assert error["context"] == {"job": "nightly"}

    def test_errno_name_is_used(self):
        assert error_code(ConnectionRefusedError(errno.ECONNREFUSED, "refused")) == "ECONNREFUSED"

    @pytest.mark.parametrize(
        "message,code",
        [
            ("request timed out", "TIMEOUT"),
            ("connection reset by peer", "CONNECTION_ERROR"),
            ("table not found", "NOT_FOUND"),
            ("permission denied for relation", "PERMISSION_DENIED"),
            ("validation of payload failed", "VALIDATION_ERROR"),
        ],
    )
    def test_message_heuristics(self, message, code):
        assert error_code(Exception(message)) == code

    def test_falls_back_to_class_name(self, error_handler):
        response = error_handler.create_error_response(KeyError("x"))
        assert response["error"]["code"] == "KeyError"
        assert response["error"]["details"] is None
