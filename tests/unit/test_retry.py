"""
Unit Tests: with_retry

Tests:
- Transient errors are retried with linear, capped backoff
- Permanent errors propagate on the first attempt
- Exhaustion raises RetryExhaustedError carrying the last error
"""

from unittest.mock import AsyncMock

import pytest

from capgate.errors import OperationTimeoutError, RetryExhaustedError, ValidationError
from capgate.utils.retry import RetryPolicy, is_retryable_error, with_retry


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


class StatusError(Exception):
    def __init__(self, status_code):
        super().__init__(f"HTTP {status_code}")
        self.status_code = status_code


class CodedError(Exception):
    def __init__(self, code):
        super().__init__("network")
        self.code = code


class TestClassification:
    @pytest.mark.parametrize(
        "error",
        [
            ConnectionResetError(),
            TimeoutError(),
            OperationTimeoutError("slow"),
            CodedError("ECONNRESET"),
            StatusError(429),
            StatusError(503),
            RuntimeError("upstream said ETIMEDOUT"),
            RuntimeError("Service Unavailable"),
        ],
    )
    def test_transient(self, error):
        assert is_retryable_error(error)

    @pytest.mark.parametrize(
        "error",
        [ValueError("bad input"), ValidationError("nope"), StatusError(400), CodedError("EACCES")],
    )
    def test_permanent(self, error):
        assert not is_retryable_error(error)


class TestWithRetry:
    @pytest.mark.asyncio
    async def test_first_success(self):
        fn = AsyncMock(return_value="ok")
        assert await with_retry(fn) == "ok"
        fn.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self):
        sleep = RecordingSleep()
        fn = AsyncMock(side_effect=[ConnectionError("reset"), ConnectionError("reset"), "ok"])

        result = await with_retry(fn, RetryPolicy(max_attempts=3, backoff_ms=100), sleep=sleep)

        assert result == "ok"
        assert fn.await_count == 3
        assert sleep.delays == [0.1, 0.2]

    @pytest.mark.asyncio
    async def test_delay_is_capped(self):
        policy = RetryPolicy(max_attempts=5, backoff_ms=1000, max_delay_ms=2500)
        assert [policy.delay_ms(a) for a in range(1, 5)] == [1000, 2000, 2500, 2500]

    @pytest.mark.asyncio
    async def test_permanent_error_not_retried(self):
        fn = AsyncMock(side_effect=ValueError("bad"))

        with pytest.raises(ValueError):
            await with_retry(fn, RetryPolicy(max_attempts=3), sleep=RecordingSleep())
        fn.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_exhaustion(self):
        last = ConnectionError("still down")
        fn = AsyncMock(side_effect=[ConnectionError("down"), last])
        sleep = RecordingSleep()

        with pytest.raises(RetryExhaustedError) as exc_info:
            await with_retry(fn, RetryPolicy(max_attempts=2, backoff_ms=10), context="deploy", sleep=sleep)

        assert exc_info.value.attempts == 2
        assert exc_info.value.last_error is last
        assert "deploy" in str(exc_info.value)
        assert len(sleep.delays) == 1

    @pytest.mark.asyncio
    async def test_custom_classifier_and_hook(self):
        seen = []
        fn = AsyncMock(side_effect=[KeyError("x"), "ok"])

        result = await with_retry(
            fn,
            RetryPolicy(max_attempts=2, backoff_ms=5),
            retryable=lambda e: isinstance(e, KeyError),
            sleep=RecordingSleep(),
            on_retry=lambda attempt, delay, exc: seen.append((attempt, delay)),
        )

        assert result == "ok"
        assert seen == [(1, 5)]

    @pytest.mark.asyncio
    async def test_invalid_policy(self):
        with pytest.raises(ValueError):
            await with_retry(AsyncMock(), RetryPolicy(max_attempts=0))
