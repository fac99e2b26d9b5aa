"""
Unit tests for the bounded retry loop
"""

import asyncio
import pytest
from unittest.mock import AsyncMock
from pipeline.retry import RetryPolicy, call_with_retry
from core.exceptions import (
    RetriesExhausted,
    SourceSchemaError,
    SourceUnavailable,
    StepTimeout,
)


class TestRetryPolicy:

    def test_exponential_backoff(self):
        policy = RetryPolicy(backoff_base=0.5, backoff_max=30.0)

        assert [policy.delay(a) for a in range(4)] == [0.5, 1.0, 2.0, 4.0]

    def test_backoff_is_capped(self):
        policy = RetryPolicy(backoff_base=1.0, backoff_max=5.0)

        assert policy.delay(10) == 5.0


class TestCallWithRetry:
    """Test classification-driven retries"""

    @pytest.mark.asyncio
    async def test_success_first_time(self):
        func = AsyncMock(return_value="ok")
        sleep = AsyncMock()

        result = await call_with_retry("extract", func, RetryPolicy(), sleep=sleep)

        assert result == "ok"
        func.assert_awaited_once()
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_retryable_error_then_success(self):
        func = AsyncMock(side_effect=[SourceUnavailable("down"), SourceUnavailable("down"), "ok"])
        sleep = AsyncMock()

        result = await call_with_retry("extract", func, RetryPolicy(retry_limit=3, backoff_base=0.5), sleep=sleep)

        assert result == "ok"
        assert func.await_count == 3
        assert [c.args[0] for c in sleep.await_args_list] == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_retries_exhausted_after_limit(self):
        """retry_limit counts retries after the first attempt"""
        func = AsyncMock(side_effect=SourceUnavailable("down"))
        sleep = AsyncMock()

        with pytest.raises(RetriesExhausted) as exc_info:
            await call_with_retry(
                "extract", func, RetryPolicy(retry_limit=2), pipeline_id="orders_to_sales", sleep=sleep
            )

        assert func.await_count == 3
        assert sleep.await_count == 2
        error = exc_info.value
        assert error.context["step"] == "extract"
        assert error.context["attempts"] == 3
        assert error.context["last_error"] == "SourceUnavailable"
        assert isinstance(error.original_exception, SourceUnavailable)
        assert not error.retryable

    @pytest.mark.asyncio
    async def test_fatal_error_is_not_retried(self):
        func = AsyncMock(side_effect=SourceSchemaError("missing column"))
        sleep = AsyncMock()

        with pytest.raises(SourceSchemaError) as exc_info:
            await call_with_retry("extract", func, RetryPolicy(retry_limit=5), pipeline_id="p", sleep=sleep)

        func.assert_awaited_once()
        sleep.assert_not_awaited()
        assert exc_info.value.context["step"] == "extract"
        assert exc_info.value.context["pipeline_id"] == "p"

    @pytest.mark.asyncio
    async def test_unclassified_exceptions_propagate(self):
        func = AsyncMock(side_effect=KeyError("boom"))

        with pytest.raises(KeyError):
            await call_with_retry("transform", func, RetryPolicy(), sleep=AsyncMock())

        func.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_timeout_is_retryable(self):
        calls = {"n": 0}

        async def slow_then_fast():
            calls["n"] += 1
            if calls["n"] == 1:
                await asyncio.sleep(1)
            return "done"

        result = await call_with_retry(
            "load", slow_then_fast, RetryPolicy(retry_limit=1, timeout=0.05), sleep=AsyncMock()
        )

        assert result == "done"
        assert calls["n"] == 2

    @pytest.mark.asyncio
    async def test_persistent_timeout_exhausts(self):
        async def hang():
            await asyncio.sleep(1)

        with pytest.raises(RetriesExhausted) as exc_info:
            await call_with_retry("load", hang, RetryPolicy(retry_limit=1, timeout=0.01), sleep=AsyncMock())

        assert isinstance(exc_info.value.original_exception, StepTimeout)
