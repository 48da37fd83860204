"""
Tests for the retry policy.
"""

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from ema_agent.retry import RetryConfig, RetryExhaustedError, async_retry, retry_call


def test_calculate_delay_doubles_until_cap():
    """Test the default backoff schedule."""
    config = RetryConfig()

    delays = [config.calculate_delay(attempt) for attempt in range(8)]

    assert delays == [1.0, 2.0, 4.0, 8.0, 16.0, 32.0, 60.0, 60.0]


def test_calculate_delay_custom_base():
    """Test backoff with a custom base and cap."""
    config = RetryConfig(initial_delay=0.5, exponential_base=3.0, max_delay=10.0)

    assert config.calculate_delay(0) == 0.5
    assert config.calculate_delay(1) == 1.5
    assert config.calculate_delay(2) == 4.5
    assert config.calculate_delay(3) == 10.0


@pytest.mark.asyncio
async def test_retry_returns_first_success():
    """Test that a successful call is not retried."""
    func = AsyncMock(return_value="ok")

    result = await async_retry(RetryConfig(initial_delay=0))(func)("a", key="b")

    assert result == "ok"
    func.assert_awaited_once_with("a", key="b")


@pytest.mark.asyncio
async def test_retry_recovers_after_failures():
    """Test that a call succeeding on a later attempt returns its value."""
    func = AsyncMock(side_effect=[ConnectionError("down"), ConnectionError("down"), "ok"])
    on_retry = MagicMock()

    result = await async_retry(RetryConfig(initial_delay=0), on_retry)(func)()

    assert result == "ok"
    assert func.await_count == 3
    assert [c.args[1] for c in on_retry.call_args_list] == [1, 2]


@pytest.mark.asyncio
async def test_retry_exhausted_reports_attempts():
    """Test that max_retries=3 makes four attempts before giving up."""
    errors = [RuntimeError(f"fail {i}") for i in range(4)]
    func = AsyncMock(side_effect=errors)

    with pytest.raises(RetryExhaustedError) as exc_info:
        await async_retry(RetryConfig(max_retries=3, initial_delay=0))(func)()

    assert func.await_count == 4
    assert exc_info.value.attempts == 4
    assert exc_info.value.last_exception is errors[-1]
    assert exc_info.value.__cause__ is errors[-1]
    assert "Retry failed after 4 attempts" in str(exc_info.value)
    assert "fail 3" in str(exc_info.value)


@pytest.mark.asyncio
async def test_retry_sleeps_between_attempts():
    """Test the waits follow the backoff schedule."""
    func = AsyncMock(side_effect=RuntimeError("boom"))
    sleep = AsyncMock()

    with patch("ema_agent.retry.asyncio.sleep", sleep):
        with pytest.raises(RetryExhaustedError):
            await async_retry(RetryConfig(max_retries=3))(func)()

    assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0, 4.0]


@pytest.mark.asyncio
async def test_on_retry_receives_error_and_attempt():
    """Test the callback fires before each wait, not after the last failure."""
    error = ValueError("bad")
    func = AsyncMock(side_effect=error)
    on_retry = MagicMock()

    with pytest.raises(RetryExhaustedError):
        await async_retry(RetryConfig(max_retries=2, initial_delay=0), on_retry)(func)()

    assert on_retry.call_count == 2
    on_retry.assert_any_call(error, 1)
    on_retry.assert_any_call(error, 2)


@pytest.mark.asyncio
async def test_non_retryable_error_propagates():
    """Test that errors outside retryable_exceptions are not retried or wrapped."""
    func = AsyncMock(side_effect=KeyError("missing"))
    config = RetryConfig(initial_delay=0, retryable_exceptions=(ConnectionError,))

    with pytest.raises(KeyError):
        await async_retry(config)(func)()

    assert func.await_count == 1


@pytest.mark.asyncio
async def test_zero_retries_single_attempt():
    """Test max_retries=0 makes exactly one attempt."""
    func = AsyncMock(side_effect=RuntimeError("once"))

    with pytest.raises(RetryExhaustedError) as exc_info:
        await async_retry(RetryConfig(max_retries=0))(func)()

    assert exc_info.value.attempts == 1
    assert func.await_count == 1


@pytest.mark.asyncio
async def test_retry_call_helper():
    """Test the one-shot helper passes arguments through."""
    func = AsyncMock(side_effect=[TimeoutError(), 42])

    result = await retry_call(func, 1, 2, config=RetryConfig(initial_delay=0), flag=True)

    assert result == 42
    func.assert_awaited_with(1, 2, flag=True)
