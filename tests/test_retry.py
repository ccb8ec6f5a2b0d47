"""Tests for retry utilities."""
import pytest

from quorum_custody.exceptions import LedgerPermanentError, LedgerTransientError
from quorum_custody.retry import RetryConfig, RetryExhausted, retry_async


class Flaky:
    def __init__(self, errors):
        self.errors = list(errors)
        self.calls = 0

    async def __call__(self, value):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return value


FAST = RetryConfig(max_retries=2, base_delay=0.0, max_delay=0.0)


class TestRetryConfig:
    """Tests for delay calculation."""

    def test_exponential_delay_is_capped(self):
        config = RetryConfig(base_delay=1.0, max_delay=5.0)
        assert [config.calculate_delay(n) for n in range(4)] == [1.0, 2.0, 4.0, 5.0]

    def test_jitter_stays_in_range(self):
        config = RetryConfig(base_delay=2.0, jitter=0.5)
        for _ in range(20):
            assert 1.0 <= config.calculate_delay(0) <= 3.0

    def test_from_settings(self, settings):
        config = RetryConfig.from_settings(settings)
        assert config.max_retries == settings.max_execution_attempts - 1
        assert config.base_delay == 0.0

    def test_permanent_errors_never_retry(self):
        assert RetryConfig().should_retry(LedgerTransientError())
        assert not RetryConfig().should_retry(LedgerPermanentError("rejected"))
        assert not RetryConfig().should_retry(ValueError())


class TestRetryAsync:
    """Tests for retry_async."""

    @pytest.mark.asyncio
    async def test_recovers_from_transient_errors(self):
        fn = Flaky([LedgerTransientError(), LedgerTransientError()])
        assert await retry_async(fn, 7, config=FAST) == 7
        assert fn.calls == 3

    @pytest.mark.asyncio
    async def test_exhausted(self):
        fn = Flaky([LedgerTransientError()] * 3)
        with pytest.raises(RetryExhausted) as exc_info:
            await retry_async(fn, 7, config=FAST)
        assert exc_info.value.stats.attempts == 3
        assert isinstance(exc_info.value.original_exception, LedgerTransientError)

    @pytest.mark.asyncio
    async def test_non_retryable_raises_immediately(self):
        fn = Flaky([LedgerPermanentError("rejected")])
        with pytest.raises(LedgerPermanentError):
            await retry_async(fn, 7, config=FAST)
        assert fn.calls == 1
