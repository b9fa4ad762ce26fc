"""Rate limiting through Redis, or in-process when Redis is unavailable."""
import asyncio
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from tradegate.service.runtime import Runtime, check_rate_limit, get_runtime


class TestCheckRateLimit:
    @pytest.fixture
    def mock_runtime(self):
        runtime = MagicMock(spec=Runtime)
        runtime.cache = None
        runtime._local_rate_limits = {}
        runtime._local_rate_limit_lock = asyncio.Lock()
        return runtime

    @pytest.fixture
    def mock_runtime_with_cache(self):
        runtime = MagicMock(spec=Runtime)
        runtime.cache = AsyncMock()
        runtime.cache.check_rate_limit = AsyncMock(return_value=True)
        return runtime

    async def test_zero_limit_always_passes(self, mock_runtime):
        assert await check_rate_limit(mock_runtime, "k", 0, 60) is True
        assert await check_rate_limit(mock_runtime, "k", -1, 60) is True

    async def test_invalid_window_logs_warning(self, mock_runtime):
        with patch("tradegate.service.runtime.logger") as mock_logger:
            await check_rate_limit(mock_runtime, "k", 10, 0)

            mock_logger.warning.assert_called_once()
            call_args = mock_logger.warning.call_args
            assert call_args[0][0] == "rate_limit_invalid_window"
            assert call_args[1]["window_seconds"] == 0

    async def test_limit_is_enforced_per_key(self, mock_runtime):
        for i in range(3):
            assert await check_rate_limit(mock_runtime, "key1", 3, 60) is True, f"call {i + 1}"

        assert await check_rate_limit(mock_runtime, "key1", 3, 60) is False
        assert await check_rate_limit(mock_runtime, "key2", 3, 60) is True

    async def test_return_remaining(self, mock_runtime):
        allowed, remaining, reset = await check_rate_limit(
            mock_runtime, "k", 5, 60, return_remaining=True
        )
        assert (allowed, remaining, reset) == (True, 4, 0)

        for _ in range(4):
            await check_rate_limit(mock_runtime, "k", 5, 60)
        allowed, remaining, reset = await check_rate_limit(
            mock_runtime, "k", 5, 60, return_remaining=True
        )
        assert not allowed
        assert remaining == 0
        assert 0 < reset <= 12

    async def test_tokens_refill_over_time(self, mock_runtime):
        for _ in range(2):
            await check_rate_limit(mock_runtime, "k", 2, 1)
        assert await check_rate_limit(mock_runtime, "k", 2, 1) is False

        tokens, _ = mock_runtime._local_rate_limits["k"]
        mock_runtime._local_rate_limits["k"] = (tokens, datetime.utcnow() - timedelta(seconds=2))

        assert await check_rate_limit(mock_runtime, "k", 2, 1) is True

    async def test_uses_redis_when_available(self, mock_runtime_with_cache):
        await check_rate_limit(mock_runtime_with_cache, "k", 10, 60)

        mock_runtime_with_cache.cache.check_rate_limit.assert_called_once_with(
            "k", 10, 60, return_remaining=False, cost=1
        )


async def test_concurrent_calls_respect_limit():
    runtime = get_runtime()
    results = []

    async def make_request():
        results.append(await check_rate_limit(runtime, "login:busy@acme.test", 10, 60))

    await asyncio.gather(*[make_request() for _ in range(15)])

    assert results.count(True) == 10
    assert results.count(False) == 5
