"""Tests for the shared retry policy."""
from unittest.mock import AsyncMock, patch

import pytest

from acusync.acumatica.retry import RetryPolicy
from acusync.errors import AuthenticationFailed, RemoteTimeout, TransientRemoteError


class TestGetDelay:
    def test_exponential(self):
        policy = RetryPolicy(base_delay=1.0)
        assert [policy.get_delay(n) for n in range(4)] == [1.0, 2.0, 4.0, 8.0]

    def test_capped(self):
        policy = RetryPolicy(base_delay=10.0, max_delay=15.0)
        assert policy.get_delay(3) == 15.0


class TestRun:
    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self):
        fn = AsyncMock(side_effect=[TransientRemoteError("502"), TransientRemoteError("503"), "ok"])
        with patch("acusync.acumatica.retry.asyncio.sleep", new=AsyncMock()) as sleep:
            result = await RetryPolicy(base_delay=1.0).run(fn)
        assert result == "ok"
        assert fn.await_count == 3
        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        fn = AsyncMock(side_effect=TransientRemoteError("502"))
        with patch("acusync.acumatica.retry.asyncio.sleep", new=AsyncMock()):
            with pytest.raises(TransientRemoteError):
                await RetryPolicy(max_attempts=3).run(fn)
        assert fn.await_count == 3

    @pytest.mark.asyncio
    async def test_non_retryable_propagates_immediately(self):
        fn = AsyncMock(side_effect=AuthenticationFailed("bad password"))
        with pytest.raises(AuthenticationFailed):
            await RetryPolicy().run(fn)
        assert fn.await_count == 1

    @pytest.mark.asyncio
    async def test_give_up_on_subclass(self):
        fn = AsyncMock(side_effect=RemoteTimeout("timed out twice"))
        with pytest.raises(RemoteTimeout):
            await RetryPolicy(give_up_on=(RemoteTimeout,)).run(fn)
        assert fn.await_count == 1
