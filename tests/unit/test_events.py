"""
Unit tests for broadcast channels and cancellation tokens.

Run with: pytest tests/unit/test_events.py -v
"""

import asyncio

import pytest
from vulnsweep.core.cancellation import CancellationToken, ScanCancelledError
from vulnsweep.core.events import Broadcast


class TestBroadcast:
    """Test suite for Broadcast class"""

    @pytest.mark.asyncio
    async def test_subscribers_receive_in_order(self):
        """Test every subscriber sees every value in publish order"""
        channel = Broadcast("test")
        first = channel.subscribe()
        second = channel.subscribe()

        for value in (1, 2, 3):
            channel.publish(value)

        assert first.drain() == [1, 2, 3]
        assert [await second.get() for _ in range(3)] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_late_subscriber_without_replay(self):
        """Test a plain channel does not replay past values"""
        channel = Broadcast("test")
        channel.publish("old")

        with channel.subscribe() as subscription:
            assert subscription.drain() == []
            channel.publish("new")
            assert subscription.drain() == ["new"]

    @pytest.mark.asyncio
    async def test_replay_latest(self):
        """Test a replaying channel hands late subscribers the current value"""
        channel = Broadcast("test", replay_latest=True)
        channel.publish("a")
        channel.publish("b")

        with channel.subscribe() as subscription:
            assert subscription.drain() == ["b"]

    @pytest.mark.asyncio
    async def test_replay_latest_none_value(self):
        """Test None is a real value for replay purposes"""
        channel = Broadcast("test", replay_latest=True)
        channel.publish(None)

        with channel.subscribe() as subscription:
            assert subscription.drain() == [None]

    @pytest.mark.asyncio
    async def test_latest_only_keeps_newest_value(self):
        """Test a state channel holds one pending value per subscriber"""
        channel = Broadcast("test", replay_latest=True, latest_only=True)
        channel.publish("a")

        with channel.subscribe() as subscription:
            for value in ("b", "c", "d"):
                channel.publish(value)

            assert subscription.drain() == ["d"]
            channel.publish("e")
            assert await subscription.get() == "e"

    @pytest.mark.asyncio
    async def test_close_unsubscribes(self):
        """Test closed subscriptions stop receiving"""
        channel = Broadcast("test")
        subscription = channel.subscribe()
        assert channel.subscriber_count == 1

        subscription.close()
        channel.publish(1)

        assert channel.subscriber_count == 0
        assert subscription.drain() == []

    @pytest.mark.asyncio
    async def test_async_iteration_ends_after_close(self):
        """Test iteration drains queued values then stops once closed"""
        channel = Broadcast("test")
        subscription = channel.subscribe()
        channel.publish(1)
        channel.publish(2)
        subscription.close()

        received = [value async for value in subscription]

        assert received == [1, 2]


class TestCancellationToken:
    """Test suite for CancellationToken class"""

    def test_raise_if_cancelled(self):
        """Test the token raises only after cancel()"""
        token = CancellationToken()
        token.raise_if_cancelled()

        token.cancel("paused")

        assert token.cancelled
        assert token.reason == "paused"
        with pytest.raises(ScanCancelledError):
            token.raise_if_cancelled()

    def test_first_reason_wins(self):
        """Test later cancel() calls keep the original reason"""
        token = CancellationToken()
        token.cancel("paused")
        token.cancel("cancelled")

        assert token.reason == "paused"

    @pytest.mark.asyncio
    async def test_sleep_completes(self):
        """Test an uncancelled sleep returns False"""
        assert await CancellationToken().sleep(0.01) is False

    @pytest.mark.asyncio
    async def test_sleep_wakes_on_cancel(self):
        """Test cancel() interrupts a long sleep"""
        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.01, token.cancel, "paused")

        cancelled = await asyncio.wait_for(token.sleep(60), timeout=5)

        assert cancelled is True

    @pytest.mark.asyncio
    async def test_sleep_on_cancelled_token_returns_immediately(self):
        """Test sleeping on a cancelled token returns True at once"""
        token = CancellationToken()
        token.cancel()

        assert await token.sleep(60) is True


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
