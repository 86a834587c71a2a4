"""
Unit tests for groupcrypt.background task queue.
"""

import asyncio

import pytest

from groupcrypt.background import BackgroundTaskQueue


@pytest.mark.asyncio
class TestBackgroundTaskQueue:
    """Tests for the bounded worker pool and its error channel."""

    async def test_runs_submitted_jobs(self):
        """Test that submitted jobs run and are counted."""
        queue = BackgroundTaskQueue(workers=2)
        results = []

        async def job(value):
            results.append(value)

        for value in range(5):
            assert queue.submit(f"job-{value}", lambda value=value: job(value)) is True
        await queue.join()

        assert sorted(results) == [0, 1, 2, 3, 4]
        assert queue.completed == 5
        assert queue.running is True
        await queue.stop()
        assert queue.running is False

    async def test_failures_go_to_error_channel(self):
        """Test that a failing job is published, not raised."""
        queue = BackgroundTaskQueue(workers=1)

        async def broken():
            raise ValueError("nope")

        queue.submit("broken", broken)
        failure = await queue.next_error(timeout=1.0)

        assert failure.name == "broken"
        assert isinstance(failure.error, ValueError)
        await queue.join()
        assert queue.failed == 1
        assert queue.drain_errors() == []
        await queue.stop()

    async def test_error_channel_keeps_latest(self):
        """Test that a full error channel drops the oldest failures."""
        queue = BackgroundTaskQueue(workers=1, error_channel_size=2)

        async def broken():
            raise RuntimeError("fail")

        for index in range(3):
            queue.submit(f"broken-{index}", broken)
        await queue.join()

        assert [f.name for f in queue.drain_errors()] == ["broken-1", "broken-2"]
        await queue.stop()

    async def test_full_queue_drops_job(self):
        """Test that submit never blocks and reports a dropped job."""
        queue = BackgroundTaskQueue(workers=1, max_size=1)
        release = asyncio.Event()

        async def wait():
            await release.wait()

        assert queue.submit("first", wait) is True
        assert queue.submit("second", wait) is False
        assert queue.dropped == 1

        release.set()
        await queue.join()
        await queue.stop()

    async def test_submit_after_stop(self):
        """Test that a stopped queue refuses work."""
        queue = BackgroundTaskQueue()
        await queue.stop()

        assert queue.submit("late", lambda: asyncio.sleep(0)) is False
        assert queue.dropped == 1
        assert queue.drain_errors() == []

    async def test_next_error_after_stop(self):
        """Test that a stopped queue hands out pending failures and never restarts."""
        queue = BackgroundTaskQueue(workers=1)

        async def broken():
            raise ValueError("late")

        queue.submit("broken", broken)
        await queue.join()
        await queue.stop()

        failure = await queue.next_error(timeout=1.0)
        assert failure.name == "broken"
        with pytest.raises(RuntimeError):
            await queue.next_error(timeout=1.0)
        assert queue.running is False
