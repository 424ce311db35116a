"""Tests for core.sync_queue module."""

import asyncio

import pytest

from core.local_cache import LocalCacheStore
from core.record_store import StoreUnavailableError
from core.sync_queue import OfflineWriteQueue


class RecordingWriter:
    """Remote writer that fails while ``failing`` is set."""

    def __init__(self, failing: bool = False):
        self.failing = failing
        self.written: list[dict] = []
        self.calls = 0

    async def __call__(self, payload: dict) -> None:
        self.calls += 1
        await asyncio.sleep(0)
        if self.failing:
            raise StoreUnavailableError("offline")
        self.written.append(payload)


@pytest.fixture
def queue(cache):
    return OfflineWriteQueue(cache, max_attempts=3)


class TestEnqueue:
    """Tests for queueing writes."""

    def test_enqueue_persists_immediately(self, queue, cache):
        queue.enqueue({"mistakes": [1]})
        assert len(queue) == 1
        assert [e.payload for e in cache.load_queue()] == [{"mistakes": [1]}]

    def test_queue_survives_restart(self, queue, temp_db_path):
        queue.enqueue({"mistakes": [1]})
        queue.enqueue({"mistakes": [1, 2]})
        restored = OfflineWriteQueue(LocalCacheStore(temp_db_path, "medquiz_v2"))
        assert [e.payload for e in restored.entries] == [{"mistakes": [1]}, {"mistakes": [1, 2]}]


class TestFlush:
    """Tests for flushing the queue."""

    @pytest.mark.asyncio
    async def test_flush_in_fifo_order(self, queue):
        for n in range(3):
            queue.enqueue({"n": n})
        writer = RecordingWriter()

        result = await queue.flush(writer)

        assert writer.written == [{"n": 0}, {"n": 1}, {"n": 2}]
        assert result.flushed == 3
        assert len(queue) == 0

    @pytest.mark.asyncio
    async def test_failed_entry_is_kept_with_attempt_count(self, queue, cache):
        queue.enqueue({"n": 0})
        result = await queue.flush(RecordingWriter(failing=True))
        assert result.retained == 1
        assert queue.entries[0].attempts == 1
        assert cache.load_queue()[0].attempts == 1

    @pytest.mark.asyncio
    async def test_entry_dropped_after_exceeding_ceiling(self, queue):
        queue.enqueue({"n": 0})
        writer = RecordingWriter(failing=True)

        for _ in range(3):
            result = await queue.flush(writer)
            assert result.dropped == 0
        result = await queue.flush(writer)

        assert result.dropped == 1
        assert len(queue) == 0
        assert writer.calls == 4

    @pytest.mark.asyncio
    async def test_concurrent_flush_is_skipped(self, queue):
        queue.enqueue({"n": 0})
        writer = RecordingWriter()

        first, second = await asyncio.gather(queue.flush(writer), queue.flush(writer))

        assert first.flushed == 1
        assert second.skipped
        assert writer.written == [{"n": 0}]

    @pytest.mark.asyncio
    async def test_entries_enqueued_during_flush_stay_queued(self, queue):
        queue.enqueue({"n": 0})

        async def writer(payload):
            queue.enqueue({"n": 1})
            await asyncio.sleep(0)

        result = await queue.flush(writer)

        assert result.flushed == 1
        assert [e.payload for e in queue.entries] == [{"n": 1}]

    def test_clear(self, queue, cache):
        queue.enqueue({"n": 0})
        queue.clear()
        assert len(queue) == 0
        assert cache.load_queue() == []
