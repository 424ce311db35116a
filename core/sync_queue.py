"""Durable retry buffer for record writes that could not reach the remote store.

Delivery is best effort: an entry that keeps failing is dropped once it
exceeds the retry ceiling, which bounds the queue at the price of losing
that write (the append-only union on the next successful sync usually
recovers the elements, but this is not guaranteed).
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from core.local_cache import LocalCacheStore
from core.models import SyncQueueEntry

log = logging.getLogger("quizsync.sync_queue")

DEFAULT_MAX_ATTEMPTS = 3

QueueWriter = Callable[[dict[str, Any]], Awaitable[None]]


@dataclass
class FlushResult:
    """Outcome of one flush pass."""

    flushed: int = 0
    retained: int = 0
    dropped: int = 0
    skipped: bool = False


class OfflineWriteQueue:
    """FIFO of pending writes, persisted in the local cache."""

    def __init__(self, cache: LocalCacheStore, max_attempts: int = DEFAULT_MAX_ATTEMPTS):
        """Initialize the queue from whatever a previous run left behind.

        Args:
            cache: Local cache used for persistence
            max_attempts: Failed attempts tolerated before an entry is dropped
        """
        self.cache = cache
        self.max_attempts = max_attempts
        self._entries: list[SyncQueueEntry] = cache.load_queue()
        self._lock = asyncio.Lock()
        if self._entries:
            log.info(f"Restored {len(self._entries)} queued writes")

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def entries(self) -> list[SyncQueueEntry]:
        return list(self._entries)

    @property
    def flushing(self) -> bool:
        return self._lock.locked()

    def enqueue(self, payload: dict[str, Any]) -> SyncQueueEntry:
        """Append a write and persist the queue immediately."""
        entry = SyncQueueEntry(payload=payload, enqueued_at=int(time.time() * 1000))
        self._entries.append(entry)
        self.cache.save_queue(self._entries)
        log.debug(f"Queued write for later sync ({len(self._entries)} pending)")
        return entry

    async def flush(self, writer: QueueWriter) -> FlushResult:
        """Try every queued write in enqueue order.

        Successful writes are removed. A failed write has its attempt count
        increased and is dropped once the count exceeds max_attempts. If a
        flush is already running this call returns immediately.

        Args:
            writer: Coroutine function performing the remote write

        Returns:
            FlushResult with counts for this pass
        """
        if self._lock.locked():
            log.debug("Flush already in progress, skipping")
            return FlushResult(retained=len(self._entries), skipped=True)

        async with self._lock:
            result = FlushResult()
            # Entries enqueued while flushing stay queued for the next pass
            batch = list(self._entries)
            finished: list[SyncQueueEntry] = []

            for entry in batch:
                try:
                    await writer(entry.payload)
                    finished.append(entry)
                    result.flushed += 1
                except Exception as e:
                    entry.attempts += 1
                    if entry.attempts > self.max_attempts:
                        log.warning(
                            f"Dropping queued write after {entry.attempts} failed attempts "
                            f"(enqueued at {entry.enqueued_at}): {e}"
                        )
                        finished.append(entry)
                        result.dropped += 1
                    else:
                        log.debug(f"Queued write failed (attempt {entry.attempts}): {e}")

            self._entries = [e for e in self._entries if not any(e is f for f in finished)]
            result.retained = len(self._entries)
            self.cache.save_queue(self._entries)

        if result.flushed or result.dropped:
            log.info(
                f"Sync queue flushed: sent={result.flushed}, "
                f"dropped={result.dropped}, pending={result.retained}"
            )
        return result

    def clear(self) -> None:
        self._entries = []
        self.cache.save_queue(self._entries)
