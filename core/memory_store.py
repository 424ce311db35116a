"""In-process remote record store.

Backs local-only mode and the test-suite. A ``MemoryBackend`` holds the
document tree shared by every simulated device; each ``MemoryRecordStore``
is one client connection to it with its own connectivity state and
disconnect hooks.
"""

import asyncio
import copy
import inspect
import logging
import time
from typing import Any, Callable

from core.record_store import (
    ChangeCallback,
    Document,
    RecordStore,
    StoreUnavailableError,
    Subscription,
    TransactionAbortedError,
    TransactionFn,
    join_path,
    resolve_server_timestamps,
    split_path,
)
from utils.push_id import generate_push_key

log = logging.getLogger("quizsync.memory_store")


def _wall_clock_ms() -> int:
    return int(time.time() * 1000)


def _prune(value: Any) -> Any:
    """Drop None entries and empty containers the way document stores do."""
    if isinstance(value, dict):
        pruned = {k: _prune(v) for k, v in value.items() if v is not None}
        pruned = {k: v for k, v in pruned.items() if v not in ({}, None)}
        return pruned or None
    return value


class MemoryBackend:
    """Shared document tree with per-path versions and a hybrid clock."""

    def __init__(self, clock: Callable[[], int] | None = None):
        self._root: dict[str, Any] = {}
        self._versions: dict[str, int] = {}
        self._clock = clock or _wall_clock_ms
        self._last_ts = 0
        self._subscriptions: list["MemorySubscription"] = []
        self.delivered = 0

    def now(self) -> int:
        """Strictly increasing timestamp: wall clock, bumped past the last one issued."""
        self._last_ts = max(self._clock(), self._last_ts + 1)
        return self._last_ts

    def read(self, path: str) -> Any:
        node: Any = self._root
        for segment in split_path(path):
            if not isinstance(node, dict) or segment not in node:
                return None
            node = node[segment]
        return copy.deepcopy(node) if node != {} else None

    def version_token(self, path: str) -> int:
        """Version of path; any write that can change its value bumps it."""
        # Registered paths are bumped by writes to their ancestors as well
        return self._versions.setdefault("/".join(split_path(path)), 0)

    def write(self, path: str, value: Any) -> None:
        """Replace the value at path and notify affected subscribers."""
        segments = split_path(path)
        before = {id(s): self.read(s.path) for s in self._subscriptions}

        value = _prune(resolve_server_timestamps(copy.deepcopy(value), self.now()))
        if not segments:
            self._root = value if isinstance(value, dict) else {}
        elif value is None:
            self._delete(segments)
        else:
            node = self._root
            for segment in segments[:-1]:
                child = node.get(segment)
                if not isinstance(child, dict):
                    child = {}
                    node[segment] = child
                node = child
            node[segments[-1]] = value

        self._bump(segments)
        for sub in list(self._subscriptions):
            after = self.read(sub.path)
            if after != before.get(id(sub)):
                sub.deliver(after)

    def _delete(self, segments: list[str]) -> None:
        trail = []
        node = self._root
        for segment in segments[:-1]:
            child = node.get(segment)
            if not isinstance(child, dict):
                return
            trail.append((node, segment))
            node = child
        node.pop(segments[-1], None)
        # Remove parents left empty
        while trail and not node:
            parent, key = trail.pop()
            parent.pop(key, None)
            node = parent

    def _bump(self, segments: list[str]) -> None:
        for i in range(len(segments) + 1):
            prefix = "/".join(segments[:i])
            self._versions[prefix] = self._versions.get(prefix, 0) + 1
        # Descendants of the written path change too
        written = "/".join(segments)
        for key in list(self._versions):
            if written and key.startswith(written + "/"):
                self._versions[key] += 1
            elif not written and key:
                self._versions[key] += 1

    def add_subscription(self, sub: "MemorySubscription") -> None:
        self._subscriptions.append(sub)

    def remove_subscription(self, sub: "MemorySubscription") -> None:
        if sub in self._subscriptions:
            self._subscriptions.remove(sub)

    async def drain(self) -> None:
        """Wait until every pending change notification has been handled.

        Handlers may write, which queues further notifications, so keep
        going until a full pass delivers nothing new.
        """
        while True:
            delivered = self.delivered
            for sub in list(self._subscriptions):
                await sub.queue.join()
            await asyncio.sleep(0)
            if self.delivered == delivered:
                return


class MemorySubscription(Subscription):
    """Delivers changes to a callback from its own task, in order."""

    def __init__(self, path: str, callback: ChangeCallback, store: "MemoryRecordStore"):
        super().__init__(path)
        self.callback = callback
        self.store = store
        self.queue: asyncio.Queue = asyncio.Queue()
        self._task = asyncio.create_task(self._run())

    def deliver(self, value: Document | None) -> None:
        if not self.cancelled and self.store.online:
            self.store.backend.delivered += 1
            self.queue.put_nowait(value)

    async def _run(self) -> None:
        while True:
            value = await self.queue.get()
            try:
                result = self.callback(value)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                log.error(f"Change handler for {self.path} failed: {e}")
            finally:
                self.queue.task_done()

    async def _release(self) -> None:
        self.store.backend.remove_subscription(self)
        self.store._subscriptions.discard(self)
        # Unblock anyone draining this queue
        while not self.queue.empty():
            self.queue.get_nowait()
            self.queue.task_done()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass


class MemoryRecordStore(RecordStore):
    """One client connection to a MemoryBackend."""

    def __init__(self, backend: MemoryBackend | None = None, max_retries: int = 25):
        self.backend = backend or MemoryBackend()
        self.max_retries = max_retries
        self.online = True
        self._disconnect_hooks: dict[str, Document | None] = {}
        self._subscriptions: set[MemorySubscription] = set()

    def _check_online(self) -> None:
        if not self.online:
            raise StoreUnavailableError("Remote store is unreachable (offline)")

    async def get_once(self, path: str) -> Document | None:
        self._check_online()
        await asyncio.sleep(0)
        return self.backend.read(path)

    async def set_atomic(self, path: str, doc: Document | None) -> None:
        self._check_online()
        await asyncio.sleep(0)
        self.backend.write(path, doc)

    async def update_fields(self, path: str, partial: Document) -> None:
        self._check_online()
        await asyncio.sleep(0)
        current = self.backend.read(path)
        merged = current if isinstance(current, dict) else {}
        for key, value in partial.items():
            if value is None:
                merged.pop(key, None)
            else:
                merged[key] = value
        self.backend.write(path, merged)

    async def subscribe(self, path: str, on_change: ChangeCallback) -> Subscription:
        self._check_online()
        sub = MemorySubscription(path, on_change, self)
        self.backend.add_subscription(sub)
        self._subscriptions.add(sub)
        sub.deliver(self.backend.read(path))
        return sub

    async def transact(self, path: str, fn: TransactionFn) -> Document | None:
        for attempt in range(1, self.max_retries + 1):
            self._check_online()
            token = self.backend.version_token(path)
            proposed = fn(self.backend.read(path))
            # Commit round-trip; other writers may commit meanwhile
            await asyncio.sleep(0)
            self._check_online()
            if self.backend.version_token(path) != token:
                log.debug(f"Transaction on {path} conflicted (attempt {attempt}), retrying")
                continue
            self.backend.write(path, proposed)
            return self.backend.read(path)
        raise TransactionAbortedError(
            f"Transaction on {path} aborted after {self.max_retries} attempts"
        )

    async def on_disconnect(self, path: str, value: Document | None) -> None:
        self._check_online()
        self._disconnect_hooks[path] = copy.deepcopy(value)

    async def cancel_on_disconnect(self, path: str) -> None:
        self._disconnect_hooks.pop(path, None)

    async def push(self, path: str, doc: Document) -> str:
        self._check_online()
        await asyncio.sleep(0)
        key = generate_push_key(self.backend.now())
        self.backend.write(join_path(path, key), doc)
        return key

    async def close(self) -> None:
        for sub in list(self._subscriptions):
            await sub.cancel()
        self._disconnect_hooks.clear()

    # ========== Connectivity simulation ==========

    def go_offline(self) -> None:
        """Lose connectivity; the server side notices and runs the disconnect hooks."""
        if not self.online:
            return
        self.online = False
        hooks, self._disconnect_hooks = self._disconnect_hooks, {}
        for path, value in hooks.items():
            log.debug(f"Committing disconnect value at {path}")
            self.backend.write(path, value)

    def drop_connection(self) -> None:
        """Lose the connection and reconnect at once, as after a socket reset."""
        self.go_offline()
        self.go_online()

    def go_online(self) -> None:
        """Regain connectivity; live subscriptions resend the current value."""
        if self.online:
            return
        self.online = True
        for sub in list(self._subscriptions):
            sub.deliver(self.backend.read(sub.path))
