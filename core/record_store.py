"""Remote record store abstraction layer for QuizSync.

The sync engine only talks to the remote side through this interface: a
path-addressed document store with realtime push, atomic read-modify-write
transactions and a "commit this when I disconnect" hook.

Timestamp contract: every implementation replaces ``SERVER_TIMESTAMP``
placeholders with a timestamp that is monotonically non-decreasing per
path across writes. Merge decisions compare these timestamps, so an
implementation that violates this breaks convergence.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable

log = logging.getLogger("quizsync.record_store")

# Placeholder replaced with the store's own clock at commit time
SERVER_TIMESTAMP = {".sv": "timestamp"}

Document = dict[str, Any]
ChangeCallback = Callable[[Document | None], Awaitable[None] | None]
TransactionFn = Callable[[Document | None], Document | None]


class StoreError(Exception):
    """Base exception for remote store errors."""

    pass


class StoreUnavailableError(StoreError):
    """Raised when the store cannot be reached (offline, network, permission race)."""

    pass


class TransactionAbortedError(StoreError):
    """Raised when a transaction keeps conflicting and its retries are exhausted."""

    pass


def split_path(path: str) -> list[str]:
    """Split a slash-separated path into its segments.

    Raises:
        ValueError: If a segment is empty or contains forbidden characters
    """
    segments = [s for s in path.strip("/").split("/") if s != ""]
    for segment in segments:
        if any(c in segment for c in ".#$[]"):
            raise ValueError(f"Invalid path segment {segment!r} in {path!r}")
    return segments


def join_path(*parts: Any) -> str:
    """Join path parts, ignoring empty ones."""
    return "/".join(str(p).strip("/") for p in parts if str(p).strip("/"))


def contains_server_timestamp(value: Any) -> bool:
    if value == SERVER_TIMESTAMP:
        return True
    if isinstance(value, dict):
        return any(contains_server_timestamp(v) for v in value.values())
    return False


def resolve_server_timestamps(value: Any, now_ms: int) -> Any:
    """Return a copy of value with every SERVER_TIMESTAMP replaced by now_ms."""
    if value == SERVER_TIMESTAMP:
        return now_ms
    if isinstance(value, dict):
        return {k: resolve_server_timestamps(v, now_ms) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_server_timestamps(v, now_ms) for v in value]
    return value


class Subscription(ABC):
    """Handle for a realtime subscription.

    Usable as an async context manager so the listener is released when the
    scope exits. ``cancel()`` may be called any number of times.
    """

    def __init__(self, path: str):
        self.path = path
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    async def cancel(self) -> None:
        """Stop receiving changes. Idempotent."""
        if self._cancelled:
            return
        self._cancelled = True
        await self._release()
        log.debug(f"Subscription to {self.path} cancelled")

    @abstractmethod
    async def _release(self) -> None:
        """Release the underlying listener resource."""
        pass

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.cancel()


class RecordStore(ABC):
    """Abstract base class for remote record stores.

    All remote backends must implement this interface to be usable by the
    sync engine.
    """

    @abstractmethod
    async def get_once(self, path: str) -> Document | None:
        """Read the document at path.

        Returns:
            The document, or None if nothing is stored there

        Raises:
            StoreUnavailableError: If the store cannot be reached
        """
        pass

    @abstractmethod
    async def set_atomic(self, path: str, doc: Document | None) -> None:
        """Overwrite the document at path. ``None`` deletes it."""
        pass

    @abstractmethod
    async def update_fields(self, path: str, partial: Document) -> None:
        """Merge partial into the document at path, top-level keys only.

        A ``None`` value removes that key.
        """
        pass

    @abstractmethod
    async def subscribe(self, path: str, on_change: ChangeCallback) -> Subscription:
        """Listen for changes at path.

        on_change fires once with the current value, then after every
        change, until the returned subscription is cancelled.
        """
        pass

    @abstractmethod
    async def transact(self, path: str, fn: TransactionFn) -> Document | None:
        """Atomically replace the document at path with fn(current).

        fn may be invoked several times when concurrent writers conflict, so
        it must be a pure function of its argument. Returning None from fn
        deletes the document.

        Returns:
            The committed value

        Raises:
            TransactionAbortedError: If retries are exhausted
        """
        pass

    @abstractmethod
    async def on_disconnect(self, path: str, value: Document | None) -> None:
        """Register a value the store writes at path if this client drops."""
        pass

    @abstractmethod
    async def push(self, path: str, doc: Document) -> str:
        """Create doc under path at a newly generated unique key.

        Returns:
            The generated key
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close connections and release resources."""
        pass
