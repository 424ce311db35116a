"""Keeps the local cache and the remote user record converged.

Implements the session lifecycle for syncing quiz progress between the
on-device cache and ``users/{user_id}``:
- Load the local record first, so the app works offline from the start
- Migrate legacy records once per session
- Subscribe to the remote record and merge every snapshot (no data loss)
- Write mutations locally, then remotely, queueing them when offline
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum

from pydantic import ValidationError

from core.local_cache import LocalCacheStore
from core.merge import MergeAction, merge_records, record_payload, same_content
from core.migration import MigrationEngine, MigrationOutcome, MigrationState, MigrationStatus
from core.models import QuestionId, SessionSummary, UserRecord
from core.record_store import (
    SERVER_TIMESTAMP,
    Document,
    RecordStore,
    StoreError,
    Subscription,
)
from core.session import SessionContext
from core.stats_updater import StatsUpdater, StatsUpdateResult
from core.sync_queue import FlushResult, OfflineWriteQueue

log = logging.getLogger("quizsync.sync_manager")


class SyncState(Enum):
    UNINITIALIZED = "uninitialized"
    LOCAL_LOADED = "local_loaded"
    MIGRATED = "migrated"
    SUBSCRIBED = "subscribed"
    STEADY = "steady"
    STOPPED = "stopped"


@dataclass
class SyncStatus:
    """Snapshot of the sync manager for status displays."""

    state: SyncState
    online: bool
    subscribed: bool
    pending_writes: int
    last_updated: int
    migration: MigrationStatus | None = None


class SyncManager:
    """Drives sync for one session.

    Conflict resolution:
    - mistakes, archive, favorites: set union, nothing is ever dropped
    - settings: the local copy wins and is never pushed
    - direction: the side with the older last_updated receives the merge
    """

    def __init__(
        self,
        ctx: SessionContext,
        store: RecordStore,
        cache: LocalCacheStore,
        queue: OfflineWriteQueue | None = None,
        migration: MigrationEngine | None = None,
        stats: StatsUpdater | None = None,
    ):
        """Initialize sync manager.

        Args:
            ctx: Session identity and settings
            store: Remote record store
            cache: Local cache for this app instance
            queue: Offline write queue (created from the cache if omitted)
            migration: Migration engine (created if omitted)
            stats: Statistics updater (created if omitted)
        """
        self.ctx = ctx
        self.store = store
        self.cache = cache
        self.queue = queue or OfflineWriteQueue(
            cache, max_attempts=ctx.settings.queue_max_attempts
        )
        self.migration = migration or MigrationEngine(ctx, store, cache)
        self.stats = stats or StatsUpdater(ctx, store)

        self.online = True
        self._state = SyncState.UNINITIALIZED
        self._record = UserRecord(app_id=ctx.app_id)
        self._subscription: Subscription | None = None
        self._snapshot_seen = asyncio.Event()

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def record(self) -> UserRecord:
        return self._record

    def status(self) -> SyncStatus:
        return SyncStatus(
            state=self._state,
            online=self.online,
            subscribed=self._subscription is not None,
            pending_writes=len(self.queue),
            last_updated=self._record.last_updated,
            migration=self.migration.status(),
        )

    # ========== Lifecycle ==========

    async def start(self) -> None:
        """Bring the session to the steady state.

        Remote failures never abort startup: the session keeps working on
        local data and catches up once connectivity returns.
        """
        if self._state is not SyncState.UNINITIALIZED:
            log.debug(f"start() ignored in state {self._state.value}")
            return

        log.info(f"Starting sync for app {self.ctx.app_id}, user {self.ctx.user_id or 'anonymous'}")
        self._record = self._with_identity(self.cache.load())
        self._state = SyncState.LOCAL_LOADED

        if self.ctx.is_anonymous:
            log.info("No durable user identity, operating in local-only mode")
            self._state = SyncState.STEADY
            return

        status = await self.migration.run()
        if status.migrated_from:
            # Migration merged legacy data into the cache
            self._record = self._with_identity(self.cache.load())
        self._state = SyncState.MIGRATED

        await self._announce_presence()
        await self._subscribe()
        if self._subscription is not None:
            self._state = SyncState.SUBSCRIBED
        else:
            # Treat as offline until told otherwise; going online resubscribes
            self.online = False

        if len(self.queue):
            await self.flush_queue()
        self._state = SyncState.STEADY

    async def stop(self) -> None:
        """Release the subscription and mark this user offline."""
        if self._state is SyncState.STOPPED:
            return
        if self._state is SyncState.UNINITIALIZED:
            self._state = SyncState.STOPPED
            return
        if self._subscription is not None:
            await self._subscription.cancel()
            self._subscription = None
        if not self.ctx.is_anonymous and self.online:
            try:
                await self.store.set_atomic(
                    self.ctx.presence_path(),
                    {"online": False, "last_seen": SERVER_TIMESTAMP},
                )
            except StoreError as e:
                log.debug(f"Could not mark presence offline: {e}")
        self._state = SyncState.STOPPED
        log.info("Sync stopped")

    async def __aenter__(self) -> "SyncManager":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    def _with_identity(self, record: UserRecord) -> UserRecord:
        return record.model_copy(update={
            "owner_id": self.ctx.user_id,
            "user_name": self.ctx.user_name,
            "app_id": self.ctx.app_id,
        })

    async def _announce_presence(self) -> None:
        path = self.ctx.presence_path()
        try:
            await self.store.set_atomic(path, {"online": True, "last_seen": SERVER_TIMESTAMP})
            await self.store.on_disconnect(path, {"online": False, "last_seen": SERVER_TIMESTAMP})
        except StoreError as e:
            log.warning(f"Presence not registered: {e}")

    async def _subscribe(self) -> None:
        try:
            self._subscription = await self.store.subscribe(
                self.ctx.user_path(), self._on_remote_change
            )
            log.info(f"Real-time sync active for {self.ctx.user_path()}")
        except StoreError as e:
            self._subscription = None
            log.warning(f"Real-time sync unavailable, will retry when online: {e}")

    # ========== Remote changes ==========

    async def _on_remote_change(self, doc: Document | None) -> None:
        """Merge a snapshot of the remote record into the local one."""
        if self._state is SyncState.STOPPED:
            return
        try:
            await self._merge_snapshot(doc)
        finally:
            self._snapshot_seen.set()

    async def wait_for_snapshot(self, timeout: float = 10.0) -> bool:
        """Wait until the first remote snapshot has been handled.

        Returns:
            False if no snapshot arrived within the timeout
        """
        try:
            await asyncio.wait_for(self._snapshot_seen.wait(), timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def _merge_snapshot(self, doc: Document | None) -> None:
        if doc is None:
            log.debug("No cloud data yet")
            return
        try:
            remote = UserRecord.model_validate(doc)
        except ValidationError as e:
            log.warning(f"Ignoring malformed remote record: {e}")
            return
        if remote.owner_id != self.ctx.user_id:
            log.warning(
                f"Ignoring remote record owned by {remote.owner_id!r} "
                f"at {self.ctx.user_path()}"
            )
            return

        result = merge_records(self._record, remote)

        if result.action is MergeAction.WRITE_LOCAL:
            log.info(f"Updating from cloud ({result.added_locally} new items)")
            # Adopt the remote timestamp so the echo of this state is a no-op
            self._record = self.cache.persist(result.record, stamp=remote.last_updated)

        elif result.action is MergeAction.PUSH_REMOTE:
            self._record = self.cache.persist(result.record, stamp=result.record.last_updated)
            if same_content(result.record, remote):
                # Remote already holds every element; pushing would only echo back
                log.debug("Remote is older but has the same content, not pushing")
                return
            log.info(f"Pushing merged record to cloud ({result.added_remotely} new items)")
            await self._write_remote(record_payload(self._record, self.ctx.app_id))

    # ========== Mutations ==========

    async def add_mistake(self, question_id: QuestionId) -> None:
        await self._add("mistakes", question_id)

    async def add_archive(self, question_id: QuestionId) -> None:
        await self._add("archive", question_id)

    async def add_favorite(self, question_id: QuestionId) -> None:
        await self._add("favorites", question_id)

    async def resolve_mistake(self, question_id: QuestionId) -> None:
        """Archive a question answered correctly after a mistake.

        The mistake itself stays recorded; the mistake set only grows.
        """
        await self._add("archive", question_id)

    async def update_setting(self, key: str, value) -> None:
        """Change a per-device setting. Settings are never sent remotely."""
        settings = dict(self._record.settings)
        settings[key] = value
        self._record = self._record.model_copy(update={"settings": settings})
        await self.save(local_only=True)

    async def _add(self, field: str, question_id: QuestionId) -> None:
        ids = getattr(self._record, field)
        if question_id in ids:
            return
        self._record = self._record.model_copy(update={field: ids | {question_id}})
        await self.save()

    async def save(self, local_only: bool = False) -> None:
        """Persist locally, then write the record to the remote store.

        Remote failures queue the payload instead of raising.
        """
        self._record = self.cache.persist(
            self._record.model_copy(update={"client_timestamp": int(time.time() * 1000)})
        )
        if local_only or self.ctx.is_anonymous or self._state is SyncState.STOPPED:
            return
        await self._write_remote(record_payload(self._record, self.ctx.app_id))

    async def _write_remote(self, payload: dict) -> None:
        if not self.online:
            self.queue.enqueue(payload)
            return
        try:
            await self.store.update_fields(self.ctx.user_path(), payload)
            log.debug(f"Saved to remote for user {self.ctx.user_id}")
        except StoreError as e:
            log.warning(f"Remote save failed, queued for later: {e}")
            self.queue.enqueue(payload)

    # ========== Connectivity ==========

    async def set_online(self, online: bool) -> FlushResult | None:
        """React to a connectivity change.

        Going online finishes a migration that failed while offline,
        announces presence again and flushes the queue (subscribing first if
        startup could not). Merging is left to the subscription, which
        resends the remote state.
        """
        was_online = self.online
        self.online = online
        if online == was_online:
            return None
        if not online:
            log.info("Connection lost, writes will be queued")
            return None

        log.info("Connection restored")
        if self.ctx.is_anonymous or self._state is SyncState.STOPPED:
            return None
        if self.migration.status().state is MigrationState.FAILED:
            await self._retry_migration()
        await self._announce_presence()
        if self._subscription is None and self._state is SyncState.STEADY:
            await self._subscribe()
        return await self.flush_queue()

    async def _retry_migration(self) -> None:
        log.info("Retrying migration after reconnect")
        status = await self.migration.run()
        if status.state is not MigrationState.DONE:
            return
        if status.outcome is not MigrationOutcome.ALREADY_CURRENT:
            # The new remote record was built from the cache, which already
            # holds every queued change
            self.queue.clear()
        self._record = self._with_identity(self.cache.load())

    async def flush_queue(self) -> FlushResult:
        if self.ctx.is_anonymous or not self.online:
            return FlushResult(retained=len(self.queue), skipped=True)

        user_path = self.ctx.user_path()

        async def write(payload: dict) -> None:
            await self.store.update_fields(
                user_path, {**payload, "last_updated": SERVER_TIMESTAMP}
            )

        return await self.queue.flush(write)

    # ========== Sessions ==========

    async def complete_session(self, summary: SessionSummary) -> StatsUpdateResult:
        """Store a finished session locally and update the remote statistics."""
        self.cache.append_session(summary)
        return await self.stats.apply(summary)
