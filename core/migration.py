"""Consolidation of legacy user records into ``users/{user_id}``.

Earlier clients stored progress under three other layouts:

- ``{session_id}``: one top-level document per device session
- ``apps/{app_id}/{session_id}``: the same, scoped per app instance
- ``user_data/{user_id}``: the first per-user layout

On session start the engine checks whether the current record exists and,
if not, merges every legacy record owned by this user (plus the local
cache) into it. Legacy documents are never removed here; deleting them is
the job of an explicit ``cleanup_legacy()`` call made once the migrated
record is known to be stored.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, assert_never

from pydantic import ValidationError

from core.local_cache import LocalCacheStore
from core.merge import union_ids
from core.models import (
    AppScopedRecord,
    LegacyRecord,
    SessionKeyedRecord,
    UserDataRecord,
    UserRecord,
)
from core.record_store import SERVER_TIMESTAMP, RecordStore, StoreError
from core.session import (
    ADMINS_ROOT,
    ANALYTICS_ROOT,
    AUTH_LINKS_ROOT,
    LEADERBOARDS_ROOT,
    PRESENCE_ROOT,
    USER_STATS_ROOT,
    USERS_ROOT,
    SessionContext,
)

log = logging.getLogger("quizsync.migration")

LEGACY_APPS_ROOT = "apps"
LEGACY_USER_DATA_ROOT = "user_data"

# Top-level keys that are never session-keyed legacy records
RESERVED_NAMESPACES = frozenset({
    USERS_ROOT,
    USER_STATS_ROOT,
    AUTH_LINKS_ROOT,
    ADMINS_ROOT,
    ANALYTICS_ROOT,
    LEADERBOARDS_ROOT,
    PRESENCE_ROOT,
    LEGACY_APPS_ROOT,
    LEGACY_USER_DATA_ROOT,
})


class MigrationState(Enum):
    PENDING = "pending"
    CHECK_CURRENT = "check_current"
    SCAN = "scan"
    CREATE_FRESH = "create_fresh"
    MERGE_AND_WRITE = "merge_and_write"
    DONE = "done"
    FAILED = "failed"


class MigrationOutcome(Enum):
    ALREADY_CURRENT = "already_current"
    CREATED_FRESH = "created_fresh"
    MIGRATED = "migrated"
    SKIPPED_ANONYMOUS = "skipped_anonymous"


@dataclass
class MigrationStatus:
    """Where the migration of this session stands."""

    user_id: str | None
    state: MigrationState
    migration_done: bool
    outcome: MigrationOutcome | None = None
    migrated_from: list[str] = field(default_factory=list)
    excluded: int = 0
    error: str | None = None

    @property
    def is_anonymous(self) -> bool:
        return self.user_id is None


def _owner_field(doc: dict[str, Any]) -> Any:
    return doc.get("telegram_id", doc.get("owner_id"))


def _legacy_fields(doc: dict[str, Any]) -> dict[str, Any]:
    return {
        "owner_id": _owner_field(doc),
        "mistakes": doc.get("mistakes"),
        "archive": doc.get("archive"),
        "favorites": doc.get("fav"),
        "settings": doc.get("settings") if isinstance(doc.get("settings"), dict) else {},
    }


def discover_legacy_records(root: dict[str, Any] | None, min_key_length: int = 20) -> list[LegacyRecord]:
    """Find every document in a root snapshot stored under a legacy layout.

    Ownership is not checked here; see ``MigrationEngine.attribute``.
    """
    records: list[LegacyRecord] = []
    if not root:
        return records

    def add(factory, **kwargs):
        try:
            records.append(factory(**kwargs))
        except ValidationError as e:
            log.info(f"Ignoring malformed legacy record at {kwargs.get('address')}: {e}")

    for key, doc in root.items():
        if key in RESERVED_NAMESPACES or len(key) < min_key_length:
            continue
        if isinstance(doc, dict):
            add(SessionKeyedRecord, address=key, session_id=key, **_legacy_fields(doc))

    apps = root.get(LEGACY_APPS_ROOT)
    if isinstance(apps, dict):
        for app_id, sessions in apps.items():
            if not isinstance(sessions, dict):
                continue
            for session_id, doc in sessions.items():
                if isinstance(doc, dict):
                    add(
                        AppScopedRecord,
                        address=f"{LEGACY_APPS_ROOT}/{app_id}/{session_id}",
                        app_id=app_id,
                        session_id=session_id,
                        **_legacy_fields(doc),
                    )

    user_data = root.get(LEGACY_USER_DATA_ROOT)
    if isinstance(user_data, dict):
        for user_key, doc in user_data.items():
            if isinstance(doc, dict):
                add(
                    UserDataRecord,
                    address=f"{LEGACY_USER_DATA_ROOT}/{user_key}",
                    user_key=user_key,
                    **_legacy_fields(doc),
                )

    return records


class MigrationEngine:
    """Moves legacy records of one user into the current per-user path."""

    def __init__(
        self,
        ctx: SessionContext,
        store: RecordStore,
        cache: LocalCacheStore,
        legacy_key_min_length: int | None = None,
    ):
        self.ctx = ctx
        self.store = store
        self.cache = cache
        self.legacy_key_min_length = (
            legacy_key_min_length
            if legacy_key_min_length is not None
            else ctx.settings.legacy_key_min_length
        )
        self._state = MigrationState.PENDING
        self._done = False
        self._outcome: MigrationOutcome | None = None
        self._migrated_from: list[str] = []
        self._excluded = 0
        self._error: str | None = None

    def status(self) -> MigrationStatus:
        return MigrationStatus(
            user_id=self.ctx.user_id,
            state=self._state,
            migration_done=self._done,
            outcome=self._outcome,
            migrated_from=list(self._migrated_from),
            excluded=self._excluded,
            error=self._error,
        )

    def is_owned(self, record: LegacyRecord) -> bool:
        """True if the legacy record belongs to this session's user."""
        user_id = self.ctx.user_id
        if isinstance(record, SessionKeyedRecord):
            return record.owner_id == user_id
        elif isinstance(record, AppScopedRecord):
            return record.owner_id == user_id
        elif isinstance(record, UserDataRecord):
            # The per-user layout is addressed by owner; both must agree
            return record.owner_id == user_id and record.user_key == user_id
        else:
            assert_never(record)

    def attribute(self, records: list[LegacyRecord]) -> tuple[list[LegacyRecord], int]:
        """Split legacy records into this user's and a count of the rest."""
        owned = []
        excluded = 0
        for record in records:
            if self.is_owned(record):
                owned.append(record)
            else:
                excluded += 1
                if record.owner_id is None:
                    log.debug(f"Legacy record {record.address} has no owner, skipping")
        return owned, excluded

    async def find_owned_legacy_records(self) -> list[LegacyRecord]:
        root = await self.store.get_once("")
        owned, self._excluded = self.attribute(
            discover_legacy_records(root, self.legacy_key_min_length)
        )
        return owned

    async def run(self, force: bool = False) -> MigrationStatus:
        """Run the migration once per session.

        Args:
            force: Run again even if this session already migrated

        Returns:
            MigrationStatus describing what happened. Store failures are
            logged and reported in the status, never raised.
        """
        if self.ctx.is_anonymous:
            log.info("No durable user identity, skipping migration")
            self._outcome = MigrationOutcome.SKIPPED_ANONYMOUS
            return self.status()
        if self._done and not force:
            return self.status()

        self._done = False
        self._error = None
        user_path = self.ctx.user_path()
        try:
            self._state = MigrationState.CHECK_CURRENT
            if await self.store.get_once(user_path) is not None:
                log.info(f"{user_path} already exists, skipping migration")
                self._outcome = MigrationOutcome.ALREADY_CURRENT
                await self._link_device()
                self._finish()
                return self.status()

            self._state = MigrationState.SCAN
            owned = await self.find_owned_legacy_records()
            local = self.cache.load()

            if not owned:
                self._state = MigrationState.CREATE_FRESH
                await self._create_fresh(local)
                self._outcome = MigrationOutcome.CREATED_FRESH
            else:
                self._state = MigrationState.MERGE_AND_WRITE
                await self._merge_and_write(local, owned)
                self._outcome = MigrationOutcome.MIGRATED

            await self._link_device()
            self._finish()
        except StoreError as e:
            self._state = MigrationState.FAILED
            self._error = str(e)
            log.error(f"Migration failed, continuing with local data: {e}")
        return self.status()

    def _finish(self) -> None:
        self._state = MigrationState.DONE
        self._done = True

    def _base_document(self, record: UserRecord) -> dict[str, Any]:
        doc = record.model_dump(by_alias=True, include={"mistakes", "archive", "favorites", "settings"})
        doc.update({
            "telegram_id": self.ctx.user_id,
            "user_name": self.ctx.user_name,
            "last_updated": SERVER_TIMESTAMP,
            "client_timestamp": int(time.time() * 1000),
            "app_id": self.ctx.app_id,
        })
        return doc

    async def _create_fresh(self, local: UserRecord) -> None:
        log.info("No legacy data found, creating fresh record")
        doc = self._base_document(local)
        doc["created_fresh"] = True
        await self.store.set_atomic(self.ctx.user_path(), doc)
        self._migrated_from = []

    async def _merge_and_write(self, local: UserRecord, owned: list[LegacyRecord]) -> None:
        addresses = [r.address for r in owned]
        log.info(f"Migrating {len(owned)} legacy records: {addresses}")

        settings: dict[str, Any] = {}
        for record in owned:
            settings.update(record.settings)
        # Local preferences win over anything found in legacy records
        settings.update(local.settings)

        merged = local.model_copy(update={
            "mistakes": union_ids(local.mistakes, *(r.mistakes for r in owned)),
            "archive": union_ids(local.archive, *(r.archive for r in owned)),
            "favorites": union_ids(local.favorites, *(r.favorites for r in owned)),
            "settings": settings,
            "owner_id": self.ctx.user_id,
        })

        doc = self._base_document(merged)
        doc.update({
            "auto_migrated": True,
            "migrated_from": addresses,
            "migration_count": len(owned),
        })
        await self.store.set_atomic(self.ctx.user_path(), doc)
        self._migrated_from = addresses

        self.cache.persist(merged)
        log.info(
            f"Migration complete: mistakes={len(merged.mistakes)}, "
            f"archive={len(merged.archive)}, fav={len(merged.favorites)}"
        )

    async def _link_device(self) -> None:
        """Record which user this device session belongs to."""
        await self.store.set_atomic(
            self.ctx.auth_link_path(),
            {"telegram_id": self.ctx.user_id, "linked_at": SERVER_TIMESTAMP},
        )

    async def cleanup_legacy(self) -> int:
        """Delete this user's legacy records after a confirmed migration.

        Returns:
            Number of legacy documents removed

        Raises:
            RuntimeError: If the migrated record is not stored yet
        """
        user_path = self.ctx.user_path()
        if await self.store.get_once(user_path) is None:
            raise RuntimeError(
                f"Refusing to delete legacy records: {user_path} does not exist yet"
            )

        owned = await self.find_owned_legacy_records()
        for record in owned:
            await self.store.set_atomic(record.address, None)
        if owned:
            log.info(f"Cleaned up {len(owned)} legacy records")
        return len(owned)
