"""Tests for core.migration module."""

import pytest

from core.migration import (
    MigrationEngine,
    MigrationOutcome,
    MigrationState,
    discover_legacy_records,
)
from core.models import AppScopedRecord, SessionKeyedRecord, UserDataRecord, UserRecord

USER_ID = "123456789"
SESSION_A = "sessAAAAAAAAAAAAAAAAAAAA"
SESSION_B = "sessBBBBBBBBBBBBBBBBBBBB"
SESSION_C = "sessCCCCCCCCCCCCCCCCCCCC"


def legacy_doc(owner=USER_ID, **fields):
    doc = {"mistakes": [], "archive": [], "fav": []}
    if owner is not None:
        doc["telegram_id"] = owner
    doc.update(fields)
    return doc


@pytest.fixture
def engine(ctx, store, cache):
    return MigrationEngine(ctx, store, cache)


class TestDiscovery:
    """Tests for finding legacy records in a root snapshot."""

    def test_all_three_layouts(self):
        root = {
            SESSION_A: legacy_doc(archive=[1]),
            "apps": {"medquiz_v2": {SESSION_B: legacy_doc(archive=[2])}},
            "user_data": {USER_ID: legacy_doc(archive=[3])},
        }
        records = discover_legacy_records(root)
        by_type = {type(r): r for r in records}
        assert by_type[SessionKeyedRecord].address == SESSION_A
        assert by_type[AppScopedRecord].address == f"apps/medquiz_v2/{SESSION_B}"
        assert by_type[UserDataRecord].address == f"user_data/{USER_ID}"
        assert {r.schema_version for r in records} == {"session_keyed", "app_scoped", "user_data"}

    def test_reserved_namespaces_and_short_keys_are_skipped(self):
        root = {
            "users": {USER_ID: legacy_doc(archive=[1])},
            "user_stats": {USER_ID: {"total_sessions": 1}},
            "presence": {USER_ID: {"online": True}},
            "shortkey": legacy_doc(archive=[2]),
        }
        assert discover_legacy_records(root) == []

    def test_malformed_records_are_skipped(self):
        root = {
            SESSION_A: legacy_doc(mistakes=5),
            SESSION_B: legacy_doc(archive=[{"nested": 1}]),
            SESSION_C: legacy_doc(archive=[7]),
        }
        records = discover_legacy_records(root)
        assert [r.address for r in records] == [SESSION_C]

    def test_empty_root(self):
        assert discover_legacy_records(None) == []


class TestAttribution:
    """Only records owned by the current identity are ever migrated."""

    def test_owner_mismatch_and_missing_owner_are_excluded(self, engine):
        records = discover_legacy_records({
            SESSION_A: legacy_doc(archive=[1]),
            SESSION_B: legacy_doc(owner="999", archive=[2]),
            SESSION_C: legacy_doc(owner=None, archive=[3]),
        })
        owned, excluded = engine.attribute(records)
        assert [r.address for r in owned] == [SESSION_A]
        assert excluded == 2

    def test_numeric_owner_matches(self, engine):
        records = discover_legacy_records({SESSION_A: legacy_doc(owner=123456789)})
        owned, _ = engine.attribute(records)
        assert len(owned) == 1

    def test_user_data_key_must_match_owner(self, engine):
        records = discover_legacy_records({"user_data": {"999": legacy_doc(archive=[1])}})
        owned, excluded = engine.attribute(records)
        assert owned == []
        assert excluded == 1


class TestRun:
    """Tests for the migration state machine."""

    @pytest.mark.asyncio
    async def test_creates_fresh_record_without_legacy_data(self, engine, store, cache, ctx):
        cache.persist(UserRecord(mistakes={1}, settings={"theme": "dark"}))
        status = await engine.run()

        assert status.outcome is MigrationOutcome.CREATED_FRESH
        assert status.state is MigrationState.DONE
        assert status.migration_done
        doc = await store.get_once(ctx.user_path())
        assert doc["created_fresh"] is True
        assert doc["mistakes"] == [1]
        assert doc["telegram_id"] == USER_ID
        assert isinstance(doc["last_updated"], int)

    @pytest.mark.asyncio
    async def test_two_legacy_records_merge(self, engine, store, backend, ctx):
        backend.write(SESSION_A, legacy_doc(archive=[5]))
        backend.write(f"apps/medquiz_v2/{SESSION_B}", legacy_doc(archive=[5, 6]))

        status = await engine.run()

        assert status.outcome is MigrationOutcome.MIGRATED
        doc = await store.get_once(ctx.user_path())
        assert doc["archive"] == [5, 6]
        assert doc["migration_count"] == 2
        assert doc["auto_migrated"] is True
        assert sorted(doc["migrated_from"]) == sorted([SESSION_A, f"apps/medquiz_v2/{SESSION_B}"])

    @pytest.mark.asyncio
    async def test_migration_is_owner_safe(self, engine, store, backend, ctx):
        backend.write(SESSION_A, legacy_doc(mistakes=[1]))
        for n in range(10):
            backend.write(f"other{n:020d}", legacy_doc(owner=f"9{n}", mistakes=[100 + n]))
        backend.write(SESSION_B, legacy_doc(owner=None, mistakes=[200]))

        status = await engine.run()

        doc = await store.get_once(ctx.user_path())
        assert doc["mistakes"] == [1]
        assert doc["migration_count"] == 1
        assert status.excluded == 11

    @pytest.mark.asyncio
    async def test_local_cache_joins_the_merge(self, engine, store, backend, cache, ctx):
        cache.persist(UserRecord(mistakes={9}, settings={"theme": "dark"}))
        backend.write(
            SESSION_A,
            legacy_doc(mistakes=[1], settings={"theme": "light", "font_size": 14}),
        )

        await engine.run()

        doc = await store.get_once(ctx.user_path())
        assert doc["mistakes"] == [1, 9]
        assert doc["settings"] == {"theme": "dark", "font_size": 14}
        local = cache.load()
        assert local.mistakes == {1, 9}
        assert local.settings == {"theme": "dark", "font_size": 14}

    @pytest.mark.asyncio
    async def test_existing_record_is_left_unchanged(self, engine, store, backend, ctx):
        existing = legacy_doc(mistakes=[1], last_updated=5)
        backend.write(ctx.user_path(), existing)
        backend.write(SESSION_A, legacy_doc(mistakes=[2]))

        status = await engine.run()
        again = await engine.run(force=True)

        assert status.outcome is MigrationOutcome.ALREADY_CURRENT
        assert again.outcome is MigrationOutcome.ALREADY_CURRENT
        assert (await store.get_once(ctx.user_path()))["mistakes"] == [1]

    @pytest.mark.asyncio
    async def test_runs_once_per_session(self, engine, store, backend, ctx):
        await engine.run()
        await store.set_atomic(ctx.user_path(), None)
        backend.write(SESSION_A, legacy_doc(mistakes=[2]))

        status = await engine.run()

        assert status.outcome is MigrationOutcome.CREATED_FRESH
        assert await store.get_once(ctx.user_path()) is None

    @pytest.mark.asyncio
    async def test_legacy_sources_are_kept(self, engine, store, backend):
        backend.write(SESSION_A, legacy_doc(archive=[5]))
        await engine.run()
        assert await store.get_once(SESSION_A) is not None

    @pytest.mark.asyncio
    async def test_device_is_linked(self, engine, store, ctx):
        await engine.run()
        link = await store.get_once(ctx.auth_link_path())
        assert link["telegram_id"] == USER_ID

    @pytest.mark.asyncio
    async def test_store_failure_is_not_marked_done(self, engine, store):
        store.go_offline()
        status = await engine.run()
        assert status.state is MigrationState.FAILED
        assert not status.migration_done
        assert status.error

        store.go_online()
        status = await engine.run()
        assert status.migration_done

    @pytest.mark.asyncio
    async def test_anonymous_session_is_skipped(self, anonymous_ctx, store, cache):
        engine = MigrationEngine(anonymous_ctx, store, cache)
        status = await engine.run()
        assert status.outcome is MigrationOutcome.SKIPPED_ANONYMOUS
        assert status.is_anonymous
        assert await store.get_once("") is None


class TestCleanup:
    """Tests for the explicit cleanup pass."""

    @pytest.mark.asyncio
    async def test_refuses_before_migration(self, engine, backend):
        backend.write(SESSION_A, legacy_doc(archive=[5]))
        with pytest.raises(RuntimeError):
            await engine.cleanup_legacy()
        assert backend.read(SESSION_A) is not None

    @pytest.mark.asyncio
    async def test_removes_only_owned_records(self, engine, backend):
        backend.write(SESSION_A, legacy_doc(archive=[5]))
        backend.write(f"apps/medquiz_v2/{SESSION_B}", legacy_doc(archive=[6]))
        backend.write(SESSION_C, legacy_doc(owner="999", archive=[7]))
        await engine.run()

        removed = await engine.cleanup_legacy()

        assert removed == 2
        assert backend.read(SESSION_A) is None
        assert backend.read("apps") is None
        assert backend.read(SESSION_C) is not None
