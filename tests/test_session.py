"""Tests for core.session module."""

import pytest

from core.session import (
    AccessDeniedError,
    SessionContext,
    UserRole,
    check_user_role,
    load_analytics,
    topic_key,
)
from utils.config import AppSettings


class TestIdentity:
    """Tests for identity handling."""

    def test_paths_use_user_identity(self, ctx):
        assert ctx.user_path() == "users/123456789"
        assert ctx.stats_path() == "user_stats/123456789"
        assert ctx.presence_path() == "presence/123456789"
        assert ctx.leaderboard_path("Cardiology") == "leaderboards/Cardiology/123456789"
        assert ctx.analytics_path() == "analytics/medquiz_v2/sessions"

    def test_device_session_only_addresses_auth_link(self, ctx):
        assert ctx.auth_link_path() == "auth_links/device-session-aaaaaaaaaaaa"
        assert ctx.device_session_id not in ctx.user_path()

    @pytest.mark.parametrize("raw", [None, "", "  ", "0", "anonymous"])
    def test_anonymous_identities(self, raw):
        ctx = SessionContext(app_id="medquiz_v2", user_id=raw)
        assert ctx.is_anonymous
        with pytest.raises(ValueError):
            ctx.user_path()

    def test_numeric_identity_becomes_string(self):
        ctx = SessionContext(app_id="medquiz_v2", user_id=555)
        assert ctx.user_id == "555"

    def test_device_session_ids_differ(self):
        a = SessionContext(app_id="medquiz_v2", user_id="1")
        b = SessionContext(app_id="medquiz_v2", user_id="1")
        assert a.device_session_id != b.device_session_id

    def test_topic_key_is_a_single_segment(self):
        assert topic_key("Heart/Lungs") == "Heart_Lungs"
        assert topic_key("  ") == "General"


class TestRoles:
    """Tests for access control."""

    def test_roles(self):
        settings = AppSettings(admin_ids="1, 2", allowed_user_ids="3")
        assert check_user_role("1", settings) is UserRole.ADMIN
        assert check_user_role("3", settings) is UserRole.ALLOWED
        assert check_user_role("4", settings) is UserRole.NONE
        assert check_user_role(None, settings) is UserRole.NONE

    @pytest.mark.asyncio
    async def test_analytics_denied_for_non_admin(self, store, ctx):
        with pytest.raises(AccessDeniedError):
            await load_analytics(store, ctx)

    @pytest.mark.asyncio
    async def test_analytics_for_admin_in_creation_order(self, store, settings):
        admin = SessionContext(app_id="medquiz_v2", user_id="42", settings=settings)
        for n in range(3):
            await store.push(admin.analytics_path(), {"n": n})
        entries = await load_analytics(store, admin)
        assert [e["n"] for e in entries] == [0, 1, 2]
