"""Per-session context and access control.

A SessionContext is built once after authentication and handed to every
component constructor; nothing reads identity from module-level state.
"""

import logging
import secrets
from dataclasses import dataclass, field
from enum import Enum

from core.record_store import RecordStore
from utils.config import AppSettings

log = logging.getLogger("quizsync.session")

USERS_ROOT = "users"
USER_STATS_ROOT = "user_stats"
LEADERBOARDS_ROOT = "leaderboards"
ANALYTICS_ROOT = "analytics"
PRESENCE_ROOT = "presence"
AUTH_LINKS_ROOT = "auth_links"
ADMINS_ROOT = "admins"


class UserRole(Enum):
    ADMIN = "admin"
    ALLOWED = "allowed"
    NONE = "none"


class AccessDeniedError(Exception):
    """Raised when a user opens a view their role does not grant."""

    pass


@dataclass
class SessionContext:
    """Identity and settings of one running application session.

    Attributes:
        app_id: Application instance identifier
        user_id: Durable UserIdentity, or None for anonymous sessions
        device_session_id: Ephemeral per-connection id; never a storage address
        user_name: Display name
        settings: Validated application settings
    """

    app_id: str
    user_id: str | None
    device_session_id: str = field(default_factory=lambda: secrets.token_urlsafe(21))
    user_name: str = "Guest"
    settings: AppSettings = field(default_factory=AppSettings)

    def __post_init__(self):
        if self.user_id is not None:
            self.user_id = str(self.user_id).strip() or None
        if self.user_id in ("0", "anonymous"):
            self.user_id = None

    @property
    def is_anonymous(self) -> bool:
        return self.user_id is None

    @property
    def role(self) -> UserRole:
        return check_user_role(self.user_id, self.settings)

    def require_identity(self) -> str:
        if self.user_id is None:
            raise ValueError("This operation needs a durable user identity")
        return self.user_id

    def user_path(self) -> str:
        return f"{USERS_ROOT}/{self.require_identity()}"

    def stats_path(self) -> str:
        return f"{USER_STATS_ROOT}/{self.require_identity()}"

    def presence_path(self) -> str:
        return f"{PRESENCE_ROOT}/{self.require_identity()}"

    def auth_link_path(self) -> str:
        return f"{AUTH_LINKS_ROOT}/{self.device_session_id}"

    def leaderboard_path(self, topic: str) -> str:
        return f"{LEADERBOARDS_ROOT}/{topic_key(topic)}/{self.require_identity()}"

    def analytics_path(self) -> str:
        return f"{ANALYTICS_ROOT}/{self.app_id}/sessions"


def topic_key(topic: str) -> str:
    """Make a topic name usable as a single path segment."""
    cleaned = "".join("_" if c in "/.#$[]" else c for c in topic.strip())
    return cleaned or "General"


def _id_list(raw: str) -> set[str]:
    return {item.strip() for item in raw.split(",") if item.strip()}


def check_user_role(user_id: str | None, settings: AppSettings) -> UserRole:
    """Classify a user id against the configured admin and allowed lists."""
    if user_id is None:
        return UserRole.NONE
    if user_id in _id_list(settings.admin_ids):
        return UserRole.ADMIN
    if user_id in _id_list(settings.allowed_user_ids):
        return UserRole.ALLOWED
    return UserRole.NONE


def require_admin(ctx: SessionContext) -> None:
    """Raise AccessDeniedError unless the session belongs to an admin."""
    if ctx.role is not UserRole.ADMIN:
        log.warning(f"Denied analytics access for user {ctx.user_id}")
        raise AccessDeniedError("Analytics are only available to administrators")


async def load_analytics(store: RecordStore, ctx: SessionContext) -> list[dict]:
    """Read this app's session analytics, oldest first. Admins only."""
    require_admin(ctx)
    sessions = await store.get_once(ctx.analytics_path()) or {}
    # Push keys sort by creation time
    return [sessions[key] for key in sorted(sessions)]
