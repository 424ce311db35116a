"""Configuration management for QuizSync."""

import json
import os
import sqlite3
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

POSTGRES_PASSWORD_ENV = "QUIZSYNC_POSTGRES_PASSWORD"


class AppSettings(BaseModel):
    """Application settings with validation."""

    # Instance identity
    app_id: str = Field(
        default="medquiz_v2",
        min_length=1,
        description="Application instance identifier, namespaces local keys",
    )

    # Access control
    admin_ids: str = Field(
        default="", description="Comma-separated user ids with analytics access"
    )
    allowed_user_ids: str = Field(
        default="", description="Comma-separated user ids with regular access"
    )

    # Sync queue
    queue_max_attempts: int = Field(
        default=3,
        ge=0,
        description="Failed flush attempts before a queued write is dropped",
    )

    # Migration
    legacy_key_min_length: int = Field(
        default=20,
        ge=1,
        description="Minimum length of a top-level key to be treated as a session id",
    )

    # Local history
    max_local_sessions: int = Field(
        default=200, ge=1, description="Session summaries kept in the local cache"
    )

    # Aggregate statistics
    weak_accuracy_threshold: float = Field(
        default=0.6,
        gt=0.0,
        lt=1.0,
        description="Topics below this accuracy are weak areas",
    )
    weak_min_samples: int = Field(
        default=5, ge=1, description="Minimum answers before a topic can be weak"
    )
    strong_accuracy_threshold: float = Field(
        default=0.85,
        gt=0.0,
        lt=1.0,
        description="Topics above this accuracy are strong areas",
    )
    strong_min_samples: int = Field(
        default=10, ge=1, description="Minimum answers before a topic can be strong"
    )
    transaction_max_retries: int = Field(
        default=25, ge=1, description="Commit attempts before a transaction aborts"
    )

    # Remote backend
    remote_backend: str = Field(
        default="memory", description="Remote record store (memory or postgres)"
    )
    postgres_host: str = Field(default="", description="PostgreSQL host")
    postgres_port: int = Field(default=5432, ge=1, le=65535, description="PostgreSQL port")
    postgres_database: str = Field(default="quizsync", description="PostgreSQL database")
    postgres_user: str = Field(default="", description="PostgreSQL user")
    postgres_sslmode: str = Field(default="require", description="PostgreSQL SSL mode")

    model_config = ConfigDict(extra="ignore")

    @field_validator("remote_backend")
    @classmethod
    def validate_backend(cls, v):
        if v not in ("memory", "postgres"):
            raise ValueError(f"remote_backend must be 'memory' or 'postgres', got {v!r}")
        return v

    @field_validator("strong_accuracy_threshold")
    @classmethod
    def validate_strong_threshold(cls, v, info):
        """Validate interdependent field relationships."""
        if (
            "weak_accuracy_threshold" in info.data
            and v <= info.data["weak_accuracy_threshold"]
        ):
            raise ValueError(
                f"strong_accuracy_threshold ({v}) must be "
                f"greater than weak_accuracy_threshold ({info.data['weak_accuracy_threshold']})"
            )
        return v


class Config:
    """Configuration manager using SQLite for persistence with Pydantic validation."""

    def __init__(self, db_path: Path):
        """Initialize config with database connection.

        Args:
            db_path: Path to SQLite database
        """
        self.db_path = db_path
        self._init_settings_table()
        self._ensure_defaults()

    def _get_connection(self) -> sqlite3.Connection:
        """Create database connection."""
        return sqlite3.connect(self.db_path)

    def _init_settings_table(self) -> None:
        """Create settings table if not exists."""
        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS settings (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
            """)
            conn.commit()

    def _ensure_defaults(self) -> None:
        """Ensure all default settings exist in database."""
        defaults = AppSettings().model_dump()

        with self._get_connection() as conn:
            cursor = conn.cursor()
            for key, value in defaults.items():
                cursor.execute(
                    """
                    INSERT OR IGNORE INTO settings (key, value)
                    VALUES (?, ?)
                """,
                    (key, self._serialize_value(value)),
                )
            conn.commit()

    def _serialize_value(self, value: Any) -> str:
        """Convert value to string for storage."""
        if isinstance(value, bool):
            return "True" if value else "False"
        if isinstance(value, (list, dict)):
            return json.dumps(value)
        return str(value)

    def _simple_parse(self, value: str) -> Any:
        """Simple fallback parsing without pydantic."""
        # Try JSON first (for lists/dicts)
        if value.startswith("[") or value.startswith("{"):
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                pass

        try:
            return int(value)
        except ValueError:
            pass

        try:
            return float(value)
        except ValueError:
            pass

        if value.lower() in ("true", "yes", "on"):
            return True
        if value.lower() in ("false", "no", "off"):
            return False

        return value

    def get(self, key: str, default: Optional[Any] = None) -> Any:
        """Get configuration value.

        Args:
            key: Setting key
            default: Default value if not found

        Returns:
            Setting value
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT value FROM settings WHERE key = ?", (key,))
            result = cursor.fetchone()
            if result:
                raw_value = result[0]
                # String fields keep their raw text ("007" must not become 7)
                field = AppSettings.model_fields.get(key)
                if field is not None and field.annotation is str:
                    return raw_value
                parsed = self._simple_parse(raw_value)
                if field is not None:
                    try:
                        settings = AppSettings(**{key: parsed})
                        return getattr(settings, key)
                    except Exception:
                        return parsed
                return parsed
            if default is not None:
                return default
            # Fall back to AppSettings default if key exists
            if key in AppSettings.model_fields:
                return getattr(AppSettings(), key)
            return None

    def set(self, key: str, value: Any) -> None:
        """Set configuration value with pydantic validation.

        Args:
            key: Setting key
            value: Setting value

        Raises:
            ValueError: If value fails validation
        """
        if key in AppSettings.model_fields:
            try:
                current = self.settings().model_dump()
                current[key] = value
                validated = AppSettings(**current)
                value = getattr(validated, key)
            except Exception as e:
                raise ValueError(f"Invalid value for {key}: {e}")

        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO settings (key, value)
                VALUES (?, ?)
            """,
                (key, self._serialize_value(value)),
            )
            conn.commit()

    def settings(self) -> AppSettings:
        """Get the known settings as a validated AppSettings snapshot."""
        values = {key: self.get(key) for key in AppSettings.model_fields}
        return AppSettings(**values)

    def get_postgres_password(self) -> str:
        """Read the PostgreSQL password from the environment (never persisted)."""
        return os.environ.get(POSTGRES_PASSWORD_ENV, "")
