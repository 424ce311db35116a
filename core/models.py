"""Pydantic models for QuizSync data structures.

Field aliases keep the wire names of documents already deployed in the
remote store (``fav``, ``telegram_id``), so records written by older
clients validate unchanged.
"""

from collections.abc import Iterable
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

QuestionId = int | str


def _normalize_owner(value: Any) -> str | None:
    """Owner ids arrive as numbers from older clients; compare them as strings."""
    if value is None or value == "":
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value)


def to_id_set(value: Any) -> set:
    """Accept lists, sets, or the index-keyed dicts some stores return for arrays."""
    if value is None:
        return set()
    if isinstance(value, dict):
        value = value.values()
    if isinstance(value, (str, bytes)) or not isinstance(value, Iterable):
        raise ValueError(f"expected a collection of question ids, got {type(value).__name__}")
    ids = [v for v in value if v is not None]
    if not all(isinstance(v, (int, str)) for v in ids):
        raise ValueError("question ids must be numbers or strings")
    return set(ids)


def _sorted_ids(ids: set) -> list:
    return sorted(ids, key=lambda v: (isinstance(v, str), v))


class UserRecord(BaseModel):
    """The unit of synchronization: one person's quiz progress."""

    mistakes: set[QuestionId] = Field(default_factory=set, description="Append-only")
    archive: set[QuestionId] = Field(default_factory=set, description="Append-only")
    favorites: set[QuestionId] = Field(
        default_factory=set, alias="fav", description="Append-only"
    )
    settings: dict[str, Any] = Field(
        default_factory=dict, description="Per-device preferences, never merged"
    )
    owner_id: str | None = Field(
        default=None, alias="telegram_id", description="Must equal the storage key"
    )
    last_updated: int = Field(default=0, description="Store-assigned timestamp (ms)")
    user_name: str | None = Field(default=None, description="Display name")
    client_timestamp: int | None = Field(default=None, description="Writer clock (ms)")
    app_id: str | None = Field(default=None, description="Writing app instance")

    # Migration audit tags
    created_fresh: bool = Field(default=False)
    auto_migrated: bool = Field(default=False)
    migrated_from: list[str] = Field(default_factory=list)
    migration_count: int = Field(default=0)

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    @field_validator("mistakes", "archive", "favorites", mode="before")
    @classmethod
    def coerce_id_set(cls, v):
        return to_id_set(v)

    @field_validator("owner_id", mode="before")
    @classmethod
    def coerce_owner(cls, v):
        return _normalize_owner(v)

    @field_validator("settings", mode="before")
    @classmethod
    def coerce_settings(cls, v):
        return v or {}

    @field_validator("last_updated", mode="before")
    @classmethod
    def coerce_timestamp(cls, v):
        # Unresolved server-timestamp placeholders count as "never"
        return v if isinstance(v, (int, float)) else 0

    @field_serializer("mistakes", "archive", "favorites")
    def serialize_id_set(self, ids: set) -> list:
        return _sorted_ids(ids)

    def to_document(self) -> dict[str, Any]:
        """Serialize with deployed wire names, omitting unset optional fields."""
        return self.model_dump(by_alias=True, exclude_none=True)


class SyncQueueEntry(BaseModel):
    """A remote write waiting for connectivity."""

    payload: dict[str, Any] = Field(..., description="Partial UserRecord document")
    enqueued_at: int = Field(..., description="Enqueue time (ms)")
    attempts: int = Field(default=0, ge=0, description="Failed flush attempts")

    model_config = ConfigDict(extra="ignore")


class TopicTally(BaseModel):
    """Correct/total answer counts for one topic."""

    total: int = Field(default=0, ge=0)
    correct: int = Field(default=0, ge=0)

    model_config = ConfigDict(extra="ignore")

    @property
    def accuracy(self) -> float:
        return self.correct / self.total if self.total else 0.0


class SessionSummary(BaseModel):
    """Result of one completed quiz session."""

    session_id: str = Field(..., description="Unique session identifier")
    app_id: str = Field(..., description="App instance the session ran in")
    user_id: str | None = Field(default=None, description="UserIdentity if known")
    user_name: str | None = Field(default=None)
    mode: str = Field(default="normal", description="Quiz mode")
    question_count: int = Field(default=0, ge=0)
    correct_count: int = Field(default=0, ge=0)
    topics: dict[str, TopicTally] = Field(default_factory=dict)
    started_at: int | None = Field(default=None, description="Start time (ms)")
    finished_at: int = Field(..., description="Finish time (ms)")

    model_config = ConfigDict(extra="ignore")

    @property
    def accuracy(self) -> float:
        return self.correct_count / self.question_count if self.question_count else 0.0

    @property
    def score(self) -> int:
        """Percentage score, rounded."""
        return round(self.accuracy * 100)


class AggregateStats(BaseModel):
    """Per-user accumulator across all sessions."""

    total_sessions: int = Field(default=0, ge=0)
    total_questions: int = Field(default=0, ge=0)
    total_correct: int = Field(default=0, ge=0)
    topics: dict[str, TopicTally] = Field(default_factory=dict)
    weak_areas: list[str] = Field(default_factory=list)
    strong_areas: list[str] = Field(default_factory=list)
    last_session_at: int | None = Field(default=None)

    model_config = ConfigDict(extra="ignore")

    @field_validator("topics", mode="before")
    @classmethod
    def coerce_topics(cls, v):
        return v or {}


class LeaderboardEntry(BaseModel):
    """Denormalized per-topic leaderboard row."""

    score: int = Field(..., ge=0, le=100)
    accuracy: float = Field(..., ge=0.0, le=1.0)
    total: int = Field(..., ge=0)
    name: str = Field(default="")
    timestamp: int = Field(..., description="Write time (ms)")

    model_config = ConfigDict(extra="ignore")


class PresenceState(BaseModel):
    """Online marker for one user."""

    online: bool
    last_seen: Any = Field(..., description="Timestamp or server-timestamp placeholder")

    model_config = ConfigDict(extra="ignore")


class _LegacyBase(BaseModel):
    """Fields shared by every pre-migration record layout."""

    address: str = Field(..., description="Remote path the record was found at")
    owner_id: str | None = Field(default=None)
    mistakes: set[QuestionId] = Field(default_factory=set)
    archive: set[QuestionId] = Field(default_factory=set)
    favorites: set[QuestionId] = Field(default_factory=set)
    settings: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(extra="ignore")

    @field_validator("mistakes", "archive", "favorites", mode="before")
    @classmethod
    def coerce_id_set(cls, v):
        return to_id_set(v)

    @field_validator("owner_id", mode="before")
    @classmethod
    def coerce_owner(cls, v):
        return _normalize_owner(v)

    @field_validator("settings", mode="before")
    @classmethod
    def coerce_settings(cls, v):
        return v or {}


class SessionKeyedRecord(_LegacyBase):
    """Flat layout: one top-level document per device session id."""

    schema_version: Literal["session_keyed"] = "session_keyed"
    session_id: str


class AppScopedRecord(_LegacyBase):
    """Per-app-instance layout: ``apps/{app_id}/{session_id}``."""

    schema_version: Literal["app_scoped"] = "app_scoped"
    app_id: str
    session_id: str


class UserDataRecord(_LegacyBase):
    """Intermediate per-user layout: ``user_data/{user_id}``."""

    schema_version: Literal["user_data"] = "user_data"
    user_key: str


LegacyRecord = Annotated[
    Union[SessionKeyedRecord, AppScopedRecord, UserDataRecord],
    Field(discriminator="schema_version"),
]
