"""Cross-session statistics for one user.

The accumulator at ``user_stats/{user_id}`` is only ever changed through the
store's transaction primitive, because two devices can finish sessions at
the same moment. The transaction function is pure: it derives the new
accumulator from the current one and the session summary it closes over,
so the store may re-run it as often as it needs to.
"""

import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Iterable

from pydantic import ValidationError

from core.models import AggregateStats, LeaderboardEntry, SessionSummary, TopicTally
from core.record_store import SERVER_TIMESTAMP, RecordStore, StoreError, TransactionAbortedError
from core.session import SessionContext, topic_key
from utils.config import AppSettings

log = logging.getLogger("quizsync.stats_updater")

SUBTOPIC_SEPARATOR = "::"


@dataclass(frozen=True)
class AreaThresholds:
    """Accuracy bounds for classifying topics as weak or strong."""

    weak_accuracy: float = 0.6
    weak_min_samples: int = 5
    strong_accuracy: float = 0.85
    strong_min_samples: int = 10

    @classmethod
    def from_settings(cls, settings: AppSettings) -> "AreaThresholds":
        return cls(
            weak_accuracy=settings.weak_accuracy_threshold,
            weak_min_samples=settings.weak_min_samples,
            strong_accuracy=settings.strong_accuracy_threshold,
            strong_min_samples=settings.strong_min_samples,
        )


@dataclass
class StatsUpdateResult:
    """What one session's statistics update achieved."""

    stats: AggregateStats | None = None
    leaderboards_written: int = 0
    analytics_key: str | None = None
    error: str | None = None

    @property
    def stats_committed(self) -> bool:
        return self.stats is not None


def summarize_session(
    ctx: SessionContext,
    answers: Iterable[dict[str, Any]],
    mode: str = "normal",
    started_at: int | None = None,
    finished_at: int | None = None,
) -> SessionSummary:
    """Build a session summary from answer records.

    Each answer is a mapping with ``correct`` and optional ``topic`` and
    ``subtopic`` keys. Topics are keyed ``topic`` or ``topic::subtopic``.
    """
    topics: dict[str, TopicTally] = {}
    question_count = correct_count = 0
    for answer in answers:
        topic = topic_key(str(answer.get("topic") or "General"))
        subtopic = answer.get("subtopic")
        key = f"{topic}{SUBTOPIC_SEPARATOR}{topic_key(str(subtopic))}" if subtopic else topic
        tally = topics.setdefault(key, TopicTally())
        tally.total += 1
        question_count += 1
        if answer.get("correct"):
            tally.correct += 1
            correct_count += 1

    return SessionSummary(
        session_id=uuid.uuid4().hex,
        app_id=ctx.app_id,
        user_id=ctx.user_id,
        user_name=ctx.user_name,
        mode=mode,
        question_count=question_count,
        correct_count=correct_count,
        topics=topics,
        started_at=started_at,
        finished_at=finished_at if finished_at is not None else int(time.time() * 1000),
    )


def classify_areas(
    topics: dict[str, TopicTally], thresholds: AreaThresholds
) -> tuple[list[str], list[str]]:
    """Recompute weak and strong areas from the full topic breakdown."""
    weak = []
    strong = []
    for topic, tally in topics.items():
        if tally.total >= thresholds.weak_min_samples and tally.accuracy < thresholds.weak_accuracy:
            weak.append(topic)
        elif (
            tally.total >= thresholds.strong_min_samples
            and tally.accuracy > thresholds.strong_accuracy
        ):
            strong.append(topic)
    return sorted(weak), sorted(strong)


def accumulate(
    current: dict[str, Any] | None, summary: SessionSummary, thresholds: AreaThresholds
) -> dict[str, Any]:
    """Add one session to an accumulator document. Pure."""
    stats = AggregateStats.model_validate(current) if current else AggregateStats()

    topics = {name: tally.model_copy() for name, tally in stats.topics.items()}
    for name, session_tally in summary.topics.items():
        tally = topics.setdefault(name, TopicTally())
        tally.total += session_tally.total
        tally.correct += session_tally.correct

    weak, strong = classify_areas(topics, thresholds)
    updated = AggregateStats(
        total_sessions=stats.total_sessions + 1,
        total_questions=stats.total_questions + summary.question_count,
        total_correct=stats.total_correct + summary.correct_count,
        topics=topics,
        weak_areas=weak,
        strong_areas=strong,
        last_session_at=max(stats.last_session_at or 0, summary.finished_at),
    )
    return updated.model_dump()


class StatsUpdater:
    """Applies completed sessions to the aggregate statistics of a user."""

    def __init__(
        self,
        ctx: SessionContext,
        store: RecordStore,
        thresholds: AreaThresholds | None = None,
    ):
        self.ctx = ctx
        self.store = store
        self.thresholds = thresholds or AreaThresholds.from_settings(ctx.settings)

    async def apply(self, summary: SessionSummary) -> StatsUpdateResult:
        """Record a completed session remotely.

        Updates the accumulator transactionally, then overwrites the user's
        leaderboard row for every topic of the session and appends an
        analytics entry. Failures are logged and reported in the result;
        a statistics update whose transaction aborts is not retried.
        """
        result = StatsUpdateResult()
        if self.ctx.is_anonymous:
            log.debug("Anonymous session, statistics stay local")
            return result

        thresholds = self.thresholds

        def add_session(current: dict[str, Any] | None) -> dict[str, Any]:
            return accumulate(current, summary, thresholds)

        try:
            committed = await self.store.transact(self.ctx.stats_path(), add_session)
            result.stats = AggregateStats.model_validate(committed)
            log.info(
                f"Statistics updated: sessions={result.stats.total_sessions}, "
                f"questions={result.stats.total_questions}"
            )
        except TransactionAbortedError as e:
            result.error = str(e)
            log.error(f"Statistics for session {summary.session_id} lost: {e}")
        except StoreError as e:
            result.error = str(e)
            log.error(f"Could not update statistics for session {summary.session_id}: {e}")
        except ValidationError as e:
            # The stored accumulator is left as is for manual repair
            result.error = f"Malformed statistics at {self.ctx.stats_path()}: {e}"
            log.error(f"Statistics for session {summary.session_id} lost: {result.error}")

        result.leaderboards_written = await self._write_leaderboards(summary)
        result.analytics_key = await self._log_analytics(summary)
        return result

    async def _write_leaderboards(self, summary: SessionSummary) -> int:
        # One row per top-level topic, subtopics folded in
        boards: dict[str, TopicTally] = {}
        for name, tally in summary.topics.items():
            board = boards.setdefault(name.split(SUBTOPIC_SEPARATOR, 1)[0], TopicTally())
            board.total += tally.total
            board.correct += tally.correct

        written = 0
        now_ms = int(time.time() * 1000)
        for board, tally in boards.items():
            entry = LeaderboardEntry(
                score=round(tally.accuracy * 100),
                accuracy=round(tally.accuracy, 4),
                total=tally.total,
                name=self.ctx.user_name,
                timestamp=now_ms,
            )
            try:
                await self.store.set_atomic(self.ctx.leaderboard_path(board), entry.model_dump())
                written += 1
            except StoreError as e:
                log.warning(f"Leaderboard update for {board} failed: {e}")
        return written

    async def _log_analytics(self, summary: SessionSummary) -> str | None:
        doc = summary.model_dump()
        doc["accuracy"] = round(summary.accuracy, 4)
        doc["score"] = summary.score
        doc["recorded_at"] = SERVER_TIMESTAMP
        try:
            return await self.store.push(self.ctx.analytics_path(), doc)
        except StoreError as e:
            log.warning(f"Analytics entry for session {summary.session_id} failed: {e}")
            return None
