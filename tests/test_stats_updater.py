"""Tests for core.stats_updater module."""

import asyncio

import pytest

from core.memory_store import MemoryRecordStore
from core.models import AggregateStats, TopicTally
from core.stats_updater import (
    AreaThresholds,
    StatsUpdater,
    accumulate,
    classify_areas,
    summarize_session,
)


def answers(topic, correct, total, subtopic=None):
    return [
        {"topic": topic, "subtopic": subtopic, "correct": i < correct}
        for i in range(total)
    ]


class TestSummarize:
    """Tests for building session summaries."""

    def test_counts_per_topic(self, ctx):
        summary = summarize_session(
            ctx, answers("Cardiology", 2, 3) + answers("Neurology", 1, 2, subtopic="Stroke")
        )
        assert summary.question_count == 5
        assert summary.correct_count == 3
        assert summary.topics["Cardiology"] == TopicTally(total=3, correct=2)
        assert summary.topics["Neurology::Stroke"] == TopicTally(total=2, correct=1)
        assert summary.score == 60
        assert summary.user_id == ctx.user_id

    def test_missing_topic_is_general(self, ctx):
        summary = summarize_session(ctx, [{"correct": True}])
        assert list(summary.topics) == ["General"]


class TestAccumulate:
    """Tests for the pure accumulator function."""

    def test_first_session_starts_from_empty(self, ctx):
        summary = summarize_session(ctx, answers("Cardiology", 3, 5), finished_at=100)
        stats = AggregateStats.model_validate(accumulate(None, summary, AreaThresholds()))
        assert stats.total_sessions == 1
        assert stats.total_questions == 5
        assert stats.total_correct == 3
        assert stats.last_session_at == 100

    def test_accumulate_adds_to_existing(self, ctx):
        thresholds = AreaThresholds()
        first = summarize_session(ctx, answers("Cardiology", 3, 5), finished_at=100)
        second = summarize_session(ctx, answers("Cardiology", 5, 5), finished_at=50)
        doc = accumulate(accumulate(None, first, thresholds), second, thresholds)
        stats = AggregateStats.model_validate(doc)
        assert stats.total_sessions == 2
        assert stats.topics["Cardiology"] == TopicTally(total=10, correct=8)
        assert stats.last_session_at == 100

    def test_accumulate_does_not_mutate_input(self, ctx):
        summary = summarize_session(ctx, answers("Cardiology", 1, 1))
        current = accumulate(None, summary, AreaThresholds())
        snapshot = {k: v for k, v in current.items()}
        accumulate(current, summary, AreaThresholds())
        assert current == snapshot


class TestClassify:
    """Tests for weak and strong area classification."""

    def test_weak_and_strong(self):
        topics = {
            "Weak": TopicTally(total=5, correct=2),
            "Strong": TopicTally(total=10, correct=9),
            "Middling": TopicTally(total=10, correct=7),
        }
        weak, strong = classify_areas(topics, AreaThresholds())
        assert weak == ["Weak"]
        assert strong == ["Strong"]

    def test_too_few_samples_are_unclassified(self):
        topics = {
            "FewWeak": TopicTally(total=4, correct=0),
            "FewStrong": TopicTally(total=9, correct=9),
        }
        assert classify_areas(topics, AreaThresholds()) == ([], [])

    def test_boundaries_are_exclusive(self):
        topics = {
            "AtWeak": TopicTally(total=10, correct=6),
            "AtStrong": TopicTally(total=20, correct=17),
        }
        assert classify_areas(topics, AreaThresholds()) == ([], [])

    def test_thresholds_from_settings(self, settings):
        thresholds = AreaThresholds.from_settings(settings)
        assert thresholds.weak_accuracy == settings.weak_accuracy_threshold
        assert thresholds.strong_min_samples == settings.strong_min_samples


class TestStatsUpdater:
    """Tests for applying sessions to the remote statistics."""

    @pytest.mark.asyncio
    async def test_concurrent_sessions_are_not_lost(self, ctx, backend):
        first = StatsUpdater(ctx, MemoryRecordStore(backend))
        second = StatsUpdater(ctx, MemoryRecordStore(backend))
        cardiology = summarize_session(ctx, answers("Cardiology", 3, 5))
        neurology = summarize_session(ctx, answers("Neurology", 3, 5))

        results = await asyncio.gather(first.apply(cardiology), second.apply(neurology))

        assert all(r.stats_committed for r in results)
        stats = AggregateStats.model_validate(backend.read(ctx.stats_path()))
        assert stats.total_sessions == 2
        assert stats.total_questions == 10
        assert stats.total_correct == 6
        assert set(stats.topics) == {"Cardiology", "Neurology"}

    @pytest.mark.asyncio
    async def test_weak_area_recorded(self, ctx, store, backend):
        updater = StatsUpdater(ctx, store)
        result = await updater.apply(summarize_session(ctx, answers("Pharmacology", 1, 6)))
        assert result.stats.weak_areas == ["Pharmacology"]
        assert backend.read(ctx.stats_path())["weak_areas"] == ["Pharmacology"]

    @pytest.mark.asyncio
    async def test_leaderboard_row_per_top_level_topic(self, ctx, store, backend):
        updater = StatsUpdater(ctx, store)
        summary = summarize_session(
            ctx,
            answers("Neurology", 2, 2, subtopic="Stroke") + answers("Neurology", 0, 2, subtopic="Epilepsy"),
        )

        result = await updater.apply(summary)

        assert result.leaderboards_written == 1
        row = backend.read(ctx.leaderboard_path("Neurology"))
        assert row["score"] == 50
        assert row["total"] == 4
        assert row["name"] == "Alice"

    @pytest.mark.asyncio
    async def test_leaderboard_row_is_overwritten(self, ctx, store, backend):
        updater = StatsUpdater(ctx, store)
        await updater.apply(summarize_session(ctx, answers("Cardiology", 1, 4)))
        await updater.apply(summarize_session(ctx, answers("Cardiology", 4, 4)))
        assert backend.read(ctx.leaderboard_path("Cardiology"))["score"] == 100

    @pytest.mark.asyncio
    async def test_analytics_entry_appended(self, ctx, store, backend):
        updater = StatsUpdater(ctx, store)
        summary = summarize_session(ctx, answers("Cardiology", 1, 2))

        result = await updater.apply(summary)

        entries = backend.read(ctx.analytics_path())
        entry = entries[result.analytics_key]
        assert entry["session_id"] == summary.session_id
        assert entry["score"] == 50
        assert isinstance(entry["recorded_at"], int)

    @pytest.mark.asyncio
    async def test_failure_is_reported_not_raised(self, ctx, store):
        store.go_offline()
        result = await StatsUpdater(ctx, store).apply(
            summarize_session(ctx, answers("Cardiology", 1, 1))
        )
        assert not result.stats_committed
        assert result.error
        assert result.leaderboards_written == 0
        assert result.analytics_key is None

    @pytest.mark.asyncio
    async def test_aborted_transaction_loses_only_statistics(self, ctx, backend):
        store = MemoryRecordStore(backend, max_retries=1)
        path = ctx.stats_path()
        original = store.transact

        async def contended(p, fn):
            def rival_then_fn(current):
                # Another device commits during every attempt
                backend.write(p, {"total_sessions": 99})
                return fn(current)
            return await original(p, rival_then_fn)

        store.transact = contended
        result = await StatsUpdater(ctx, store).apply(
            summarize_session(ctx, answers("Cardiology", 1, 1))
        )

        assert not result.stats_committed
        assert "aborted" in result.error
        assert backend.read(path) == {"total_sessions": 99}
        assert result.leaderboards_written == 1

    @pytest.mark.asyncio
    async def test_anonymous_sessions_stay_local(self, anonymous_ctx, store, backend):
        result = await StatsUpdater(anonymous_ctx, store).apply(
            summarize_session(anonymous_ctx, answers("Cardiology", 1, 1))
        )
        assert not result.stats_committed
        assert result.error is None
        assert backend.read("") is None

    @pytest.mark.asyncio
    async def test_malformed_statistics_are_reported_not_raised(self, ctx, store, backend):
        backend.write(ctx.stats_path(), {"total_questions": -3})

        result = await StatsUpdater(ctx, store).apply(
            summarize_session(ctx, answers("Cardiology", 1, 2))
        )

        assert not result.stats_committed
        assert "Malformed statistics" in result.error
        assert backend.read(ctx.stats_path()) == {"total_questions": -3}
        assert result.leaderboards_written == 1
        assert result.analytics_key is not None
