"""Tests for the evolution engine: reliability updates, adaptations and insights."""
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from sleuth.evolution import (
    EvolutionEngine,
    classify_trend,
    next_success_rate,
)
from sleuth.models import Base, EventType, EvolutionLog, SourceConfig


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def factory():
    eng = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(eng)
    return sessionmaker(bind=eng, autoflush=False, expire_on_commit=False)


@pytest.fixture()
def engine(factory) -> EvolutionEngine:
    return EvolutionEngine(factory)


def _seed_source(factory, name: str, **fields) -> None:
    with factory() as session:
        session.add(SourceConfig(source_name=name, **fields))
        session.commit()


def _source(factory, name: str) -> SourceConfig:
    with factory() as session:
        return session.execute(select(SourceConfig).where(SourceConfig.source_name == name)).scalar_one()


def _events(factory, event_type: str | None = None) -> list[EvolutionLog]:
    with factory() as session:
        query = select(EvolutionLog).order_by(EvolutionLog.id)
        if event_type:
            query = query.where(EvolutionLog.event_type == event_type)
        return list(session.execute(query).scalars().all())


def _seed_completions(factory, scores_oldest_first: list[float], duration_ms: int = 60_000) -> None:
    base = datetime(2026, 1, 1, 9, 0, 0)
    with factory() as session:
        for i, score in enumerate(scores_oldest_first):
            session.add(EvolutionLog(
                event_type=EventType.RESEARCH_COMPLETE, company_id=i + 1,
                completeness_score=score, duration_ms=duration_ms,
                sources_used=[], sources_failed=[], gaps=[],
                timestamp=base + timedelta(minutes=i),
            ))
        session.commit()


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


class TestNextSuccessRate:
    def test_success_moves_a_tenth_of_the_way_to_100(self):
        assert next_success_rate(80.0, True) == pytest.approx(82.0)
        assert next_success_rate(0.0, True) == pytest.approx(10.0)

    def test_failure_subtracts_ten(self):
        assert next_success_rate(82.0, False) == pytest.approx(72.0)

    def test_failure_floors_at_zero(self):
        assert next_success_rate(4.0, False) == 0.0

    def test_successes_approach_but_never_pass_100(self):
        rate = 50.0
        for _ in range(200):
            previous = rate
            rate = next_success_rate(rate, True)
            assert previous <= rate <= 100.0
        assert rate == pytest.approx(100.0)


class TestClassifyTrend:
    def test_improving(self):
        assert classify_trend([80.0] * 10 + [60.0] * 10) == "improving"

    def test_declining(self):
        assert classify_trend([50.0] * 10 + [70.0] * 10) == "declining"

    def test_small_difference_is_stable(self):
        assert classify_trend([64.0] * 10 + [60.0] * 10) == "stable"

    def test_fewer_than_twenty_samples_is_stable(self):
        assert classify_trend([90.0] * 10 + [10.0] * 5) == "stable"
        assert classify_trend([90.0, 10.0]) == "stable"
        assert classify_trend([]) == "stable"


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------


class TestLogSuccess:
    def test_raises_rate_and_averages(self, engine, factory):
        _seed_source(factory, "website_analyst", success_rate=80.0, avg_duration_ms=1000, avg_quality_score=50.0)

        engine.log_success("website_analyst", 1200, 75)

        row = _source(factory, "website_analyst")
        assert row.success_rate == pytest.approx(82.0)
        assert row.avg_duration_ms == 1100
        assert row.avg_quality_score == pytest.approx(62.5)
        assert row.is_enabled is True
        assert row.current_daily_usage == 1
        assert row.last_used is not None

        events = _events(factory, EventType.SOURCE_SUCCESS)
        assert len(events) == 1
        assert events[0].source == "website_analyst"
        assert events[0].duration_ms == 1200
        assert events[0].data_quality_score == 75

    def test_zero_quality_keeps_average(self, engine, factory):
        _seed_source(factory, "news_aggregator", success_rate=60.0, avg_duration_ms=800, avg_quality_score=40.0)

        engine.log_success("news_aggregator", 0, 0)

        row = _source(factory, "news_aggregator")
        assert row.avg_quality_score == pytest.approx(40.0)
        assert row.avg_duration_ms == 800
        assert row.success_rate == pytest.approx(64.0)

    def test_unknown_source_gets_a_fresh_row(self, engine, factory):
        engine.log_success("social_hunter", 900, 70)

        row = _source(factory, "social_hunter")
        assert row.success_rate == 100.0
        assert row.avg_duration_ms == 900
        assert row.avg_quality_score == 70
        assert row.is_enabled is True
        assert row.priority == 5
        assert row.requests_per_minute == 10
        assert row.delay_between_ms == 6000
        assert row.daily_limit == 500

    def test_fresh_row_without_quality_defaults_to_50(self, engine, factory):
        engine.log_success("social_hunter", 900, 0)
        assert _source(factory, "social_hunter").avg_quality_score == 50.0


class TestLogFailure:
    def test_success_then_failure(self, engine, factory):
        _seed_source(factory, "website_analyst", success_rate=80.0)

        engine.log_success("website_analyst", 1000, 60)
        engine.log_failure("website_analyst", "ConnectError", "connection refused")

        row = _source(factory, "website_analyst")
        assert row.success_rate == pytest.approx(72.0)
        assert row.is_enabled is True

        failure = _events(factory, EventType.SOURCE_FAILURE)[0]
        assert failure.error_code == "ConnectError"
        assert failure.error_message == "connection refused"

    def test_dropping_below_threshold_disables_and_logs_adaptation(self, engine, factory):
        _seed_source(factory, "news_aggregator", success_rate=25.0)

        engine.log_failure("news_aggregator", "SearchError", "rate limited")

        row = _source(factory, "news_aggregator")
        assert row.success_rate == pytest.approx(15.0)
        assert row.is_enabled is False

        adaptations = _events(factory, EventType.ADAPTATION_APPLIED)
        assert len(adaptations) == 1
        assert adaptations[0].source == "news_aggregator"
        assert "disabled" in adaptations[0].description

    def test_exactly_20_is_disabled(self, engine, factory):
        _seed_source(factory, "news_aggregator", success_rate=30.0)
        engine.log_failure("news_aggregator", "SearchError", "boom")
        assert _source(factory, "news_aggregator").is_enabled is False

    def test_recovery_re_enables(self, engine, factory):
        _seed_source(factory, "news_aggregator", success_rate=15.0, is_enabled=False)

        engine.log_success("news_aggregator", 500, 40)  # 15 + 8.5 = 23.5

        row = _source(factory, "news_aggregator")
        assert row.success_rate == pytest.approx(23.5)
        assert row.is_enabled is True
        adaptation = _events(factory, EventType.ADAPTATION_APPLIED)[-1]
        assert "re-enabled" in adaptation.description

    def test_failure_leaves_averages_alone(self, engine, factory):
        _seed_source(factory, "social_hunter", success_rate=90.0, avg_duration_ms=700, avg_quality_score=80.0)
        engine.log_failure("social_hunter", "TimeoutError", "")
        row = _source(factory, "social_hunter")
        assert row.avg_duration_ms == 700
        assert row.avg_quality_score == 80.0

    def test_unknown_source_starts_at_zero(self, engine, factory):
        engine.log_failure("business_analyzer", "ValueError", "bad input")
        row = _source(factory, "business_analyzer")
        assert row.success_rate == 0.0
        assert row.is_enabled is True

    def test_concurrent_failures_are_not_lost(self, engine, factory):
        _seed_source(factory, "website_analyst", success_rate=100.0)

        with ThreadPoolExecutor(max_workers=5) as executor:
            for _ in range(5):
                executor.submit(engine.log_failure, "website_analyst", "ConnectError", "refused")

        assert _source(factory, "website_analyst").success_rate == pytest.approx(50.0)
        assert len(_events(factory, EventType.SOURCE_FAILURE)) == 5


class TestOtherWrites:
    def test_research_complete_event(self, engine, factory):
        engine.log_research_complete(
            7, 85, ["website_analyst", "social_hunter"], ["news_aggregator"],
            ["No news coverage found"], duration_ms=4200,
        )
        event = _events(factory, EventType.RESEARCH_COMPLETE)[0]
        assert event.company_id == 7
        assert event.completeness_score == 85
        assert event.sources_used == ["website_analyst", "social_hunter"]
        assert event.sources_failed == ["news_aggregator"]
        assert event.gaps == ["No news coverage found"]
        assert event.duration_ms == 4200

    def test_adaptation_event(self, engine, factory):
        engine.log_adaptation("news_aggregator", "Backed off search queries")
        event = _events(factory, EventType.ADAPTATION_APPLIED)[0]
        assert event.source == "news_aggregator"
        assert event.description == "Backed off search queries"

    def test_storage_failure_is_logged_not_raised(self, caplog):
        def broken_factory():
            raise RuntimeError("database is locked")

        engine = EvolutionEngine(broken_factory)
        engine.log_success("website_analyst", 100, 50)
        engine.log_failure("website_analyst", "X", "y")
        engine.log_research_complete(1, 50, [], [], [])
        engine.log_adaptation("website_analyst", "z")

        assert "Failed to log source success for website_analyst" in caplog.text
        assert "Failed to log research completion for company 1" in caplog.text


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


class TestReads:
    def test_source_performance_sorted_by_rate(self, engine, factory):
        _seed_source(factory, "a", success_rate=40.0)
        _seed_source(factory, "b", success_rate=90.0)
        _seed_source(factory, "c", success_rate=65.0)

        perf = engine.get_source_performance()

        assert [p["source_name"] for p in perf] == ["b", "c", "a"]
        assert set(perf[0]) == {
            "source_name", "success_rate", "avg_duration_ms", "avg_quality_score", "last_used", "is_enabled",
        }

    def test_best_sources(self, engine, factory):
        for name, rate in [("s1", 95.0), ("s2", 90.0), ("s3", 85.0), ("s4", 80.0),
                           ("s5", 75.0), ("s6", 70.0), ("low", 30.0)]:
            _seed_source(factory, name, success_rate=rate)
        _seed_source(factory, "off", success_rate=99.0, is_enabled=False)

        assert engine.get_best_sources() == ["s1", "s2", "s3", "s4", "s5"]
        assert engine.get_best_sources(min_success_rate=88) == ["s1", "s2"]

    def test_best_sources_ties_break_on_quality(self, engine, factory):
        _seed_source(factory, "plain", success_rate=80.0, avg_quality_score=40.0)
        _seed_source(factory, "rich", success_rate=80.0, avg_quality_score=90.0)
        assert engine.get_best_sources() == ["rich", "plain"]

    def test_insights_top_and_problematic(self, engine, factory):
        _seed_source(factory, "website_analyst", success_rate=92.0)
        _seed_source(factory, "social_hunter", success_rate=71.0)
        _seed_source(factory, "news_aggregator", success_rate=35.0)
        _seed_source(factory, "business_analyzer", success_rate=10.0, is_enabled=False)

        insights = engine.analyze_insights()

        assert insights.top_sources == ["website_analyst", "social_hunter"]
        assert insights.problematic_sources == ["business_analyzer", "news_aggregator"]
        assert insights.recommendations == ["Consider reviewing: business_analyzer, news_aggregator"]
        assert insights.quality_trend == "stable"
        assert insights.avg_processing_time == 0

    def test_insights_improving_trend(self, engine, factory):
        _seed_completions(factory, [60.0] * 10 + [80.0] * 10)

        insights = engine.analyze_insights()

        assert insights.quality_trend == "improving"
        assert insights.avg_processing_time == 60
        assert insights.recommendations == []

    def test_insights_declining_trend_and_slow_processing(self, engine, factory):
        _seed_completions(factory, [90.0] * 10 + [40.0] * 10, duration_ms=400_000)

        insights = engine.analyze_insights()

        assert insights.quality_trend == "declining"
        assert insights.avg_processing_time == 400
        assert insights.recommendations == [
            "Research quality is declining. Review agent configurations.",
            "Processing time is high. Consider optimizing parallel execution.",
        ]

    def test_insights_only_use_the_last_twenty_completions(self, engine, factory):
        _seed_completions(factory, [0.0] * 30 + [70.0] * 20)
        assert engine.analyze_insights().quality_trend == "stable"

    def test_evolution_stats(self, engine, factory):
        engine.log_success("website_analyst", 100, 50)
        engine.log_success("social_hunter", 100, 50)
        engine.log_failure("news_aggregator", "SearchError", "x")
        engine.log_research_complete(1, 40, ["website_analyst"], ["news_aggregator"], [])

        stats = engine.get_evolution_stats()

        assert stats["total_events"] == 4
        assert stats["success_count"] == 2
        assert stats["failure_count"] == 1
        assert stats["research_complete_count"] == 1
        assert stats["recent_events"][0]["event_type"] == EventType.RESEARCH_COMPLETE
        assert len(engine.get_evolution_stats(recent_limit=2)["recent_events"]) == 2

    def test_empty_store(self, engine):
        assert engine.get_source_performance() == []
        assert engine.get_best_sources() == []
        stats = engine.get_evolution_stats()
        assert stats["total_events"] == 0
        assert stats["recent_events"] == []
