"""Evolution engine: invocation telemetry and per-source reliability learning.

Every collaborator invocation is appended to ``evolution_logs`` and folded
into the source's ``source_configs`` row:

- success: ``success_rate += (100 - success_rate) * 0.1`` and the duration /
  quality averages move halfway towards the new sample;
- failure: ``success_rate -= 10`` (floored at 0);
- ``is_enabled`` becomes ``success_rate > 20`` after each update.

Writes are best-effort: they log on failure and never raise.  Updates to one
source are serialized by a per-source lock and a ``SELECT ... FOR UPDATE``
so concurrent jobs cannot drop each other's increments.
"""
from __future__ import annotations

import logging
import threading
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from sleuth.db import SessionFactory, get_session, session_scope
from sleuth.models import EventType, EvolutionLog, SourceConfig
from sleuth.schemas import LearningInsightsOut
from sleuth.utils import iso, round_half_up

log = logging.getLogger(__name__)

SUCCESS_STEP = 0.1
FAILURE_PENALTY = 10.0
DISABLE_THRESHOLD = 20.0

TOP_SOURCE_MIN_RATE = 70.0
PROBLEM_SOURCE_MAX_RATE = 50.0
TREND_WINDOW = 10
TREND_MARGIN = 5.0
SLOW_PROCESSING_SECONDS = 300

_NEW_SOURCE_DEFAULTS: dict[str, Any] = {
    "priority": 5,
    "requests_per_minute": 10,
    "delay_between_ms": 6000,
    "daily_limit": 500,
}


def next_success_rate(current: float, success: bool) -> float:
    if success:
        return min(100.0, current + (100.0 - current) * SUCCESS_STEP)
    return max(0.0, current - FAILURE_PENALTY)


def classify_trend(completeness_recent_first: list[float]) -> str:
    """Compare the newest ten completion scores against the ten before them.

    With fewer than ``2 * TREND_WINDOW`` samples the older window reuses the
    newer one's mean, so the trend is ``stable``.
    """
    recent = completeness_recent_first[: 2 * TREND_WINDOW]
    if len(recent) < TREND_WINDOW:
        return "stable"
    first = recent[:TREND_WINDOW]
    second = recent[TREND_WINDOW:]
    first_avg = sum(first) / len(first)
    second_avg = sum(second) / len(second) if len(recent) == 2 * TREND_WINDOW else first_avg
    diff = first_avg - second_avg
    if diff > TREND_MARGIN:
        return "improving"
    if diff < -TREND_MARGIN:
        return "declining"
    return "stable"


def _now() -> datetime:
    return datetime.now(UTC)


class EvolutionEngine:
    """Records source outcomes and answers reliability queries."""

    def __init__(self, session_factory: SessionFactory | None = None):
        self._session_factory = session_factory or get_session
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _source_lock(self, source: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(source)
            if lock is None:
                lock = self._locks[source] = threading.Lock()
            return lock

    # -----------------------------------------------------------------------
    # Writes
    # -----------------------------------------------------------------------

    def log_success(
        self, source: str, duration_ms: int, quality_score: float, industry: str | None = None,
    ) -> None:
        try:
            with self._source_lock(source), session_scope(self._session_factory) as session:
                session.add(EvolutionLog(
                    event_type=EventType.SOURCE_SUCCESS, source=source, industry=industry,
                    duration_ms=duration_ms, data_quality_score=quality_score, timestamp=_now(),
                ))
                self._update_source(session, source, True, duration_ms, quality_score)
                session.commit()
            log.debug("Source success logged for %s (%dms, quality=%s)", source, duration_ms, quality_score)
        except Exception:
            log.exception("Failed to log source success for %s", source)

    def log_failure(
        self, source: str, error_code: str, error_message: str,
        retry_count: int | None = None, fallback_used: str | None = None,
    ) -> None:
        try:
            with self._source_lock(source), session_scope(self._session_factory) as session:
                session.add(EvolutionLog(
                    event_type=EventType.SOURCE_FAILURE, source=source,
                    error_code=error_code, error_message=error_message,
                    retry_count=retry_count, fallback_used=fallback_used, timestamp=_now(),
                ))
                self._update_source(session, source, False, 0, 0)
                session.commit()
            log.debug("Source failure logged for %s (%s)", source, error_code)
        except Exception:
            log.exception("Failed to log source failure for %s", source)

    def log_research_complete(
        self, company_id: int, completeness_score: float,
        sources_used: list[str], sources_failed: list[str], gaps: list[str],
        duration_ms: int | None = None,
    ) -> None:
        try:
            with session_scope(self._session_factory) as session:
                session.add(EvolutionLog(
                    event_type=EventType.RESEARCH_COMPLETE, company_id=company_id,
                    completeness_score=completeness_score, duration_ms=duration_ms,
                    sources_used=list(sources_used), sources_failed=list(sources_failed),
                    gaps=list(gaps), timestamp=_now(),
                ))
                session.commit()
            log.debug("Research completion logged for company %s (completeness=%s)", company_id, completeness_score)
        except Exception:
            log.exception("Failed to log research completion for company %s", company_id)

    def log_adaptation(self, source: str, description: str) -> None:
        try:
            with session_scope(self._session_factory) as session:
                session.add(_adaptation_event(source, description))
                session.commit()
            log.info("Adaptation applied to %s: %s", source, description)
        except Exception:
            log.exception("Failed to log adaptation for %s", source)

    def _update_source(
        self, session: Session, source: str, success: bool, duration_ms: int, quality_score: float,
    ) -> None:
        """Fold one outcome into the source row (caller commits)."""
        row = session.execute(
            select(SourceConfig).where(SourceConfig.source_name == source).with_for_update()
        ).scalars().first()

        if row is None:
            session.add(SourceConfig(
                source_name=source,
                is_enabled=True,
                success_rate=100.0 if success else 0.0,
                avg_quality_score=quality_score or 50.0,
                avg_duration_ms=duration_ms or 0,
                last_used=_now(),
                **_NEW_SOURCE_DEFAULTS,
            ))
            return

        was_enabled = row.is_enabled
        row.success_rate = next_success_rate(row.success_rate, success)
        if success and duration_ms > 0:
            row.avg_duration_ms = round_half_up((row.avg_duration_ms + duration_ms) / 2)
        if success and quality_score > 0:
            row.avg_quality_score = (row.avg_quality_score + quality_score) / 2
        row.is_enabled = row.success_rate > DISABLE_THRESHOLD
        row.last_used = _now()
        row.current_daily_usage = (row.current_daily_usage or 0) + 1

        if row.is_enabled != was_enabled:
            verb = "re-enabled" if row.is_enabled else "disabled"
            session.add(_adaptation_event(source, f"Source {verb} at success rate {row.success_rate:.1f}"))
            log.info("Source %s %s (success rate %.1f)", source, verb, row.success_rate)

    # -----------------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------------

    def get_source_performance(self) -> list[dict[str, Any]]:
        with session_scope(self._session_factory) as session:
            rows = session.execute(
                select(SourceConfig).order_by(SourceConfig.success_rate.desc())
            ).scalars().all()
            return [_source_summary(r) for r in rows]

    def get_best_sources(self, min_success_rate: float = 50) -> list[str]:
        with session_scope(self._session_factory) as session:
            return list(session.execute(
                select(SourceConfig.source_name)
                .where(SourceConfig.is_enabled.is_(True), SourceConfig.success_rate >= min_success_rate)
                .order_by(SourceConfig.success_rate.desc(), SourceConfig.avg_quality_score.desc())
                .limit(5)
            ).scalars().all())

    def analyze_insights(self) -> LearningInsightsOut:
        insights = LearningInsightsOut()
        with session_scope(self._session_factory) as session:
            insights.top_sources = list(session.execute(
                select(SourceConfig.source_name)
                .where(SourceConfig.is_enabled.is_(True), SourceConfig.success_rate >= TOP_SOURCE_MIN_RATE)
                .order_by(SourceConfig.success_rate.desc())
                .limit(5)
            ).scalars().all())
            insights.problematic_sources = list(session.execute(
                select(SourceConfig.source_name)
                .where(SourceConfig.success_rate < PROBLEM_SOURCE_MAX_RATE)
                .order_by(SourceConfig.success_rate.asc())
                .limit(5)
            ).scalars().all())
            recent = session.execute(
                select(EvolutionLog)
                .where(EvolutionLog.event_type == EventType.RESEARCH_COMPLETE)
                .order_by(EvolutionLog.timestamp.desc(), EvolutionLog.id.desc())
                .limit(2 * TREND_WINDOW)
            ).scalars().all()

        if recent:
            total_ms = sum(r.duration_ms or 0 for r in recent)
            insights.avg_processing_time = round_half_up(total_ms / len(recent) / 1000)
        insights.quality_trend = classify_trend([r.completeness_score or 0 for r in recent])

        if insights.problematic_sources:
            insights.recommendations.append(
                f"Consider reviewing: {', '.join(insights.problematic_sources)}"
            )
        if insights.quality_trend == "declining":
            insights.recommendations.append("Research quality is declining. Review agent configurations.")
        if insights.avg_processing_time > SLOW_PROCESSING_SECONDS:
            insights.recommendations.append("Processing time is high. Consider optimizing parallel execution.")
        return insights

    def get_evolution_stats(self, recent_limit: int = 10) -> dict[str, Any]:
        with session_scope(self._session_factory) as session:
            counts = dict(session.execute(
                select(EvolutionLog.event_type, func.count()).group_by(EvolutionLog.event_type)
            ).all())
            recent = session.execute(
                select(EvolutionLog).order_by(EvolutionLog.timestamp.desc(), EvolutionLog.id.desc()).limit(recent_limit)
            ).scalars().all()
            return {
                "total_events": sum(counts.values()),
                "success_count": counts.get(EventType.SOURCE_SUCCESS, 0),
                "failure_count": counts.get(EventType.SOURCE_FAILURE, 0),
                "research_complete_count": counts.get(EventType.RESEARCH_COMPLETE, 0),
                "recent_events": [_event_summary(e) for e in recent],
            }


def _adaptation_event(source: str, description: str) -> EvolutionLog:
    return EvolutionLog(
        event_type=EventType.ADAPTATION_APPLIED, source=source, description=description, timestamp=_now(),
    )


def _source_summary(row: SourceConfig) -> dict[str, Any]:
    return {
        "source_name": row.source_name,
        "success_rate": row.success_rate,
        "avg_duration_ms": row.avg_duration_ms,
        "avg_quality_score": row.avg_quality_score,
        "last_used": iso(row.last_used),
        "is_enabled": row.is_enabled,
    }


def _event_summary(event: EvolutionLog) -> dict[str, Any]:
    return {
        "id": event.id, "event_type": event.event_type, "source": event.source,
        "company_id": event.company_id, "duration_ms": event.duration_ms,
        "data_quality_score": event.data_quality_score,
        "completeness_score": event.completeness_score,
        "error_code": event.error_code, "error_message": event.error_message,
        "description": event.description, "timestamp": event.timestamp.isoformat(),
    }
