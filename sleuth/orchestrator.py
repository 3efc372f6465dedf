"""Stage sequencer: runs one research job through the four collaborator stages.

Stages run strictly in order and each owns a fixed slice of the progress bar:

    website   5 -> 25    social   30 -> 50
    news     55 -> 75    business 80 -> 100

Every job-row write goes through a conditional ``UPDATE ... WHERE status =
'running'`` so a cancellation committed by another session is never
overwritten.  Once cancellation is seen the job raises
:class:`~sleuth.errors.ResearchCancelled` and writes nothing further.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Mapping

from pydantic import TypeAdapter
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from sleuth.collaborators import CancellationToken, Collaborator, ResearchContext, SubjectDescriptor
from sleuth.db import SessionFactory, get_session, session_scope
from sleuth.errors import CompanyNotFoundError, InvalidTransitionError, JobNotFoundError, ResearchCancelled
from sleuth.evolution import EvolutionEngine
from sleuth.fuser import fuse
from sleuth.models import Company, CompanyStatus, JobStatus, ResearchJob, ResearchResult, StageStatus
from sleuth.schemas import CollaboratorResult, ComprehensiveIntelligence

log = logging.getLogger(__name__)

DEGRADED_ERROR_CODE = "COLLABORATOR_DEGRADED"

_UNSTARTED = (JobStatus.PENDING, JobStatus.QUEUED)

_RESULT_ADAPTER: TypeAdapter[Any] = TypeAdapter(CollaboratorResult)


@dataclass(frozen=True)
class Stage:
    key: str
    column: str
    source: str
    start_progress: int
    end_progress: int


STAGES: tuple[Stage, ...] = (
    Stage("website", "website_analysis", "website_analyst", 5, 25),
    Stage("social", "social_media_hunt", "social_hunter", 30, 50),
    Stage("news", "news_aggregation", "news_aggregator", 55, 75),
    Stage("business", "business_analysis", "business_analyzer", 80, 100),
)


@dataclass
class _RunLedger:
    sources_used: list[str] = field(default_factory=list)
    sources_failed: list[str] = field(default_factory=list)


def _now() -> datetime:
    return datetime.now(UTC)


class ResearchOrchestrator:
    """Sequences the collaborators for one job and persists the fused record."""

    def __init__(
        self,
        session_factory: SessionFactory | None = None,
        evolution: EvolutionEngine | None = None,
        collaborators: Mapping[str, Collaborator] | None = None,
    ):
        self._session_factory = session_factory or get_session
        self.evolution = evolution or EvolutionEngine(self._session_factory)
        if collaborators is None:
            from sleuth.agents import default_collaborators
            collaborators = default_collaborators()
        missing = [s.key for s in STAGES if s.key not in collaborators]
        if missing:
            raise ValueError(f"No collaborator configured for stage(s): {', '.join(missing)}")
        self._collaborators = dict(collaborators)

    async def execute_research(
        self, job_id: int, token: CancellationToken | None = None,
    ) -> ComprehensiveIntelligence:
        """Run every stage for *job_id*, fuse, persist, and return the record.

        Raises :class:`ResearchCancelled` if the job is cancelled mid-run, and
        re-raises any other failure after marking the job and company failed.
        """
        token = token or CancellationToken(job_id)
        started = time.monotonic()
        subject = self._start_job(job_id, token)
        log.info("Research job %d started for company %d (%s)", job_id, subject.company_id, subject.company_name)

        try:
            context = ResearchContext(job_id=job_id, token=token)
            ledger = _RunLedger()
            for stage in STAGES:
                output = await self._run_stage(job_id, stage, subject, context, ledger)
                setattr(context, stage.key, output)

            intel = fuse(ComprehensiveIntelligence(
                company_id=subject.company_id,
                company_name=subject.company_name,
                website_data=context.website,
                social_data=context.social,
                news_data=context.news,
                business_data=context.business,
            ))
            self._complete_job(job_id, intel, token)
        except ResearchCancelled:
            log.info("Research job %d cancelled", job_id)
            self._settle_cancelled(job_id)
            raise
        except Exception as exc:
            log.exception("Research job %d failed", job_id)
            self._mark_failed(job_id, exc)
            raise

        self.evolution.log_research_complete(
            subject.company_id, intel.completeness_score,
            ledger.sources_used, ledger.sources_failed, intel.data_gaps,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        log.info(
            "Research job %d completed: completeness=%d confidence=%d",
            job_id, intel.completeness_score, intel.confidence_score,
        )
        return intel

    # -----------------------------------------------------------------------
    # Stages
    # -----------------------------------------------------------------------

    async def _run_stage(
        self, job_id: int, stage: Stage, subject: SubjectDescriptor,
        context: ResearchContext, ledger: _RunLedger,
    ) -> Any:
        self._update_running_job(
            job_id, context.token, **{stage.column: StageStatus.RUNNING, "progress": stage.start_progress},
        )
        collaborator = self._collaborators[stage.key]
        started = time.monotonic()
        try:
            raw = await collaborator.invoke(subject, context)
        except ResearchCancelled:
            raise
        except Exception as exc:
            self.evolution.log_failure(stage.source, exc.__class__.__name__, str(exc))
            ledger.sources_failed.append(stage.source)
            raise
        duration_ms = int((time.monotonic() - started) * 1000)

        if raw is None:
            log.info("Stage %s skipped for job %d", stage.key, job_id)
            output = None
            status = StageStatus.SKIPPED
        else:
            output = self._coerce_result(stage, raw)
            self._record_outcome(stage, output, duration_ms, subject, ledger)
            status = StageStatus.COMPLETED

        self._update_running_job(
            job_id, context.token, **{stage.column: status, "progress": stage.end_progress},
        )
        return output

    @staticmethod
    def _coerce_result(stage: Stage, raw: Any) -> Any:
        result = _RESULT_ADAPTER.validate_python(raw)
        if result.kind != stage.key:
            raise TypeError(f"{stage.source} returned a {result.kind!r} result for the {stage.key!r} stage")
        return result

    def _record_outcome(
        self, stage: Stage, output: Any, duration_ms: int, subject: SubjectDescriptor, ledger: _RunLedger,
    ) -> None:
        if output.errors and not output.has_data:
            log.warning("Stage %s degraded for company %d: %s", stage.key, subject.company_id, output.errors)
            self.evolution.log_failure(stage.source, DEGRADED_ERROR_CODE, "; ".join(output.errors))
            ledger.sources_failed.append(stage.source)
        else:
            self.evolution.log_success(
                stage.source, duration_ms, output.quality_score, industry=subject.category or None,
            )
            ledger.sources_used.append(stage.source)

    # -----------------------------------------------------------------------
    # Persistence
    # -----------------------------------------------------------------------

    def cancel_unstarted(self, job_id: int) -> None:
        """Record the cancellation of a job that never left the queue."""
        self._settle_cancelled(job_id, _UNSTARTED)

    def _start_job(self, job_id: int, token: CancellationToken) -> SubjectDescriptor:
        if token.cancelled:
            self.cancel_unstarted(job_id)
            raise ResearchCancelled(job_id)
        with session_scope(self._session_factory) as session:
            job = session.get(ResearchJob, job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            if job.status == JobStatus.CANCELLED:
                token.cancel()
                raise ResearchCancelled(job_id)
            if job.status not in (JobStatus.PENDING, JobStatus.QUEUED):
                raise InvalidTransitionError(job_id, job.status, JobStatus.RUNNING)

            company = session.get(Company, job.company_id)
            if company is None:
                job.status = JobStatus.FAILED
                job.error_message = f"Company not found: {job.company_id}"
                job.completed_at = _now()
                session.commit()
                raise CompanyNotFoundError(job.company_id)

            job.status = JobStatus.RUNNING
            job.started_at = _now()
            company.status = CompanyStatus.RESEARCHING
            session.commit()
            return SubjectDescriptor.from_company(company)

    def _guarded_update(self, session: Session, job_id: int, token: CancellationToken, **values: Any) -> None:
        """Apply *values* to the job only while it is still running."""
        token.raise_if_cancelled()
        res = session.execute(
            update(ResearchJob)
            .where(ResearchJob.id == job_id, ResearchJob.status == JobStatus.RUNNING)
            .values(updated_at=_now(), **values)
        )
        if res.rowcount:
            return
        session.rollback()
        status = session.execute(select(ResearchJob.status).where(ResearchJob.id == job_id)).scalar()
        if status is None:
            raise JobNotFoundError(job_id)
        if status == JobStatus.CANCELLED:
            token.cancel()
            raise ResearchCancelled(job_id)
        raise InvalidTransitionError(job_id, status, values.get("status", JobStatus.RUNNING))

    def _update_running_job(self, job_id: int, token: CancellationToken, **values: Any) -> None:
        with session_scope(self._session_factory) as session:
            self._guarded_update(session, job_id, token, **values)
            session.commit()

    def _complete_job(self, job_id: int, intel: ComprehensiveIntelligence, token: CancellationToken) -> None:
        """Upsert the result row and close out the job and company in one transaction."""
        with session_scope(self._session_factory) as session:
            self._guarded_update(
                session, job_id, token,
                status=JobStatus.COMPLETED, progress=100, completed_at=_now(),
            )
            row = session.execute(
                select(ResearchResult).where(ResearchResult.company_id == intel.company_id)
            ).scalars().first()
            if row is None:
                row = ResearchResult(company_id=intel.company_id)
                session.add(row)
            apply_intelligence(row, intel)

            company = session.get(Company, intel.company_id)
            if company is not None:
                company.status = CompanyStatus.COMPLETED
            session.commit()

    def _settle_cancelled(self, job_id: int, from_statuses: tuple[str, ...] = (JobStatus.RUNNING,)) -> None:
        """Record a token-only cancellation (e.g. pool shutdown) on a job in one of *from_statuses*."""
        try:
            with session_scope(self._session_factory) as session:
                res = session.execute(
                    update(ResearchJob)
                    .where(ResearchJob.id == job_id, ResearchJob.status.in_(from_statuses))
                    .values(status=JobStatus.CANCELLED, updated_at=_now())
                )
                if res.rowcount:
                    company_id = session.execute(
                        select(ResearchJob.company_id).where(ResearchJob.id == job_id)
                    ).scalar()
                    company = session.get(Company, company_id)
                    if company is not None:
                        company.status = CompanyStatus.PENDING
                session.commit()
        except Exception:
            log.exception("Could not record cancellation of job %d", job_id)

    def _mark_failed(self, job_id: int, exc: BaseException) -> None:
        try:
            with session_scope(self._session_factory) as session:
                job = session.get(ResearchJob, job_id)
                if job is None or job.status == JobStatus.CANCELLED:
                    return
                job.status = JobStatus.FAILED
                job.error_message = str(exc) or exc.__class__.__name__
                job.completed_at = _now()
                for stage in STAGES:
                    if getattr(job, stage.column) == StageStatus.RUNNING:
                        setattr(job, stage.column, StageStatus.FAILED)
                company = session.get(Company, job.company_id)
                if company is not None:
                    company.status = CompanyStatus.FAILED
                session.commit()
        except Exception:
            log.exception("Could not mark job %d as failed", job_id)


def apply_intelligence(row: ResearchResult, intel: ComprehensiveIntelligence) -> None:
    row.company_name = intel.company_name
    for name in ("website_data", "social_data", "news_data", "business_data"):
        value = getattr(intel, name)
        setattr(row, name, value.model_dump(mode="json") if value is not None else None)
    row.digital_maturity_score = intel.digital_maturity_score
    row.social_presence_score = intel.social_presence_score
    row.reputation_score = intel.reputation_score
    row.opportunity_score = intel.opportunity_score
    row.completeness_score = intel.completeness_score
    row.confidence_score = intel.confidence_score
    row.data_gaps = list(intel.data_gaps)
    row.researched_at = intel.researched_at
