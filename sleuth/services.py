"""Shared business logic for the Sleuth API and MCP server."""
from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from sleuth.errors import CompanyNotFoundError, InvalidTransitionError, JobConflictError, JobNotFoundError
from sleuth.models import (
    ACTIVE_JOB_STATUSES,
    Company,
    CompanyStatus,
    JobStatus,
    ResearchJob,
    ResearchResult,
)
from sleuth.orchestrator import STAGES, ResearchOrchestrator
from sleuth.schemas import (
    CompanyCreate,
    CompanyListResponse,
    CompanyOut,
    CompanyStatsOut,
    CompanyUpdate,
    ComprehensiveIntelligence,
    JobOut,
    ResearchResultOut,
)
from sleuth.utils import iso
from sleuth.worker import ResearchWorkerPool

log = logging.getLogger(__name__)

SYNC_EXECUTE_PRIORITY = 10

UPDATABLE_FIELDS = ("company_name", "website", "phone", "address", "category")

# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def _latest_job(company: Company) -> ResearchJob | None:
    return max(company.jobs, key=lambda j: j.id, default=None)


def company_summary(company: Company) -> CompanyOut:
    latest = _latest_job(company)
    return CompanyOut(
        id=company.id, company_name=company.company_name, website=company.website or "",
        phone=company.phone or "", address=company.address or "", category=company.category or "",
        rating=company.rating, reviews_count=company.reviews_count, status=company.status,
        latest_job_id=latest.id if latest else None,
        latest_job_status=latest.status if latest else None,
        has_result=company.result is not None,
    )


def job_summary(job: ResearchJob) -> JobOut:
    return JobOut(
        id=job.id, company_id=job.company_id, company_name=job.company.company_name,
        status=job.status, priority=job.priority, progress=job.progress,
        stages={s.key: getattr(job, s.column) for s in STAGES},
        started_at=iso(job.started_at), completed_at=iso(job.completed_at),
        error_message=job.error_message,
    )


def result_summary(row: ResearchResult) -> ResearchResultOut:
    return ResearchResultOut(
        company_id=row.company_id, company_name=row.company_name,
        website_data=row.website_data, social_data=row.social_data,
        news_data=row.news_data, business_data=row.business_data,
        digital_maturity_score=row.digital_maturity_score,
        social_presence_score=row.social_presence_score,
        reputation_score=row.reputation_score,
        opportunity_score=row.opportunity_score,
        completeness_score=row.completeness_score,
        confidence_score=row.confidence_score,
        data_gaps=list(row.data_gaps or []),
        researched_at=row.researched_at.isoformat(),
    )


# ---------------------------------------------------------------------------
# Companies
# ---------------------------------------------------------------------------


def create_company(session: Session, data: CompanyCreate) -> Company:
    """Add a company (caller must commit)."""
    company = Company(**data.model_dump(), status=CompanyStatus.PENDING)
    session.add(company)
    session.flush()
    return company


def get_company(session: Session, company_id: int) -> Company:
    company = session.get(Company, company_id)
    if company is None:
        raise CompanyNotFoundError(company_id)
    return company


def list_companies(
    session: Session, *, search: str | None = None, status: str | None = None,
    page: int = 1, per_page: int = 50,
) -> CompanyListResponse:
    page = max(page, 1)
    per_page = max(1, min(per_page, 200))
    query = select(Company)
    if search:
        q = f"%{search.strip().lower()}%"
        query = query.where(or_(
            func.lower(Company.company_name).like(q),
            func.lower(Company.address).like(q),
            func.lower(Company.category).like(q),
        ))
    if status:
        query = query.where(Company.status == status.strip().lower())
    total = session.execute(select(func.count()).select_from(query.subquery())).scalar() or 0
    rows = session.execute(
        query.order_by(Company.created_at.desc(), Company.id.desc())
        .offset((page - 1) * per_page).limit(per_page)
    ).scalars().all()
    return CompanyListResponse(
        items=[company_summary(c) for c in rows], total=total, page=page, per_page=per_page,
    )


def apply_updates(obj, updates: dict[str, Any], fields: tuple[str, ...]) -> None:
    """Apply non-None values from updates dict to an ORM object."""
    for field in fields:
        val = updates.get(field)
        if val is not None:
            setattr(obj, field, val)


def update_company(session: Session, company_id: int, data: CompanyUpdate) -> Company:
    """Change a company's descriptive fields (caller must commit)."""
    company = get_company(session, company_id)
    apply_updates(company, data.model_dump(), UPDATABLE_FIELDS)
    session.flush()
    return company


def _delete(session: Session, company: Company, pool: ResearchWorkerPool | None) -> None:
    job = active_job(session, company.id)
    if job is not None and pool is not None:
        pool.cancel(job.id)
    session.delete(company)


def delete_company(session: Session, company_id: int, pool: ResearchWorkerPool | None = None) -> None:
    """Delete a company with its jobs and result, stopping any research in flight."""
    _delete(session, get_company(session, company_id), pool)
    session.commit()
    log.info("Company %d deleted", company_id)


def bulk_delete(session: Session, company_ids: list[int], pool: ResearchWorkerPool | None = None) -> int:
    """Delete every listed company that exists; unknown ids are ignored. Returns the count."""
    companies = session.execute(select(Company).where(Company.id.in_(company_ids))).scalars().all()
    for company in companies:
        _delete(session, company, pool)
    session.commit()
    log.info("Bulk delete: %d of %d company id(s) removed", len(companies), len(set(company_ids)))
    return len(companies)


def company_stats(session: Session) -> CompanyStatsOut:
    counts = dict(session.execute(
        select(Company.status, func.count()).group_by(Company.status)
    ).all())
    return CompanyStatsOut(
        total=sum(counts.values()),
        **{status.value: counts.get(status, 0) for status in CompanyStatus},
    )


# ---------------------------------------------------------------------------
# Job submission
# ---------------------------------------------------------------------------


def active_job(session: Session, company_id: int) -> ResearchJob | None:
    return session.execute(
        select(ResearchJob)
        .where(ResearchJob.company_id == company_id, ResearchJob.status.in_(ACTIVE_JOB_STATUSES))
        .order_by(ResearchJob.id.desc())
    ).scalars().first()


def create_job(session: Session, company_id: int, priority: int = 0) -> ResearchJob:
    """Create a queued job and mirror ``queued`` on the company, then commit.

    Raises CompanyNotFoundError, or JobConflictError if the company already
    has a job that has not finished.
    """
    company = get_company(session, company_id)
    existing = active_job(session, company_id)
    if existing is not None:
        raise JobConflictError(company_id, existing.id)
    job = ResearchJob(company_id=company_id, priority=priority, status=JobStatus.QUEUED)
    session.add(job)
    company.status = CompanyStatus.QUEUED
    session.commit()
    log.info("Research job %d created for company %d", job.id, company_id)
    return job


def submit_research(
    session: Session, pool: ResearchWorkerPool, company_id: int, priority: int = 0,
) -> ResearchJob:
    """Queue research for a company and start it on the worker pool (fire and forget)."""
    job = create_job(session, company_id, priority)
    pool.submit(job.id)
    return job


async def execute_now(
    session: Session, orchestrator: ResearchOrchestrator, company_id: int,
    priority: int = SYNC_EXECUTE_PRIORITY,
) -> tuple[ResearchJob, ComprehensiveIntelligence]:
    """Create a job and run it to completion before returning."""
    job = create_job(session, company_id, priority)
    intel = await orchestrator.execute_research(job.id)
    return job, intel


def submit_batch(
    session: Session, pool: ResearchWorkerPool, company_ids: list[int], priority: int = 0,
) -> dict[str, Any]:
    """Queue research for several companies.

    Every id must exist (CompanyNotFoundError otherwise, nothing queued).
    Companies that already have an unfinished job are reported as skipped.
    """
    unique_ids = list(dict.fromkeys(company_ids))
    found = set(session.execute(select(Company.id).where(Company.id.in_(unique_ids))).scalars().all())
    for company_id in unique_ids:
        if company_id not in found:
            raise CompanyNotFoundError(company_id)

    jobs: list[dict[str, int]] = []
    skipped: list[dict[str, Any]] = []
    for company_id in unique_ids:
        try:
            job = submit_research(session, pool, company_id, priority)
        except JobConflictError as exc:
            skipped.append({"company_id": company_id, "job_id": exc.job_id, "reason": str(exc)})
            continue
        jobs.append({"company_id": company_id, "job_id": job.id})
    log.info("Batch research: %d job(s) queued, %d skipped", len(jobs), len(skipped))
    return {"jobs": jobs, "count": len(jobs), "skipped": skipped}


def cancel_job(session: Session, job_id: int, pool: ResearchWorkerPool | None = None) -> ResearchJob:
    """Cancel a pending, queued or running job and return its company to ``pending``."""
    job = get_job(session, job_id)
    if job.status not in ACTIVE_JOB_STATUSES:
        raise InvalidTransitionError(job_id, job.status, JobStatus.CANCELLED)
    job.status = JobStatus.CANCELLED
    job.company.status = CompanyStatus.PENDING
    session.commit()
    if pool is not None:
        pool.cancel(job_id)
    log.info("Research job %d cancelled", job_id)
    return job


# ---------------------------------------------------------------------------
# Views
# ---------------------------------------------------------------------------


def get_job(session: Session, job_id: int) -> ResearchJob:
    job = session.get(ResearchJob, job_id)
    if job is None:
        raise JobNotFoundError(job_id)
    return job


def get_result(session: Session, job_id: int) -> ResearchResult | None:
    """The company's stored intelligence for *job_id*, or None if not yet available."""
    job = get_job(session, job_id)
    return job.company.result


def list_queue(session: Session) -> list[ResearchJob]:
    return list(session.execute(
        select(ResearchJob)
        .where(ResearchJob.status.in_(ACTIVE_JOB_STATUSES))
        .order_by(ResearchJob.priority.desc(), ResearchJob.created_at.asc(), ResearchJob.id.asc())
    ).scalars().all())
