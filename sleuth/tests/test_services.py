"""Tests for the shared service layer used by the API and MCP server."""
from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from sleuth import services
from sleuth.errors import CompanyNotFoundError, InvalidTransitionError, JobConflictError, JobNotFoundError
from sleuth.models import Base, Company, CompanyStatus, JobStatus, ResearchJob, ResearchResult
from sleuth.schemas import CompanyCreate, CompanyUpdate, ComprehensiveIntelligence


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def session():
    eng = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(eng)
    factory = sessionmaker(bind=eng, autoflush=False, expire_on_commit=False)
    sess = factory()
    try:
        yield sess
    finally:
        sess.close()


@pytest.fixture()
def pool():
    return MagicMock()


def _add(session: Session, name: str, **fields) -> Company:
    company = services.create_company(session, CompanyCreate(company_name=name, **fields))
    session.commit()
    return company


def _job_count(session: Session) -> int:
    return session.execute(select(func.count()).select_from(ResearchJob)).scalar()


# ---------------------------------------------------------------------------
# Companies
# ---------------------------------------------------------------------------


class TestCompanies:
    def test_create_and_summary(self, session):
        company = _add(session, "Acme Plumbing", website="https://acme.test", category="Plumber")

        out = services.company_summary(company)

        assert out.company_name == "Acme Plumbing"
        assert out.status == CompanyStatus.PENDING
        assert out.latest_job_id is None
        assert out.has_result is False

    def test_get_unknown_company(self, session):
        with pytest.raises(CompanyNotFoundError, match="Company not found: 42"):
            services.get_company(session, 42)

    def test_search_matches_name_address_and_category(self, session):
        _add(session, "Acme Plumbing", address="1 Pipe St", category="Plumber")
        _add(session, "Bolt Electric", address="2 Wire Rd", category="Electrician")
        _add(session, "Copper Roofing", address="3 Acme Ave", category="Roofer")

        names = {c.company_name for c in services.list_companies(session, search="ACME").items}
        assert names == {"Acme Plumbing", "Copper Roofing"}

        by_category = services.list_companies(session, search="electric")
        assert [c.company_name for c in by_category.items] == ["Bolt Electric"]

    def test_status_filter_and_pagination(self, session):
        for i in range(5):
            _add(session, f"Company {i}")
        done = _add(session, "Finished Co")
        done.status = CompanyStatus.COMPLETED
        session.commit()

        completed = services.list_companies(session, status="Completed")
        assert completed.total == 1
        assert completed.items[0].company_name == "Finished Co"

        page = services.list_companies(session, page=2, per_page=4)
        assert page.total == 6
        assert len(page.items) == 2
        assert page.page == 2

    def test_per_page_is_capped(self, session):
        assert services.list_companies(session, per_page=5000).per_page == 200
        assert services.list_companies(session, page=0).page == 1

    def test_update_changes_only_given_fields(self, session):
        company = _add(session, "Acme Plumbing", website="https://acme.test", phone="555-0100")

        services.update_company(session, company.id, CompanyUpdate(website="https://acme.example", category="Plumber"))
        session.commit()

        assert company.company_name == "Acme Plumbing"
        assert company.website == "https://acme.example"
        assert company.phone == "555-0100"
        assert company.category == "Plumber"

    def test_update_unknown_company(self, session):
        with pytest.raises(CompanyNotFoundError):
            services.update_company(session, 5, CompanyUpdate(phone="1"))

    def test_delete_removes_jobs_and_result(self, session, pool):
        company = _add(session, "Acme Plumbing")
        job = services.submit_research(session, pool, company.id)
        session.add(ResearchResult(company_id=company.id, company_name="Acme Plumbing"))
        session.commit()

        services.delete_company(session, company.id, pool)

        assert session.get(Company, company.id) is None
        assert _job_count(session) == 0
        assert session.execute(select(func.count()).select_from(ResearchResult)).scalar() == 0
        pool.cancel.assert_called_once_with(job.id)

    def test_delete_unknown_company(self, session):
        with pytest.raises(CompanyNotFoundError):
            services.delete_company(session, 3)

    def test_bulk_delete_ignores_unknown_ids(self, session, pool):
        a = _add(session, "A")
        b = _add(session, "B")
        keep = _add(session, "C")

        assert services.bulk_delete(session, [a.id, b.id, 999], pool) == 2

        assert [c.id for c in services.list_companies(session).items] == [keep.id]
        pool.cancel.assert_not_called()

    def test_stats_count_every_status(self, session, pool):
        _add(session, "Idle")
        services.submit_research(session, pool, _add(session, "Busy").id)
        done = _add(session, "Done")
        done.status = CompanyStatus.COMPLETED
        session.commit()

        stats = services.company_stats(session)

        assert stats.model_dump() == {
            "total": 3, "pending": 1, "queued": 1, "researching": 0, "completed": 1, "failed": 0,
        }


# ---------------------------------------------------------------------------
# Job submission
# ---------------------------------------------------------------------------


class TestSubmitResearch:
    def test_creates_queued_job_and_submits_it(self, session, pool):
        company = _add(session, "Acme Plumbing")

        job = services.submit_research(session, pool, company.id, priority=3)

        assert job.status == JobStatus.QUEUED
        assert job.priority == 3
        assert company.status == CompanyStatus.QUEUED
        pool.submit.assert_called_once_with(job.id)

    def test_second_submission_conflicts(self, session, pool):
        company = _add(session, "Acme Plumbing")
        first = services.submit_research(session, pool, company.id)

        with pytest.raises(JobConflictError) as exc_info:
            services.submit_research(session, pool, company.id)

        assert exc_info.value.job_id == first.id
        assert _job_count(session) == 1

    def test_finished_job_does_not_conflict(self, session, pool):
        company = _add(session, "Acme Plumbing")
        first = services.submit_research(session, pool, company.id)
        first.status = JobStatus.FAILED
        session.commit()

        second = services.submit_research(session, pool, company.id)
        assert second.id != first.id

    def test_unknown_company(self, session, pool):
        with pytest.raises(CompanyNotFoundError):
            services.submit_research(session, pool, 99)
        pool.submit.assert_not_called()

    @pytest.mark.asyncio
    async def test_execute_now_runs_at_top_priority(self, session):
        company = _add(session, "Acme Plumbing")
        intel = ComprehensiveIntelligence(company_id=company.id, company_name="Acme Plumbing")
        orchestrator = MagicMock()
        orchestrator.execute_research = AsyncMock(return_value=intel)

        job, result = await services.execute_now(session, orchestrator, company.id)

        assert result is intel
        assert job.priority == services.SYNC_EXECUTE_PRIORITY
        orchestrator.execute_research.assert_awaited_once_with(job.id)

    @pytest.mark.asyncio
    async def test_execute_now_conflicts_with_queued_job(self, session, pool):
        company = _add(session, "Acme Plumbing")
        services.submit_research(session, pool, company.id)
        orchestrator = MagicMock()
        orchestrator.execute_research = AsyncMock()

        with pytest.raises(JobConflictError):
            await services.execute_now(session, orchestrator, company.id)
        orchestrator.execute_research.assert_not_awaited()


class TestSubmitBatch:
    def test_queues_each_company_once(self, session, pool):
        a = _add(session, "A")
        b = _add(session, "B")

        out = services.submit_batch(session, pool, [a.id, b.id, a.id], priority=2)

        assert out["count"] == 2
        assert [j["company_id"] for j in out["jobs"]] == [a.id, b.id]
        assert out["skipped"] == []
        assert pool.submit.call_count == 2

    def test_unknown_id_rejects_the_whole_batch(self, session, pool):
        a = _add(session, "A")

        with pytest.raises(CompanyNotFoundError):
            services.submit_batch(session, pool, [a.id, 404])

        assert _job_count(session) == 0
        pool.submit.assert_not_called()

    def test_busy_companies_are_skipped(self, session, pool):
        a = _add(session, "A")
        b = _add(session, "B")
        busy = services.submit_research(session, pool, a.id)

        out = services.submit_batch(session, pool, [a.id, b.id])

        assert out["count"] == 1
        assert out["jobs"][0]["company_id"] == b.id
        assert out["skipped"] == [{
            "company_id": a.id, "job_id": busy.id, "reason": "Research job already in progress",
        }]


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


class TestCancelJob:
    def test_cancel_running_job(self, session, pool):
        company = _add(session, "Acme Plumbing")
        job = services.submit_research(session, pool, company.id)
        job.status = JobStatus.RUNNING
        company.status = CompanyStatus.RESEARCHING
        session.commit()

        cancelled = services.cancel_job(session, job.id, pool)

        assert cancelled.status == JobStatus.CANCELLED
        assert company.status == CompanyStatus.PENDING
        pool.cancel.assert_called_once_with(job.id)

        with pytest.raises(InvalidTransitionError) as exc_info:
            services.cancel_job(session, job.id, pool)
        assert exc_info.value.current == JobStatus.CANCELLED

    @pytest.mark.parametrize("status", [JobStatus.COMPLETED, JobStatus.FAILED])
    def test_finished_jobs_cannot_be_cancelled(self, session, pool, status):
        company = _add(session, "Acme Plumbing")
        job = services.submit_research(session, pool, company.id)
        job.status = status
        session.commit()

        with pytest.raises(InvalidTransitionError):
            services.cancel_job(session, job.id, pool)
        assert session.get(ResearchJob, job.id).status == status
        pool.cancel.assert_not_called()

    def test_cancel_without_pool(self, session, pool):
        company = _add(session, "Acme Plumbing")
        job = services.submit_research(session, pool, company.id)
        assert services.cancel_job(session, job.id).status == JobStatus.CANCELLED

    def test_unknown_job(self, session):
        with pytest.raises(JobNotFoundError):
            services.cancel_job(session, 7)


# ---------------------------------------------------------------------------
# Views
# ---------------------------------------------------------------------------


class TestViews:
    def test_queue_ordering(self, session, pool):
        low = services.submit_research(session, pool, _add(session, "Low").id, priority=1)
        high = services.submit_research(session, pool, _add(session, "High").id, priority=9)
        low2 = services.submit_research(session, pool, _add(session, "Low 2").id, priority=1)
        done = services.submit_research(session, pool, _add(session, "Done").id, priority=10)
        done.status = JobStatus.COMPLETED
        session.commit()

        assert [j.id for j in services.list_queue(session)] == [high.id, low.id, low2.id]

    def test_job_summary_lists_stages(self, session, pool):
        job = services.submit_research(session, pool, _add(session, "Acme Plumbing").id)

        out = services.job_summary(job)

        assert out.company_name == "Acme Plumbing"
        assert out.stages == {
            "website": "pending", "social": "pending", "news": "pending", "business": "pending",
        }
        assert out.started_at is None

    def test_result_lookup(self, session, pool):
        company = _add(session, "Acme Plumbing")
        job = services.submit_research(session, pool, company.id)
        assert services.get_result(session, job.id) is None

        session.add(ResearchResult(company_id=company.id, company_name="Acme Plumbing",
                                   completeness_score=45, data_gaps=["No email found"]))
        session.commit()
        session.refresh(company)

        row = services.get_result(session, job.id)
        out = services.result_summary(row)
        assert out.completeness_score == 45
        assert out.data_gaps == ["No email found"]
        assert services.company_summary(company).has_result is True
        assert services.company_summary(company).latest_job_id == job.id
