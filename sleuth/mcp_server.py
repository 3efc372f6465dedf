from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, contextmanager

from mcp.server.fastmcp import FastMCP

from sleuth import services
from sleuth.config import configure_logging
from sleuth.db import get_session, init_db
from sleuth.errors import SleuthError
from sleuth.evolution import EvolutionEngine
from sleuth.orchestrator import STAGES, ResearchOrchestrator
from sleuth.schemas import CompanyCreate, CompanyUpdate
from sleuth.worker import ResearchWorkerPool

log = logging.getLogger(__name__)

_runtime: dict[str, object] = {}


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def sleuth_lifespan(server: FastMCP) -> AsyncIterator[None]:
    init_db()
    orchestrator = ResearchOrchestrator()
    pool = ResearchWorkerPool(orchestrator)
    _runtime.update(orchestrator=orchestrator, pool=pool)
    try:
        yield
    finally:
        await pool.shutdown(cancel_running=True)
        _runtime.clear()


mcp = FastMCP(
    "Sleuth",
    instructions=(
        "Sleuth researches companies: it checks their website, hunts for social "
        "profiles, aggregates news and reviews, and turns that into scored sales "
        "intelligence. Start with list_companies(), queue research with "
        "start_research(company_id), poll get_job_status(job_id), then read "
        "get_research_result(job_id)."
    ),
    lifespan=sleuth_lifespan,
    json_response=True,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@contextmanager
def _session():
    session = get_session()
    try:
        yield session
    finally:
        session.close()


def _orchestrator() -> ResearchOrchestrator:
    orchestrator = _runtime.get("orchestrator")
    if orchestrator is None:
        orchestrator = _runtime["orchestrator"] = ResearchOrchestrator()
    return orchestrator  # type: ignore[return-value]


def _pool() -> ResearchWorkerPool:
    pool = _runtime.get("pool")
    if pool is None:
        pool = _runtime["pool"] = ResearchWorkerPool(_orchestrator())
    return pool  # type: ignore[return-value]


def _evolution() -> EvolutionEngine:
    return _orchestrator().evolution


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("sleuth://overview")
def sleuth_overview() -> str:
    """Overview of Sleuth: pipeline stages, scores, and workflow."""
    return json.dumps({
        "system": "Sleuth: company research orchestration",
        "stages": [
            {"stage": s.key, "source": s.source, "progress": [s.start_progress, s.end_progress]}
            for s in STAGES
        ],
        "scores": {
            "completeness_score": "0-100, how much of the expected intelligence was found.",
            "confidence_score": "How much the website and social findings can be trusted.",
            "digital_maturity_score": "0-100, quality of the company's own web presence.",
            "social_presence_score": "0-100, weighted count of verified social profiles.",
            "reputation_score": "0-100, news sentiment minus risk flags (50 = no signal).",
            "opportunity_score": "0-100, 15 points per identified sales opportunity.",
        },
        "workflow": [
            "1. list_companies() or add_company(...) to find a subject.",
            "2. start_research(company_id) to queue a job, or run_research(company_id) to wait for it.",
            "3. get_job_status(job_id) to follow progress.",
            "4. get_research_result(job_id) for the fused intelligence.",
            "5. get_learning_insights() to see which sources are reliable.",
        ],
    }, indent=2)


# ---------------------------------------------------------------------------
# Tools: Companies
# ---------------------------------------------------------------------------


@mcp.tool()
def list_companies(
    search: str | None = None, status: str | None = None, page: int = 1, per_page: int = 50,
) -> dict:
    """List companies.

    Args:
        search: Case-insensitive substring of name, address or category.
        status: One of pending, queued, researching, completed, failed.
        page: 1-based page number.
        per_page: Page size (max 200).
    """
    with _session() as session:
        return services.list_companies(
            session, search=search, status=status, page=page, per_page=per_page,
        ).model_dump()


@mcp.tool()
def get_company(company_id: int) -> dict:
    """Get one company with its latest job status."""
    with _session() as session:
        try:
            return services.company_summary(services.get_company(session, company_id)).model_dump()
        except SleuthError as exc:
            return {"error": str(exc)}


@mcp.tool()
def add_company(
    company_name: str, website: str = "", phone: str = "", address: str = "", category: str = "",
) -> dict:
    """Add a company to research."""
    if not company_name.strip():
        return {"error": "company_name is required"}
    with _session() as session:
        company = services.create_company(session, CompanyCreate(
            company_name=company_name.strip(), website=website, phone=phone,
            address=address, category=category,
        ))
        session.commit()
        return services.company_summary(company).model_dump()


@mcp.tool()
def update_company(
    company_id: int, company_name: str | None = None, website: str | None = None,
    phone: str | None = None, address: str | None = None, category: str | None = None,
) -> dict:
    """Change a company's details. Only the fields you pass are updated."""
    if company_name is not None and not company_name.strip():
        return {"error": "company_name cannot be empty"}
    with _session() as session:
        try:
            company = services.update_company(session, company_id, CompanyUpdate(
                company_name=company_name.strip() if company_name else None, website=website,
                phone=phone, address=address, category=category,
            ))
        except SleuthError as exc:
            return {"error": str(exc)}
        session.commit()
        return services.company_summary(company).model_dump()


@mcp.tool()
def delete_companies(company_ids: list[int]) -> dict:
    """Delete companies with their research jobs and results. Running research is stopped."""
    with _session() as session:
        return {"deleted": services.bulk_delete(session, company_ids, _pool())}


@mcp.tool()
def get_company_stats() -> dict:
    """Company counts by research status (pending, queued, researching, completed, failed)."""
    with _session() as session:
        return services.company_stats(session).model_dump()


# ---------------------------------------------------------------------------
# Tools: Research
# ---------------------------------------------------------------------------


@mcp.tool()
def start_research(company_id: int, priority: int = 0) -> dict:
    """Queue research for a company. Returns the job; poll get_job_status(job_id)."""
    if not 0 <= priority <= 10:
        return {"error": "priority must be between 0 and 10"}
    with _session() as session:
        try:
            job = services.submit_research(session, _pool(), company_id, priority)
        except SleuthError as exc:
            return {"error": str(exc)}
        return services.job_summary(job).model_dump()


@mcp.tool()
async def run_research(company_id: int) -> dict:
    """Research a company and wait for the fused intelligence (takes a while)."""
    with _session() as session:
        try:
            job, intel = await services.execute_now(session, _orchestrator(), company_id)
        except SleuthError as exc:
            return {"error": str(exc)}
        except Exception as exc:
            log.exception("Research failed for company %d", company_id)
            return {"error": f"Research failed: {exc}"}
        return {"job_id": job.id, "result": intel.model_dump(mode="json")}


@mcp.tool()
def get_job_status(job_id: int) -> dict:
    """Status, progress and per-stage state of a research job."""
    with _session() as session:
        try:
            return services.job_summary(services.get_job(session, job_id)).model_dump()
        except SleuthError as exc:
            return {"error": str(exc)}


@mcp.tool()
def get_research_result(job_id: int) -> dict:
    """Fused intelligence for the job's company."""
    with _session() as session:
        try:
            row = services.get_result(session, job_id)
        except SleuthError as exc:
            return {"error": str(exc)}
        if row is None:
            return {"error": "Research results not yet available"}
        return services.result_summary(row).model_dump()


@mcp.tool()
def cancel_research(job_id: int) -> dict:
    """Cancel a pending, queued or running job."""
    with _session() as session:
        try:
            job = services.cancel_job(session, job_id, _pool())
        except SleuthError as exc:
            return {"error": str(exc)}
        return services.job_summary(job).model_dump()


@mcp.tool()
def get_research_queue() -> list[dict]:
    """Unfinished jobs, highest priority first."""
    with _session() as session:
        return [services.job_summary(j).model_dump() for j in services.list_queue(session)]


# ---------------------------------------------------------------------------
# Tools: Evolution
# ---------------------------------------------------------------------------


@mcp.tool()
def get_source_performance() -> list[dict]:
    """Success rate, average duration and quality for every source."""
    return _evolution().get_source_performance()


@mcp.tool()
def get_best_sources(min_rate: float = 50) -> list[str]:
    """Up to five enabled sources with a success rate of at least min_rate."""
    return _evolution().get_best_sources(min_rate)


@mcp.tool()
def get_learning_insights() -> dict:
    """Top and problematic sources, quality trend and recommendations."""
    return _evolution().analyze_insights().model_dump()


@mcp.tool()
def get_evolution_stats() -> dict:
    """Event counts and the ten most recent evolution events."""
    return _evolution().get_evolution_stats()


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """Run the Sleuth MCP server over stdio."""
    configure_logging()
    mcp.run()


if __name__ == "__main__":
    main()
