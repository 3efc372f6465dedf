from __future__ import annotations

import logging
import tempfile
import zipfile
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Generator

from fastapi import Depends, FastAPI, File, HTTPException, Query, Request, UploadFile
from fastapi.responses import JSONResponse, PlainTextResponse
from openpyxl.utils.exceptions import InvalidFileException
from sqlalchemy.orm import Session

from sleuth import services
from sleuth.config import configure_logging, get_settings
from sleuth.db import init_db, session_generator
from sleuth.errors import (
    CompanyNotFoundError,
    InvalidTransitionError,
    JobConflictError,
    JobNotFoundError,
    ResearchCancelled,
)
from sleuth.evolution import EvolutionEngine
from sleuth.importer import CSV_TEMPLATE, import_csv, import_xlsx
from sleuth.orchestrator import ResearchOrchestrator
from sleuth.schemas import (
    CompanyBulkDeleteRequest,
    CompanyCreate,
    CompanyListResponse,
    CompanyOut,
    CompanyStatsOut,
    CompanyUpdate,
    EvolutionStatsOut,
    ImportResult,
    LearningInsightsOut,
    ResearchBatchRequest,
    ResearchResultOut,
    ResearchStartRequest,
    SourcePerformanceOut,
)
from sleuth.worker import ResearchWorkerPool

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    orchestrator = ResearchOrchestrator()
    pool = ResearchWorkerPool(orchestrator, get_settings().max_concurrent_jobs)
    app.state.orchestrator = orchestrator
    app.state.pool = pool
    yield
    await pool.shutdown(cancel_running=True)


app = FastAPI(
    title="Sleuth",
    version="0.1.0",
    description=(
        "Company research API. Queue research jobs that gather website, social, "
        "news and business intelligence about a company, then read the fused, "
        "scored result. Source reliability is learned from every run. "
        "All endpoints return JSON. No authentication required."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Companies", "description": "Add, import and browse research subjects."},
        {"name": "Research", "description": "Queue, run, cancel and inspect research jobs."},
        {"name": "Evolution", "description": "Source reliability statistics and learning insights."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    yield from session_generator()


def get_orchestrator(request: Request) -> ResearchOrchestrator:
    return request.app.state.orchestrator


def get_pool(request: Request) -> ResearchWorkerPool:
    return request.app.state.pool


def get_evolution(orchestrator: ResearchOrchestrator = Depends(get_orchestrator)) -> EvolutionEngine:
    return orchestrator.evolution


@app.exception_handler(CompanyNotFoundError)
@app.exception_handler(JobNotFoundError)
async def _not_found(request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse({"detail": str(exc)}, status_code=404)


@app.exception_handler(JobConflictError)
async def _conflict(request: Request, exc: JobConflictError) -> JSONResponse:
    return JSONResponse({"detail": str(exc), "job_id": exc.job_id}, status_code=400)


@app.exception_handler(InvalidTransitionError)
async def _invalid_transition(request: Request, exc: InvalidTransitionError) -> JSONResponse:
    return JSONResponse({"detail": "Job cannot be cancelled", "status": exc.current}, status_code=400)


# ---------------------------------------------------------------------------
# Routes: Companies
# ---------------------------------------------------------------------------


@app.post("/api/companies", response_model=CompanyOut, status_code=201,
          tags=["Companies"], summary="Add a company")
async def create_company(body: CompanyCreate, session: Session = Depends(db_session)):
    company = services.create_company(session, body)
    session.commit()
    return services.company_summary(company)


@app.get("/api/companies", response_model=CompanyListResponse,
         tags=["Companies"], summary="List companies with search, status filter and pagination")
async def list_companies(
    search: str | None = Query(None, description="Substring match on name, address or category"),
    status: str | None = Query(None, description="pending, queued, researching, completed or failed"),
    page: int = Query(1, ge=1),
    per_page: int = Query(50, ge=1, le=200),
    session: Session = Depends(db_session),
):
    return services.list_companies(session, search=search, status=status, page=page, per_page=per_page)


@app.get("/api/companies/import/template", response_class=PlainTextResponse,
         tags=["Companies"], summary="Download a CSV import template")
async def import_template():
    return PlainTextResponse(
        CSV_TEMPLATE, media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="sleuth_template.csv"'},
    )


@app.get("/api/companies/stats/summary", response_model=CompanyStatsOut,
         tags=["Companies"], summary="Company counts by research status")
async def company_stats(session: Session = Depends(db_session)):
    return services.company_stats(session)


@app.post("/api/companies/bulk-delete", tags=["Companies"], summary="Delete several companies")
async def bulk_delete_companies(
    body: CompanyBulkDeleteRequest,
    session: Session = Depends(db_session),
    pool: ResearchWorkerPool = Depends(get_pool),
):
    return {"success": True, "deleted": services.bulk_delete(session, body.ids, pool)}


@app.get("/api/companies/{company_id}", response_model=CompanyOut,
         tags=["Companies"], summary="Get one company")
async def get_company(company_id: int, session: Session = Depends(db_session)):
    return services.company_summary(services.get_company(session, company_id))


@app.put("/api/companies/{company_id}", response_model=CompanyOut,
         tags=["Companies"], summary="Update a company's name, website, phone, address or category")
async def update_company(company_id: int, body: CompanyUpdate, session: Session = Depends(db_session)):
    company = services.update_company(session, company_id, body)
    session.commit()
    return services.company_summary(company)


@app.delete("/api/companies/{company_id}", tags=["Companies"],
            summary="Delete a company with its research jobs and result")
async def delete_company(
    company_id: int,
    session: Session = Depends(db_session),
    pool: ResearchWorkerPool = Depends(get_pool),
):
    services.delete_company(session, company_id, pool)
    return {"success": True}


@app.post("/api/companies/import", response_model=ImportResult,
          tags=["Companies"], summary="Import companies from a CSV or XLSX file")
async def import_companies(file: UploadFile = File(...), session: Session = Depends(db_session)):
    filename = (file.filename or "").lower()
    content = await file.read()
    if filename.endswith(".csv"):
        return import_csv(content, session)
    if not filename.endswith(".xlsx"):
        raise HTTPException(400, "Only .csv and .xlsx files are supported")
    tmp_path = None
    try:
        with tempfile.NamedTemporaryFile(suffix=".xlsx", delete=False) as f:
            tmp_path = Path(f.name)
            f.write(content)
        try:
            return import_xlsx(tmp_path, session)
        except (zipfile.BadZipFile, InvalidFileException) as exc:
            raise HTTPException(400, f"Could not read spreadsheet: {exc}")
    finally:
        if tmp_path:
            tmp_path.unlink(missing_ok=True)


# ---------------------------------------------------------------------------
# Routes: Research
# ---------------------------------------------------------------------------


@app.post("/api/research/start", status_code=201,
          tags=["Research"], summary="Queue research for a company (runs in the background)")
async def start_research(
    body: ResearchStartRequest,
    session: Session = Depends(db_session),
    pool: ResearchWorkerPool = Depends(get_pool),
):
    job = services.submit_research(session, pool, body.company_id, body.priority)
    return {"job": services.job_summary(job)}


@app.post("/api/research/execute/{company_id}",
          tags=["Research"], summary="Run research for a company and wait for the result")
async def execute_research(
    company_id: int,
    session: Session = Depends(db_session),
    orchestrator: ResearchOrchestrator = Depends(get_orchestrator),
):
    try:
        job, intel = await services.execute_now(session, orchestrator, company_id)
    except (CompanyNotFoundError, JobConflictError):
        raise
    except ResearchCancelled as exc:
        raise HTTPException(409, str(exc)) from exc
    except Exception as exc:
        log.exception("Synchronous research failed for company %d", company_id)
        raise HTTPException(500, f"Failed to execute research: {exc}") from exc
    return {"success": True, "job_id": job.id, "result": intel.model_dump(mode="json")}


@app.post("/api/research/batch", status_code=201,
          tags=["Research"], summary="Queue research for several companies")
async def batch_research(
    body: ResearchBatchRequest,
    session: Session = Depends(db_session),
    pool: ResearchWorkerPool = Depends(get_pool),
):
    if not body.company_ids:
        raise HTTPException(400, "company_ids must not be empty")
    return services.submit_batch(session, pool, body.company_ids, body.priority)


@app.get("/api/research/queue", tags=["Research"], summary="Unfinished jobs, highest priority first")
async def research_queue(session: Session = Depends(db_session)):
    return {"queue": [services.job_summary(j) for j in services.list_queue(session)]}


@app.get("/api/research/{job_id}/status", tags=["Research"], summary="Job status with per-stage progress")
async def job_status(job_id: int, session: Session = Depends(db_session)):
    return {"job": services.job_summary(services.get_job(session, job_id))}


@app.get("/api/research/{job_id}/result", response_model=ResearchResultOut,
         tags=["Research"], summary="Fused intelligence for the job's company")
async def job_result(job_id: int, session: Session = Depends(db_session)):
    row = services.get_result(session, job_id)
    if row is None:
        raise HTTPException(404, "Research results not yet available")
    return services.result_summary(row)


@app.post("/api/research/{job_id}/cancel", tags=["Research"], summary="Cancel a pending, queued or running job")
async def cancel_research(
    job_id: int,
    session: Session = Depends(db_session),
    pool: ResearchWorkerPool = Depends(get_pool),
):
    job = services.cancel_job(session, job_id, pool)
    return {"success": True, "job": services.job_summary(job)}


# ---------------------------------------------------------------------------
# Routes: Evolution
# ---------------------------------------------------------------------------


@app.get("/api/evolution/stats", response_model=EvolutionStatsOut,
         tags=["Evolution"], summary="Event counts and the most recent events")
async def evolution_stats(evolution: EvolutionEngine = Depends(get_evolution)):
    return evolution.get_evolution_stats()


@app.get("/api/evolution/sources", tags=["Evolution"], summary="Reliability of every source")
async def evolution_sources(evolution: EvolutionEngine = Depends(get_evolution)) -> dict[str, Any]:
    return {"sources": [SourcePerformanceOut(**s) for s in evolution.get_source_performance()]}


@app.get("/api/evolution/best-sources", tags=["Evolution"], summary="Top enabled sources above a success rate")
async def evolution_best_sources(
    min_rate: float = Query(50, ge=0, le=100),
    evolution: EvolutionEngine = Depends(get_evolution),
) -> dict[str, Any]:
    return {"sources": evolution.get_best_sources(min_rate)}


@app.get("/api/evolution/insights", response_model=LearningInsightsOut,
         tags=["Evolution"], summary="Top and problematic sources, quality trend, recommendations")
async def evolution_insights(evolution: EvolutionEngine = Depends(get_evolution)):
    return evolution.analyze_insights()


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    configure_logging()
    uvicorn.run("sleuth.app:app", host="127.0.0.1", port=8001)


if __name__ == "__main__":
    main()
