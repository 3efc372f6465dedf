"""Bounded asyncio worker pool for research jobs.

At most ``max_workers`` jobs execute at once; the rest wait on the
semaphore.  Every finished job (completed, failed or cancelled) is reported
on :attr:`ResearchWorkerPool.outcomes` so background failures are never
silent.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from sleuth.collaborators import CancellationToken
from sleuth.config import get_settings
from sleuth.errors import ResearchCancelled
from sleuth.models import JobStatus
from sleuth.orchestrator import ResearchOrchestrator
from sleuth.schemas import ComprehensiveIntelligence

log = logging.getLogger(__name__)

OUTCOME_BACKLOG = 1000


@dataclass
class JobOutcome:
    job_id: int
    status: JobStatus
    error: str | None = None
    intelligence: ComprehensiveIntelligence | None = None


class ResearchWorkerPool:
    def __init__(self, orchestrator: ResearchOrchestrator, max_workers: int | None = None):
        max_workers = max_workers or get_settings().max_concurrent_jobs
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self.orchestrator = orchestrator
        self.max_workers = max_workers
        self._semaphore = asyncio.Semaphore(max_workers)
        self._tokens: dict[int, CancellationToken] = {}
        self._tasks: dict[int, asyncio.Task[JobOutcome]] = {}
        self.outcomes: asyncio.Queue[JobOutcome] = asyncio.Queue(maxsize=OUTCOME_BACKLOG)
        self._closed = False

    @property
    def active_jobs(self) -> list[int]:
        return sorted(self._tasks)

    def submit(self, job_id: int) -> asyncio.Task[JobOutcome]:
        """Schedule *job_id*; resubmitting a job that is already scheduled returns its task."""
        if self._closed:
            raise RuntimeError("Worker pool is shut down")
        existing = self._tasks.get(job_id)
        if existing is not None:
            return existing
        token = CancellationToken(job_id)
        self._tokens[job_id] = token
        task = asyncio.create_task(self._run(job_id, token), name=f"research-job-{job_id}")
        self._tasks[job_id] = task
        task.add_done_callback(lambda _t, jid=job_id: self._forget(jid))
        log.debug("Research job %d submitted (%d scheduled)", job_id, len(self._tasks))
        return task

    def cancel(self, job_id: int) -> bool:
        """Signal the job's token; False when the pool is not running that job."""
        token = self._tokens.get(job_id)
        if token is None:
            return False
        token.cancel()
        return True

    async def shutdown(self, cancel_running: bool = False) -> None:
        self._closed = True
        if cancel_running:
            for token in self._tokens.values():
                token.cancel()
        tasks = list(self._tasks.values())
        if tasks:
            log.info("Waiting for %d research job(s) to finish", len(tasks))
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _run(self, job_id: int, token: CancellationToken) -> JobOutcome:
        async with self._semaphore:
            if token.cancelled:
                self.orchestrator.cancel_unstarted(job_id)
                outcome = JobOutcome(job_id, JobStatus.CANCELLED)
            else:
                outcome = await self._execute(job_id, token)
        self._publish(outcome)
        return outcome

    async def _execute(self, job_id: int, token: CancellationToken) -> JobOutcome:
        try:
            intel = await self.orchestrator.execute_research(job_id, token)
        except ResearchCancelled:
            return JobOutcome(job_id, JobStatus.CANCELLED)
        except Exception as exc:
            log.error("Background research job %d failed: %s", job_id, exc)
            return JobOutcome(job_id, JobStatus.FAILED, error=str(exc) or exc.__class__.__name__)
        return JobOutcome(job_id, JobStatus.COMPLETED, intelligence=intel)

    def _publish(self, outcome: JobOutcome) -> None:
        if self.outcomes.full():
            # Drop the oldest unread outcome
            self.outcomes.get_nowait()
        self.outcomes.put_nowait(outcome)

    def _forget(self, job_id: int) -> None:
        self._tasks.pop(job_id, None)
        self._tokens.pop(job_id, None)
