"""Exceptions raised by the research pipeline and its submission surface."""
from __future__ import annotations


class SleuthError(Exception):
    """Base class for pipeline errors."""


class JobNotFoundError(SleuthError):
    def __init__(self, job_id: int):
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class CompanyNotFoundError(SleuthError):
    def __init__(self, company_id: int):
        super().__init__(f"Company not found: {company_id}")
        self.company_id = company_id


class JobConflictError(SleuthError):
    """A non-terminal research job already exists for the company."""

    def __init__(self, company_id: int, job_id: int):
        super().__init__("Research job already in progress")
        self.company_id = company_id
        self.job_id = job_id


class InvalidTransitionError(SleuthError):
    def __init__(self, job_id: int, current: str, target: str):
        super().__init__(f"Job {job_id} cannot move from {current} to {target}")
        self.job_id = job_id
        self.current = current
        self.target = target


class ResearchCancelled(SleuthError):
    """Raised inside the orchestrator once a job's cancellation is observed."""

    def __init__(self, job_id: int):
        super().__init__(f"Job {job_id} was cancelled")
        self.job_id = job_id


class SearchError(SleuthError):
    """The web search backend could not answer a query."""


class SearchUnavailable(SearchError):
    """No search backend is installed."""
