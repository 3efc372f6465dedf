"""Collaborator contract shared by the orchestrator and every research agent.

A collaborator is invoked once per stage with a read-only description of the
company and a :class:`ResearchContext`.  Ordinary failures (network errors,
upstream API errors, parse failures) never escape ``invoke``: they are
recorded in the result's ``errors`` list and the result is returned degraded.
Returning ``None`` means the collaborator had nothing to do for this subject
(for example, no website on file) and the stage is recorded as skipped.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from sleuth.errors import ResearchCancelled
from sleuth.schemas import BusinessAnalysis, NewsReputation, SocialHunt, WebsiteAnalysis


class CancellationToken:
    """Cooperative cancellation flag for one research job."""

    def __init__(self, job_id: int | None = None):
        self.job_id = job_id
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise ResearchCancelled(self.job_id or 0)

    async def wait(self) -> None:
        await self._event.wait()


@dataclass(frozen=True)
class SubjectDescriptor:
    """Read-only snapshot of the company under research."""

    company_id: int
    company_name: str
    website: str = ""
    phone: str = ""
    address: str = ""
    category: str = ""

    @classmethod
    def from_company(cls, company: Any) -> SubjectDescriptor:
        return cls(
            company_id=company.id,
            company_name=company.company_name,
            website=(company.website or "").strip(),
            phone=(company.phone or "").strip(),
            address=(company.address or "").strip(),
            category=(company.category or "").strip(),
        )


@dataclass
class ResearchContext:
    """Per-job state handed to every collaborator.

    Later stages read the outputs of earlier ones (the business analyzer
    works entirely from them).
    """

    job_id: int
    token: CancellationToken = field(default_factory=CancellationToken)
    website: WebsiteAnalysis | None = None
    social: SocialHunt | None = None
    news: NewsReputation | None = None
    business: BusinessAnalysis | None = None


@runtime_checkable
class Collaborator(Protocol):
    name: str

    async def invoke(self, subject: SubjectDescriptor, context: ResearchContext) -> Any:
        ...
