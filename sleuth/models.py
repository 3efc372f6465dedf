from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from sqlalchemy import JSON, Boolean, DateTime, Float, ForeignKey, Integer, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Status vocabularies
# ---------------------------------------------------------------------------


class JobStatus(StrEnum):
    PENDING = "pending"
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


ACTIVE_JOB_STATUSES = frozenset({JobStatus.PENDING, JobStatus.QUEUED, JobStatus.RUNNING})


class StageStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class CompanyStatus(StrEnum):
    PENDING = "pending"
    QUEUED = "queued"
    RESEARCHING = "researching"
    COMPLETED = "completed"
    FAILED = "failed"


class EventType(StrEnum):
    SOURCE_SUCCESS = "SOURCE_SUCCESS"
    SOURCE_FAILURE = "SOURCE_FAILURE"
    RESEARCH_COMPLETE = "RESEARCH_COMPLETE"
    ADAPTATION_APPLIED = "ADAPTATION_APPLIED"


# ---------------------------------------------------------------------------
# Companies and research jobs
# ---------------------------------------------------------------------------


class Company(Base):
    __tablename__ = "companies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company_name: Mapped[str] = mapped_column(String(300), nullable=False)
    website: Mapped[str] = mapped_column(String(500), default="")
    phone: Mapped[str] = mapped_column(String(100), default="")
    address: Mapped[str] = mapped_column(Text, default="")
    category: Mapped[str] = mapped_column(String(200), default="")
    rating: Mapped[float | None] = mapped_column(Float, nullable=True)
    reviews_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    place_id: Mapped[str] = mapped_column(String(200), default="")
    status: Mapped[str] = mapped_column(String(20), default=CompanyStatus.PENDING)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    jobs: Mapped[list[ResearchJob]] = relationship(
        "ResearchJob", back_populates="company", cascade="all, delete-orphan",
    )
    result: Mapped[ResearchResult | None] = relationship(
        "ResearchResult", back_populates="company", cascade="all, delete-orphan", uselist=False,
    )


class ResearchJob(Base):
    __tablename__ = "research_jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company_id: Mapped[int] = mapped_column(Integer, ForeignKey("companies.id"), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=JobStatus.PENDING)
    priority: Mapped[int] = mapped_column(Integer, default=0)
    progress: Mapped[int] = mapped_column(Integer, default=0)
    # One column per pipeline stage
    website_analysis: Mapped[str] = mapped_column(String(20), default=StageStatus.PENDING)
    social_media_hunt: Mapped[str] = mapped_column(String(20), default=StageStatus.PENDING)
    news_aggregation: Mapped[str] = mapped_column(String(20), default=StageStatus.PENDING)
    business_analysis: Mapped[str] = mapped_column(String(20), default=StageStatus.PENDING)
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())

    company: Mapped[Company] = relationship("Company", back_populates="jobs")


class ResearchResult(Base):
    """Persisted form of a fused intelligence record, one row per company."""

    __tablename__ = "research_results"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company_id: Mapped[int] = mapped_column(Integer, ForeignKey("companies.id"), nullable=False, unique=True)
    company_name: Mapped[str] = mapped_column(String(300), default="")
    website_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    social_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    news_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    business_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    digital_maturity_score: Mapped[int] = mapped_column(Integer, default=0)
    social_presence_score: Mapped[int] = mapped_column(Integer, default=0)
    reputation_score: Mapped[int] = mapped_column(Integer, default=50)
    opportunity_score: Mapped[int] = mapped_column(Integer, default=0)
    completeness_score: Mapped[int] = mapped_column(Integer, default=0)
    confidence_score: Mapped[int] = mapped_column(Integer, default=0)
    data_gaps: Mapped[list] = mapped_column(JSON, default=list)
    researched_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())

    company: Mapped[Company] = relationship("Company", back_populates="result")


# ---------------------------------------------------------------------------
# Source reliability and evolution log
# ---------------------------------------------------------------------------


class SourceConfig(Base):
    __tablename__ = "source_configs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source_name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    priority: Mapped[int] = mapped_column(Integer, default=5)
    success_rate: Mapped[float] = mapped_column(Float, default=100.0)
    avg_duration_ms: Mapped[int] = mapped_column(Integer, default=0)
    avg_quality_score: Mapped[float] = mapped_column(Float, default=50.0)
    requests_per_minute: Mapped[int] = mapped_column(Integer, default=10)
    delay_between_ms: Mapped[int] = mapped_column(Integer, default=6000)
    daily_limit: Mapped[int] = mapped_column(Integer, default=500)
    current_daily_usage: Mapped[int] = mapped_column(Integer, default=0)
    last_used: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class EvolutionLog(Base):
    """Append-only audit record of one source invocation or research completion."""

    __tablename__ = "evolution_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_type: Mapped[str] = mapped_column(String(30), nullable=False, index=True)
    source: Mapped[str | None] = mapped_column(String(100), nullable=True)
    company_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    industry: Mapped[str | None] = mapped_column(String(200), nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    data_quality_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    completeness_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    fallback_used: Mapped[str | None] = mapped_column(String(100), nullable=True)
    sources_used: Mapped[list | None] = mapped_column(JSON, nullable=True)
    sources_failed: Mapped[list | None] = mapped_column(JSON, nullable=True)
    gaps: Mapped[list | None] = mapped_column(JSON, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
