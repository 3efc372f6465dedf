"""Pydantic schemas: typed collaborator results, the fused record, and API envelopes."""
from __future__ import annotations

from datetime import UTC, datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field


def _now() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Collaborator results
# ---------------------------------------------------------------------------


class _ResultBase(BaseModel):
    errors: list[str] = []
    analyzed_at: datetime = Field(default_factory=_now)

    @property
    def quality_score(self) -> int:
        return 0

    @property
    def has_data(self) -> bool:
        return False


class ContactInfo(BaseModel):
    emails: list[str] = []
    phones: list[str] = []
    address: str | None = None
    contact_form_url: str | None = None
    has_live_chat: bool = False


class TechStack(BaseModel):
    cms: str | None = None
    framework: str | None = None
    analytics: list[str] = []
    ecommerce: str | None = None


class SeoMetrics(BaseModel):
    has_ssl: bool = False
    meta_tags_complete: bool = False


class ContentInventory(BaseModel):
    has_blog: bool = False
    has_testimonials: bool = False
    has_case_studies: bool = False
    has_team_page: bool = False


class WebsiteAnalysis(_ResultBase):
    kind: Literal["website"] = "website"
    url: str
    status: Literal["live", "down", "redirect", "error"] = "error"
    final_url: str | None = None
    title: str | None = None
    description: str | None = None
    business_description: str | None = None
    contact_info: ContactInfo = Field(default_factory=ContactInfo)
    social_links: dict[str, str] = {}
    tech_stack: TechStack = Field(default_factory=TechStack)
    seo_metrics: SeoMetrics = Field(default_factory=SeoMetrics)
    content_inventory: ContentInventory = Field(default_factory=ContentInventory)
    raw_content: str = ""
    confidence_score: int = 0

    @property
    def has_live_website(self) -> bool:
        return self.status == "live"

    @property
    def has_email(self) -> bool:
        return bool(self.contact_info.emails)

    @property
    def has_contact(self) -> bool:
        return bool(self.contact_info.emails or self.contact_info.phones)

    @property
    def quality_score(self) -> int:
        return self.confidence_score

    @property
    def has_data(self) -> bool:
        return self.has_live_website


class SocialProfile(BaseModel):
    platform: str
    url: str
    handle: str | None = None
    verified: bool = False
    followers: int | None = None
    activity_level: Literal["active", "moderate", "inactive", "unknown"] = "unknown"
    confidence_score: int = Field(default=70, ge=0)


class SocialHunt(_ResultBase):
    kind: Literal["social"] = "social"
    company_name: str
    platforms: list[SocialProfile] = []
    total_followers: int = 0
    most_active_platform: str | None = None
    social_presence_score: int = 0

    @property
    def platform_count(self) -> int:
        return len(self.platforms)

    def has_platform(self, name: str) -> bool:
        return any(p.platform == name for p in self.platforms)

    @property
    def quality_score(self) -> int:
        if not self.platforms:
            return 0
        return min(100, round(sum(p.confidence_score for p in self.platforms) / len(self.platforms)))

    @property
    def has_data(self) -> bool:
        return bool(self.platforms)


class NewsArticle(BaseModel):
    title: str
    url: str
    source: str
    date: str | None = None
    snippet: str = ""
    sentiment: Literal["positive", "negative", "neutral"] = "neutral"


class ReviewSummary(BaseModel):
    platform: str
    rating: float | None = None
    review_count: int | None = None
    sentiment: str = "neutral"


class NewsReputation(_ResultBase):
    kind: Literal["news"] = "news"
    company_name: str
    news_articles: list[NewsArticle] = []
    total_mentions: int = 0
    positive_count: int = 0
    negative_count: int = 0
    neutral_count: int = 0
    reviews: list[ReviewSummary] = []
    reputation_score: int = 50
    overall_sentiment: Literal["positive", "negative", "neutral", "mixed"] = "neutral"
    notable_stories: list[str] = []
    risk_flags: list[str] = []

    @property
    def mention_count(self) -> int:
        return self.total_mentions

    @property
    def quality_score(self) -> int:
        return self.reputation_score if self.total_mentions else 0

    @property
    def has_data(self) -> bool:
        return bool(self.total_mentions or self.reviews)


class MarketingOpportunity(BaseModel):
    area: str
    current_state: str
    gap: str
    recommendation: str
    impact: Literal["high", "medium", "low"]
    priority: int


class BusinessAnalysis(_ResultBase):
    kind: Literal["business"] = "business"
    company_name: str
    digital_maturity_score: int = 0
    social_maturity_score: int = 0
    marketing_maturity_score: int = 0
    opportunities: list[MarketingOpportunity] = []
    top_opportunities: list[str] = []
    suggested_services: list[str] = []
    talking_points: list[str] = []
    potential_objections: list[str] = []

    @property
    def opportunity_count(self) -> int:
        return len(self.opportunities)

    @property
    def quality_score(self) -> int:
        return self.digital_maturity_score

    @property
    def has_data(self) -> bool:
        return not self.errors or bool(self.opportunities)


CollaboratorResult = Annotated[
    Union[WebsiteAnalysis, SocialHunt, NewsReputation, BusinessAnalysis],
    Field(discriminator="kind"),
]


# ---------------------------------------------------------------------------
# Fused record
# ---------------------------------------------------------------------------


class ComprehensiveIntelligence(BaseModel):
    company_id: int
    company_name: str

    website_data: WebsiteAnalysis | None = None
    social_data: SocialHunt | None = None
    news_data: NewsReputation | None = None
    business_data: BusinessAnalysis | None = None

    digital_maturity_score: int = 0
    social_presence_score: int = 0
    reputation_score: int = 0
    opportunity_score: int = 0

    completeness_score: int = 0
    confidence_score: int = 0
    data_gaps: list[str] = []

    researched_at: datetime = Field(default_factory=_now)


# ---------------------------------------------------------------------------
# API request/response schemas
# ---------------------------------------------------------------------------


class CompanyCreate(BaseModel):
    company_name: str = Field(min_length=1)
    website: str = ""
    phone: str = ""
    address: str = ""
    category: str = ""
    rating: float | None = None
    reviews_count: int | None = None
    place_id: str = ""


class CompanyUpdate(BaseModel):
    company_name: str | None = Field(default=None, min_length=1)
    website: str | None = None
    phone: str | None = None
    address: str | None = None
    category: str | None = None


class CompanyOut(BaseModel):
    id: int
    company_name: str
    website: str
    phone: str
    address: str
    category: str
    rating: float | None = None
    reviews_count: int | None = None
    status: str
    latest_job_id: int | None = None
    latest_job_status: str | None = None
    has_result: bool = False


class CompanyListResponse(BaseModel):
    items: list[CompanyOut]
    total: int
    page: int
    per_page: int


class CompanyBulkDeleteRequest(BaseModel):
    ids: list[int] = Field(min_length=1)


class CompanyStatsOut(BaseModel):
    total: int
    pending: int
    queued: int
    researching: int
    completed: int
    failed: int


class ResearchStartRequest(BaseModel):
    company_id: int
    priority: int = Field(default=0, ge=0, le=10)


class ResearchBatchRequest(BaseModel):
    company_ids: list[int]
    priority: int = Field(default=0, ge=0, le=10)


class JobOut(BaseModel):
    id: int
    company_id: int
    company_name: str
    status: str
    priority: int
    progress: int
    stages: dict[str, str]
    started_at: str | None = None
    completed_at: str | None = None
    error_message: str | None = None


class ResearchResultOut(BaseModel):
    company_id: int
    company_name: str
    website_data: dict[str, Any] | None = None
    social_data: dict[str, Any] | None = None
    news_data: dict[str, Any] | None = None
    business_data: dict[str, Any] | None = None
    digital_maturity_score: int
    social_presence_score: int
    reputation_score: int
    opportunity_score: int
    completeness_score: int
    confidence_score: int
    data_gaps: list[str] = []
    researched_at: str


class ImportResult(BaseModel):
    total_rows: int
    valid_rows: int
    duplicates_removed: int
    already_exists: int
    companies_created: int
    errors: int
    error_rows: list[dict[str, Any]] = []


class SourcePerformanceOut(BaseModel):
    source_name: str
    success_rate: float
    avg_duration_ms: int
    avg_quality_score: float
    last_used: str | None = None
    is_enabled: bool


class LearningInsightsOut(BaseModel):
    top_sources: list[str] = []
    problematic_sources: list[str] = []
    avg_processing_time: int = 0
    quality_trend: Literal["improving", "declining", "stable"] = "stable"
    recommendations: list[str] = []


class EvolutionEventOut(BaseModel):
    id: int
    event_type: str
    source: str | None = None
    company_id: int | None = None
    duration_ms: int | None = None
    data_quality_score: float | None = None
    completeness_score: float | None = None
    error_code: str | None = None
    error_message: str | None = None
    description: str | None = None
    timestamp: str


class EvolutionStatsOut(BaseModel):
    total_events: int
    success_count: int
    failure_count: int
    research_complete_count: int
    recent_events: list[EvolutionEventOut] = []
