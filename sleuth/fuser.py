"""Intelligence fusion: deterministic scoring over the four stage outputs.

Scores
------
- ``completeness_score``: six all-or-nothing criteria, summed (max 100):

  ============================================  ======
  live website                                   30
  at least one social platform                   20
  at least one news mention                      15
  at least one business opportunity              15
  contact email or phone on the website          10
  at least two social platforms                  10
  ============================================  ======

- ``confidence_score``: ``round(website/2 + mean(platform)/4 + 25)``.
  Not clamped: inputs outside [0, 100] carry through.
- ``digital_maturity_score`` / ``social_presence_score``: passed through
  from the business and social results.
- ``reputation_score``: from the news result, 50 when the stage produced
  nothing.
- ``opportunity_score``: ``min(opportunity_count * 15, 100)``.

No I/O happens here; the orchestrator owns persistence.
"""
from __future__ import annotations

from sleuth.schemas import (
    BusinessAnalysis,
    ComprehensiveIntelligence,
    NewsReputation,
    SocialHunt,
    WebsiteAnalysis,
)
from sleuth.utils import round_half_up

COMPLETENESS_WEIGHTS = {
    "website": 30,
    "social": 20,
    "news": 15,
    "business": 15,
    "contact_info": 10,
    "social_profiles": 10,
}

DEFAULT_REPUTATION = 50
OPPORTUNITY_POINTS = 15

GAP_WEBSITE = "Website not accessible"
GAP_EMAIL = "No email found"
GAP_SOCIAL = "No social profiles found"
GAP_LINKEDIN = "LinkedIn profile not found"
GAP_NEWS = "No news coverage found"


def compute_completeness(
    website: WebsiteAnalysis | None,
    social: SocialHunt | None,
    news: NewsReputation | None,
    business: BusinessAnalysis | None,
) -> int:
    w = COMPLETENESS_WEIGHTS
    score = 0
    if website is not None and website.has_live_website:
        score += w["website"]
    if social is not None and social.platform_count > 0:
        score += w["social"]
    if news is not None and news.mention_count > 0:
        score += w["news"]
    if business is not None and business.opportunity_count > 0:
        score += w["business"]
    if website is not None and website.has_contact:
        score += w["contact_info"]
    if social is not None and social.platform_count >= 2:
        score += w["social_profiles"]
    return score


def compute_confidence(website: WebsiteAnalysis | None, social: SocialHunt | None) -> int:
    website_conf = website.confidence_score if website is not None else 0
    platforms = social.platforms if social is not None else []
    social_total = sum(p.confidence_score for p in platforms)
    return round_half_up(website_conf / 2 + social_total / (len(platforms) or 1) / 4 + 25)


def compute_opportunity_score(business: BusinessAnalysis | None) -> int:
    if business is None or not business.opportunity_count:
        return 0
    return min(business.opportunity_count * OPPORTUNITY_POINTS, 100)


def identify_gaps(
    website: WebsiteAnalysis | None,
    social: SocialHunt | None,
    news: NewsReputation | None,
) -> list[str]:
    gaps: list[str] = []
    if website is None or not website.has_live_website:
        gaps.append(GAP_WEBSITE)
    if website is None or not website.has_email:
        gaps.append(GAP_EMAIL)
    if social is None or social.platform_count == 0:
        gaps.append(GAP_SOCIAL)
    if social is None or not social.has_platform("linkedin"):
        gaps.append(GAP_LINKEDIN)
    if news is None or news.mention_count == 0:
        gaps.append(GAP_NEWS)
    return gaps


def fuse(intel: ComprehensiveIntelligence) -> ComprehensiveIntelligence:
    """Fill in the derived scores and gap list of *intel* in place and return it."""
    website, social = intel.website_data, intel.social_data
    news, business = intel.news_data, intel.business_data

    intel.digital_maturity_score = business.digital_maturity_score if business is not None else 0
    intel.social_presence_score = social.social_presence_score if social is not None else 0
    intel.reputation_score = news.reputation_score if news is not None else DEFAULT_REPUTATION
    intel.opportunity_score = compute_opportunity_score(business)

    intel.completeness_score = compute_completeness(website, social, news, business)
    intel.confidence_score = compute_confidence(website, social)
    intel.data_gaps = identify_gaps(website, social, news)
    return intel
