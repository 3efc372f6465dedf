"""Reference research collaborators.

Four agents, one per pipeline stage:

- :class:`WebsiteAnalyst` fetches the company site with httpx and mines it
  with lxml and a handful of regexes.
- :class:`SocialHunter` searches for one profile per platform in parallel,
  then verifies each hit with a second search.
- :class:`NewsAggregator` runs a news search and a review search and turns
  them into a keyword-sentiment reputation score.
- :class:`BusinessAnalyzer` is pure heuristics over the three earlier
  results, with optional LLM talking points.

All of them follow the collaborator contract: ordinary failures end up in
``result.errors`` and never propagate.  Only cancellation escapes.
"""
from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass
from typing import Protocol
from urllib.parse import urljoin, urlparse

import httpx
from lxml import etree, html as lxml_html

from sleuth.collaborators import CancellationToken, Collaborator, ResearchContext, SubjectDescriptor
from sleuth.config import Settings, get_settings
from sleuth.errors import ResearchCancelled, SearchError, SearchUnavailable
from sleuth.llm import LLMCallError, LLMClient, build_llm_client
from sleuth.schemas import (
    BusinessAnalysis,
    ContactInfo,
    ContentInventory,
    MarketingOpportunity,
    NewsArticle,
    NewsReputation,
    ReviewSummary,
    SeoMetrics,
    SocialHunt,
    SocialProfile,
    TechStack,
    WebsiteAnalysis,
)
from sleuth.utils import round_half_up

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Optional dependency detection
# ---------------------------------------------------------------------------

_DDGS_AVAILABLE = False
try:
    from duckduckgo_search import DDGS  # noqa: F401
    from duckduckgo_search.exceptions import RatelimitException  # noqa: F401
    _DDGS_AVAILABLE = True
except ImportError:
    DDGS = None  # type: ignore[assignment,misc]
    RatelimitException = Exception  # type: ignore[assignment,misc]


# ---------------------------------------------------------------------------
# Search backend
# ---------------------------------------------------------------------------


@dataclass
class SearchHit:
    title: str
    url: str
    snippet: str = ""
    source: str = ""
    date: str | None = None


class SearchBackend(Protocol):
    async def search(self, query: str, max_results: int = 10) -> list[SearchHit]:
        ...

    async def news(self, query: str, max_results: int = 10) -> list[SearchHit]:
        ...


class SearchRateLimiter:
    """Spaces out search calls shared by every collaborator of a process.

    The gap starts at ``min_delay`` seconds, doubles on each rate-limit
    response up to ``max_delay``, and returns to ``min_delay`` after the next
    successful call.
    """

    def __init__(self, min_delay: float = 12.0, max_delay: float = 120.0):
        self._lock = asyncio.Lock()
        self._min_delay = min_delay
        self._current_delay = min_delay
        self._max_delay = max_delay
        self._last_call: float = 0.0

    @classmethod
    def from_settings(cls, settings: Settings) -> SearchRateLimiter:
        return cls(settings.search_min_delay_seconds, settings.search_max_delay_seconds)

    @property
    def current_delay(self) -> float:
        return self._current_delay

    async def acquire(self) -> None:
        """Wait until the current delay has elapsed since the last call."""
        async with self._lock:
            wait = self._current_delay - (time.monotonic() - self._last_call)
            if wait > 0:
                log.debug("Search rate limiter: waiting %.1fs", wait)
                await asyncio.sleep(wait)
            self._last_call = time.monotonic()

    def backoff(self) -> None:
        self._current_delay = min(self._current_delay * 2, self._max_delay)
        log.warning("Search rate limited, backing off to %.0fs between requests", self._current_delay)

    def reset(self) -> None:
        self._current_delay = self._min_delay


def _ddgs_call(method: str, query: str, max_results: int) -> list[dict]:
    return list(getattr(DDGS(), method)(query, max_results=max_results) or [])


class DuckDuckGoSearch:
    """:class:`SearchBackend` over ``duckduckgo_search`` (blocking calls run in a thread)."""

    def __init__(self, limiter: SearchRateLimiter | None = None):
        self._limiter = limiter or SearchRateLimiter.from_settings(get_settings())

    async def search(self, query: str, max_results: int = 10) -> list[SearchHit]:
        rows = await self._run("text", query, max_results)
        return [
            SearchHit(title=r.get("title") or "", url=r.get("href") or "", snippet=r.get("body") or "")
            for r in rows if r.get("href")
        ]

    async def news(self, query: str, max_results: int = 10) -> list[SearchHit]:
        rows = await self._run("news", query, max_results)
        return [
            SearchHit(
                title=r.get("title") or "", url=r.get("url") or "", snippet=r.get("body") or "",
                source=r.get("source") or "", date=r.get("date"),
            )
            for r in rows if r.get("url")
        ]

    async def _run(self, method: str, query: str, max_results: int) -> list[dict]:
        if not _DDGS_AVAILABLE:
            raise SearchUnavailable("search backend unavailable: install 'sleuth[search]'")
        # One retry after backoff
        for _ in range(2):
            await self._limiter.acquire()
            try:
                rows = await asyncio.to_thread(_ddgs_call, method, query, max_results)
            except RatelimitException:
                self._limiter.backoff()
                continue
            self._limiter.reset()
            return rows
        raise SearchError(f"search rate limited for query {query!r}")


def _hostname(url: str) -> str:
    host = urlparse(url).hostname or ""
    return host.removeprefix("www.")


# ---------------------------------------------------------------------------
# Website analyst
# ---------------------------------------------------------------------------

_EMAIL_RE = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")
_PHONE_RE = re.compile(r"(?:\+?1[-.\s]?)?\(?[0-9]{3}\)?[-.\s]?[0-9]{3}[-.\s]?[0-9]{4}")
_EMAIL_IGNORE = ("example.com", "test.com", "sentry.io")
_EMAIL_IGNORE_SUFFIXES = (".png", ".jpg", ".jpeg", ".gif", ".svg", ".webp")

_SOCIAL_LINK_PATTERNS: dict[str, re.Pattern[str]] = {
    "linkedin": re.compile(r"https?://(?:www\.)?linkedin\.com/(?:company|in)/[a-zA-Z0-9_-]+", re.I),
    "facebook": re.compile(r"https?://(?:www\.)?facebook\.com/[a-zA-Z0-9._-]+", re.I),
    "instagram": re.compile(r"https?://(?:www\.)?instagram\.com/[a-zA-Z0-9._]+", re.I),
    "twitter": re.compile(r"https?://(?:www\.)?(?:twitter\.com|x\.com)/[a-zA-Z0-9_]+", re.I),
    "youtube": re.compile(r"https?://(?:www\.)?youtube\.com/(?:c/|channel/|@)?[a-zA-Z0-9_-]+", re.I),
    "tiktok": re.compile(r"https?://(?:www\.)?tiktok\.com/@[a-zA-Z0-9._]+", re.I),
}

_INVENTORY_PATTERNS: dict[str, re.Pattern[str]] = {
    "has_blog": re.compile(r"blog|articles|news|posts", re.I),
    "has_testimonials": re.compile(r"testimonial|review|what .* say", re.I),
    "has_case_studies": re.compile(r"case stud|success stor", re.I),
    "has_team_page": re.compile(r"team|about us|our people|leadership", re.I),
}

_LIVE_CHAT_MARKERS = ("live chat", "intercom", "drift.com", "tawk.to", "livechatinc", "zendesk")

_CMS_MARKERS = {
    "wp-content": "WordPress",
    "cdn.shopify.com": "Shopify",
    "static.wixstatic.com": "Wix",
    "squarespace.com": "Squarespace",
    "webflow": "Webflow",
}
_FRAMEWORK_MARKERS = {
    "__next_data__": "Next.js",
    "__nuxt": "Nuxt",
    "ng-version": "Angular",
    "data-reactroot": "React",
}
_ANALYTICS_MARKERS = {
    "googletagmanager.com": "Google Tag Manager",
    "google-analytics.com": "Google Analytics",
    "connect.facebook.net": "Meta Pixel",
    "static.hotjar.com": "Hotjar",
}
_ECOMMERCE_MARKERS = {
    "cdn.shopify.com": "Shopify",
    "woocommerce": "WooCommerce",
    "bigcommerce": "BigCommerce",
    "magento": "Magento",
}


@dataclass
class FetchedPage:
    url: str
    final_url: str
    status_code: int
    html: str


async def _fetch_page(url: str, settings: Settings) -> FetchedPage:
    async with httpx.AsyncClient(
        follow_redirects=True,
        timeout=httpx.Timeout(settings.request_timeout_seconds),
        headers={"User-Agent": settings.user_agent},
    ) as client:
        resp = await client.get(url)
        return FetchedPage(url=url, final_url=str(resp.url), status_code=resp.status_code, html=resp.text)


def extract_emails(text: str) -> list[str]:
    found: list[str] = []
    for email in _EMAIL_RE.findall(text):
        lowered = email.lower()
        if any(d in lowered for d in _EMAIL_IGNORE) or lowered.endswith(_EMAIL_IGNORE_SUFFIXES):
            continue
        if email not in found:
            found.append(email)
    return found


def extract_phones(text: str) -> list[str]:
    return list(dict.fromkeys(m.strip() for m in _PHONE_RE.findall(text)))


def extract_social_links(content: str) -> dict[str, str]:
    """First link per platform, in platform order."""
    links: dict[str, str] = {}
    for platform, pattern in _SOCIAL_LINK_PATTERNS.items():
        m = pattern.search(content)
        if m:
            links[platform] = m.group(0)
    return links


def _first_marker(haystack: str, markers: dict[str, str]) -> str | None:
    for marker, label in markers.items():
        if marker in haystack:
            return label
    return None


def detect_tech_stack(raw_html: str) -> TechStack:
    lowered = raw_html.lower()
    generator = re.search(r'<meta[^>]+name=["\']generator["\'][^>]+content=["\']([^"\']+)', raw_html, re.I)
    return TechStack(
        cms=_first_marker(lowered, _CMS_MARKERS) or (generator.group(1).split(" ")[0] if generator else None),
        framework=_first_marker(lowered, _FRAMEWORK_MARKERS),
        analytics=[label for marker, label in _ANALYTICS_MARKERS.items() if marker in lowered],
        ecommerce=_first_marker(lowered, _ECOMMERCE_MARKERS),
    )


def website_confidence(result: WebsiteAnalysis) -> int:
    confidence = 50
    if result.title:
        confidence += 10
    if result.description:
        confidence += 10
    if result.contact_info.emails:
        confidence += 10
    if result.social_links:
        confidence += 10
    if result.content_inventory.has_blog:
        confidence += 5
    if result.content_inventory.has_team_page:
        confidence += 5
    return min(confidence, 100)


def _parse_page(result: WebsiteAnalysis, page: FetchedPage, max_text: int) -> None:
    try:
        tree = lxml_html.fromstring(page.html)
    except (etree.ParserError, etree.XMLSyntaxError, ValueError) as exc:
        result.errors.append(f"Parse: {exc}")
        return

    for bad in tree.xpath("//script | //style | //noscript"):
        bad.drop_tree()

    result.title = " ".join(tree.xpath("//title//text()")).strip() or None
    result.description = " ".join(
        tree.xpath("//meta[@name='description']/@content | //meta[@property='og:description']/@content")[:1]
    ).strip() or None
    result.business_description = result.description

    text = " ".join(tree.text_content().split())
    hrefs = tree.xpath("//a/@href")
    link_blob = "\n".join(hrefs)

    mailto = [h.removeprefix("mailto:").split("?")[0] for h in hrefs if h.startswith("mailto:")]
    contact_page = next((h for h in hrefs if "contact" in h.lower() and not h.startswith("mailto:")), None)
    lowered_html = page.html.lower()
    result.contact_info = ContactInfo(
        emails=extract_emails("\n".join(mailto) + "\n" + text),
        phones=extract_phones(text),
        contact_form_url=urljoin(page.final_url, contact_page) if contact_page else None,
        has_live_chat=any(marker in lowered_html for marker in _LIVE_CHAT_MARKERS),
    )
    result.social_links = extract_social_links(link_blob + "\n" + page.html)

    inventory_blob = text + "\n" + link_blob
    result.content_inventory = ContentInventory(**{
        flag: bool(pattern.search(inventory_blob)) for flag, pattern in _INVENTORY_PATTERNS.items()
    })
    result.tech_stack = detect_tech_stack(page.html)
    result.seo_metrics = SeoMetrics(
        has_ssl=page.url.startswith("https") or page.final_url.startswith("https"),
        meta_tags_complete=bool(result.title and result.description),
    )
    result.raw_content = text[:max_text]


class WebsiteAnalyst:
    """Fetches and mines the company's own website."""

    name = "website_analyst"

    def __init__(self, search: SearchBackend | None = None, settings: Settings | None = None):
        self._search = search
        self._settings = settings or get_settings()

    async def invoke(self, subject: SubjectDescriptor, context: ResearchContext) -> WebsiteAnalysis | None:
        if not subject.website:
            return None
        context.token.raise_if_cancelled()
        return await self.analyze(subject.website, subject.company_name, context.token)

    async def analyze(
        self, website: str, company_name: str, token: CancellationToken | None = None,
    ) -> WebsiteAnalysis:
        log.info("Starting website analysis for %s (%s)", company_name, website)
        result = WebsiteAnalysis(url=website)
        url = website if website.startswith(("http://", "https://")) else "https://" + website

        try:
            page = await _fetch_page(url, self._settings)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            log.warning("Failed to fetch %s: %s", url, exc)
            result.errors.append(f"Fetch: {exc.__class__.__name__}: {exc}")
            await self._search_fallback(result, company_name, url, token)
            return result

        result.final_url = page.final_url
        if page.status_code >= 400:
            result.status = "down"
            result.errors.append(f"HTTP {page.status_code} from {url}")
            await self._search_fallback(result, company_name, url, token)
            return result

        result.status = "redirect" if _hostname(page.final_url) != _hostname(url) else "live"
        _parse_page(result, page, self._settings.max_page_text)
        result.confidence_score = website_confidence(result)
        log.info(
            "Website analysis complete for %s: status=%s confidence=%d",
            url, result.status, result.confidence_score,
        )
        return result

    async def _search_fallback(
        self, result: WebsiteAnalysis, company_name: str, url: str, token: CancellationToken | None,
    ) -> None:
        """Fill in a business description from search snippets when the site itself is unreachable."""
        if self._search is None:
            return
        if token is not None:
            token.raise_if_cancelled()
        try:
            hits = await self._search.search(f"{company_name} {url} company information", max_results=5)
        except Exception as exc:
            log.warning("Search fallback failed for %s: %s", url, exc)
            result.errors.append(f"Search: {exc}")
            return
        if hits:
            result.business_description = hits[0].snippet or hits[0].title or None
            result.raw_content = "\n".join(h.snippet for h in hits if h.snippet)[: self._settings.max_page_text]


# ---------------------------------------------------------------------------
# Social hunter
# ---------------------------------------------------------------------------

PLATFORM_DOMAINS: dict[str, str] = {
    "linkedin": "linkedin.com",
    "facebook": "facebook.com",
    "instagram": "instagram.com",
    "twitter": "twitter.com",
    "youtube": "youtube.com",
    "tiktok": "tiktok.com",
}

PLATFORM_WEIGHTS: dict[str, int] = {
    "linkedin": 25,
    "facebook": 20,
    "instagram": 20,
    "twitter": 15,
    "youtube": 15,
    "tiktok": 5,
}
OTHER_PLATFORM_WEIGHT = 5

_PLATFORM_URL_RE: dict[str, re.Pattern[str]] = {
    "linkedin": re.compile(r"linkedin\.com", re.I),
    "facebook": re.compile(r"facebook\.com", re.I),
    "instagram": re.compile(r"instagram\.com", re.I),
    "twitter": re.compile(r"(?:twitter\.com|x\.com)", re.I),
    "youtube": re.compile(r"youtube\.com", re.I),
    "tiktok": re.compile(r"tiktok\.com", re.I),
    "pinterest": re.compile(r"pinterest\.com", re.I),
}

_HANDLE_RE: dict[str, re.Pattern[str]] = {
    "linkedin": re.compile(r"linkedin\.com/(?:company|in)/([a-zA-Z0-9_-]+)", re.I),
    "facebook": re.compile(r"facebook\.com/([a-zA-Z0-9._-]+)", re.I),
    "instagram": re.compile(r"instagram\.com/([a-zA-Z0-9._]+)", re.I),
    "twitter": re.compile(r"(?:twitter\.com|x\.com)/([a-zA-Z0-9_]+)", re.I),
    "youtube": re.compile(r"youtube\.com/(?:c/|channel/|@)?([a-zA-Z0-9_-]+)", re.I),
    "tiktok": re.compile(r"tiktok\.com/@([a-zA-Z0-9._]+)", re.I),
}

SEARCH_MATCH_CONFIDENCE = 70
WEBSITE_LINK_CONFIDENCE = 90


def platform_from_url(url: str) -> str | None:
    for platform, pattern in _PLATFORM_URL_RE.items():
        if pattern.search(url):
            return platform
    return None


def extract_handle(url: str, platform: str) -> str | None:
    pattern = _HANDLE_RE.get(platform)
    m = pattern.search(url) if pattern else None
    return m.group(1) if m else None


def apply_verification(profile: SocialProfile, verified: bool) -> None:
    profile.verified = verified
    if verified:
        profile.confidence_score = min(profile.confidence_score + 10, 100)
    else:
        profile.confidence_score = max(profile.confidence_score - 20, 30)


def social_presence_score(profiles: list[SocialProfile]) -> int:
    score = sum(PLATFORM_WEIGHTS.get(p.platform, OTHER_PLATFORM_WEIGHT) for p in profiles if p.verified)
    return min(score, 100)


def _best_match(hits: list[SearchHit], company_name: str, platform: str) -> SearchHit | None:
    name = company_name.lower()
    squashed = re.sub(r"\s+", "", name)
    for hit in hits:
        if platform_from_url(hit.url) != platform:
            continue
        if name in hit.title.lower() or squashed in hit.url.lower():
            return hit
    return None


class SocialHunter:
    """Finds and verifies the company's social media profiles."""

    name = "social_hunter"

    def __init__(self, search: SearchBackend):
        self._search = search

    async def invoke(self, subject: SubjectDescriptor, context: ResearchContext) -> SocialHunt:
        context.token.raise_if_cancelled()
        log.info("Starting social media hunt for %s", subject.company_name)
        result = SocialHunt(company_name=subject.company_name)
        name = subject.company_name

        # Profiles linked from the company's own site need no search.
        profiles: list[SocialProfile] = []
        linked = context.website.social_links if context.website is not None else {}
        for platform, url in linked.items():
            profiles.append(SocialProfile(
                platform=platform, url=url, handle=extract_handle(url, platform),
                verified=True, confidence_score=WEBSITE_LINK_CONFIDENCE,
            ))

        pending = [p for p in PLATFORM_DOMAINS if p not in linked]
        outcomes = await asyncio.gather(
            *(self._search_platform(name, p, context.token) for p in pending),
            return_exceptions=True,
        )
        searched: list[SocialProfile] = []
        for platform, outcome in zip(pending, outcomes):
            if isinstance(outcome, ResearchCancelled):
                raise outcome
            if isinstance(outcome, Exception):
                log.warning("Social search failed for %s on %s: %s", name, platform, outcome)
                result.errors.append(f"{platform}: {outcome}")
            elif outcome is not None:
                searched.append(outcome)

        for profile in searched:
            context.token.raise_if_cancelled()
            apply_verification(profile, await self._verify(name, profile.url))

        result.platforms = profiles + searched
        result.total_followers = sum(p.followers or 0 for p in result.platforms)
        result.social_presence_score = social_presence_score(result.platforms)
        if result.platforms:
            result.most_active_platform = result.platforms[0].platform
        log.info(
            "Social media hunt complete for %s: found=%d score=%d",
            name, result.platform_count, result.social_presence_score,
        )
        return result

    async def _search_platform(
        self, company_name: str, platform: str, token: CancellationToken,
    ) -> SocialProfile | None:
        token.raise_if_cancelled()
        hits = await self._search.search(f"{company_name} official {platform}", max_results=5)
        best = _best_match(hits, company_name, platform)
        if best is None:
            return None
        return SocialProfile(
            platform=platform, url=best.url, handle=extract_handle(best.url, platform),
            confidence_score=SEARCH_MATCH_CONFIDENCE,
        )

    async def _verify(self, company_name: str, url: str) -> bool:
        """True when a search for the profile mentions the company; True as well if the lookup fails."""
        try:
            hits = await self._search.search(f"{company_name} official {url}", max_results=3)
        except Exception as exc:
            log.debug("Verification lookup failed for %s: %s", url, exc)
            return True
        name = company_name.lower()
        return any(name in (h.snippet or h.title).lower() for h in hits)


# ---------------------------------------------------------------------------
# News aggregator
# ---------------------------------------------------------------------------

POSITIVE_WORDS = (
    "great", "excellent", "amazing", "wonderful", "best", "fantastic", "love",
    "perfect", "outstanding", "recommended", "success", "growth", "award", "winner",
)
NEGATIVE_WORDS = (
    "bad", "terrible", "awful", "worst", "poor", "disappointed", "scam", "fraud",
    "lawsuit", "complaint", "failed", "bankruptcy", "sued", "violation",
)

RISK_PATTERNS: dict[str, str] = {
    r"lawsuit|sued|court|legal action": "Potential legal issues mentioned",
    r"complaint|bbb|consumer protection": "Customer complaints detected",
    r"fraud|scam|deceptive": "Fraud allegations mentioned",
    r"bankruptcy|closed|shutdown": "Business stability concerns",
    r"data breach|hack|security": "Security incident mentioned",
}

REVIEW_DOMAINS = ("google.com", "yelp.com", "trustpilot.com", "bbb.org", "glassdoor.com", "tripadvisor.com")
RISK_FLAG_PENALTY = 10


def analyze_sentiment(text: str) -> str:
    lowered = text.lower()
    positive = sum(1 for w in POSITIVE_WORDS if w in lowered)
    negative = sum(1 for w in NEGATIVE_WORDS if w in lowered)
    if positive > negative + 1:
        return "positive"
    if negative > positive + 1:
        return "negative"
    return "neutral"


def extract_risk_flags(text: str) -> list[str]:
    lowered = text.lower()
    return [flag for pattern, flag in RISK_PATTERNS.items() if re.search(pattern, lowered)]


def reputation_score(positive: int, negative: int, neutral: int, risk_flags: int) -> int:
    total = positive + negative + neutral
    if total == 0:
        return 50
    score = round_half_up(50 + positive / total * 40 - negative / total * 40)
    score = max(0, min(100, score))
    return max(0, score - risk_flags * RISK_FLAG_PENALTY)


def overall_sentiment(positive: int, negative: int) -> str:
    if positive > negative * 2:
        return "positive"
    if negative > positive * 2:
        return "negative"
    if positive and negative:
        return "mixed"
    return "neutral"


class NewsAggregator:
    """Collects news coverage and review-site mentions."""

    name = "news_aggregator"

    def __init__(self, search: SearchBackend):
        self._search = search

    async def invoke(self, subject: SubjectDescriptor, context: ResearchContext) -> NewsReputation:
        context.token.raise_if_cancelled()
        name = subject.company_name
        log.info("Starting news aggregation for %s", name)
        result = NewsReputation(company_name=name)

        try:
            hits = await self._search.news(f'"{name}" news', max_results=10)
        except Exception as exc:
            log.warning("News search failed for %s: %s", name, exc)
            result.errors.append(f"News: {exc}")
            hits = []

        for hit in hits:
            body = hit.snippet or hit.title
            sentiment = analyze_sentiment(body)
            result.news_articles.append(NewsArticle(
                title=hit.title, url=hit.url, source=hit.source or _hostname(hit.url),
                date=hit.date, snippet=hit.snippet[:200], sentiment=sentiment,
            ))
            result.total_mentions += 1
            if sentiment == "positive":
                result.positive_count += 1
            elif sentiment == "negative":
                result.negative_count += 1
            else:
                result.neutral_count += 1
            for flag in extract_risk_flags(hit.snippet):
                if flag not in result.risk_flags:
                    result.risk_flags.append(flag)

        context.token.raise_if_cancelled()
        try:
            review_hits = await self._search.search(f"{name} reviews ratings customer feedback", max_results=10)
        except Exception as exc:
            log.warning("Review search failed for %s: %s", name, exc)
            result.errors.append(f"Reviews: {exc}")
            review_hits = []

        for hit in review_hits:
            host = _hostname(hit.url)
            if not any(host == d or host.endswith("." + d) for d in REVIEW_DOMAINS):
                continue
            result.reviews.append(ReviewSummary(
                platform=host, sentiment=analyze_sentiment(hit.snippet or hit.title),
            ))

        result.reputation_score = reputation_score(
            result.positive_count, result.negative_count, result.neutral_count, len(result.risk_flags),
        )
        result.overall_sentiment = overall_sentiment(result.positive_count, result.negative_count)

        positive_story = next((a for a in result.news_articles if a.sentiment == "positive"), None)
        negative_story = next((a for a in result.news_articles if a.sentiment == "negative"), None)
        result.notable_stories = [a.title for a in (positive_story, negative_story) if a is not None]

        log.info(
            "News aggregation complete for %s: mentions=%d score=%d",
            name, result.total_mentions, result.reputation_score,
        )
        return result


# ---------------------------------------------------------------------------
# Business analyzer
# ---------------------------------------------------------------------------

SERVICE_BY_AREA = {
    "Website": "Website Development",
    "Content Marketing": "Content Strategy",
    "Lead Capture": "AI Chatbot",
    "Social Media": "Social Media Management",
    "Reviews": "Review Generation",
    "Reputation Management": "Reputation Monitoring",
    "Security": "Website Security",
}

DEFAULT_OBJECTIONS = [
    "We already have someone handling our marketing",
    "We tried digital marketing before and it didn't work",
    "We get most of our business through referrals",
]

FALLBACK_TALKING_POINT = (
    "Your digital presence looks solid. Let me share some advanced strategies to take it to the next level."
)

TALKING_POINTS_PROMPT = """\
You are a marketing intelligence analyst. Analyze business data and identify \
opportunities for AI automation, website improvement, content marketing, and \
lead generation. Be concise and actionable.

Respond with ONLY valid JSON:
{"talking_points": ["<recommendation>", "<recommendation>"]}
"""


def digital_maturity(website: WebsiteAnalysis | None) -> int:
    if website is None or not website.has_live_website:
        return 10
    score = 30
    if website.seo_metrics.has_ssl:
        score += 10
    if website.seo_metrics.meta_tags_complete:
        score += 10
    if website.content_inventory.has_blog:
        score += 15
    if website.content_inventory.has_team_page:
        score += 5
    if website.contact_info.has_live_chat:
        score += 10
    if website.contact_info.emails:
        score += 5
    if len(website.social_links) >= 3:
        score += 10
    if website.tech_stack.ecommerce:
        score += 5
    return min(score, 100)


def identify_opportunities(
    website: WebsiteAnalysis | None,
    social: SocialHunt | None,
    news: NewsReputation | None,
) -> list[MarketingOpportunity]:
    found: list[tuple[str, str, str, str, str]] = []

    if website is None or not website.has_live_website:
        found.append(("Website", "No website or not accessible", "Missing online presence",
                      "Build professional website with SEO", "high"))
    else:
        if not website.seo_metrics.has_ssl:
            found.append(("Security", "No SSL certificate", "Website not secure",
                          "Install SSL certificate for HTTPS", "high"))
        if not website.content_inventory.has_blog:
            found.append(("Content Marketing", "No blog or content section", "Missing SEO content",
                          "Start content strategy with blog", "medium"))
        if not website.contact_info.has_live_chat:
            found.append(("Lead Capture", "No live chat", "Missing instant communication",
                          "Implement AI chatbot for 24/7 support", "high"))

    if social is None or social.platform_count == 0:
        found.append(("Social Media", "No social presence", "Missing social proof and reach",
                      "Set up social media profiles", "high"))
    elif social.platform_count < 3:
        missing = [p for p in ("linkedin", "facebook", "instagram") if not social.has_platform(p)]
        found.append(("Social Media Expansion", f"Only {social.platform_count} platform(s)",
                      f"Missing {', '.join(missing)}", "Expand to additional platforms", "medium"))

    if news is not None:
        if not news.reviews:
            found.append(("Reviews", "Few or no online reviews", "Missing social proof",
                          "Implement review generation system", "high"))
        if news.risk_flags:
            found.append(("Reputation Management", news.risk_flags[0], "Negative mentions online",
                          "Active reputation monitoring and response", "high"))

    return [
        MarketingOpportunity(area=area, current_state=state, gap=gap, recommendation=rec,
                             impact=impact, priority=i)
        for i, (area, state, gap, rec, impact) in enumerate(found, start=1)
    ]


def talking_points(opportunities: list[MarketingOpportunity]) -> list[str]:
    points = [
        f"I noticed {o.current_state.lower()}. {o.recommendation} could help grow your business."
        for o in opportunities if o.impact == "high"
    ][:3]
    return points or [FALLBACK_TALKING_POINT]


class BusinessAnalyzer:
    """Turns the earlier stage outputs into maturity scores and sales opportunities."""

    name = "business_analyzer"

    def __init__(self, llm: LLMClient | None = None):
        self._llm = llm

    async def invoke(self, subject: SubjectDescriptor, context: ResearchContext) -> BusinessAnalysis:
        context.token.raise_if_cancelled()
        name = subject.company_name
        website, social, news = context.website, context.social, context.news

        result = BusinessAnalysis(company_name=name)
        result.digital_maturity_score = digital_maturity(website)
        result.social_maturity_score = social.social_presence_score if social is not None else 0
        result.marketing_maturity_score = round_half_up(
            (result.digital_maturity_score + result.social_maturity_score) / 2
        )
        result.opportunities = identify_opportunities(website, social, news)
        result.top_opportunities = [f"{o.area}: {o.recommendation}" for o in result.opportunities[:3]]
        result.suggested_services = list(dict.fromkeys(
            SERVICE_BY_AREA[o.area] for o in result.opportunities if o.area in SERVICE_BY_AREA
        ))
        result.talking_points = talking_points(result.opportunities)
        result.potential_objections = list(DEFAULT_OBJECTIONS)

        if self._llm is not None and result.opportunities:
            context.token.raise_if_cancelled()
            await self._add_llm_points(result)

        log.info(
            "Business analysis complete for %s: opportunities=%d maturity=%d",
            name, result.opportunity_count, result.marketing_maturity_score,
        )
        return result

    async def _add_llm_points(self, result: BusinessAnalysis) -> None:
        prompt = (
            f"Company: {result.company_name}\n"
            f"Digital Maturity: {result.digital_maturity_score}%\n"
            f"Social Presence: {result.social_maturity_score}%\n"
            f"Top gaps: {', '.join(result.top_opportunities)}\n\n"
            "Provide 2-3 specific, actionable recommendations."
        )
        try:
            data = await self._llm.call(TALKING_POINTS_PROMPT, prompt)  # type: ignore[union-attr]
        except LLMCallError as exc:
            log.warning("LLM talking points failed for %s: %s", result.company_name, exc)
            result.errors.append(f"LLM: {exc}")
            return
        points = data.get("talking_points") or []
        result.talking_points.extend(str(p).strip() for p in points[:2] if str(p).strip())


# ---------------------------------------------------------------------------
# Default wiring
# ---------------------------------------------------------------------------


def default_collaborators(settings: Settings | None = None) -> dict[str, Collaborator]:
    """The four reference agents keyed by stage, sharing one rate-limited search backend."""
    settings = settings or get_settings()
    search = DuckDuckGoSearch(SearchRateLimiter.from_settings(settings))
    return {
        "website": WebsiteAnalyst(search, settings),
        "social": SocialHunter(search),
        "news": NewsAggregator(search),
        "business": BusinessAnalyzer(build_llm_client(settings)),
    }
