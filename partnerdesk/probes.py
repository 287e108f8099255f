"""Verification probe set: independent, explainable signals about one application.

Each probe returns a bounded value and owns its failure handling. Network
probes (website reachability, advisory model) are time-bounded and fall back
to a documented default instead of raising, so one probe can never block or
corrupt another's result.
"""
from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, TypeVar

import httpx
from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from partnerdesk.llm import LLMClient, probe_timeout
from partnerdesk.models import PartnerApplication
from partnerdesk.schemas import CategoryFit, ContactVerification, VettingRequest, WebsiteAnalysis
from partnerdesk.utils import hostname, normalize_url

log = logging.getLogger(__name__)

T = TypeVar("T")

_USER_AGENT = "Mozilla/5.0 (compatible; PartnerDeskBot/1.0)"

DISPOSABLE_EMAIL_DOMAINS = frozenset({
    "tempmail.com", "throwaway.email", "10minutemail.com", "guerrillamail.com",
    "mailinator.com", "yopmail.com", "temp-mail.org", "fakeinbox.com",
    "trashmail.com", "getnada.com", "maildrop.cc", "sharklasers.com",
})

FREE_EMAIL_PROVIDERS = frozenset({
    "gmail.com", "yahoo.com", "hotmail.com", "outlook.com", "aol.com",
})

# (label, pattern); the label is what reviewers see
SUSPICIOUS_PATTERNS: list[tuple[str, re.Pattern[str]]] = [
    ("test", re.compile(r"test", re.IGNORECASE)),
    ("fake", re.compile(r"fake", re.IGNORECASE)),
    ("demo", re.compile(r"demo", re.IGNORECASE)),
    ("sample", re.compile(r"sample", re.IGNORECASE)),
    ("asdf", re.compile(r"asdf", re.IGNORECASE)),
    ("qwerty", re.compile(r"qwerty", re.IGNORECASE)),
    ("123456", re.compile(r"123456")),
    ("repeated characters", re.compile(r"(\w)\1{4,}", re.IGNORECASE)),
]

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_PHONE_RE = re.compile(r"^\+?\d{7,15}$")

VALID_DISPOSITIONS = {"approve", "manual_review", "reject"}


# ---------------------------------------------------------------------------
# Reachability probe
# ---------------------------------------------------------------------------


def _unreachable() -> WebsiteAnalysis:
    return WebsiteAnalysis(
        is_accessible=False, has_ssl=False, domain_age_indicator="unknown",
        professional_score=0, content_relevance=0, contact_info_found=False,
    )


async def _probe_url(url: str, timeout: float) -> tuple[int, str]:
    """HEAD the URL (GET when HEAD is not allowed); return (status, final url)."""
    async with httpx.AsyncClient(
        follow_redirects=True,
        timeout=httpx.Timeout(timeout),
        headers={"User-Agent": _USER_AGENT},
    ) as client:
        resp = await client.head(url)
        if resp.status_code == 405:
            resp = await client.get(url)
        return resp.status_code, str(resp.url)


async def check_website(website: str | None, timeout: float | None = None) -> WebsiteAnalysis | None:
    """Existence check for a declared website. None when no website was given."""
    url = normalize_url(website)
    if not url:
        return None
    try:
        status, final_url = await _probe_url(url, timeout or probe_timeout())
    except Exception as exc:
        log.warning("Website check failed for %s: %s", url, exc)
        return _unreachable()

    # 403 is often a geo-block or bot wall: the site exists
    is_accessible = 200 <= status < 400 or status == 403
    has_ssl = (final_url or url).startswith("https://")
    return WebsiteAnalysis(
        is_accessible=is_accessible,
        has_ssl=has_ssl,
        domain_age_indicator="unknown",  # needs WHOIS
        professional_score=(80 if has_ssl else 60) if is_accessible else 20,
        content_relevance=70 if is_accessible else 0,
        contact_info_found=is_accessible,
    )


# ---------------------------------------------------------------------------
# Contact-validity probe
# ---------------------------------------------------------------------------


def email_domain(email: str) -> str:
    return email.rsplit("@", 1)[-1].strip().lower() if "@" in email else ""


def classify_email_domain(email: str) -> str:
    """Return ``invalid``, ``disposable``, ``personal`` or ``business``."""
    if not _EMAIL_RE.match(email or ""):
        return "invalid"
    domain = email_domain(email)
    if domain in DISPOSABLE_EMAIL_DOMAINS:
        return "disposable"
    if domain in FREE_EMAIL_PROVIDERS:
        return "personal"
    return "business"


def is_disposable_email(email: str) -> bool:
    return email_domain(email or "") in DISPOSABLE_EMAIL_DOMAINS


def validate_phone_format(phone: str | None) -> bool:
    if not phone:
        return False
    return bool(_PHONE_RE.match(re.sub(r"[^\d+]", "", phone)))


def verify_contact(email: str, phone: str | None = None) -> ContactVerification:
    domain_type = classify_email_domain(email)
    return ContactVerification(
        email_format_valid=domain_type != "invalid",
        email_domain_exists=True,  # needs a DNS lookup
        email_domain_type=domain_type,
        phone_format_valid=validate_phone_format(phone),
        professional_email=domain_type == "business",
    )


def email_domain_matches_website(email: str, website: str | None) -> bool:
    host = hostname(website)
    if not host:
        return False
    return host in email_domain(email or "")


# ---------------------------------------------------------------------------
# Duplicate-application probe
# ---------------------------------------------------------------------------


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def find_duplicate_application(
    session: Session, email: str, company_name: str, application_id: int,
) -> bool:
    """True if another application shares the e-mail or a similar company name.

    A local synchronous lookup; it is not time-bounded like the network probes.
    """
    clauses = [func.lower(PartnerApplication.email) == (email or "").strip().lower()]
    name = (company_name or "").strip()
    if name:
        clauses.append(PartnerApplication.company_name.ilike(f"%{_escape_like(name)}%", escape="\\"))
    try:
        row = session.execute(
            select(PartnerApplication.id)
            .where(or_(*clauses), PartnerApplication.id != application_id)
            .limit(1)
        ).first()
    except Exception as exc:
        log.warning("Duplicate check failed for application %s: %s", application_id, exc)
        return False
    return row is not None


# ---------------------------------------------------------------------------
# Suspicious-pattern probe
# ---------------------------------------------------------------------------


def find_suspicious_patterns(*texts: str | None) -> list[str]:
    """Scan each text against the fixed placeholder/keyboard-mash patterns."""
    found: list[str] = []
    for text in texts:
        if not text:
            continue
        for label, pattern in SUSPICIOUS_PATTERNS:
            if pattern.search(text):
                found.append(f"Matches suspicious pattern: {label}")
    return found


# ---------------------------------------------------------------------------
# Advisory-model probe
# ---------------------------------------------------------------------------

ADVISORY_SYSTEM_PROMPT = """\
You are an expert business analyst specializing in vetting luxury service partners.
Analyze the provided business information and provide a thorough assessment.
Be skeptical but fair - look for genuine business signals while identifying red flags.

Scoring guidelines:
- Experience credibility (0-100): Based on claimed years, notable clients, description quality
- Category match (0-100): How well they fit their stated category
- Service alignment (0-100): How their services align with luxury concierge needs
- Market presence (0-100): Evidence of established business operations
"""

ADVISORY_USER_PROMPT = """\
Analyze this partner application:

Company: {company_name}
Email: {email}
Website: {website}
Website accessible: {website_accessible}
Categories: {categories}
Experience: {experience} years
Description: {description}
Notable clients: {notable_clients}
Coverage regions: {coverage_regions}

Provide your analysis as JSON with this structure:
{{
  "category_fit": {{
    "primary_category_match": 0-100,
    "service_alignment": 0-100,
    "experience_credibility": 0-100,
    "market_presence": 0-100
  }},
  "business_signals": ["list of positive or negative business signals identified"],
  "recommendation": "approve" | "manual_review" | "reject",
  "recommendation_reason": "brief explanation"
}}
"""


@dataclass
class AdvisoryOpinion:
    """Parsed advisory-model answer."""
    category_fit: CategoryFit
    business_signals: list[str]
    recommendation: str
    recommendation_reason: str
    degraded: bool = False


def fallback_opinion() -> AdvisoryOpinion:
    return AdvisoryOpinion(
        category_fit=CategoryFit(),
        business_signals=["AI analysis unavailable - manual review required"],
        recommendation="manual_review",
        recommendation_reason="AI analysis could not be completed - degraded analysis",
        degraded=True,
    )


def build_advisory_prompt(app: VettingRequest, website: WebsiteAnalysis | None) -> str:
    return ADVISORY_USER_PROMPT.format(
        company_name=app.company_name,
        email=app.email,
        website=app.website or "Not provided",
        website_accessible="Yes" if website and website.is_accessible else "No",
        categories=", ".join(app.categories) or "Not specified",
        experience=app.experience_years if app.experience_years is not None else "Not specified",
        description=app.description or "Not provided",
        notable_clients=app.notable_clients or "Not provided",
        coverage_regions=", ".join(app.coverage_regions) or "Not specified",
    )


def _sub_score(val: Any) -> int:
    try:
        return max(0, min(100, int(round(float(val)))))
    except (TypeError, ValueError):
        return 50


def parse_advisory_response(raw: dict[str, Any]) -> AdvisoryOpinion:
    """Normalize a model answer; missing or malformed parts take neutral values."""
    fit = raw.get("category_fit")
    if not isinstance(fit, dict):
        fit = {}
    category_fit = CategoryFit(**{name: _sub_score(fit.get(name, 50)) for name in CategoryFit.model_fields})

    signals = raw.get("business_signals", [])
    if not isinstance(signals, list):
        signals = []

    recommendation = str(raw.get("recommendation") or "manual_review").strip().lower()
    if recommendation not in VALID_DISPOSITIONS:
        recommendation = "manual_review"

    return AdvisoryOpinion(
        category_fit=category_fit,
        business_signals=[str(s) for s in signals[:10]],
        recommendation=recommendation,
        recommendation_reason=str(raw.get("recommendation_reason") or "AI analysis inconclusive"),
    )


async def advisory_analysis(
    app: VettingRequest,
    website: WebsiteAnalysis | None,
    client: LLMClient | None,
    timeout: float | None = None,
) -> AdvisoryOpinion:
    """Ask the advisory model for an opinion. Never raises."""
    if client is None:
        return fallback_opinion()
    try:
        raw = await asyncio.wait_for(
            client.call(ADVISORY_SYSTEM_PROMPT, build_advisory_prompt(app, website)),
            timeout or probe_timeout(),
        )
        return parse_advisory_response(raw)
    except Exception as exc:
        log.warning("Advisory analysis failed for %s: %s", app.company_name, exc)
        return fallback_opinion()


# ---------------------------------------------------------------------------
# Run all probes
# ---------------------------------------------------------------------------


@dataclass
class ProbeResults:
    website: WebsiteAnalysis | None
    contact: ContactVerification
    disposable_email: bool
    duplicate_application: bool
    suspicious_patterns: list[str]
    email_domain_match: bool
    advisory: AdvisoryOpinion = field(default_factory=fallback_opinion)


async def _bounded(aw: Awaitable[T], default: T, label: str, timeout: float | None) -> T:
    """Await *aw* within *timeout*; any failure yields *default*."""
    try:
        return await asyncio.wait_for(aw, timeout)
    except Exception as exc:
        log.warning("Probe %s failed, using default: %s", label, exc or type(exc).__name__)
        return default


async def run_probes(
    app: VettingRequest,
    session: Session,
    client: LLMClient | None,
    timeout: float | None = None,
) -> ProbeResults:
    """Run every probe and return once all have settled.

    The network probes run concurrently while the duplicate lookup runs
    locally. The advisory probe waits on the reachability result so its
    prompt can mention whether the site is up; both network probes remain
    individually time-bounded.
    """
    timeout = timeout or probe_timeout()
    website_default = _unreachable() if app.website else None
    website_task = asyncio.ensure_future(
        _bounded(check_website(app.website, timeout), website_default, "website", timeout)
    )

    async def _advisory() -> AdvisoryOpinion:
        website = await website_task
        return await advisory_analysis(app, website, client, timeout)

    duplicate = find_duplicate_application(session, app.email, app.company_name, app.application_id)
    website, advisory = await asyncio.gather(
        website_task,
        _bounded(_advisory(), fallback_opinion(), "advisory", None),
    )

    return ProbeResults(
        website=website,
        contact=verify_contact(app.email, app.phone),
        disposable_email=is_disposable_email(app.email),
        duplicate_application=duplicate,
        suspicious_patterns=find_suspicious_patterns(app.company_name, app.description),
        email_domain_match=email_domain_matches_website(app.email, app.website),
        advisory=advisory,
    )
