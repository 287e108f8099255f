"""Vetting scorer: fold probe outputs into one explainable result.

Scoring
-------
- base score 60
- website bonus: +15 reachable over TLS, +10 reachable only
- advisory component: ``round(avg(four category-fit sub-scores) * 0.25)``
- every risk indicator adds its signed ``score_impact``

The total is clamped to [0, 100] and mapped to a risk tier. Fixed rules can
override the advisory disposition: any critical indicator forces ``reject``,
a clean high score forces ``approve`` and a very low score forces ``reject``.
"""
from __future__ import annotations

import logging
import time

from sqlalchemy.orm import Session

from partnerdesk.llm import LLMClient
from partnerdesk.probes import AdvisoryOpinion, ProbeResults, run_probes
from partnerdesk.schemas import (
    BusinessLegitimacy,
    FraudDetection,
    RiskIndicator,
    VerificationChecks,
    VettingRequest,
    VettingResult,
    WebsiteAnalysis,
)
from partnerdesk.utils import round_half_up

log = logging.getLogger(__name__)

BASE_SCORE = 60

# Risk tier thresholds, checked top-down
RISK_TIERS: list[tuple[int, str]] = [(80, "low"), (60, "medium"), (40, "high")]

APPROVE_THRESHOLD = 80
REJECT_THRESHOLD = 40


# ---------------------------------------------------------------------------
# Score components
# ---------------------------------------------------------------------------


def website_bonus(website: WebsiteAnalysis | None) -> int:
    if website is None or not website.is_accessible:
        return 0
    return 15 if website.has_ssl else 10


def advisory_component(opinion: AdvisoryOpinion) -> int:
    return round_half_up(opinion.category_fit.average() * 0.25)


def compute_risk_level(score: int) -> str:
    for threshold, tier in RISK_TIERS:
        if score >= threshold:
            return tier
    return "critical"


def build_risk_indicators(app: VettingRequest, probes: ProbeResults) -> list[RiskIndicator]:
    """Apply the fixed indicator rules in their display order."""
    indicators: list[RiskIndicator] = []
    website = probes.website

    def add(severity: str, category: str, description: str, impact: int) -> None:
        indicators.append(RiskIndicator(
            type=severity, category=category, description=description, score_impact=impact,
        ))

    if probes.disposable_email:
        add("critical", "Email", "Disposable email address detected", -30)
    if probes.duplicate_application:
        add("warning", "Application", "Possible duplicate application found", -15)
    if app.website and not (website and website.is_accessible):
        add("warning", "Website", "Website not accessible or invalid", -10)
    if website and website.is_accessible and not website.has_ssl:
        add("warning", "Security", "Website lacks SSL certificate", -5)
    if probes.suspicious_patterns:
        add("warning", "Content", f"Suspicious patterns detected: {len(probes.suspicious_patterns)}", -20)
    if not probes.contact.professional_email:
        add("info", "Email", "Using free email provider instead of business domain", -5)
    if app.experience_years is not None and app.experience_years > 5:
        add("info", "Experience", f"{app.experience_years}+ years experience claimed", 10)
    if len(app.notable_clients) > 20:
        add("info", "Credibility", "Notable clients listed", 5)
    return indicators


def determine_disposition(
    score: int, indicators: list[RiskIndicator], opinion: AdvisoryOpinion,
) -> tuple[str, str]:
    """Return ``(disposition, reason)``; fixed rules win over the advisory opinion."""
    critical = [i.description for i in indicators if i.type == "critical"]
    if critical:
        return "reject", "Critical risk indicators detected - " + ", ".join(critical)
    if score >= APPROVE_THRESHOLD and not any(i.type == "warning" for i in indicators):
        return "approve", "All verification checks passed with high confidence"
    if score < REJECT_THRESHOLD:
        return "reject", "Low confidence score with multiple risk factors"
    return opinion.recommendation, opinion.recommendation_reason


def auto_vetting_items(probes: ProbeResults, indicators: list[RiskIndicator]) -> dict[str, bool]:
    """Checklist view for reviewers. Derived only; never feeds back into the score."""
    website = probes.website
    fit = probes.advisory.category_fit
    return {
        "website_verified": bool(website and website.is_accessible and website.professional_score >= 60),
        "business_legitimate": (
            not probes.duplicate_application
            and not probes.disposable_email
            and not probes.suspicious_patterns
        ),
        "experience_confirmed": fit.experience_credibility >= 60,
        "categories_match": fit.primary_category_match >= 70,
        "no_red_flags": not any(i.type in ("critical", "warning") for i in indicators),
    }


def build_verification_checks(app: VettingRequest, probes: ProbeResults) -> VerificationChecks:
    website = probes.website
    return VerificationChecks(
        website_analysis=website,
        business_legitimacy=BusinessLegitimacy(
            company_mentioned_online=bool(website and website.is_accessible),
            consistent_branding=probes.email_domain_match,
            phone_format_valid=probes.contact.phone_format_valid,
            registration_indicators=probes.advisory.business_signals,
        ),
        fraud_detection=FraudDetection(
            email_domain_match=probes.email_domain_match,
            disposable_email=probes.disposable_email,
            suspicious_patterns=probes.suspicious_patterns,
            duplicate_application=probes.duplicate_application,
        ),
        category_fit=probes.advisory.category_fit,
        contact_verification=probes.contact,
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def score_application(app: VettingRequest, probes: ProbeResults) -> VettingResult:
    """Combine settled probe results into a VettingResult. Pure; cannot fail."""
    indicators = build_risk_indicators(app, probes)
    subtotal = BASE_SCORE + website_bonus(probes.website) + advisory_component(probes.advisory)
    score = max(0, min(100, subtotal + sum(i.score_impact for i in indicators)))
    disposition, reason = determine_disposition(score, indicators, probes.advisory)
    return VettingResult(
        overall_score=score,
        risk_level=compute_risk_level(score),
        verification_checks=build_verification_checks(app, probes),
        risk_indicators=indicators,
        ai_recommendation=disposition,
        recommendation_reason=reason,
        auto_vetting_items=auto_vetting_items(probes, indicators),
    )


async def vet_application(
    session: Session,
    app: VettingRequest,
    client: LLMClient | None,
    timeout: float | None = None,
) -> VettingResult:
    """Run every probe for *app* and score the outcome."""
    start = time.monotonic()
    probes = await run_probes(app, session, client, timeout)
    result = score_application(app, probes)
    log.info(
        "Vetted application %s (%s) in %.0fms: score=%d risk=%s disposition=%s",
        app.application_id, app.company_name, (time.monotonic() - start) * 1000,
        result.overall_score, result.risk_level, result.ai_recommendation,
    )
    return result
