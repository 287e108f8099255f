"""Candidate ranking engine: weighted multi-factor match of partners to one request.

Scoring (additive, clamped to [0, 100])
---------------------------------------
- **Category**: +35 when the request category is one of the partner's.
- **Budget**: +20 when the partner range contains the request range, +12
  when either request bound falls inside the partner range, +8 when the
  request does not name both bounds.
- **Quality**: rating (+12/+9/+6), response rate (+8/+6/+3), bookings
  (+5/+3).
- **Client history**: +15 when the requesting client rated this partner
  4★ or better on completed engagements.
- **Geography**: +5 when the preferred location and a service region
  contain one another (case-insensitive).

Candidates under 30 are dropped. The rest are sorted by score, ties keeping
pool order. :func:`rank_candidates` is pure and deterministic;
:func:`personalize` is an optional, fallible stage layered on top that only
appends text.
"""
from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass, field, replace
from typing import Iterable

from partnerdesk.llm import LLMClient, probe_timeout
from partnerdesk.models import Partner, ServiceRequest

log = logging.getLogger(__name__)

MIN_MATCH_SCORE = 30
DEFAULT_MAX_PARTNERS = 5
PREFERRED_RATING = 4.0

# (threshold, points, reason or None), checked top-down; first hit wins
RATING_TIERS: list[tuple[float, int, str | None]] = [
    (4.8, 12, "Exceptional rating (4.8+)"),
    (4.5, 9, "Excellent rating (4.5+)"),
    (4.0, 6, "Strong rating (4.0+)"),
]
RESPONSE_TIERS: list[tuple[float, int, str | None]] = [
    (95, 8, "Outstanding responsiveness"),
    (85, 6, "Very responsive"),
    (70, 3, "Reliable responsiveness"),
]
BOOKING_TIERS: list[tuple[int, int]] = [(100, 5), (50, 3)]


@dataclass
class MatchResult:
    partner_id: int
    company_name: str
    score: int
    reasons: list[str] = field(default_factory=list)
    ai_confidence: float = 0.0


@dataclass
class RankingResult:
    evaluated: int
    matches: list[MatchResult]


# ---------------------------------------------------------------------------
# Eligibility
# ---------------------------------------------------------------------------


def _lower(values: Iterable[str]) -> set[str]:
    return {v.strip().lower() for v in values if v and v.strip()}


def is_eligible(partner: Partner, request: ServiceRequest, excluded: set[int]) -> bool:
    return (
        partner.status == "approved"
        and (request.category or "").strip().lower() in _lower(partner.categories)
        and partner.id not in excluded
    )


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------


def _budget_fit(partner: Partner, request: ServiceRequest) -> tuple[int, str | None, bool]:
    """Return ``(points, reason, full_fit)``.

    Range scoring needs both request bounds; anything less is a flexible budget.
    """
    if request.budget_min is None or request.budget_max is None:
        return 8, "Flexible budget", False

    req_lo, req_hi = request.budget_min, request.budget_max
    p_lo = partner.min_budget if partner.min_budget is not None else 0.0
    p_hi = partner.max_budget if partner.max_budget is not None else math.inf

    if p_lo <= req_lo and req_hi <= p_hi:
        return 20, "Budget aligns perfectly", True
    if p_lo <= req_lo <= p_hi or p_lo <= req_hi <= p_hi:
        return 12, "Budget partially overlaps", False
    return 0, None, False


def _tier(value: float, tiers: list[tuple[float, int, str | None]]) -> tuple[int, str | None]:
    for threshold, points, reason in tiers:
        if value >= threshold:
            return points, reason
    return 0, None


def _serves_location(partner: Partner, location: str) -> bool:
    loc = (location or "").strip().lower()
    if not loc:
        return False
    return any(region in loc or loc in region for region in _lower(partner.service_regions))


def score_partner(
    partner: Partner,
    request: ServiceRequest,
    preferred: dict[int, float] | None = None,
) -> MatchResult:
    """Score one partner against one request. Reasons follow evaluation order."""
    score = 0
    factors = 0
    reasons: list[str] = []

    if (request.category or "").strip().lower() in _lower(partner.categories):
        score += 35
        factors += 1
        reasons.append(f"Specializes in {request.category}")

    points, reason, full_fit = _budget_fit(partner, request)
    score += points
    factors += 1 if full_fit else 0
    if reason:
        reasons.append(reason)

    rating = partner.rating or 0.0
    points, reason = _tier(rating, RATING_TIERS)
    score += points
    factors += 1 if rating >= 4.8 else 0
    if reason:
        reasons.append(reason)

    response_rate = partner.response_rate or 0.0
    points, reason = _tier(response_rate, RESPONSE_TIERS)
    score += points
    factors += 1 if response_rate >= 95 else 0
    if reason:
        reasons.append(reason)

    bookings = partner.total_bookings or 0
    for threshold, points in BOOKING_TIERS:
        if bookings >= threshold:
            score += points
            reasons.append(f"{bookings}+ successful bookings")
            break

    avg = (preferred or {}).get(partner.id)
    if avg is not None and avg >= PREFERRED_RATING:
        score += 15
        factors += 2  # repeat preference is the strongest signal
        reasons.append(f"Previously rated {avg:.1f}★ by you")

    if _serves_location(partner, request.preferred_location):
        score += 5
        reasons.append(f"Serves {request.preferred_location.strip()}")

    return MatchResult(
        partner_id=partner.id,
        company_name=partner.company_name,
        score=max(0, min(100, score)),
        reasons=reasons,
        ai_confidence=min(1.0, factors / 4),
    )


def rank_candidates(
    request: ServiceRequest,
    partners: Iterable[Partner],
    excluded: set[int] | None = None,
    preferred: dict[int, float] | None = None,
    max_partners: int = DEFAULT_MAX_PARTNERS,
) -> RankingResult:
    """Filter, score and shortlist partners for *request*.

    Args:
        request: The service request being matched.
        partners: Candidate pool, in the order ties should keep.
        excluded: Partner ids already bidding on or answered for this request.
        preferred: ``{partner_id: avg_rating}`` from the client's completed history.
        max_partners: Shortlist length.
    """
    excluded = excluded or set()
    eligible = [p for p in partners if is_eligible(p, request, excluded)]
    scored = [score_partner(p, request, preferred) for p in eligible]
    matches = [m for m in scored if m.score >= MIN_MATCH_SCORE]
    matches.sort(key=lambda m: m.score, reverse=True)  # stable
    return RankingResult(evaluated=len(eligible), matches=matches[:max_partners])


# ---------------------------------------------------------------------------
# Optional personalization
# ---------------------------------------------------------------------------

PERSONALIZE_SYSTEM_PROMPT = """\
You are a luxury concierge assistant. Generate personalized, sophisticated \
recommendations for discerning clients. Be concise but compelling.
"""


def _fmt_budget(value: float | None, fallback: str) -> str:
    return f"{value:,.0f}" if value is not None else fallback


def build_personalize_prompt(request: ServiceRequest, matches: list[MatchResult]) -> str:
    lines = [
        f'Client request: "{request.title}"',
        f'Description: "{request.description}"',
        f"Budget range: {_fmt_budget(request.budget_min, 'Flexible')} - {_fmt_budget(request.budget_max, 'Unlimited')}",
        "",
        "Top partner matches:",
    ]
    for i, m in enumerate(matches, 1):
        lines.append(f"{i}. {m.company_name} (Score: {m.score}) - {', '.join(m.reasons)}")
    lines.append("")
    lines.append(
        "For each partner, provide a 1-sentence personalized recommendation explaining "
        'why they are ideal for this specific request. Return as JSON: { "partner_name": "recommendation" }'
    )
    return "\n".join(lines)


async def personalize(
    request: ServiceRequest,
    matches: list[MatchResult],
    client: LLMClient | None,
    timeout: float | None = None,
) -> list[MatchResult]:
    """Append one model-written sentence per partner, keyed by company name.

    Returns new MatchResult objects in the same order with the same scores.
    Any failure leaves the rule-based reasons untouched.
    """
    if client is None or not matches:
        return matches
    try:
        answer = await asyncio.wait_for(
            client.call(PERSONALIZE_SYSTEM_PROMPT, build_personalize_prompt(request, matches), temperature=0.7),
            timeout or probe_timeout(),
        )
    except Exception as exc:
        log.warning("Personalization skipped for request %s: %s", request.id, exc)
        return matches

    enhanced: list[MatchResult] = []
    for m in matches:
        sentence = answer.get(m.company_name)
        if isinstance(sentence, str) and sentence.strip():
            enhanced.append(replace(m, reasons=[*m.reasons, sentence.strip()]))
        else:
            enhanced.append(m)
    return enhanced
