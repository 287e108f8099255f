"""Shared business logic for the PartnerDesk API and MCP server."""
from __future__ import annotations

import json
import logging
import time
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from partnerdesk.llm import LLMClient
from partnerdesk.models import (
    PartnerApplication,
    PartnerRecommendation,
    ServiceRequest,
    ServiceRequestBid,
    VettingRecord,
)
from partnerdesk.outreach import Notifier, dispatch_outreach
from partnerdesk.ranking import PREFERRED_RATING, personalize, rank_candidates
from partnerdesk.schemas import MatchOut, MatchResponse, RecommendationOut, VettingRequest, VettingResponse
from partnerdesk.sources import PartnerSource, partner_source_from_env
from partnerdesk.utils import json_parse
from partnerdesk.vetting import vet_application

log = logging.getLogger(__name__)

OPEN_BID_STATUSES = ("pending", "submitted")
ANSWERED_RECOMMENDATION_STATUSES = ("accepted", "declined")

REQUIRED_APPLICATION_FIELDS = ("company_name", "email")


# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def application_to_request(app: PartnerApplication) -> VettingRequest:
    return VettingRequest(
        application_id=app.id,
        company_name=app.company_name,
        email=app.email,
        website=app.website or "",
        phone=app.phone or "",
        description=app.description or "",
        categories=app.categories,
        experience_years=app.experience_years,
        notable_clients=app.notable_clients or "",
        coverage_regions=app.coverage_regions,
    )


def missing_fields(req: VettingRequest) -> list[str]:
    return [f for f in REQUIRED_APPLICATION_FIELDS if not getattr(req, f)]


def vetting_record_out(rec: VettingRecord) -> dict[str, Any]:
    return {
        "id": rec.id,
        "application_id": rec.application_id,
        "overall_score": rec.overall_score,
        "risk_level": rec.risk_level,
        "verification_checks": json_parse(rec.verification_checks_json),
        "risk_indicators": json_parse(rec.risk_indicators_json, []),
        "ai_recommendation": rec.ai_recommendation,
        "recommendation_reason": rec.recommendation_reason,
        "auto_vetting_items": json_parse(rec.auto_vetting_items_json),
        "processing_time_ms": rec.processing_time_ms,
        "vetted_at": rec.vetted_at.isoformat() if rec.vetted_at else None,
    }


def recommendation_out(rec: PartnerRecommendation) -> RecommendationOut:
    return RecommendationOut(
        id=rec.id,
        service_request_id=rec.service_request_id,
        partner_id=rec.partner_id,
        match_score=rec.match_score,
        match_reasons=json_parse(rec.match_reasons_json, []),
        ai_confidence=rec.ai_confidence,
        status=rec.status,
        created_at=rec.created_at.isoformat() if rec.created_at else None,
    )


# ---------------------------------------------------------------------------
# Vetting
# ---------------------------------------------------------------------------


async def run_vetting(
    session: Session, req: VettingRequest, client: LLMClient | None = None,
) -> VettingResponse:
    """Vet an application and store the result as a new VettingRecord.

    A storage failure is logged and reported as ``persisted=False``; the
    computed result is still returned.
    """
    start = time.monotonic()
    result = await vet_application(session, req, client)
    elapsed_ms = int((time.monotonic() - start) * 1000)

    persisted = True
    try:
        with session.begin_nested():
            session.add(VettingRecord(
                application_id=req.application_id,
                overall_score=result.overall_score,
                risk_level=result.risk_level,
                verification_checks_json=result.verification_checks.model_dump_json(),
                risk_indicators_json=json.dumps([i.model_dump() for i in result.risk_indicators]),
                ai_recommendation=result.ai_recommendation,
                recommendation_reason=result.recommendation_reason,
                auto_vetting_items_json=json.dumps(result.auto_vetting_items),
                processing_time_ms=elapsed_ms,
            ))
        session.commit()
    except SQLAlchemyError as exc:
        log.warning("Failed to store vetting result for application %s: %s", req.application_id, exc)
        session.rollback()
        persisted = False

    return VettingResponse(result=result, processing_time_ms=elapsed_ms, persisted=persisted)


def latest_vetting(session: Session, application_id: int) -> VettingRecord | None:
    return session.execute(
        select(VettingRecord)
        .where(VettingRecord.application_id == application_id)
        .order_by(VettingRecord.vetted_at.desc(), VettingRecord.id.desc())
        .limit(1)
    ).scalar_one_or_none()


# ---------------------------------------------------------------------------
# Matching
# ---------------------------------------------------------------------------


def load_preferred_partners(session: Session, client_id: str) -> dict[int, float]:
    """``{partner_id: avg_rating}`` for partners this client rated 4★+ on completed work."""
    rows = session.execute(
        select(ServiceRequest.partner_id, func.avg(ServiceRequest.client_rating))
        .where(
            ServiceRequest.client_id == client_id,
            ServiceRequest.status == "completed",
            ServiceRequest.partner_id.is_not(None),
            ServiceRequest.client_rating.is_not(None),
        )
        .group_by(ServiceRequest.partner_id)
    ).all()
    return {pid: float(avg) for pid, avg in rows if avg is not None and avg >= PREFERRED_RATING}


def excluded_partner_ids(session: Session, request_id: int) -> set[int]:
    """Partners with an open bid, or who already answered a recommendation, for this request."""
    bidding = session.execute(
        select(ServiceRequestBid.partner_id).where(
            ServiceRequestBid.service_request_id == request_id,
            ServiceRequestBid.status.in_(OPEN_BID_STATUSES),
        )
    ).scalars().all()
    answered = session.execute(
        select(PartnerRecommendation.partner_id).where(
            PartnerRecommendation.service_request_id == request_id,
            PartnerRecommendation.status.in_(ANSWERED_RECOMMENDATION_STATUSES),
        )
    ).scalars().all()
    return set(bidding) | set(answered)


async def run_matching(
    session: Session,
    request: ServiceRequest,
    *,
    auto_outreach: bool = True,
    max_partners: int = 5,
    client: LLMClient | None = None,
    source: PartnerSource | None = None,
    notifier: Notifier | None = None,
) -> MatchResponse:
    """Rank partners for *request*, persist recommendations and run outreach."""
    start = time.monotonic()
    source = source or partner_source_from_env(session)

    pool = source.approved_partners(request.category)
    ranking = rank_candidates(
        request,
        pool,
        excluded=excluded_partner_ids(session, request.id),
        preferred=load_preferred_partners(session, request.client_id),
        max_partners=max_partners,
    )
    log.info(
        "Request %s (%s): %d eligible, %d shortlisted",
        request.id, request.category, ranking.evaluated, len(ranking.matches),
    )
    matches = await personalize(request, ranking.matches, client)

    report = await dispatch_outreach(
        session, request, matches, {p.id: p for p in pool},
        auto_outreach=auto_outreach,
        evaluated=ranking.evaluated,
        started=start,
        notifier=notifier,
    )
    elapsed_ms = int((time.monotonic() - start) * 1000)
    log.info("Matching for request %s completed in %dms, %d invitations sent", request.id, elapsed_ms, report.sent)

    return MatchResponse(
        matches=[
            MatchOut(
                partner_id=m.partner_id, company_name=m.company_name, score=m.score,
                reasons=m.reasons, ai_confidence=m.ai_confidence,
            )
            for m in matches
        ],
        candidates_evaluated=ranking.evaluated,
        auto_outreach_sent=report.sent if auto_outreach else 0,
        processing_time_ms=elapsed_ms,
    )


def list_recommendations(session: Session, request_id: int) -> list[RecommendationOut]:
    recs = session.execute(
        select(PartnerRecommendation)
        .where(PartnerRecommendation.service_request_id == request_id)
        .order_by(PartnerRecommendation.match_score.desc(), PartnerRecommendation.id)
    ).scalars().all()
    return [recommendation_out(r) for r in recs]
